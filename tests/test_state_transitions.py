"""State transition tests for CreatedImage.

Tests focus on validating the creation lifecycle state machine:
- creating → completed is terminal
- creating → failed, and failed → creating on retry (same row)
- a stale creating row can be retried; a fresh one cannot
- refunds are recorded at most once per attempt
"""

from datetime import timedelta

import pytest

from parascene.core.clock import to_iso, utcnow
from parascene.models.created_image import (
    CreatedImage,
    CreationMeta,
    CreationStatus,
    InvalidStateTransition,
)


def make_image(timeout_in: timedelta = timedelta(seconds=80), **meta_overrides) -> CreatedImage:
    now = utcnow()
    image = CreatedImage(id=1, user_id=7, filename="creating_7_1.png")
    image.set_meta(
        CreationMeta(
            creation_token="tok_1234567890",
            method="txt2img",
            started_at=to_iso(now),
            timeout_at=to_iso(now + timeout_in),
            credit_cost=0.5,
            **meta_overrides,
        )
    )
    return image


def test_new_image_defaults():
    image = make_image()

    assert image.status == CreationStatus.CREATING
    assert image.file_path == ""
    assert (image.width, image.height) == (1024, 1024)
    assert image.published is False
    assert image.meta["version"] == 1


def test_valid_state_transitions():
    """Test the happy path: creating → completed."""
    image = make_image()
    meta = image.creation_meta
    meta.completed_at = to_iso(utcnow())

    image.mark_completed("7_1_1_ab.png", "/images/created/7_1_1_ab.png", 768, 512, "#fff", meta)

    assert image.status == CreationStatus.COMPLETED
    assert image.filename == "7_1_1_ab.png"
    assert image.file_path == "/images/created/7_1_1_ab.png"
    assert (image.width, image.height, image.color) == (768, 512, "#fff")
    assert image.creation_meta.completed_at is not None


def test_completed_is_terminal():
    image = make_image()
    image.mark_completed("a.png", "/a.png", 1, 1, None, image.creation_meta)

    with pytest.raises(InvalidStateTransition) as exc_info:
        image.mark_failed(image.creation_meta)
    assert "Cannot mark failed from completed" in str(exc_info.value)

    with pytest.raises(InvalidStateTransition):
        image.reset_for_retry(image.creation_meta, "creating_7_2.png", utcnow())


def test_failed_cannot_be_completed():
    image = make_image()
    image.mark_failed(image.creation_meta)

    with pytest.raises(InvalidStateTransition) as exc_info:
        image.mark_completed("a.png", "/a.png", 1, 1, None, image.creation_meta)
    assert "Cannot mark completed from failed" in str(exc_info.value)


def test_mark_refunded_once():
    image = make_image()

    with pytest.raises(InvalidStateTransition):
        image.mark_refunded()  # still creating

    image.mark_failed(image.creation_meta)
    image.mark_refunded()
    assert image.creation_meta.credits_refunded is True

    with pytest.raises(InvalidStateTransition) as exc_info:
        image.mark_refunded()
    assert "already refunded" in str(exc_info.value)


def test_retry_from_failed_resets_row_in_place():
    image = make_image(history=[3, 5])
    image.mark_failed(image.creation_meta)
    image.color = "#000"

    now = utcnow()
    fresh = CreationMeta(
        creation_token="tok_retry_12345",
        started_at=to_iso(now),
        credit_cost=0.5,
        history=image.creation_meta.history,
    )
    image.reset_for_retry(fresh, "creating_7_99.png", now)

    assert image.id == 1
    assert image.status == CreationStatus.CREATING
    assert image.filename == "creating_7_99.png"
    assert image.file_path == ""
    assert image.color is None
    assert image.creation_meta.history == [3, 5]
    assert image.creation_meta.credits_refunded is False


def test_retry_of_in_progress_creation_rejected():
    image = make_image(timeout_in=timedelta(seconds=80))

    with pytest.raises(InvalidStateTransition) as exc_info:
        image.reset_for_retry(image.creation_meta, "creating_7_2.png", utcnow())
    assert "still in progress" in str(exc_info.value)


def test_stale_creating_can_be_retried():
    image = make_image(timeout_in=timedelta(seconds=-1))
    assert image.is_stale(utcnow())

    image.reset_for_retry(image.creation_meta, "creating_7_3.png", utcnow())
    assert image.status == CreationStatus.CREATING
    assert image.filename == "creating_7_3.png"


def test_is_stale_requires_creating_and_timeout():
    image = make_image(timeout_in=timedelta(seconds=-1))
    image.mark_failed(image.creation_meta)
    assert image.is_stale(utcnow()) is False

    no_timeout = CreatedImage(id=2, user_id=7, filename="x.png")
    no_timeout.set_meta(CreationMeta())
    assert no_timeout.is_stale(utcnow()) is False


def test_meta_rejects_negative_cost():
    image = make_image()
    meta = image.creation_meta
    meta.credit_cost = -1

    with pytest.raises(ValueError):
        image.set_meta(meta)
