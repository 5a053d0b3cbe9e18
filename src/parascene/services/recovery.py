"""Recovery of creations stuck in ``creating``.

A row can stay ``creating`` forever if its job was never delivered (crash
between commit and dispatch, lost queue message). Once ``meta.timeout_at`` has
passed it may be marked failed here, by the client or by a batch sweep. No
provider call and no refund happen here: the next retry-in-place refunds the
stale attempt before charging again.
"""

from datetime import datetime

import structlog

from parascene.core.clock import to_iso, utcnow
from parascene.models.created_image import CreatedImage, CreationStatus
from parascene.models.user import User
from parascene.services.exceptions import NotFoundError, StateConflictError
from parascene.uow import UnitOfWork, UnitOfWorkFactory

logger = structlog.get_logger(__name__)

STALE_ERROR_CODE = "timeout"
STALE_ERROR_MESSAGE = "Timed out"


def _fail_stale(image: CreatedImage, now: datetime) -> None:
    meta = image.creation_meta
    meta.failed_at = to_iso(now)
    meta.error_code = STALE_ERROR_CODE
    meta.error = STALE_ERROR_MESSAGE
    image.mark_failed(meta)


async def mark_stale_failed(
    uow: UnitOfWork, user: User, image_id: int, now: datetime | None = None
) -> CreatedImage:
    """Transition a timed-out ``creating`` row to ``failed``.

    Args:
        uow: Unit of work (committed by the caller's context)
        user: Caller; must own the row unless admin
        image_id: Creation id
        now: Current time (defaults to utcnow)

    Returns:
        The row, failed. Rows that are already failed are returned unchanged.

    Raises:
        NotFoundError: Row missing or not visible to the caller
        StateConflictError: Row completed, or still within its timeout
    """
    now = now or utcnow()
    image = await uow.created_images.get_by_id_for_user(image_id, user.id)
    if image is None and user.is_admin:
        image = await uow.created_images.get_by_id(image_id)
    if image is None:
        raise NotFoundError("Image not found")

    if image.status == CreationStatus.FAILED:
        return image

    if image.status != CreationStatus.CREATING:
        raise StateConflictError("Only creations in progress can be marked as failed")

    if not image.is_stale(now):
        raise StateConflictError(
            "Creation has not timed out yet", timeout_at=image.creation_meta.timeout_at
        )

    _fail_stale(image, now)
    await uow.created_images.save(image)
    logger.info("creation.marked_stale", created_image_id=image.id, user_id=image.user_id)
    return image


async def recover_stale_creations(
    uow_factory: UnitOfWorkFactory,
    now: datetime | None = None,
    limit: int = 500,
    dry_run: bool = False,
) -> list[int]:
    """Mark every timed-out ``creating`` row as failed.

    Args:
        uow_factory: Unit of Work factory
        now: Current time (defaults to utcnow)
        limit: Maximum rows inspected in this sweep
        dry_run: Report stale ids without writing

    Returns:
        Ids of stale rows (marked failed unless dry_run)
    """
    now = now or utcnow()
    async with await uow_factory() as uow:
        candidates = await uow.created_images.list_creating(limit=limit)
        stale = [image for image in candidates if image.is_stale(now)]

        if not dry_run:
            for image in stale:
                _fail_stale(image, now)
                await uow.created_images.save(image)

    stale_ids = [image.id for image in stale]
    if stale_ids:
        logger.info(
            "recovery.stale_creations",
            count=len(stale_ids),
            created_image_ids=stale_ids,
            dry_run=dry_run,
        )
    return stale_ids
