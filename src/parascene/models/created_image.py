"""CreatedImage entity - one creation attempt with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from parascene.core.clock import parse_iso, utcnow

META_VERSION = 1
DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 1024


class CreationStatus(str, Enum):
    """Creation lifecycle status."""

    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid creation state transition."""

    pass


class CreationMeta(BaseModel):
    """Structured record stored in ``created_images.meta``.

    Every write goes through this model so the initiator, the job runner and
    the read paths agree on the shape. Unknown keys in stored rows are dropped.
    """

    model_config = ConfigDict(extra="ignore")

    version: int = META_VERSION
    creation_token: Optional[str] = None
    server_id: Optional[int] = None
    server_name: Optional[str] = None
    server_url: Optional[str] = None
    method: Optional[str] = None
    method_name: Optional[str] = None
    args: dict[str, Any] = PydanticField(default_factory=dict)
    started_at: Optional[str] = None
    timeout_at: Optional[str] = None
    credit_cost: float = PydanticField(default=0.0, ge=0)
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    duration_ms: Optional[int] = PydanticField(default=None, ge=0)
    error_code: Optional[str] = None
    error: Optional[str] = None
    provider_error: Optional[dict[str, Any]] = None
    credits_refunded: bool = False
    history: list[int] = PydanticField(default_factory=list)
    mutate_of_id: Optional[int] = None


class CreatedImage(SQLModel, table=True):
    """CreatedImage tracks a user-requested provider invocation and its outcome."""

    __tablename__ = "created_images"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    filename: str = Field(max_length=255)
    file_path: str = Field(default="")
    width: int = Field(default=DEFAULT_WIDTH)
    height: int = Field(default=DEFAULT_HEIGHT)
    color: Optional[str] = Field(default=None, max_length=64)
    status: CreationStatus = Field(default=CreationStatus.CREATING, index=True)
    published: bool = Field(default=False)
    meta: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def creation_meta(self) -> CreationMeta:
        """Parsed meta record (empty record when the column is null)."""
        return CreationMeta.model_validate(self.meta or {})

    def set_meta(self, meta: CreationMeta) -> None:
        """Validate and store a meta record.

        A new dict is assigned so the JSON column is flagged as modified.
        """
        validated = CreationMeta.model_validate(meta.model_dump())
        self.meta = validated.model_dump(mode="json", exclude_none=True)

    def is_stale(self, now: datetime) -> bool:
        """True when still creating past the recorded ``timeout_at``."""
        if self.status != CreationStatus.CREATING:
            return False
        timeout_at = parse_iso(self.creation_meta.timeout_at)
        return timeout_at is not None and now > timeout_at

    def mark_completed(
        self,
        filename: str,
        file_path: str,
        width: int,
        height: int,
        color: str | None,
        meta: CreationMeta,
    ) -> None:
        """Transition from creating to completed.

        Raises:
            InvalidStateTransition: If current status is not creating
        """
        if self.status != CreationStatus.CREATING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Creation must be in creating state."
            )
        self.filename = filename
        self.file_path = file_path
        self.width = width
        self.height = height
        self.color = color
        self.set_meta(meta)
        self.status = CreationStatus.COMPLETED

    def mark_failed(self, meta: CreationMeta) -> None:
        """Transition from creating to failed.

        Raises:
            InvalidStateTransition: If current status is not creating
        """
        if self.status != CreationStatus.CREATING:
            raise InvalidStateTransition(
                f"Cannot mark failed from {self.status.value}. Creation must be in creating state."
            )
        self.set_meta(meta)
        self.status = CreationStatus.FAILED

    def mark_refunded(self) -> None:
        """Record that the attempt's credit cost was returned to the owner.

        Raises:
            InvalidStateTransition: If the row is not failed or was already refunded
        """
        if self.status != CreationStatus.FAILED:
            raise InvalidStateTransition(
                f"Cannot refund from {self.status.value}. Creation must be in failed state."
            )
        meta = self.creation_meta
        if meta.credits_refunded:
            raise InvalidStateTransition("Credits already refunded for this attempt.")
        meta.credits_refunded = True
        self.set_meta(meta)

    def reset_for_retry(self, meta: CreationMeta, placeholder_filename: str, now: datetime) -> None:
        """Reset the row in place for a new attempt (same id).

        Legal from failed, or from creating once ``timeout_at`` has passed.

        Raises:
            InvalidStateTransition: If the row is completed or still in progress
        """
        if self.status == CreationStatus.COMPLETED:
            raise InvalidStateTransition("Cannot retry a completed creation.")
        if self.status == CreationStatus.CREATING and not self.is_stale(now):
            raise InvalidStateTransition(
                "Cannot retry a creation that is still in progress and has not timed out."
            )
        self.filename = placeholder_filename
        self.file_path = ""
        self.width = DEFAULT_WIDTH
        self.height = DEFAULT_HEIGHT
        self.color = None
        self.set_meta(meta)
        self.status = CreationStatus.CREATING
