"""Creation job runner: executes one job payload against its provider.

The runner is reached from two independent paths: an in-process background
task and the queue webhook (possibly on another instance). Both may run for the
same creation, concurrently or as a redelivery. Safety comes from status
checks, never from locks:

- a row that is no longer ``creating``, or whose current attempt is not the
  one the job was issued for, is skipped without side effects;
- finalizing re-reads the row inside its own transaction, so the first runner
  to finalize wins and later ones report ``skipped``;
- refunds happen at most once per attempt, guarded by ``meta.credits_refunded``
  and committed in the same transaction as the credit.

Business failures (inactive server, provider error, timeout) are written to
the row and refunded; they are never raised. Only malformed payloads raise.
"""

import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from parascene.core.clock import elapsed_ms, to_iso, utcnow
from parascene.core.config import Settings
from parascene.models.created_image import CreatedImage, CreationStatus
from parascene.services.credits import CreditLedger
from parascene.services.exceptions import InvalidJobPayload, ProviderError
from parascene.services.provider.client import ProviderClient
from parascene.services.storage import ImageStorage
from parascene.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

ERROR_CODE_PROVIDER = "provider_error"


class CreationJobPayload(BaseModel):
    """Job handed from the dispatcher to the runner (and through the queue)."""

    created_image_id: int = Field(gt=0)
    user_id: int = Field(gt=0)
    server_id: int = Field(gt=0)
    method: str = Field(min_length=1)
    args: dict[str, Any]
    credit_cost: float = Field(ge=0)
    # meta.started_at of the attempt this job was issued for
    started_at: Optional[str] = None


@dataclass
class JobResult:
    """Outcome of one runner invocation."""

    ok: bool
    skipped: bool = False
    reason: Optional[str] = None
    status: Optional[str] = None
    id: Optional[int] = None
    filename: Optional[str] = None
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    color: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = {k: v for k, v in asdict(self).items() if v is not None}
        if not self.skipped:
            result.pop("skipped")
        return result


def parse_job_payload(raw: Any) -> CreationJobPayload:
    """Validate a raw payload.

    Raises:
        InvalidJobPayload: If required fields are missing or malformed
    """
    if isinstance(raw, CreationJobPayload):
        return raw
    if not isinstance(raw, dict):
        raise InvalidJobPayload("run_creation_job: payload must be an object")
    try:
        return CreationJobPayload.model_validate(raw)
    except PydanticValidationError as e:
        missing = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise InvalidJobPayload(
            f"run_creation_job: missing or invalid payload fields: {', '.join(missing)}"
        ) from e


def belongs_to_attempt(row: CreatedImage, job: CreationJobPayload) -> bool:
    """True when the job was issued for the row's current attempt.

    A retried row keeps its id, so a late job from an earlier attempt still
    finds it. The job's method, args, cost and attempt start must match the
    row's meta.
    """
    meta = row.creation_meta
    if job.started_at is not None and job.started_at != meta.started_at:
        return False
    return (
        meta.method == job.method
        and meta.args == job.args
        and meta.credit_cost == job.credit_cost
        and (meta.server_id is None or meta.server_id == job.server_id)
    )


def build_output_filename(user_id: int, image_id: int) -> str:
    """Unique filename for a finished creation."""
    timestamp = int(time.time() * 1000)
    return f"{user_id}_{image_id}_{timestamp}_{secrets.token_hex(4)}.png"


async def fail_and_refund(
    uow_factory: UnitOfWorkFactory,
    job: CreationJobPayload,
    error_code: str,
    error: str,
    provider_error: dict[str, Any] | None = None,
) -> bool:
    """Finalize the attempt as failed and refund its cost at most once.

    The failure write, the credit and the ``credits_refunded`` flag commit in a
    single transaction.

    Returns:
        True when this call issued the refund, False otherwise
    """
    async with await uow_factory() as uow:
        row = await uow.created_images.get_by_id_for_user(job.created_image_id, job.user_id)
        if row is None:
            logger.warning(
                "creation_job.fail_target_missing", created_image_id=job.created_image_id
            )
            return False

        if not belongs_to_attempt(row, job):
            logger.info("creation_job.fail_superseded", created_image_id=row.id)
            return False

        if row.status == CreationStatus.CREATING:
            now = utcnow()
            meta = row.creation_meta
            meta.failed_at = to_iso(now)
            meta.error_code = error_code
            meta.error = error
            meta.provider_error = provider_error
            duration = elapsed_ms(meta.started_at, now)
            if duration is not None:
                meta.duration_ms = duration
            row.mark_failed(meta)
            await uow.created_images.save(row)
        elif row.status != CreationStatus.FAILED:
            # Another runner completed the attempt first
            logger.info(
                "creation_job.fail_skipped",
                created_image_id=row.id,
                status=row.status.value,
            )
            return False

        # The row records what this attempt was charged
        amount = row.creation_meta.credit_cost
        if amount <= 0 or row.creation_meta.credits_refunded:
            return False

        await CreditLedger(uow).credit(row.user_id, amount)
        row.mark_refunded()
        await uow.created_images.save(row)

    logger.info(
        "creation_job.refunded",
        created_image_id=job.created_image_id,
        user_id=job.user_id,
        amount=amount,
    )
    return True


async def _finalize_completed(
    uow_factory: UnitOfWorkFactory,
    job: CreationJobPayload,
    filename: str,
    url: str,
    width: int,
    height: int,
    color: str | None,
) -> CreatedImage | None:
    """Mark the attempt completed unless another runner already finalized it."""
    async with await uow_factory() as uow:
        row = await uow.created_images.get_by_id_for_user(job.created_image_id, job.user_id)
        if (
            row is None
            or row.status != CreationStatus.CREATING
            or not belongs_to_attempt(row, job)
        ):
            return row

        now = utcnow()
        meta = row.creation_meta
        meta.completed_at = to_iso(now)
        duration = elapsed_ms(meta.started_at, now)
        if duration is not None:
            meta.duration_ms = duration
        row.mark_completed(filename, url, width, height, color, meta)
        await uow.created_images.save(row)
        return row


async def _credit_server_owner(
    uow_factory: UnitOfWorkFactory, owner_id: int | None, amount: float, job: CreationJobPayload
) -> None:
    """Pay the provider's owner their share. Failures never fail the job."""
    if not owner_id or amount <= 0:
        return
    try:
        async with await uow_factory() as uow:
            await CreditLedger(uow).credit(owner_id, amount)
    except Exception as e:
        logger.warning(
            "creation_job.owner_credit_failed",
            created_image_id=job.created_image_id,
            owner_id=owner_id,
            error=str(e),
            error_type=type(e).__name__,
        )


async def run_creation_job(
    payload: Any,
    uow_factory: UnitOfWorkFactory,
    storage: ImageStorage,
    provider: ProviderClient,
    settings: Settings,
) -> JobResult:
    """Execute a creation job and finalize its row.

    Workflow:
    1. Validate payload (raises InvalidJobPayload)
    2. Load row by id + owner; missing → not_found, not creating or issued
       for an earlier attempt → skipped
    3. Re-check server; missing or inactive → failed + refund
    4. Call provider; error or timeout → failed + refund
    5. Upload image, mark completed, credit server owner (best-effort)

    Args:
        payload: Raw job payload (dict from the queue, or CreationJobPayload)
        uow_factory: Unit of Work factory
        storage: Image storage for the provider output
        provider: Provider HTTP client
        settings: Application settings (owner share)

    Returns:
        JobResult describing the outcome

    Raises:
        InvalidJobPayload: If required payload fields are missing
    """
    job = parse_job_payload(payload)
    log = logger.bind(
        created_image_id=job.created_image_id,
        user_id=job.user_id,
        server_id=job.server_id,
        method=job.method,
    )
    log.info("creation_job.started", credit_cost=job.credit_cost, args_keys=sorted(job.args))

    # Step 1: Idempotency guard and server re-check
    async with await uow_factory() as uow:
        image = await uow.created_images.get_by_id_for_user(job.created_image_id, job.user_id)
        if image is None:
            log.warning("creation_job.not_found")
            return JobResult(ok=False, reason="not_found")

        if image.status != CreationStatus.CREATING:
            log.info("creation_job.skipped", status=image.status.value)
            return JobResult(ok=True, skipped=True, status=image.status.value)

        if not belongs_to_attempt(image, job):
            log.info("creation_job.superseded", started_at=image.creation_meta.started_at)
            return JobResult(
                ok=True, skipped=True, reason="superseded", status=image.status.value
            )

        server = await uow.servers.get_by_id(job.server_id)
        server_error = None
        if server is None:
            server_error = "Server not found"
        elif not server.is_active:
            server_error = "Server is not active"
        else:
            server_url = server.server_url
            auth_token = server.auth_token
            owner_id = server.user_id

    if server_error:
        log.error("creation_job.invalid_server", error=server_error)
        await fail_and_refund(uow_factory, job, ERROR_CODE_PROVIDER, server_error)
        return JobResult(ok=False, reason="invalid_server")

    # Step 2: Provider call
    try:
        generated = await provider.generate(server_url, job.method, job.args, auth_token)
    except ProviderError as e:
        log.error(
            "creation_job.provider_failed",
            error_code=e.error_code,
            error=str(e),
            error_type=type(e).__name__,
        )
        await fail_and_refund(uow_factory, job, e.error_code, str(e), e.details)
        return JobResult(ok=False, reason="provider_failed")

    # Step 3: Upload and finalize
    filename = build_output_filename(job.user_id, job.created_image_id)
    upload_started = time.monotonic()
    url = await storage.upload_image(generated.data, filename)
    log.info(
        "creation_job.uploaded",
        filename=filename,
        url=url,
        upload_ms=int((time.monotonic() - upload_started) * 1000),
    )

    row = await _finalize_completed(
        uow_factory, job, filename, url, generated.width, generated.height, generated.color
    )
    if row is None:
        log.warning("creation_job.deleted_during_run")
        return JobResult(ok=False, reason="not_found")
    if row.filename != filename:
        log.info("creation_job.finalized_elsewhere", status=row.status.value)
        return JobResult(ok=True, skipped=True, status=row.status.value)

    # Step 4: Server owner share (best-effort)
    await _credit_server_owner(
        uow_factory, owner_id, job.credit_cost * settings.server_owner_share, job
    )

    log.info(
        "creation_job.completed",
        filename=filename,
        width=generated.width,
        height=generated.height,
        color=generated.color,
        duration_ms=row.creation_meta.duration_ms,
    )
    return JobResult(
        ok=True,
        id=job.created_image_id,
        filename=filename,
        url=url,
        width=generated.width,
        height=generated.height,
        color=generated.color,
    )


def make_job_runner(
    uow_factory: UnitOfWorkFactory,
    storage: ImageStorage,
    provider: ProviderClient,
    settings: Settings,
) -> Callable[[Any], Awaitable[JobResult]]:
    """Bind the runner's collaborators; the result takes only a payload."""

    async def job_runner(payload: Any) -> JobResult:
        return await run_creation_job(payload, uow_factory, storage, provider, settings)

    return job_runner
