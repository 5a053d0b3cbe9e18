"""Creation initiator: validates a request, bills it, writes the row, dispatches.

Three request shapes share one entry point:

- new: debit, insert a placeholder ``creating`` row, dispatch;
- mutate (``mutate_of_id``): like new, with lineage taken from a source row
  and ``args.image_url`` rewritten to a same-origin URL;
- retry-in-place (``retry_of_id``): reuse a failed or timed-out row, refunding
  the previous attempt first when it was never refunded.

The debit and the row write commit together; dispatch happens after commit so
a dispatched job always finds its row.
"""

import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from urllib.parse import urlsplit

import structlog
from sqlalchemy.exc import SQLAlchemyError

from parascene.core.clock import to_iso, utcnow
from parascene.core.config import Settings
from parascene.models.created_image import CreatedImage, CreationMeta, CreationStatus
from parascene.models.server import Server
from parascene.models.user import User
from parascene.services.credits import CreditLedger
from parascene.services.exceptions import (
    InsufficientCreditsError,
    NotFoundError,
    PersistenceError,
    StateConflictError,
    ValidationError,
)
from parascene.uow import UnitOfWork, UnitOfWorkFactory
from parascene.workers.creation_job import CreationJobPayload
from parascene.workers.dispatch import JobDispatcher

logger = structlog.get_logger(__name__)

MIN_CREATION_TOKEN_LENGTH = 10


@dataclass
class CreateRequest:
    """Validated body of POST /api/create."""

    server_id: int
    method: str
    args: dict[str, Any]
    creation_token: str
    retry_of_id: int | None = None
    mutate_of_id: int | None = None


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    if isinstance(value, float) and value.is_integer() and value > 0:
        return int(value)
    return None


def parse_create_request(raw: Any) -> CreateRequest:
    """Validate a raw request body.

    Raises:
        ValidationError: Missing fields, malformed ids, bad args or creation_token
    """
    if not isinstance(raw, dict):
        raise ValidationError("Request body must be a JSON object")

    server_id = _positive_int(raw.get("server_id"))
    method = raw.get("method")
    if server_id is None or not isinstance(method, str) or not method.strip():
        raise ValidationError("Missing required fields: server_id, method")

    args = raw.get("args")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise ValidationError("args must be an object")

    token = raw.get("creation_token")
    if not isinstance(token, str) or len(token.strip()) < MIN_CREATION_TOKEN_LENGTH:
        raise ValidationError("Invalid creation_token")

    retry_of_id = None
    if raw.get("retry_of_id") is not None:
        retry_of_id = _positive_int(raw.get("retry_of_id"))
        if retry_of_id is None:
            raise ValidationError("Invalid retry_of_id")

    mutate_of_id = None
    if raw.get("mutate_of_id") is not None:
        mutate_of_id = _positive_int(raw.get("mutate_of_id"))
        if mutate_of_id is None:
            raise ValidationError("Invalid mutate_of_id")

    if retry_of_id and mutate_of_id:
        raise ValidationError("retry_of_id and mutate_of_id cannot be combined")

    return CreateRequest(
        server_id=server_id,
        method=method.strip(),
        args=args,
        creation_token=token.strip(),
        retry_of_id=retry_of_id,
        mutate_of_id=mutate_of_id,
    )


def to_same_origin_url(value: Any) -> Any:
    """Strip scheme and host from a URL, keeping path, query and fragment.

    Non-string and empty values are returned unchanged.
    """
    if not isinstance(value, str) or not value.strip():
        return value
    parts = urlsplit(value.strip())
    url = parts.path or "/"
    if not url.startswith("/"):
        url = f"/{url}"
    if parts.query:
        url = f"{url}?{parts.query}"
    if parts.fragment:
        url = f"{url}#{parts.fragment}"
    return url


def placeholder_filename(user_id: int) -> str:
    timestamp = int(time.time() * 1000)
    return f"creating_{user_id}_{timestamp}_{secrets.token_hex(4)}.png"


class CreationService:
    """Entry point for POST /api/create."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        dispatcher: JobDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.uow_factory = uow_factory
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock

    def _fresh_meta(
        self,
        request: CreateRequest,
        server: Server,
        cost: float,
        now: datetime,
        args: dict[str, Any],
        history: list[int],
        mutate_of_id: int | None,
    ) -> CreationMeta:
        timeout_at = now + timedelta(
            seconds=self.settings.provider_timeout_seconds
            + self.settings.creation_timeout_buffer_seconds
        )
        return CreationMeta(
            creation_token=request.creation_token,
            server_id=server.id,
            server_name=server.name,
            server_url=server.server_url,
            method=request.method,
            method_name=server.method_display_name(request.method),
            args=args,
            started_at=to_iso(now),
            timeout_at=to_iso(timeout_at),
            credit_cost=cost,
            credits_refunded=False,
            history=list(history),
            mutate_of_id=mutate_of_id,
        )

    async def _resolve_mutation_source(
        self, uow: UnitOfWork, user: User, source_id: int
    ) -> CreatedImage:
        source = await uow.created_images.get_by_id_for_user(source_id, user.id)
        if source is None:
            candidate = await uow.created_images.get_by_id(source_id)
            if candidate is not None and (candidate.published or user.is_admin):
                source = candidate
        if source is None:
            raise NotFoundError("Image not found")
        return source

    async def _load_retry_target(
        self, uow: UnitOfWork, user: User, image_id: int, now: datetime
    ) -> CreatedImage:
        image = await uow.created_images.get_by_id_for_user(image_id, user.id)
        if image is None:
            raise NotFoundError("Image not found")

        if not (image.status == CreationStatus.FAILED or image.is_stale(now)):
            raise StateConflictError(
                "Only failed or timed out creations can be retried",
                status=image.status.value,
            )
        return image

    async def _retry_in_place(
        self,
        uow: UnitOfWork,
        ledger: CreditLedger,
        user: User,
        image: CreatedImage,
        request: CreateRequest,
        server: Server,
        cost: float,
        now: datetime,
    ) -> CreatedImage:
        prior = image.creation_meta
        if prior.credit_cost > 0 and not prior.credits_refunded:
            await ledger.credit(user.id, prior.credit_cost)
            logger.info(
                "creation.retry_refunded_prior",
                created_image_id=image.id,
                amount=prior.credit_cost,
            )

        await ledger.debit(user.id, cost)
        meta = self._fresh_meta(
            request, server, cost, now, request.args, prior.history, prior.mutate_of_id
        )
        image.reset_for_retry(meta, placeholder_filename(user.id), now)
        return await uow.created_images.save(image)

    async def _insert_new(
        self,
        uow: UnitOfWork,
        ledger: CreditLedger,
        user: User,
        request: CreateRequest,
        server: Server,
        cost: float,
        now: datetime,
    ) -> CreatedImage:
        history: list[int] = []
        args = dict(request.args)
        if request.mutate_of_id:
            source = await self._resolve_mutation_source(uow, user, request.mutate_of_id)
            history = [*source.creation_meta.history, source.id]
            if "image_url" in args:
                args["image_url"] = to_same_origin_url(args["image_url"])

        await ledger.debit(user.id, cost)
        image = CreatedImage(
            user_id=user.id,
            filename=placeholder_filename(user.id),
            file_path="",
            status=CreationStatus.CREATING,
            created_at=now,
        )
        image.set_meta(
            self._fresh_meta(request, server, cost, now, args, history, request.mutate_of_id)
        )
        return await uow.created_images.add(image)

    async def initiate(self, user: User, raw: Any) -> dict[str, Any]:
        """Validate, bill, persist and dispatch a creation request.

        Validation order: required fields → server exists → server active →
        method available → retry target resolvable → balance (plus any refund
        still owed for the retried attempt) covers the cost.

        Args:
            user: Authenticated caller
            raw: Request body (dict)

        Returns:
            {id, status, created_at, meta, credits_remaining}

        Raises:
            ValidationError: 400 (fields, token, inactive server, unknown method)
            NotFoundError: 404 (server, retry target or mutation source)
            StateConflictError: 400 (retry of an in-progress creation)
            InsufficientCreditsError: 402
            PersistenceError: 500 (database failure)
            ConfigurationError, QueuePublishError: dispatch could not hand off the job
        """
        request = parse_create_request(raw)
        now = self.clock()

        try:
            async with await self.uow_factory() as uow:
                server = await uow.servers.get_by_id(request.server_id)
                if server is None:
                    raise NotFoundError("Server not found")
                if not server.is_active:
                    raise ValidationError("Server is not active")
                if request.method not in server.methods:
                    raise ValidationError("Method not available")

                cost = server.method_cost(request.method, self.settings.default_method_cost)
                ledger = CreditLedger(uow)
                retry_target = None
                refundable = 0.0
                if request.retry_of_id:
                    retry_target = await self._load_retry_target(
                        uow, user, request.retry_of_id, now
                    )
                    prior = retry_target.creation_meta
                    if not prior.credits_refunded:
                        refundable = prior.credit_cost

                # An unrefunded prior attempt is returned before the retry is charged
                current = await ledger.balance(user.id)
                if current + refundable < cost:
                    raise InsufficientCreditsError(required=cost, current=current)

                if retry_target is not None:
                    image = await self._retry_in_place(
                        uow, ledger, user, retry_target, request, server, cost, now
                    )
                else:
                    image = await self._insert_new(uow, ledger, user, request, server, cost, now)

                credits_remaining = await ledger.balance(user.id)
                payload = CreationJobPayload(
                    created_image_id=image.id,
                    user_id=user.id,
                    server_id=server.id,
                    method=request.method,
                    args=image.creation_meta.args,
                    credit_cost=cost,
                    started_at=image.creation_meta.started_at,
                )
                response = {
                    "id": image.id,
                    "status": CreationStatus.CREATING.value,
                    "created_at": to_iso(image.created_at),
                    "meta": image.meta,
                    "credits_remaining": credits_remaining,
                }
        except SQLAlchemyError as e:
            logger.error("creation.persistence_failed", error=str(e), exc_info=True)
            raise PersistenceError("Failed to create image") from e

        logger.info(
            "creation.initiated",
            created_image_id=payload.created_image_id,
            user_id=user.id,
            server_id=payload.server_id,
            method=payload.method,
            credit_cost=cost,
            retry_of_id=request.retry_of_id,
            mutate_of_id=request.mutate_of_id,
        )

        try:
            await self.dispatcher.dispatch(payload)
        except Exception as e:
            # Row stays "creating" with the debit applied until it times out
            logger.error(
                "creation.dispatch_failed",
                created_image_id=payload.created_image_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        return response
