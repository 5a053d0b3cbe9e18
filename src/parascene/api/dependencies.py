"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Queue delivery signature validation
- Caller identity (resolved by upstream auth middleware)
- Access to the services created in the application lifespan
"""

from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from parascene.core.config import Settings
from parascene.models.user import User
from parascene.services.creation import CreationService
from parascene.services.queue.signature import verify_qstash_signature
from parascene.uow import UnitOfWorkFactory

logger = structlog.get_logger()


def get_settings(request: Request) -> Settings:
    """Get application settings.

    Returns:
        Settings stored on app.state by the lifespan, or a fresh instance
        loaded from environment variables.
    """
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars
    return settings


def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.created_images.get_by_id(image_id)
    """
    return request.app.state.uow_factory


def get_creation_service(request: Request) -> CreationService:
    """Get the CreationService built in the application lifespan."""
    return request.app.state.creation_service


def get_job_runner(request: Request):
    """Get the job runner callable (payload -> JobResult) from app state."""
    return request.app.state.job_runner


async def get_current_user(
    request: Request,
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
) -> User:
    """Resolve the authenticated caller.

    Session handling lives in upstream middleware, which stores the
    authenticated id on ``request.state.user_id``.

    Raises:
        HTTPException: 401 if no user is attached to the request or it no longer exists
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    async with await uow_factory() as uow:
        user = await uow.users.get_by_id(int(user_id))

    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user


async def validate_queue_signature(
    request: Request,
    upstash_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate a QStash delivery before the job is run.

    The raw body is read before any JSON parsing so the digest in the
    signature is checked against the exact bytes received.

    Args:
        request: FastAPI Request object (contains raw body)
        upstash_signature: JWT from the Upstash-Signature header
        settings: Application settings (signing keys, callback URL)

    Returns:
        Raw request body bytes

    Raises:
        HTTPException: 503 if no signing keys are configured,
            401 if the signature is missing or invalid
    """
    signing_keys = settings.qstash_signing_keys
    if not signing_keys:
        logger.error("worker.signing_keys_missing")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="QStash signing keys are not configured",
        )

    if not upstash_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Upstash-Signature header"
        )

    raw_body = await request.body()

    is_valid = verify_qstash_signature(
        raw_body=raw_body,
        signature=upstash_signature,
        signing_keys=signing_keys,
        url=settings.worker_callback_url,
    )
    if not is_valid:
        logger.warning("worker.invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    return raw_body
