"""Creation endpoints: start a creation, recover a stuck one, observe outcomes.

Creations finish asynchronously; clients poll GET /api/create/images/{id}
until status leaves ``creating``.
"""

import json

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from parascene.api.dependencies import get_creation_service, get_current_user, get_uow_factory
from parascene.core.clock import to_iso
from parascene.models.created_image import CreatedImage
from parascene.models.user import User
from parascene.services.creation import CreationService
from parascene.services.exceptions import CreationError, NotFoundError, ValidationError
from parascene.services.recovery import mark_stale_failed
from parascene.uow import UnitOfWorkFactory

logger = structlog.get_logger()
router = APIRouter(prefix="/api/create", tags=["create"])


def serialize_image(image: CreatedImage) -> dict:
    """Public representation of a creation row."""
    return {
        "id": image.id,
        "user_id": image.user_id,
        "filename": image.filename,
        "url": image.file_path or None,
        "width": image.width,
        "height": image.height,
        "color": image.color,
        "status": image.status.value,
        "published": image.published,
        "created_at": to_iso(image.created_at),
        "meta": image.meta,
    }


@router.post("")
async def create_image(
    request: Request,
    user: User = Depends(get_current_user),
    service: CreationService = Depends(get_creation_service),
):
    """Start a creation (new, mutation, or retry-in-place).

    Returns:
        {id, status: "creating", created_at, meta, credits_remaining}

    HTTP Status Codes:
        200: Creation accepted and dispatched
        400: Invalid request, inactive server, unknown method, retry not allowed
        402: Insufficient credits ({error, required, current})
        404: Server or referenced image not found
        500: Persistence or dispatch failure
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid JSON body") from e

    try:
        return await service.initiate(user, body)
    except CreationError:
        raise
    except Exception as e:
        logger.error(
            "creation.unexpected_error",
            user_id=user.id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"error": "Failed to create image"})


@router.post("/images/{image_id}/retry")
async def mark_creation_failed(
    image_id: int,
    user: User = Depends(get_current_user),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
):
    """Mark a timed-out creation as failed so it can be retried.

    HTTP Status Codes:
        200: {ok: true} (also when the creation had already failed)
        400: Creation completed or still within its timeout
        404: Creation not found for this caller
    """
    async with await uow_factory() as uow:
        image = await mark_stale_failed(uow, user, image_id)
        status = image.status.value

    return {"ok": True, "id": image_id, "status": status}


@router.get("/images")
async def list_images(
    limit: int = 50,
    offset: int = 0,
    user: User = Depends(get_current_user),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
):
    """List the caller's creations, newest first."""
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    async with await uow_factory() as uow:
        images = await uow.created_images.list_for_user(user.id, limit=limit, offset=offset)

    return {"images": [serialize_image(image) for image in images]}


@router.get("/images/{image_id}")
async def get_image(
    image_id: int,
    user: User = Depends(get_current_user),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
):
    """Get one creation visible to the caller (owner, published, or admin)."""
    async with await uow_factory() as uow:
        image = await uow.created_images.get_by_id(image_id)

    if image is None or not (image.user_id == user.id or image.published or user.is_admin):
        raise NotFoundError("Image not found")

    return serialize_image(image)
