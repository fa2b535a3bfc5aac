"""Image intake and processing status endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID  # noqa: TC003

from fastapi import APIRouter, Depends, Request, status

from lab_feedback.api.auth import current_identity, get_container, require_roles
from lab_feedback.api.schemas import RegisterUploadRequest
from lab_feedback.domain.models import Identity, ParticipantRole
from lab_feedback.services.images import serialize_image

if TYPE_CHECKING:
    from lab_feedback.containers import AppContainer

router = APIRouter(prefix="/images", tags=["images"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_image(
    body: RegisterUploadRequest,
    request: Request,
    identity: Identity = Depends(require_roles(ParticipantRole.STUDENT)),
) -> dict[str, object]:
    """Record a stored upload and start analysis in the background."""
    container: AppContainer = get_container(request)
    image = container.image_service.register_upload(
        body.storage_locator,
        owner_id=identity.user_id,
        experiment_id=body.experiment_id,
        original_filename=body.original_filename,
    )
    container.scheduler.trigger_processing(image.id)
    return serialize_image(image)


@router.post("/{image_id}/reprocess", status_code=status.HTTP_202_ACCEPTED)
async def reprocess_image(
    image_id: UUID,
    request: Request,
    identity: Identity = Depends(current_identity),
) -> dict[str, str]:
    """Start a fresh analysis run for an image."""
    container: AppContainer = get_container(request)
    image = container.image_service.require_image(image_id)
    container.image_service.ensure_can_access(image, identity)
    container.scheduler.reprocess(image.id)
    return {"imageId": str(image.id), "status": "scheduled"}


@router.get("/{image_id}/status")
async def processing_status(
    image_id: UUID,
    request: Request,
    identity: Identity = Depends(current_identity),
) -> dict[str, object]:
    """Return the current processing status of an image."""
    container: AppContainer = get_container(request)
    image = container.image_service.require_image(image_id)
    container.image_service.ensure_can_access(image, identity)
    return container.image_service.get_processing_status(image_id)
