"""Image record store and processing status transitions."""

import logging
from dataclasses import dataclass, replace
from typing import Protocol
from uuid import UUID

from lab_feedback.domain.images import ImageRecord, ProcessingStatus
from lab_feedback.domain.models import Identity, ParticipantRole
from lab_feedback.errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationFailureError,
)
from lab_feedback.services.conversations import ExperimentRepository

logger = logging.getLogger(__name__)


class ImageRepository(Protocol):
    """Persistence interface for uploaded images."""

    def create_image(
        self,
        experiment_id: UUID,
        owner_id: UUID,
        storage_locator: str,
        original_filename: str | None,
    ) -> ImageRecord:
        """Create a pending image record and return it."""

    def get_image(self, image_id: UUID) -> ImageRecord | None:
        """Return an image by id, if present."""

    def update_image(self, image: ImageRecord) -> ImageRecord:
        """Persist status and result fields and return the stored record."""


@dataclass
class ImageService:
    """Service owning the image processing status lattice."""

    repository: ImageRepository
    experiment_repository: ExperimentRepository

    def register_upload(
        self,
        storage_locator: str,
        owner_id: UUID,
        experiment_id: UUID,
        original_filename: str | None = None,
    ) -> ImageRecord:
        """Persist a freshly stored upload as ``pending``."""
        if not storage_locator or not storage_locator.strip():
            raise ValidationFailureError("storage locator is required")
        if self.experiment_repository.get_experiment(experiment_id) is None:
            raise NotFoundError("Experiment not found")
        return self.repository.create_image(
            experiment_id=experiment_id,
            owner_id=owner_id,
            storage_locator=storage_locator.strip(),
            original_filename=original_filename,
        )

    def get_image(self, image_id: UUID) -> ImageRecord | None:
        """Return an image by id, if present."""
        return self.repository.get_image(image_id)

    def require_image(self, image_id: UUID) -> ImageRecord:
        """Return an image or raise ``NotFoundError``."""
        image = self.repository.get_image(image_id)
        if image is None:
            raise NotFoundError("Image not found")
        return image

    def ensure_can_access(self, image: ImageRecord, identity: Identity) -> None:
        """Allow the owner, the experiment's instructor and admins."""
        if identity.role is ParticipantRole.ADMIN or image.owner_id == identity.user_id:
            return
        if identity.role is ParticipantRole.INSTRUCTOR:
            experiment = self.experiment_repository.get_experiment(image.experiment_id)
            if experiment is not None and experiment.instructor_id in {
                None,
                identity.user_id,
            }:
                return
        raise PermissionDeniedError("Not allowed to access this image")

    def begin_processing(self, image: ImageRecord, restart: bool = False) -> ImageRecord:
        """Move an image into ``processing``."""
        return self._transition(image, ProcessingStatus.PROCESSING, restart=restart)

    def complete(
        self,
        image: ImageRecord,
        detected_components: list[dict[str, object]],
        feedback: str,
        unreadable_codes: int,
        processed_image_locator: str | None,
    ) -> ImageRecord:
        """Store detection results and settle on a terminal status."""
        status = (
            ProcessingStatus.COMPLETED
            if unreadable_codes == 0
            else ProcessingStatus.NEEDS_REVIEW
        )
        changes = replace(
            image,
            detected_components=detected_components,
            feedback=feedback,
            processed_image_locator=processed_image_locator
            or image.processed_image_locator,
        )
        return self._transition(changes, status)

    def fail(self, image: ImageRecord, note: str) -> ImageRecord:
        """Mark an in-flight image as failed with a short note."""
        return self._transition(replace(image, feedback=note), ProcessingStatus.FAILED)

    def force_fail(self, image_id: UUID, note: str) -> ImageRecord | None:
        """Fail whatever run left the image non-terminal; no-op otherwise."""
        image = self.repository.get_image(image_id)
        if image is None or image.processing_status.is_terminal:
            return image
        return self.repository.update_image(
            replace(image, processing_status=ProcessingStatus.FAILED, feedback=note)
        )

    def get_processing_status(self, image_id: UUID) -> dict[str, object]:
        """Return the status view exposed to clients."""
        image = self.require_image(image_id)
        updated_at = image.updated_at or image.created_at
        return {
            "imageId": str(image.id),
            "status": str(image.processing_status),
            "feedback": image.feedback,
            "detectedComponents": image.detected_components,
            "processedImageUrl": image.processed_image_locator,
            "lastUpdated": updated_at.isoformat() if updated_at else None,
        }

    def _transition(
        self, image: ImageRecord, target: ProcessingStatus, restart: bool = False
    ) -> ImageRecord:
        current = image.processing_status
        if not current.can_transition_to(target, restart=restart):
            raise ValidationFailureError(
                f"Illegal processing transition {current} -> {target}"
            )
        logger.info(
            "Image %s: %s -> %s", image.id, current, target, extra={"image_id": image.id}
        )
        return self.repository.update_image(replace(image, processing_status=target))


def serialize_image(image: ImageRecord) -> dict[str, object]:
    """Serialize an image record for API responses."""
    return {
        "id": str(image.id),
        "experimentId": str(image.experiment_id),
        "ownerId": str(image.owner_id),
        "imageUrl": image.storage_locator,
        "originalFilename": image.original_filename,
        "processingStatus": str(image.processing_status),
        "detectedComponents": image.detected_components,
        "feedback": image.feedback,
        "processedImageUrl": image.processed_image_locator,
        "createdAt": image.created_at.isoformat() if image.created_at else None,
    }
