"""Supabase repository for uploaded images."""

from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from supabase import Client

from lab_feedback.adapters.supabase_queries import run_query
from lab_feedback.domain.images import ImageRecord, ProcessingStatus
from lab_feedback.errors import PersistenceFailureError
from lab_feedback.services.images import ImageRepository


@dataclass
class SupabaseImageRepository(ImageRepository):
    """Supabase implementation for image records."""

    client: Client

    def create_image(
        self,
        experiment_id: UUID,
        owner_id: UUID,
        storage_locator: str,
        original_filename: str | None,
    ) -> ImageRecord:
        """Insert a pending image row and return it."""
        response = run_query(
            self.client.table("images").insert(
                {
                    "experiment_id": str(experiment_id),
                    "owner_id": str(owner_id),
                    "storage_locator": storage_locator,
                    "original_filename": original_filename,
                    "processing_status": str(ProcessingStatus.PENDING),
                    "detected_components": [],
                }
            ),
            "create image record",
        )
        if not response.data:
            raise PersistenceFailureError("Failed to create image record")
        return _parse_image(response.data[0])

    def get_image(self, image_id: UUID) -> ImageRecord | None:
        """Return an image row by id."""
        response = run_query(
            self.client.table("images").select("*").eq("id", str(image_id)).limit(1),
            "load image",
        )
        if not response.data:
            return None
        return _parse_image(response.data[0])

    def update_image(self, image: ImageRecord) -> ImageRecord:
        """Persist status and result fields."""
        response = run_query(
            self.client.table("images")
            .update(
                {
                    "processing_status": str(image.processing_status),
                    "detected_components": image.detected_components,
                    "feedback": image.feedback,
                    "processed_image_locator": image.processed_image_locator,
                    "updated_at": datetime.now(tz=UTC).isoformat(),
                }
            )
            .eq("id", str(image.id)),
            "update image",
        )
        if not response.data:
            raise PersistenceFailureError(f"Failed to update image {image.id}")
        return _parse_image(response.data[0])


def _parse_image(row: dict[str, object]) -> ImageRecord:
    return ImageRecord(
        id=UUID(str(row["id"])),
        experiment_id=UUID(str(row["experiment_id"])),
        owner_id=UUID(str(row["owner_id"])),
        storage_locator=str(row["storage_locator"]),
        original_filename=row.get("original_filename"),
        processing_status=ProcessingStatus(row["processing_status"]),
        detected_components=list(row.get("detected_components") or []),
        feedback=row.get("feedback"),
        processed_image_locator=row.get("processed_image_locator"),
        created_at=_parse_datetime(row.get("created_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
    )


def _parse_datetime(value: object) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value))
