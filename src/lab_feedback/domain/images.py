"""Domain models for uploaded circuit photos."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from uuid import UUID


class ProcessingStatus(StrEnum):
    """Processing lifecycle of an uploaded image."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return true for states a run ends in."""
        return self in _TERMINAL

    def can_transition_to(
        self, target: "ProcessingStatus", *, restart: bool = False
    ) -> bool:
        """Return true when moving to ``target`` respects the lattice.

        ``restart`` marks an explicit reprocess, which may re-enter
        ``processing`` from any state.
        """
        if target is ProcessingStatus.PROCESSING:
            return restart or self is ProcessingStatus.PENDING
        if target in _TERMINAL:
            return self is ProcessingStatus.PROCESSING
        return False


_TERMINAL = frozenset(
    {
        ProcessingStatus.COMPLETED,
        ProcessingStatus.NEEDS_REVIEW,
        ProcessingStatus.FAILED,
    }
)


@dataclass(frozen=True)
class ImageRecord:
    """Represents a persisted upload and its analysis results."""

    id: UUID
    experiment_id: UUID
    owner_id: UUID
    storage_locator: str
    original_filename: str | None
    processing_status: ProcessingStatus
    detected_components: list[dict[str, object]] = field(default_factory=list)
    feedback: str | None = None
    processed_image_locator: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
