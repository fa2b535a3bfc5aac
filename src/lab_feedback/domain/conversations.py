"""Domain models for tutoring conversations."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from uuid import UUID

from lab_feedback.domain.models import ParticipantRole

DEFAULT_CONVERSATION_TITLE = "Image Processing Discussion"


class MessageType(StrEnum):
    """Kinds of conversation messages."""

    TEXT = "text"
    IMAGE = "image"
    FEEDBACK = "feedback"
    SYSTEM = "system"


class ConversationStatus(StrEnum):
    """Conversation lifecycle; conversations are archived, never deleted."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    CLOSED = "closed"


@dataclass(frozen=True)
class MessageRecord:
    """A single entry in a conversation's append-only log."""

    id: UUID
    sender_id: UUID
    sender_role: ParticipantRole
    message_type: MessageType
    content: str
    sent_at: datetime
    is_read: bool = False
    image_url: str | None = None
    related_image_id: UUID | None = None
    metadata: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversationRecord:
    """Conversation for one (experiment, student) pair."""

    id: UUID
    experiment_id: UUID
    student_id: UUID
    instructor_id: UUID | None
    title: str
    status: ConversationStatus
    messages: list[MessageRecord]
    last_message_at: datetime | None
    last_message_by: UUID | None
    unread_count: int
    created_at: datetime | None = None

    @property
    def last_message(self) -> MessageRecord | None:
        """Return the most recent message, if any."""
        return self.messages[-1] if self.messages else None


@dataclass(frozen=True)
class ConversationQuery:
    """Pagination and filters for conversation listings."""

    page: int = 1
    limit: int = 10
    status: ConversationStatus | None = None
    experiment_id: UUID | None = None
    search: str | None = None


@dataclass(frozen=True)
class ConversationPage:
    """One page of conversations."""

    conversations: list[ConversationRecord]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        """Number of pages for the current limit."""
        if self.limit <= 0:
            return 0
        return -(-self.total // self.limit)
