"""Conversation store: per-(experiment, student) append-only message logs."""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Protocol, assert_never
from uuid import UUID, uuid4

from lab_feedback.domain.conversations import (
    DEFAULT_CONVERSATION_TITLE,
    ConversationPage,
    ConversationQuery,
    ConversationRecord,
    ConversationStatus,
    MessageRecord,
    MessageType,
)
from lab_feedback.domain.models import (
    BOT_USER_ID,
    ExperimentRecord,
    Identity,
    ParticipantRole,
)
from lab_feedback.errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationFailureError,
)

_MIN_TICK = timedelta(microseconds=1)


class ConversationRepository(Protocol):
    """Persistence interface for conversations and their messages."""

    def get_or_create(
        self,
        experiment_id: UUID,
        student_id: UUID,
        instructor_id: UUID | None,
        title: str,
    ) -> tuple[ConversationRecord, bool]:
        """Return the conversation for the pair and whether it was created.

        Must be atomic: implementations rely on a uniqueness constraint on
        ``(experiment_id, student_id)``.
        """

    def get_conversation(self, conversation_id: UUID) -> ConversationRecord | None:
        """Return a conversation with its ordered messages, if present."""

    def add_message(
        self, conversation_id: UUID, message: MessageRecord, unread_count: int
    ) -> None:
        """Append a message and advance the conversation summary fields."""

    def mark_messages_read(
        self, conversation_id: UUID, viewer_id: UUID, unread_count: int
    ) -> None:
        """Flag messages not sent by ``viewer_id`` as read."""

    def update_status(
        self, conversation_id: UUID, status: ConversationStatus
    ) -> ConversationRecord | None:
        """Update the conversation status and return the updated record."""

    def list_conversations(
        self,
        query: ConversationQuery,
        student_id: UUID | None = None,
        instructor_id: UUID | None = None,
    ) -> tuple[list[ConversationRecord], int]:
        """Return one page sorted by last activity and the total count."""


class ExperimentRepository(Protocol):
    """Read access to experiments."""

    def get_experiment(self, experiment_id: UUID) -> ExperimentRecord | None:
        """Return an experiment by id, if present."""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class ConversationService:
    """Application service for conversations between students, staff and bot."""

    repository: ConversationRepository
    experiment_repository: ExperimentRepository
    clock: Callable[[], datetime] = field(default=_utcnow)

    def get_or_create(
        self,
        experiment_id: UUID,
        student_id: UUID,
        initial_message: str | None = None,
    ) -> ConversationRecord:
        """Return the pair's conversation, creating it on first use."""
        experiment = self.experiment_repository.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment not found")
        conversation, created = self.repository.get_or_create(
            experiment_id=experiment_id,
            student_id=student_id,
            instructor_id=experiment.instructor_id,
            title=DEFAULT_CONVERSATION_TITLE,
        )
        if created and initial_message and initial_message.strip():
            conversation = self._append(
                conversation,
                sender_id=student_id,
                sender_role=ParticipantRole.STUDENT,
                message_type=MessageType.TEXT,
                content=initial_message.strip(),
            )
        return replace(
            conversation, unread_count=unread_count_for(conversation, student_id)
        )

    def append_message(  # noqa: PLR0913
        self,
        conversation_id: UUID,
        sender_id: UUID,
        sender_role: ParticipantRole,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        image_url: str | None = None,
        related_image_id: UUID | None = None,
        metadata: dict[str, object] | None = None,
    ) -> ConversationRecord:
        """Append a message after checking the sender may post here."""
        conversation = self._require(conversation_id)
        ensure_participant(conversation, sender_id, sender_role)
        if not content or not content.strip():
            raise ValidationFailureError("Message content must not be empty")
        if conversation.status is not ConversationStatus.ACTIVE and sender_role in {
            ParticipantRole.STUDENT,
            ParticipantRole.INSTRUCTOR,
        }:
            raise ValidationFailureError(
                f"Conversation is {conversation.status} and no longer accepts messages"
            )
        return self._append(
            conversation,
            sender_id=sender_id,
            sender_role=sender_role,
            message_type=message_type,
            content=content,
            image_url=image_url,
            related_image_id=related_image_id,
            metadata=metadata,
        )

    def send_bot_message(
        self,
        conversation_id: UUID,
        content: str,
        message_type: MessageType = MessageType.FEEDBACK,
        metadata: dict[str, object] | None = None,
        related_image_id: UUID | None = None,
    ) -> ConversationRecord:
        """Append a message authored by the feedback bot."""
        return self.append_message(
            conversation_id,
            sender_id=BOT_USER_ID,
            sender_role=ParticipantRole.BOT,
            content=content,
            message_type=message_type,
            related_image_id=related_image_id,
            metadata=metadata,
        )

    def mark_read(self, conversation_id: UUID, viewer_id: UUID) -> ConversationRecord:
        """Mark everything the viewer did not send as read."""
        conversation = self._require(conversation_id)
        if unread_count_for(conversation, viewer_id) == 0:
            return replace(conversation, unread_count=0)
        messages = [
            message
            if message.sender_id == viewer_id or message.is_read
            else replace(message, is_read=True)
            for message in conversation.messages
        ]
        updated = replace(conversation, messages=messages)
        unread = unread_count_for(updated, viewer_id)
        self.repository.mark_messages_read(conversation_id, viewer_id, unread)
        return replace(updated, unread_count=unread)

    def get_by_id(self, conversation_id: UUID, viewer: Identity) -> ConversationRecord:
        """Return a conversation the viewer may see, unread count included."""
        conversation = self._require(conversation_id)
        ensure_participant(conversation, viewer.user_id, viewer.role)
        return replace(
            conversation, unread_count=unread_count_for(conversation, viewer.user_id)
        )

    def list_by_student(
        self,
        student_id: UUID,
        query: ConversationQuery,
        viewer_id: UUID | None = None,
    ) -> ConversationPage:
        """Return a student's conversations, unread counts as seen by the viewer."""
        return self._list(query, viewer_id or student_id, student_id=student_id)

    def list_by_instructor(
        self,
        instructor_id: UUID,
        query: ConversationQuery,
        viewer_id: UUID | None = None,
    ) -> ConversationPage:
        """Return conversations assigned to an instructor."""
        return self._list(query, viewer_id or instructor_id, instructor_id=instructor_id)

    def list_all(self, query: ConversationQuery, viewer_id: UUID) -> ConversationPage:
        """Return every conversation, for admins."""
        return self._list(query, viewer_id)

    def list_between(
        self,
        student_id: UUID,
        instructor_id: UUID,
        experiment_id: UUID | None = None,
        viewer_id: UUID | None = None,
    ) -> list[ConversationRecord]:
        """Return every conversation between a student and an instructor."""
        conversations, _ = self.repository.list_conversations(
            ConversationQuery(page=1, limit=100, experiment_id=experiment_id),
            student_id=student_id,
            instructor_id=instructor_id,
        )
        return _as_seen_by(conversations, viewer_id or student_id)

    def find(self, experiment_id: UUID, student_id: UUID) -> ConversationRecord | None:
        """Return the pair's existing conversation without creating one."""
        conversations, _ = self.repository.list_conversations(
            ConversationQuery(page=1, limit=1, experiment_id=experiment_id),
            student_id=student_id,
        )
        return conversations[0] if conversations else None

    def update_status(
        self, conversation_id: UUID, status: ConversationStatus
    ) -> ConversationRecord:
        """Archive, close or reopen a conversation."""
        updated = self.repository.update_status(conversation_id, status)
        if updated is None:
            raise NotFoundError("Conversation not found")
        return updated

    def _list(
        self,
        query: ConversationQuery,
        viewer_id: UUID,
        student_id: UUID | None = None,
        instructor_id: UUID | None = None,
    ) -> ConversationPage:
        if query.page < 1 or query.limit < 1:
            raise ValidationFailureError("page and limit must be positive")
        conversations, total = self.repository.list_conversations(
            query, student_id=student_id, instructor_id=instructor_id
        )
        return ConversationPage(
            conversations=_as_seen_by(conversations, viewer_id),
            total=total,
            page=query.page,
            limit=query.limit,
        )

    def _require(self, conversation_id: UUID) -> ConversationRecord:
        conversation = self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    def _append(  # noqa: PLR0913
        self,
        conversation: ConversationRecord,
        sender_id: UUID,
        sender_role: ParticipantRole,
        message_type: MessageType,
        content: str,
        image_url: str | None = None,
        related_image_id: UUID | None = None,
        metadata: dict[str, object] | None = None,
    ) -> ConversationRecord:
        sent_at = self._next_timestamp(conversation)
        message = MessageRecord(
            id=uuid4(),
            sender_id=sender_id,
            sender_role=sender_role,
            message_type=message_type,
            content=content,
            sent_at=sent_at,
            image_url=image_url,
            related_image_id=related_image_id,
            metadata=dict(metadata or {}),
        )
        unread = conversation.unread_count + 1
        self.repository.add_message(conversation.id, message, unread)
        updated = replace(
            conversation,
            messages=[*conversation.messages, message],
            last_message_at=sent_at,
            last_message_by=sender_id,
        )
        return replace(updated, unread_count=unread_count_for(updated, sender_id))

    def _next_timestamp(self, conversation: ConversationRecord) -> datetime:
        now = self.clock()
        last = conversation.last_message
        if last is not None and now <= last.sent_at:
            return last.sent_at + _MIN_TICK
        return now


def ensure_participant(
    conversation: ConversationRecord, user_id: UUID, role: ParticipantRole
) -> None:
    """Raise unless ``user_id`` acting as ``role`` may use the conversation."""
    match role:
        case ParticipantRole.STUDENT:
            if conversation.student_id != user_id:
                raise PermissionDeniedError(
                    "Student can only access their own conversations"
                )
        case ParticipantRole.INSTRUCTOR:
            if (
                conversation.instructor_id is not None
                and conversation.instructor_id != user_id
            ):
                raise PermissionDeniedError(
                    "Instructor can only access assigned conversations"
                )
        case ParticipantRole.ADMIN | ParticipantRole.BOT:
            return
        case _:
            assert_never(role)


def unread_count_for(conversation: ConversationRecord, viewer_id: UUID) -> int:
    """Count unread messages the viewer did not author."""
    return sum(
        1
        for message in conversation.messages
        if not message.is_read and message.sender_id != viewer_id
    )


def _as_seen_by(
    conversations: list[ConversationRecord], viewer_id: UUID
) -> list[ConversationRecord]:
    return [
        replace(conversation, unread_count=unread_count_for(conversation, viewer_id))
        for conversation in conversations
    ]


def serialize_message(message: MessageRecord) -> dict[str, object]:
    """Serialize a message for API and realtime payloads."""
    return {
        "id": str(message.id),
        "senderId": str(message.sender_id),
        "senderType": str(message.sender_role),
        "messageType": str(message.message_type),
        "content": message.content,
        "imageUrl": message.image_url,
        "relatedImageId": (
            str(message.related_image_id) if message.related_image_id else None
        ),
        "isRead": message.is_read,
        "sentAt": message.sent_at.isoformat(),
        "metadata": message.metadata,
    }


def serialize_conversation(conversation: ConversationRecord) -> dict[str, object]:
    """Serialize a conversation with its messages."""
    return {
        "id": str(conversation.id),
        "experimentId": str(conversation.experiment_id),
        "studentId": str(conversation.student_id),
        "instructorId": (
            str(conversation.instructor_id) if conversation.instructor_id else None
        ),
        "title": conversation.title,
        "status": str(conversation.status),
        "messages": [serialize_message(message) for message in conversation.messages],
        "lastMessageAt": (
            conversation.last_message_at.isoformat()
            if conversation.last_message_at
            else None
        ),
        "lastMessageBy": (
            str(conversation.last_message_by) if conversation.last_message_by else None
        ),
        "unreadCount": conversation.unread_count,
        "createdAt": (
            conversation.created_at.isoformat() if conversation.created_at else None
        ),
    }


def serialize_page(page: ConversationPage) -> dict[str, object]:
    """Serialize a page of conversations."""
    return {
        "conversations": [
            serialize_conversation(conversation) for conversation in page.conversations
        ],
        "total": page.total,
        "page": page.page,
        "limit": page.limit,
        "totalPages": page.total_pages,
    }
