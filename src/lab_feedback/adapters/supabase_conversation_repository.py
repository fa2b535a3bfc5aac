"""Supabase repository for conversations and their messages."""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from supabase import Client

from lab_feedback.adapters.supabase_queries import run_query
from lab_feedback.domain.conversations import (
    ConversationQuery,
    ConversationRecord,
    ConversationStatus,
    MessageRecord,
    MessageType,
)
from lab_feedback.domain.models import ParticipantRole
from lab_feedback.errors import PersistenceFailureError
from lab_feedback.services.conversations import ConversationRepository

_CONVERSATIONS = "conversations"
_MESSAGES = "conversation_messages"


@dataclass
class SupabaseConversationRepository(ConversationRepository):
    """Supabase-backed conversation store.

    Relies on a unique constraint on ``conversations(experiment_id,
    student_id)``; see ``supabase/schema.sql``.
    """

    client: Client

    def get_or_create(
        self,
        experiment_id: UUID,
        student_id: UUID,
        instructor_id: UUID | None,
        title: str,
    ) -> tuple[ConversationRecord, bool]:
        """Insert the pair's row unless present, then read it back."""
        inserted = run_query(
            self.client.table(_CONVERSATIONS).upsert(
                {
                    "experiment_id": str(experiment_id),
                    "student_id": str(student_id),
                    "instructor_id": str(instructor_id) if instructor_id else None,
                    "title": title,
                    "status": str(ConversationStatus.ACTIVE),
                    "unread_count": 0,
                },
                on_conflict="experiment_id,student_id",
                ignore_duplicates=True,
            ),
            "create conversation",
        )
        response = run_query(
            self.client.table(_CONVERSATIONS)
            .select("*")
            .eq("experiment_id", str(experiment_id))
            .eq("student_id", str(student_id))
            .limit(1),
            "load conversation",
        )
        if not response.data:
            raise PersistenceFailureError("Failed to create conversation")
        row = response.data[0]
        return _parse_conversation(row, self._messages_for([row["id"]])[row["id"]]), bool(
            inserted.data
        )

    def get_conversation(self, conversation_id: UUID) -> ConversationRecord | None:
        """Return a conversation with messages ordered by send time."""
        response = run_query(
            self.client.table(_CONVERSATIONS)
            .select("*")
            .eq("id", str(conversation_id))
            .limit(1),
            "load conversation",
        )
        if not response.data:
            return None
        row = response.data[0]
        return _parse_conversation(row, self._messages_for([row["id"]])[row["id"]])

    def add_message(
        self, conversation_id: UUID, message: MessageRecord, unread_count: int
    ) -> None:
        """Insert a message row and advance the conversation summary."""
        response = run_query(
            self.client.table(_MESSAGES).insert(
                {
                    "id": str(message.id),
                    "conversation_id": str(conversation_id),
                    "sender_id": str(message.sender_id),
                    "sender_role": str(message.sender_role),
                    "message_type": str(message.message_type),
                    "content": message.content,
                    "image_url": message.image_url,
                    "related_image_id": (
                        str(message.related_image_id)
                        if message.related_image_id
                        else None
                    ),
                    "is_read": message.is_read,
                    "sent_at": message.sent_at.isoformat(),
                    "metadata": message.metadata,
                }
            ),
            "store message",
        )
        if not response.data:
            raise PersistenceFailureError("Failed to store message")
        run_query(
            self.client.table(_CONVERSATIONS)
            .update(
                {
                    "last_message_at": message.sent_at.isoformat(),
                    "last_message_by": str(message.sender_id),
                    "unread_count": unread_count,
                }
            )
            .eq("id", str(conversation_id)),
            "update conversation summary",
        )

    def mark_messages_read(
        self, conversation_id: UUID, viewer_id: UUID, unread_count: int
    ) -> None:
        """Flag the viewer's unread incoming messages as read."""
        run_query(
            self.client.table(_MESSAGES)
            .update({"is_read": True})
            .eq("conversation_id", str(conversation_id))
            .neq("sender_id", str(viewer_id))
            .eq("is_read", False),
            "mark messages read",
        )
        run_query(
            self.client.table(_CONVERSATIONS)
            .update({"unread_count": unread_count})
            .eq("id", str(conversation_id)),
            "update unread count",
        )

    def update_status(
        self, conversation_id: UUID, status: ConversationStatus
    ) -> ConversationRecord | None:
        """Set the conversation status."""
        response = run_query(
            self.client.table(_CONVERSATIONS)
            .update({"status": str(status)})
            .eq("id", str(conversation_id)),
            "update conversation status",
        )
        if not response.data:
            return None
        return self.get_conversation(conversation_id)

    def list_conversations(
        self,
        query: ConversationQuery,
        student_id: UUID | None = None,
        instructor_id: UUID | None = None,
    ) -> tuple[list[ConversationRecord], int]:
        """Return one page of conversations and the total match count.

        Conversations without messages sort after active ones.
        """
        request = self.client.table(_CONVERSATIONS).select("*", count="exact")
        if student_id is not None:
            request = request.eq("student_id", str(student_id))
        if instructor_id is not None:
            request = request.eq("instructor_id", str(instructor_id))
        if query.status is not None:
            request = request.eq("status", str(query.status))
        if query.experiment_id is not None:
            request = request.eq("experiment_id", str(query.experiment_id))
        if query.search:
            request = request.ilike("title", f"%{query.search}%")
        start = (query.page - 1) * query.limit
        response = run_query(
            request.order("last_message_at", desc=True, nullsfirst=False)
            .order("created_at", desc=True)
            .range(start, start + query.limit - 1),
            "list conversations",
        )
        rows = response.data or []
        messages = self._messages_for([row["id"] for row in rows])
        conversations = [_parse_conversation(row, messages[row["id"]]) for row in rows]
        total = response.count if response.count is not None else len(conversations)
        return conversations, total

    def _messages_for(
        self, conversation_ids: list[str]
    ) -> defaultdict[str, list[MessageRecord]]:
        grouped: defaultdict[str, list[MessageRecord]] = defaultdict(list)
        if not conversation_ids:
            return grouped
        response = run_query(
            self.client.table(_MESSAGES)
            .select("*")
            .in_("conversation_id", conversation_ids)
            .order("sent_at", desc=False),
            "load messages",
        )
        for row in response.data or []:
            grouped[row["conversation_id"]].append(_parse_message(row))
        return grouped


def _parse_conversation(
    row: dict[str, object], messages: list[MessageRecord]
) -> ConversationRecord:
    instructor_id = row.get("instructor_id")
    last_message_by = row.get("last_message_by")
    return ConversationRecord(
        id=UUID(str(row["id"])),
        experiment_id=UUID(str(row["experiment_id"])),
        student_id=UUID(str(row["student_id"])),
        instructor_id=UUID(str(instructor_id)) if instructor_id else None,
        title=str(row.get("title") or ""),
        status=ConversationStatus(row.get("status") or ConversationStatus.ACTIVE),
        messages=messages,
        last_message_at=_parse_datetime(row.get("last_message_at")),
        last_message_by=UUID(str(last_message_by)) if last_message_by else None,
        unread_count=int(row.get("unread_count") or 0),
        created_at=_parse_datetime(row.get("created_at")),
    )


def _parse_message(row: dict[str, object]) -> MessageRecord:
    related_image_id = row.get("related_image_id")
    return MessageRecord(
        id=UUID(str(row["id"])),
        sender_id=UUID(str(row["sender_id"])),
        sender_role=ParticipantRole(row["sender_role"]),
        message_type=MessageType(row["message_type"]),
        content=str(row["content"]),
        sent_at=datetime.fromisoformat(str(row["sent_at"])),
        is_read=bool(row.get("is_read")),
        image_url=row.get("image_url"),
        related_image_id=UUID(str(related_image_id)) if related_image_id else None,
        metadata=dict(row.get("metadata") or {}),
    )


def _parse_datetime(value: object) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(str(value))
