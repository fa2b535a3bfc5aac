"""Realtime conversation gateway: authenticated rooms and fan-out."""

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from uuid import UUID

from pydantic import ValidationError

from lab_feedback.api.schemas import ConversationRef, SendMessageEvent
from lab_feedback.domain.conversations import ConversationRecord, MessageType
from lab_feedback.domain.models import Identity
from lab_feedback.errors import AuthenticationFailedError, LabFeedbackError
from lab_feedback.realtime.manager import (
    Connection,
    ConnectionManager,
    conversation_room,
    user_room,
)
from lab_feedback.services.conversations import (
    ConversationService,
    serialize_conversation,
    serialize_message,
)
from lab_feedback.services.users import UserService

logger = logging.getLogger(__name__)

UNAUTHORIZED_CLOSE_CODE = 4001

_Handler = Callable[[Connection, Identity, object], Awaitable[None]]


def extract_token(
    auth: Mapping[str, object] | None,
    headers: Mapping[str, str],
    query: Mapping[str, str],
) -> str | None:
    """Pick the bearer token: auth payload, then header, then query."""
    if auth:
        token = auth.get("token")
        if isinstance(token, str) and token:
            return token
    authorization = headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer ") :]
    return query.get("token") or None


@dataclass
class ConversationGateway:
    """Routes client events and server pushes through connection rooms."""

    manager: ConnectionManager
    conversation_service: ConversationService
    user_service: UserService

    async def connect(
        self,
        connection: Connection,
        auth: Mapping[str, object] | None,
        headers: Mapping[str, str],
        query: Mapping[str, str],
    ) -> Identity | None:
        """Authenticate a new session; close it on failure."""
        token = extract_token(auth, headers, query)
        try:
            identity = self.user_service.authenticate(token)
        except AuthenticationFailedError as exc:
            logger.warning("Connection %s rejected: %s", connection.id, exc.message)
            await connection.close(code=UNAUTHORIZED_CLOSE_CODE, reason=exc.message)
            return None

        self.manager.register(identity.user_id, connection)
        logger.info("User %s connected as %s", identity.user_id, connection.id)
        await connection.emit(
            "connected", {"message": "Successfully connected to conversations"}
        )
        return identity

    def disconnect(self, connection: Connection, identity: Identity | None) -> None:
        """Forget a closed session."""
        self.manager.unregister(identity.user_id if identity else None, connection)
        logger.info("Connection %s disconnected", connection.id)

    async def handle_event(
        self, connection: Connection, identity: Identity, event: str, data: object
    ) -> None:
        """Dispatch one client event; failures go back as ``error``."""
        handlers: dict[str, _Handler] = {
            "join-conversation": self._join_conversation,
            "leave-conversation": self._leave_conversation,
            "send-message": self._send_message,
            "mark-as-read": self._mark_as_read,
        }
        handler = handlers.get(event)
        if handler is None:
            await connection.emit("error", {"message": f"Unknown event: {event}"})
            return
        try:
            await handler(connection, identity, data)
        except ValidationError as exc:
            await connection.emit(
                "error", {"message": f"Invalid payload for {event}: {exc.error_count()} errors"}
            )
        except LabFeedbackError as exc:
            logger.info("Event %s from %s failed: %s", event, identity.user_id, exc.message)
            await connection.emit("error", {"message": exc.message})
        except Exception:
            logger.exception("Event %s from %s crashed", event, identity.user_id)
            await connection.emit("error", {"message": f"Failed to handle {event}"})

    async def send_bot_message(
        self,
        conversation_id: UUID,
        content: str,
        message_type: MessageType = MessageType.FEEDBACK,
        metadata: dict[str, object] | None = None,
        related_image_id: UUID | None = None,
    ) -> ConversationRecord:
        """Persist a bot message, then push it to the room and participants."""
        conversation = self.conversation_service.send_bot_message(
            conversation_id,
            content,
            message_type=message_type,
            metadata=metadata,
            related_image_id=related_image_id,
        )
        await self.publish_message(conversation, "bot-message-received")
        logger.info("Bot message sent to conversation %s", conversation_id)
        return conversation

    async def publish_message(
        self, conversation: ConversationRecord, participant_event: str
    ) -> None:
        """Fan out the newest message of an already persisted conversation."""
        message = conversation.last_message
        if message is None:
            return
        serialized = serialize_message(message)
        conversation_id = str(conversation.id)
        await self.manager.emit(
            conversation_room(conversation.id),
            "new-message",
            {
                "conversationId": conversation_id,
                "message": serialized,
                "conversation": serialize_conversation(conversation),
            },
        )
        participants = [conversation.student_id]
        if conversation.instructor_id is not None:
            participants.append(conversation.instructor_id)
        for participant_id in participants:
            await self.manager.emit(
                user_room(participant_id),
                participant_event,
                {"conversationId": conversation_id, "message": serialized},
            )

    async def send_processing_update(
        self, user_id: UUID, payload: dict[str, object]
    ) -> int:
        """Legacy per-user ``processing-update`` push."""
        return await self._push_to_user(user_id, "processing-update", payload)

    async def send_processing_complete(
        self, user_id: UUID, payload: dict[str, object]
    ) -> int:
        """Legacy per-user ``processing-complete`` push."""
        return await self._push_to_user(user_id, "processing-complete", payload)

    async def _push_to_user(
        self, user_id: UUID, event: str, payload: dict[str, object]
    ) -> int:
        if self.manager.session_for(user_id) is None:
            logger.debug("User %s is offline, dropping %s", user_id, event)
            return 0
        return await self.manager.emit(user_room(user_id), event, payload)

    async def _join_conversation(
        self, connection: Connection, identity: Identity, data: object
    ) -> None:
        ref = ConversationRef.model_validate(data)
        self.conversation_service.get_by_id(ref.conversation_id, identity)
        self.manager.join(connection, conversation_room(ref.conversation_id))
        logger.info("User %s joined conversation %s", identity.user_id, ref.conversation_id)
        await connection.emit(
            "joined-conversation",
            {
                "conversationId": str(ref.conversation_id),
                "message": "Successfully joined conversation",
            },
        )

    async def _leave_conversation(
        self, connection: Connection, identity: Identity, data: object
    ) -> None:
        ref = ConversationRef.model_validate(data)
        room = conversation_room(ref.conversation_id)
        if not self.manager.in_room(connection, room):
            logger.debug("Connection %s left %s without joining", connection.id, room)
        self.manager.leave(connection, room)
        await connection.emit(
            "left-conversation",
            {
                "conversationId": str(ref.conversation_id),
                "message": "Successfully left conversation",
            },
        )

    async def _send_message(
        self, connection: Connection, identity: Identity, data: object
    ) -> None:
        event = SendMessageEvent.model_validate(data)
        draft = event.message
        conversation = self.conversation_service.append_message(
            event.conversation_id,
            sender_id=identity.user_id,
            sender_role=identity.role,
            content=draft.content,
            message_type=draft.message_type,
            image_url=draft.image_url,
            related_image_id=draft.related_image_id,
            metadata=draft.metadata,
        )
        await self.publish_message(conversation, "message-received")

    async def _mark_as_read(
        self, connection: Connection, identity: Identity, data: object
    ) -> None:
        ref = ConversationRef.model_validate(data)
        self.conversation_service.get_by_id(ref.conversation_id, identity)
        self.conversation_service.mark_read(ref.conversation_id, identity.user_id)
        await self.manager.emit(
            conversation_room(ref.conversation_id),
            "messages-read",
            {"conversationId": str(ref.conversation_id), "readBy": str(identity.user_id)},
            skip=connection,
        )
        await connection.emit("marked-as-read", {"conversationId": str(ref.conversation_id)})
