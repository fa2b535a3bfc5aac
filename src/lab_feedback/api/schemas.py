"""Request payloads shared by the HTTP and realtime surfaces."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lab_feedback.domain.conversations import ConversationStatus, MessageType

_CLIENT_MESSAGE_TYPES = frozenset({MessageType.TEXT, MessageType.IMAGE})


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MessageDraft(_CamelModel):
    """Message body sent by a participant."""

    content: str = Field(min_length=1)
    message_type: MessageType = Field(default=MessageType.TEXT, alias="messageType")
    image_url: str | None = Field(default=None, alias="imageUrl")
    related_image_id: UUID | None = Field(default=None, alias="relatedImageId")
    metadata: dict[str, object] | None = None

    @field_validator("message_type")
    @classmethod
    def _reject_bot_message_types(cls, value: MessageType) -> MessageType:
        if value not in _CLIENT_MESSAGE_TYPES:
            raise ValueError("participants may only send text or image messages")
        return value


class ConversationRef(_CamelModel):
    """Payload naming a conversation."""

    conversation_id: UUID = Field(alias="conversationId")


class SendMessageEvent(ConversationRef):
    """Payload of the ``send-message`` realtime event."""

    message: MessageDraft


class CreateConversationRequest(_CamelModel):
    """Body of ``POST /conversations``."""

    experiment_id: UUID = Field(alias="experimentId")
    initial_message: str | None = Field(default=None, alias="initialMessage")


class UpdateStatusRequest(BaseModel):
    """Body of ``PATCH /conversations/{id}/status``."""

    status: ConversationStatus


class RegisterUploadRequest(_CamelModel):
    """Body of ``POST /images`` for an upload already written to storage."""

    storage_locator: str = Field(min_length=1, alias="storageLocator")
    experiment_id: UUID = Field(alias="experimentId")
    original_filename: str | None = Field(default=None, alias="originalFilename")
