"""Conversation HTTP endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID  # noqa: TC003

from fastapi import APIRouter, Depends, Query, Request, status

from lab_feedback.api.auth import current_identity, get_container, require_roles
from lab_feedback.api.schemas import (
    CreateConversationRequest,
    MessageDraft,
    UpdateStatusRequest,
)
from lab_feedback.domain.conversations import ConversationQuery, ConversationStatus
from lab_feedback.domain.models import Identity, ParticipantRole
from lab_feedback.errors import PermissionDeniedError
from lab_feedback.services.conversations import (
    serialize_conversation,
    serialize_page,
)

if TYPE_CHECKING:
    from lab_feedback.containers import AppContainer

router = APIRouter(prefix="/conversations", tags=["conversations"])


def conversation_query(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status_filter: ConversationStatus | None = Query(default=None, alias="status"),
    experiment_id: UUID | None = Query(default=None, alias="experimentId"),
    search: str | None = None,
) -> ConversationQuery:
    """Collect pagination and filter parameters."""
    return ConversationQuery(
        page=page,
        limit=limit,
        status=status_filter,
        experiment_id=experiment_id,
        search=search,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    body: CreateConversationRequest,
    request: Request,
    identity: Identity = Depends(require_roles(ParticipantRole.STUDENT)),
) -> dict[str, object]:
    """Return the caller's conversation for an experiment, creating it once."""
    container: AppContainer = get_container(request)
    conversation = container.conversation_service.get_or_create(
        body.experiment_id, identity.user_id, initial_message=body.initial_message
    )
    return serialize_conversation(conversation)


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: UUID,
    body: MessageDraft,
    request: Request,
    identity: Identity = Depends(current_identity),
) -> dict[str, object]:
    """Append a message and push it to connected participants."""
    container: AppContainer = get_container(request)
    conversation = container.conversation_service.append_message(
        conversation_id,
        sender_id=identity.user_id,
        sender_role=identity.role,
        content=body.content,
        message_type=body.message_type,
        image_url=body.image_url,
        related_image_id=body.related_image_id,
        metadata=body.metadata,
    )
    await container.gateway.publish_message(conversation, "message-received")
    return serialize_conversation(conversation)


@router.get("/my/conversations")
async def my_conversations(
    request: Request,
    query: ConversationQuery = Depends(conversation_query),
    identity: Identity = Depends(current_identity),
) -> dict[str, object]:
    """List conversations for the caller's role."""
    service = get_container(request).conversation_service
    if identity.role is ParticipantRole.STUDENT:
        page = service.list_by_student(identity.user_id, query, identity.user_id)
    elif identity.role is ParticipantRole.INSTRUCTOR:
        page = service.list_by_instructor(identity.user_id, query, identity.user_id)
    else:
        page = service.list_all(query, identity.user_id)
    return serialize_page(page)


@router.get("/student/{student_id}")
async def student_conversations(
    student_id: UUID,
    request: Request,
    query: ConversationQuery = Depends(conversation_query),
    identity: Identity = Depends(current_identity),
) -> dict[str, object]:
    """List a student's conversations."""
    if identity.role is ParticipantRole.STUDENT and identity.user_id != student_id:
        raise PermissionDeniedError("Student can only access their own conversations")
    page = get_container(request).conversation_service.list_by_student(
        student_id, query, identity.user_id
    )
    return serialize_page(page)


@router.get("/instructor/{instructor_id}")
async def instructor_conversations(
    instructor_id: UUID,
    request: Request,
    query: ConversationQuery = Depends(conversation_query),
    identity: Identity = Depends(
        require_roles(ParticipantRole.INSTRUCTOR, ParticipantRole.ADMIN)
    ),
) -> dict[str, object]:
    """List conversations assigned to an instructor."""
    if identity.role is ParticipantRole.INSTRUCTOR and identity.user_id != instructor_id:
        raise PermissionDeniedError(
            "Instructor can only access assigned conversations"
        )
    page = get_container(request).conversation_service.list_by_instructor(
        instructor_id, query, identity.user_id
    )
    return serialize_page(page)


@router.get("/between/{student_id}/{instructor_id}")
async def conversations_between(
    student_id: UUID,
    instructor_id: UUID,
    request: Request,
    experiment_id: UUID | None = Query(default=None, alias="experimentId"),
    identity: Identity = Depends(current_identity),
) -> dict[str, object]:
    """List conversations between one student and one instructor."""
    if identity.role is not ParticipantRole.ADMIN and identity.user_id not in {
        student_id,
        instructor_id,
    }:
        raise PermissionDeniedError("Not a participant of these conversations")
    conversations = get_container(request).conversation_service.list_between(
        student_id,
        instructor_id,
        experiment_id=experiment_id,
        viewer_id=identity.user_id,
    )
    return {
        "conversations": [
            serialize_conversation(conversation) for conversation in conversations
        ]
    }


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: UUID,
    request: Request,
    identity: Identity = Depends(current_identity),
) -> dict[str, object]:
    """Return one conversation with its messages."""
    conversation = get_container(request).conversation_service.get_by_id(
        conversation_id, identity
    )
    return serialize_conversation(conversation)


@router.patch("/{conversation_id}/read")
async def mark_as_read(
    conversation_id: UUID,
    request: Request,
    identity: Identity = Depends(current_identity),
) -> dict[str, object]:
    """Mark the caller's incoming messages as read."""
    service = get_container(request).conversation_service
    service.get_by_id(conversation_id, identity)
    conversation = service.mark_read(conversation_id, identity.user_id)
    return {
        "conversationId": str(conversation.id),
        "unreadCount": conversation.unread_count,
    }


@router.patch("/{conversation_id}/status")
async def update_status(
    conversation_id: UUID,
    body: UpdateStatusRequest,
    request: Request,
    identity: Identity = Depends(
        require_roles(ParticipantRole.INSTRUCTOR, ParticipantRole.ADMIN)
    ),
) -> dict[str, object]:
    """Archive, close or reopen a conversation."""
    service = get_container(request).conversation_service
    service.get_by_id(conversation_id, identity)
    service.update_status(conversation_id, body.status)
    return serialize_conversation(service.get_by_id(conversation_id, identity))
