"""Tests for the WebSocket transport."""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from lab_feedback.api.app import create_app
from lab_feedback.domain.models import ParticipantRole
from tests.conftest import issue_token


@pytest.fixture
def client(container) -> TestClient:
    return TestClient(create_app(container))


def test_auth_frame_connects(client, student) -> None:
    with client.websocket_connect("/ws/conversations") as socket:
        socket.send_json({"event": "auth", "data": {"token": issue_token(student.id)}})

        frame = socket.receive_json()

    assert frame["event"] == "connected"


def test_header_token_client_keeps_first_event(
    client, conversation_service, experiment, student
) -> None:
    conversation = conversation_service.get_or_create(experiment.id, student.id)
    headers = {"Authorization": f"Bearer {issue_token(student.id)}"}
    payload = {"conversationId": str(conversation.id)}
    with client.websocket_connect("/ws/conversations", headers=headers) as socket:
        socket.send_json({"event": "join-conversation", "data": payload})
        socket.send_json({"event": "leave-conversation", "data": payload})

        events = [socket.receive_json()["event"] for _ in range(3)]

    assert events == ["connected", "joined-conversation", "left-conversation"]


def test_query_token_is_accepted(
    client, conversation_service, experiment, student
) -> None:
    conversation = conversation_service.get_or_create(experiment.id, student.id)
    url = f"/ws/conversations?token={issue_token(student.id)}"
    with client.websocket_connect(url) as socket:
        assert socket.receive_json()["event"] == "connected"
        socket.send_json({"event": "auth", "data": {}})
        socket.send_json(
            {"event": "join-conversation", "data": {"conversationId": str(conversation.id)}}
        )

        assert socket.receive_json()["event"] == "joined-conversation"


def test_invalid_token_closes_socket(client) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/conversations") as socket:
            socket.send_json({"event": "auth", "data": {"token": "not-a-jwt"}})
            socket.receive_json()

    assert exc_info.value.code == 4001


def test_silent_client_times_out(container) -> None:
    quick = replace(
        container,
        settings=container.settings.model_copy(
            update={"handshake_timeout_seconds": 0.05}
        ),
    )
    client = TestClient(create_app(quick))

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws/conversations") as socket:
            socket.receive_json()

    assert exc_info.value.code == 4001


def test_join_and_send_over_socket(
    client, conversation_service, experiment, student
) -> None:
    conversation = conversation_service.get_or_create(experiment.id, student.id)
    with client.websocket_connect("/ws/conversations") as socket:
        socket.send_json({"event": "auth", "data": {"token": issue_token(student.id)}})
        socket.receive_json()
        socket.send_json(
            {"event": "join-conversation", "data": {"conversationId": str(conversation.id)}}
        )
        joined = socket.receive_json()
        socket.send_json(
            {
                "event": "send-message",
                "data": {
                    "conversationId": str(conversation.id),
                    "message": {"content": "Photo attached", "messageType": "text"},
                },
            }
        )
        new_message = socket.receive_json()
        received = socket.receive_json()

    assert joined["event"] == "joined-conversation"
    assert new_message["event"] == "new-message"
    assert new_message["data"]["message"]["content"] == "Photo attached"
    assert received["event"] == "message-received"


def test_foreign_join_emits_error(
    client, conversation_service, experiment, student, user_repository
) -> None:
    conversation = conversation_service.get_or_create(experiment.id, student.id)
    intruder = user_repository.add(ParticipantRole.STUDENT)
    with client.websocket_connect("/ws/conversations") as socket:
        socket.send_json({"event": "auth", "data": {"token": issue_token(intruder.id)}})
        socket.receive_json()
        socket.send_json(
            {"event": "join-conversation", "data": {"conversationId": str(conversation.id)}}
        )
        frame = socket.receive_json()

    assert frame == {
        "event": "error",
        "data": {"message": "Student can only access their own conversations"},
    }


def test_malformed_frame_emits_error(client, student) -> None:
    with client.websocket_connect("/ws/conversations") as socket:
        socket.send_json({"event": "auth", "data": {"token": issue_token(student.id)}})
        socket.receive_json()
        socket.send_text("not json")
        frame = socket.receive_json()

    assert frame["event"] == "error"


def test_store_failure_keeps_socket_open(
    client, conversation_service, conversation_repository, experiment, student
) -> None:
    conversation = conversation_service.get_or_create(experiment.id, student.id)
    payload = {"conversationId": str(conversation.id)}
    conversation_repository.fail_writes = True
    with client.websocket_connect("/ws/conversations") as socket:
        socket.send_json({"event": "auth", "data": {"token": issue_token(student.id)}})
        socket.receive_json()
        socket.send_json(
            {"event": "send-message", "data": {**payload, "message": {"content": "hi"}}}
        )
        failure = socket.receive_json()
        socket.send_json({"event": "join-conversation", "data": payload})
        joined = socket.receive_json()

    assert failure == {
        "event": "error",
        "data": {"message": "Failed to handle send-message"},
    }
    assert joined["event"] == "joined-conversation"
