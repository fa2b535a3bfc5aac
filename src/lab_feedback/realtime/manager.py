"""Room bookkeeping for realtime connections."""

import logging
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A live duplex client session."""

    id: str

    async def emit(self, event: str, data: object) -> None:
        """Send one event frame to the client."""

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the session."""


def user_room(user_id: UUID) -> str:
    """Room holding every live session of one identity."""
    return f"user:{user_id}"


def conversation_room(conversation_id: UUID) -> str:
    """Room holding every session viewing one conversation."""
    return f"conversation:{conversation_id}"


@dataclass
class ConnectionManager:
    """Tracks room membership and the identity -> latest session mapping.

    Process-local: a multi-process deployment needs a shared directory
    (for example Redis pub/sub) in front of ``emit``.
    """

    rooms: dict[str, dict[str, Connection]] = field(default_factory=dict)
    memberships: dict[str, set[str]] = field(default_factory=dict)
    sessions: dict[UUID, Connection] = field(default_factory=dict)

    def register(self, user_id: UUID, connection: Connection) -> None:
        """Record ``connection`` as the identity's active session."""
        previous = self.sessions.get(user_id)
        if previous is not None and previous.id != connection.id:
            logger.info("User %s reconnected, replacing session %s", user_id, previous.id)
        self.sessions[user_id] = connection
        self.join(connection, user_room(user_id))

    def unregister(self, user_id: UUID | None, connection: Connection) -> None:
        """Drop a closed connection from every room and the identity map."""
        for room in self.memberships.pop(connection.id, set()):
            members = self.rooms.get(room)
            if members is None:
                continue
            members.pop(connection.id, None)
            if not members:
                del self.rooms[room]
        if user_id is not None:
            current = self.sessions.get(user_id)
            if current is not None and current.id == connection.id:
                del self.sessions[user_id]

    def join(self, connection: Connection, room: str) -> None:
        self.rooms.setdefault(room, {})[connection.id] = connection
        self.memberships.setdefault(connection.id, set()).add(room)

    def leave(self, connection: Connection, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.pop(connection.id, None)
            if not members:
                del self.rooms[room]
        self.memberships.get(connection.id, set()).discard(room)

    def in_room(self, connection: Connection, room: str) -> bool:
        return connection.id in self.rooms.get(room, {})

    def session_for(self, user_id: UUID) -> Connection | None:
        """Return the latest session of an identity, if connected."""
        return self.sessions.get(user_id)

    async def emit(
        self,
        room: str,
        event: str,
        data: object,
        skip: Connection | None = None,
    ) -> int:
        """Send an event to every member of ``room``; return the delivery count."""
        members = list(self.rooms.get(room, {}).values())
        if not members:
            logger.debug("No connections in %s, skipping %s", room, event)
            return 0
        sent = 0
        dead: list[Connection] = []
        for connection in members:
            if skip is not None and connection.id == skip.id:
                continue
            try:
                await connection.emit(event, data)
                sent += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to send %s to %s: %s", event, connection.id, exc)
                dead.append(connection)
        for connection in dead:
            self.leave(connection, room)
        return sent
