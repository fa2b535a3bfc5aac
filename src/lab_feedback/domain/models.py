"""Core domain models shared across the lab feedback backend."""

from dataclasses import dataclass
from enum import StrEnum
from uuid import UUID

BOT_USER_ID = UUID(int=0)


class ParticipantRole(StrEnum):
    """Kinds of conversation participants."""

    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"
    BOT = "bot"


@dataclass(frozen=True)
class UserRecord:
    """Represents a user stored in the database."""

    id: UUID
    email: str
    role: ParticipantRole


@dataclass(frozen=True)
class ExperimentRecord:
    """Experiment fields the conversation store derives from."""

    id: UUID
    instructor_id: UUID | None
    title: str


@dataclass(frozen=True)
class Identity:
    """Authenticated principal resolved from a bearer token."""

    user_id: UUID
    email: str | None
    role: ParticipantRole
