"""User lookup and bearer token verification."""

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from jose import JWTError, jwt

from lab_feedback.domain.models import Identity, ParticipantRole, UserRecord
from lab_feedback.errors import AuthenticationFailedError


class UserRepository(Protocol):
    """Persistence interface for user data."""

    def get_user(self, user_id: UUID) -> UserRecord | None:
        """Return the user with the given id, if present."""


@dataclass
class UserService:
    """Resolves bearer tokens into known users."""

    repository: UserRepository
    jwt_secret: str
    jwt_algorithm: str = "HS256"

    def authenticate(self, token: str | None) -> Identity:
        """Verify a token and return the identity of an existing user."""
        if not token:
            raise AuthenticationFailedError("No authorization token provided")
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except JWTError as exc:
            raise AuthenticationFailedError("Invalid token") from exc

        raw_id = payload.get("id") or payload.get("sub")
        try:
            user_id = UUID(str(raw_id))
        except ValueError as exc:
            raise AuthenticationFailedError("Invalid token payload") from exc

        user = self.repository.get_user(user_id)
        if user is None:
            raise AuthenticationFailedError("User not found")
        if user.role is ParticipantRole.BOT:
            raise AuthenticationFailedError("Bot identities cannot sign in")
        return Identity(user_id=user.id, email=user.email, role=user.role)
