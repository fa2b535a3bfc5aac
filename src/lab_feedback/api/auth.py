"""Bearer token dependency for HTTP routes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from lab_feedback.domain.models import Identity, ParticipantRole
from lab_feedback.errors import AuthenticationFailedError

if TYPE_CHECKING:
    from lab_feedback.containers import AppContainer

_bearer = HTTPBearer(auto_error=False)


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


async def current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> Identity:
    """Resolve the caller from the ``Authorization: Bearer`` header."""
    container = get_container(request)
    token = credentials.credentials if credentials else None
    try:
        return container.user_service.authenticate(token)
    except AuthenticationFailedError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_roles(*roles: ParticipantRole):
    """Build a dependency admitting only the given roles."""

    async def dependency(identity: Identity = Depends(current_identity)) -> Identity:
        if identity.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this operation",
            )
        return identity

    return dependency
