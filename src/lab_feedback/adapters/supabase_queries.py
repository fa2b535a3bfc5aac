"""Shared execution helper for Supabase query builders."""

import logging
from typing import Any, Protocol

from postgrest.exceptions import APIError

from lab_feedback.errors import PersistenceFailureError

logger = logging.getLogger(__name__)


class _Executable(Protocol):
    def execute(self) -> Any: ...


def run_query(request: _Executable, action: str) -> Any:
    """Execute a query, reporting PostgREST failures as ``PersistenceFailureError``."""
    try:
        return request.execute()
    except APIError as exc:
        logger.error("Supabase failed to %s: %s", action, exc.message)
        raise PersistenceFailureError(f"Failed to {action}") from exc
