"""
Haven — Error Kinds

Every failure the core surfaces maps to one of these.  Gateways translate
HTTP statuses into them at the boundary; the session store decides which
ones reach the caller and which are only logged.
"""

from __future__ import annotations

from typing import Optional


class HavenError(Exception):
    """Base class for all errors raised by the companion core."""


class UnauthorizedError(HavenError):
    """The auth collaborator rejected the caller (401)."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class ValidationFailure(HavenError):
    """A gateway rejected the request body (400)."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class HistoryNotFound(HavenError):
    """Missing or foreign history record. Ownership mismatches read as not found."""

    def __init__(self, history_id: str) -> None:
        super().__init__(f"Session history {history_id} not found")
        self.history_id = history_id


class UpstreamFailure(HavenError):
    """Bootstrap or relay provider unreachable or erroring after retries."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status = status


class PersistenceFailure(HavenError):
    """A history write, read or delete failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class NoActiveSession(HavenError):
    """An operation needing a live session id was called without one."""

    def __init__(self, message: str = "No realtime session is active") -> None:
        super().__init__(message)
