"""
Protocol error taxonomy.

Every stage raises one of these where the problem is detected. The API maps
them to HTTP responses; the epoch orchestrator records them per belief and
moves on.

- ValidationError: malformed or out-of-range input. Never retried.
- NotFoundError: unknown belief or agent. Never retried.
- StateConflictError: wrong belief status or insufficient participants.
- InternalError: storage unavailable. Safe to retry (redistribution is idempotent).
"""

from typing import Optional


class ProtocolError(Exception):
    """Base class for all protocol errors."""

    code: int = 500

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(ProtocolError):
    """Raised when a request is malformed or a value is out of range."""
    code = 422


class NotFoundError(ProtocolError):
    """Raised when a referenced belief or agent does not exist."""
    code = 404


class StateConflictError(ProtocolError):
    """Raised when an operation does not apply to the current state."""
    code = 409


class InternalError(ProtocolError):
    """Raised when the backing store fails."""
    code = 503
