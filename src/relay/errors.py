"""Domain-specific exceptions for the relay core.

These exceptions are safe to import from the server layer without pulling in the
completion backend.
"""

from __future__ import annotations

from enum import Enum


class BackendFailure(str, Enum):
    """Failure classes of the completion backend, kept apart for observability."""
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    GENERIC = "generic"


class RelayError(Exception):
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ProtocolError(RelayError):
    """Malformed or unrecognized inbound event."""
    default_detail = "Invalid protocol message."


class SessionError(RelayError):
    default_detail = "Session error."


class SessionExistsError(SessionError):
    default_detail = "A session already exists for this call."


class SessionNotFoundError(SessionError):
    default_detail = "No active session for this call."


class SessionEndedError(SessionError):
    default_detail = "This call has already ended."


class BackendError(RelayError):
    default_detail = "Completion backend request failed."

    def __init__(self, failure: BackendFailure, detail: str | None = None) -> None:
        super().__init__(detail)
        self.failure = failure
