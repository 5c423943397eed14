from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional


class ErrorKind(str, Enum):
    """Classification of a failed backend call."""

    UNREACHABLE = "unreachable"
    INVALID_CREDENTIALS = "invalid_credentials"
    MALFORMED_REQUEST = "malformed_request"
    TOKEN_EXPIRED = "token_expired"
    REFRESH_FAILED = "refresh_failed"
    DUPLICATE_ACCOUNT = "duplicate_account"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    UNEXPECTED_STATUS = "unexpected_status"


class SessionError(Exception):
    """Base class for errors surfaced by the session manager.

    Each subclass carries a stable ``error_code`` and, where one applies, the
    backend ``status_code`` that produced it.
    """

    status_code: Optional[int] = None
    error_code: str = "session_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class Unreachable(SessionError):
    """Network failure or unclassified response; callers may retry."""
    error_code = "unreachable"


class InvalidCredentials(SessionError):
    """Login rejected (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class MalformedRequest(SessionError):
    """Backend rejected the request as malformed (400)."""
    status_code = 400
    error_code = "malformed_request"


class InvalidInput(MalformedRequest):
    """Registration data rejected (400)."""
    error_code = "invalid_input"


class TokenExpired(SessionError):
    """Access token rejected on validate (401)."""
    status_code = 401
    error_code = "token_expired"


class RefreshFailed(SessionError):
    """Refresh token could not be exchanged; the session is lost."""
    error_code = "refresh_failed"


class DuplicateAccount(SessionError):
    """Registration conflicts with an existing account (409)."""
    status_code = 409
    error_code = "duplicate_account"


class ServerError(SessionError):
    """Backend failure (5xx)."""
    status_code = 500
    error_code = "server_error"


class NotAuthenticated(SessionError):
    """Operation requires a signed-in user."""
    error_code = "not_authenticated"


class InvalidTransition(SessionError):
    """Session state machine was asked for an illegal transition."""
    error_code = "invalid_transition"


LOGIN_FALLBACK_MESSAGES = {
    ErrorKind.INVALID_CREDENTIALS: "Invalid email or password",
    ErrorKind.MALFORMED_REQUEST: "Please provide both email and password",
    ErrorKind.SERVER_ERROR: "Server error. Please try again later.",
}
LOGIN_DEFAULT_MESSAGE = "Failed to login. Please try again."

REGISTER_FALLBACK_MESSAGES = {
    ErrorKind.MALFORMED_REQUEST: "Invalid registration data. Please check your inputs.",
    ErrorKind.DUPLICATE_ACCOUNT: "An account with these details already exists.",
    ErrorKind.SERVER_ERROR: "Server error. Please try again later.",
}
REGISTER_DEFAULT_MESSAGE = "Failed to register. Please try again."

_KIND_ERRORS = {
    ErrorKind.UNREACHABLE: Unreachable,
    ErrorKind.INVALID_CREDENTIALS: InvalidCredentials,
    ErrorKind.MALFORMED_REQUEST: MalformedRequest,
    ErrorKind.TOKEN_EXPIRED: TokenExpired,
    ErrorKind.REFRESH_FAILED: RefreshFailed,
    ErrorKind.DUPLICATE_ACCOUNT: DuplicateAccount,
    ErrorKind.SERVER_ERROR: ServerError,
}

_LOGIN_ERRORS = {
    ErrorKind.INVALID_CREDENTIALS: InvalidCredentials,
    ErrorKind.MALFORMED_REQUEST: MalformedRequest,
    ErrorKind.SERVER_ERROR: ServerError,
}

_REGISTER_ERRORS = {
    ErrorKind.MALFORMED_REQUEST: InvalidInput,
    ErrorKind.DUPLICATE_ACCOUNT: DuplicateAccount,
    ErrorKind.SERVER_ERROR: ServerError,
}


def backend_message(body: Any) -> Optional[str]:
    """Extract the backend's ``error`` field from a response body."""
    if isinstance(body, Mapping):
        message = body.get("error")
        if isinstance(message, str) and message.strip():
            return message
    return None


def error_for(kind: ErrorKind, status_code: Optional[int], body: Any) -> SessionError:
    cls = _KIND_ERRORS.get(kind, Unreachable)
    message = backend_message(body) or kind.value.replace("_", " ")
    return cls(message, status_code=status_code, detail={"kind": kind.value})


def login_error(kind: ErrorKind, status_code: Optional[int], body: Any) -> SessionError:
    """Build the exception raised by a failed login."""
    cls = _LOGIN_ERRORS.get(kind, Unreachable)
    message = backend_message(body) or LOGIN_FALLBACK_MESSAGES.get(kind, LOGIN_DEFAULT_MESSAGE)
    return cls(message, status_code=status_code, detail={"kind": kind.value})


def register_error(kind: ErrorKind, status_code: Optional[int], body: Any) -> SessionError:
    """Build the exception raised by a failed registration."""
    cls = _REGISTER_ERRORS.get(kind, Unreachable)
    message = backend_message(body) or REGISTER_FALLBACK_MESSAGES.get(
        kind, REGISTER_DEFAULT_MESSAGE
    )
    return cls(message, status_code=status_code, detail={"kind": kind.value})


__all__ = [
    "ErrorKind",
    "SessionError",
    "Unreachable",
    "InvalidCredentials",
    "MalformedRequest",
    "InvalidInput",
    "TokenExpired",
    "RefreshFailed",
    "DuplicateAccount",
    "ServerError",
    "NotAuthenticated",
    "InvalidTransition",
    "backend_message",
    "error_for",
    "login_error",
    "register_error",
]
