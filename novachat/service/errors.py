from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


# Gate rejection reasons, shared by HTTP and realtime callers
NO_CREDENTIAL = "NO_CREDENTIAL"
INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
USER_NOT_FOUND = "USER_NOT_FOUND"
SESSION_SUPERSEDED = "SESSION_SUPERSEDED"

SUPERSEDED_MESSAGE = "Session expired - logged in from another device"
RELOGIN_MESSAGE = "Please log in again"


def rejection_message(reason: str) -> str:
    if reason == SESSION_SUPERSEDED:
        return SUPERSEDED_MESSAGE
    return RELOGIN_MESSAGE


class SessionRejectedError(AuthenticationError):
    """The liveness gate refused a credential.

    Clients must discard their stored credential, hence ``should_logout``.
    """

    reason: str = INVALID_CREDENTIAL

    def __init__(self, reason: Optional[str] = None, message: Optional[str] = None) -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(
            message or rejection_message(self.reason),
            detail={"reason": self.reason, "should_logout": True},
        )


class NoCredentialError(SessionRejectedError):
    reason = NO_CREDENTIAL


class InvalidCredentialError(SessionRejectedError):
    reason = INVALID_CREDENTIAL


class UserNotFoundError(SessionRejectedError):
    reason = USER_NOT_FOUND


class SessionSupersededError(SessionRejectedError):
    reason = SESSION_SUPERSEDED


_REJECTIONS = {
    cls.reason: cls
    for cls in (
        NoCredentialError,
        InvalidCredentialError,
        UserNotFoundError,
        SessionSupersededError,
    )
}


def rejection_for(reason: str) -> SessionRejectedError:
    """Build the exception matching a gate rejection reason."""
    return _REJECTIONS.get(reason, SessionRejectedError)(reason)


class OAuthFlowError(AuthenticationError):
    """Google sign-in could not complete; ``reason`` goes back to the client URL."""

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message, detail={"reason": reason})


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class PersistenceError(ServerError):
    """The session store could not be read or written.

    Never reported as a gate rejection; callers may retry.
    """


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionRejectedError",
    "NoCredentialError",
    "InvalidCredentialError",
    "UserNotFoundError",
    "SessionSupersededError",
    "OAuthFlowError",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "PersistenceError",
    "NO_CREDENTIAL",
    "INVALID_CREDENTIAL",
    "USER_NOT_FOUND",
    "SESSION_SUPERSEDED",
    "rejection_for",
    "rejection_message",
]
