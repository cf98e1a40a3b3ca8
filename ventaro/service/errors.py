from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Error taxonomy shared by every boundary-facing failure."""

    VALIDATION = "validation_error"
    AUTHENTICATION = "authentication_error"
    AUTHORIZATION = "authorization_error"
    RATE_LIMIT = "rate_limit_error"
    NOT_FOUND = "not_found_error"
    EXTERNAL_API = "external_api_error"
    INTERNAL = "internal_error"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ErrorSeverity.LOW: 0,
    ErrorSeverity.MEDIUM: 1,
    ErrorSeverity.HIGH: 2,
    ErrorSeverity.CRITICAL: 3,
}


# Pre-approved messages shown to callers; never derived from the cause.
SAFE_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Invalid input provided. Please check your data and try again.",
    ErrorKind.AUTHENTICATION: "Authentication failed. Please check your credentials.",
    ErrorKind.AUTHORIZATION: "You do not have permission to access this resource.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please try again later.",
    ErrorKind.NOT_FOUND: "The requested resource was not found.",
    ErrorKind.EXTERNAL_API: "External service is temporarily unavailable. Please try again later.",
    ErrorKind.INTERNAL: "An internal server error occurred. Please try again later.",
}

STATUS_FOR_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.INTERNAL: 500,
    ErrorKind.EXTERNAL_API: 502,
}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``message`` is diagnostic text for the server log. Callers only ever see
    the safe message for ``kind`` unless the service runs in development mode.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    status_code: int = 500
    code: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        severity: Optional[ErrorSeverity] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if severity is not None:
            self.severity = severity
        self.detail = detail or {}
        self.user_message = user_message

    @property
    def safe_message(self) -> str:
        return self.user_message or SAFE_MESSAGES[self.kind]

    @property
    def error_code(self) -> str:
        """Stable machine-readable code; defaults to the kind."""
        return self.code or self.kind.value


class ValidationError(ServiceError):
    """Request validation failed (400).

    ``field_errors`` is returned to the caller since it describes their own
    input rather than server internals.
    """

    kind = ErrorKind.VALIDATION
    severity = ErrorSeverity.LOW
    status_code = 400

    def __init__(
        self,
        message: str = "validation failed",
        *,
        field_errors: Optional[dict[str, list[str]]] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.field_errors = field_errors or {}


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credential (401)."""

    kind = ErrorKind.AUTHENTICATION
    status_code = 401


class AuthorizationError(ServiceError):
    """Valid credential, insufficient permission (403)."""

    kind = ErrorKind.AUTHORIZATION
    status_code = 403


class CSRFError(AuthorizationError):
    """Missing, consumed, expired or forged anti-forgery token (403)."""

    code = "csrf_token_invalid"

    def __init__(self, message: str = "csrf token rejected", **kwargs) -> None:
        kwargs.setdefault("user_message", "Invalid CSRF token.")
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Quota exceeded (429)."""

    kind = ErrorKind.RATE_LIMIT
    severity = ErrorSeverity.LOW
    status_code = 429

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        headers: Optional[dict[str, str]] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.headers = headers or {}


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""

    kind = ErrorKind.NOT_FOUND
    severity = ErrorSeverity.LOW
    status_code = 404


class ExternalServiceError(ServiceError):
    """Payment or email provider failure (502).

    ``retryable`` marks timeouts and transport failures that an idempotent
    caller may retry.
    """

    kind = ErrorKind.EXTERNAL_API
    severity = ErrorSeverity.HIGH
    status_code = 502

    def __init__(self, message: str, *, retryable: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable


class ServerError(ServiceError):
    """Internal server error (500)."""

    kind = ErrorKind.INTERNAL
    severity = ErrorSeverity.HIGH
    status_code = 500


__all__ = [
    "ErrorKind",
    "ErrorSeverity",
    "SAFE_MESSAGES",
    "STATUS_FOR_KIND",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "CSRFError",
    "RateLimitedError",
    "NotFoundError",
    "ExternalServiceError",
    "ServerError",
]
