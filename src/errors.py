"""
Error taxonomy for the client portal.

Every business-rule failure raised below the HTTP layer is one of these.
The API layer renders them as:

    {"error": "<reason phrase>", "detail": "<safe message>", "code": "<CODE>", ...extra}

Messages must be safe to show to end users. Internal detail belongs in logs.
"""
from typing import Any, Dict, Optional


class PortalError(Exception):
    """
    Base class for expected, user-facing failures.

    Args:
        message: Safe, user-facing message.
        code: Machine-readable error code (e.g. "INVALID_CREDENTIALS").
        clear_refresh_cookie: Ask the HTTP layer to expire the refresh cookie.
        **extra: Additional fields merged into the error body.
    """

    status_code: int = 500
    error: str = "Internal Server Error"
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        clear_refresh_cookie: bool = False,
        **extra: Any,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.clear_refresh_cookie = clear_refresh_cookie
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.error,
            "detail": self.message,
            "code": self.code,
        }
        body.update(self.extra)
        return body


class ValidationError(PortalError):
    """Malformed or missing input."""
    status_code = 400
    error = "Bad Request"
    default_code = "VALIDATION_ERROR"


class AuthenticationError(PortalError):
    """Bad credentials, code or token."""
    status_code = 401
    error = "Unauthorized"
    default_code = "AUTHENTICATION_FAILED"


class AuthorizationError(PortalError):
    """Deactivated account, unverified email or insufficient role."""
    status_code = 403
    error = "Forbidden"
    default_code = "FORBIDDEN"


class NotFoundError(PortalError):
    status_code = 404
    error = "Not Found"
    default_code = "NOT_FOUND"


class ConflictError(PortalError):
    """Duplicate identifier."""
    status_code = 409
    error = "Conflict"
    default_code = "CONFLICT"


class RateLimitError(PortalError):
    status_code = 429
    error = "Too Many Requests"
    default_code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int, limit: int = 0, **extra: Any):
        super().__init__(message, **extra)
        self.retry_after = retry_after
        self.limit = limit


class DependencyError(PortalError):
    """An upstream provider (email, payments) failed."""
    status_code = 502
    error = "Bad Gateway"
    default_code = "DEPENDENCY_FAILED"
