"""Error taxonomy shared by the document store, the engines, and the HTTP layer."""

from __future__ import annotations

from typing import Any


class PortalError(Exception):
    http_status = 500
    default_code = "internal_error"
    retryable = False

    def __init__(
        self,
        message: str,
        code: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class ValidationError(PortalError, ValueError):
    http_status = 400
    default_code = "validation_failed"


class AuthenticationRequired(PortalError, PermissionError):
    http_status = 401
    default_code = "authentication_required"


class PermissionDenied(PortalError, PermissionError):
    http_status = 403
    default_code = "permission_denied"


class NotFoundError(PortalError, LookupError):
    http_status = 404
    default_code = "not_found"


class ConflictError(PortalError, RuntimeError):
    http_status = 409
    default_code = "conflict"


class CapacityExceeded(ConflictError):
    default_code = "capacity_exceeded"


class VersionConflict(ConflictError):
    default_code = "version_conflict"
    retryable = True


class RateLimited(PortalError, RuntimeError):
    http_status = 429
    default_code = "backend_rate_limited"
    retryable = True

    def __init__(
        self,
        message: str,
        code: str = "",
        details: dict[str, Any] | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.retry_after_s = retry_after_s


class InternalError(PortalError, RuntimeError):
    http_status = 500
    default_code = "internal_error"


def error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    """Render an exception as an HTTP status and a failure envelope."""
    if not isinstance(exc, PortalError):
        exc = InternalError(str(exc) or exc.__class__.__name__)
    payload: dict[str, Any] = {"success": False, "error": exc.message, "code": exc.code}
    if exc.details:
        payload["details"] = exc.details
    if isinstance(exc, RateLimited) and exc.retry_after_s is not None:
        payload["retry_after_s"] = exc.retry_after_s
    return exc.http_status, payload
