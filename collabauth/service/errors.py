from __future__ import annotations

from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``;
    ``fields`` names the request fields the error is about, if any.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        fields: Optional[Iterable[str]] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.fields = list(fields or [])
        self.detail = detail or {}


class MissingFieldError(ServiceError):
    """One or more required request fields are absent or blank (400)."""

    status_code = 400
    error_code = "missing_field"

    def __init__(self, fields: Iterable[str], message: Optional[str] = None) -> None:
        names = list(fields)
        code = "missing_fields" if len(names) > 1 else "missing_field"
        super().__init__(
            message or "Required field(s) missing: {}".format(", ".join(names)),
            fields=names,
            error_code=code,
        )


class InvalidFieldError(ServiceError):
    status_code = 400
    error_code = "invalid_field"
    default_message = "invalid field value"


class InvalidCredentialsError(ServiceError):
    """Unknown email and wrong password share this error verbatim (401)."""

    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid email or password"


class AccountLockedError(ServiceError):
    status_code = 401
    error_code = "account_locked"
    default_message = "Account temporarily locked after repeated failed logins"


class AccountInactiveError(ServiceError):
    status_code = 403
    error_code = "account_inactive"
    default_message = "Account is not active"


class TenantNotFoundError(ServiceError):
    status_code = 404
    error_code = "tenant_not_found"
    default_message = "Tenant not available"


class TenantAccessDeniedError(ServiceError):
    status_code = 403
    error_code = "tenant_access_denied"
    default_message = "No access to the requested tenant"


class UnauthenticatedError(ServiceError):
    status_code = 401
    error_code = "unauthenticated"
    default_message = "Authentication required"


class SessionExpiredError(UnauthenticatedError):
    status_code = 401
    error_code = "session_expired"
    default_message = "Session expired"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"
    default_message = "Not permitted"


class CsrfError(ForbiddenError):
    error_code = "csrf_invalid"
    default_message = "Missing or invalid CSRF token"


class RedirectLoopDetectedError(ServiceError):
    status_code = 508
    error_code = "redirect_loop_detected"
    default_message = "Redirect loop detected"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
    default_message = "Internal server error"


__all__ = [
    "ServiceError",
    "MissingFieldError",
    "InvalidFieldError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "TenantNotFoundError",
    "TenantAccessDeniedError",
    "UnauthenticatedError",
    "SessionExpiredError",
    "ForbiddenError",
    "CsrfError",
    "RedirectLoopDetectedError",
    "RateLimitedError",
    "ServerError",
]
