from __future__ import annotations

from typing import Any


class AuthorizationError(Exception):
    """Base error for authorization decisions surfaced to callers.

    Each subclass carries a stable machine ``code`` and the HTTP status the API
    layer renders it with.
    """

    code = "AUTHORIZATION_ERROR"
    status_code = 403
    default_message = "Authorization failed"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class Unauthenticated(AuthorizationError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Authentication required"


class ProfileNotFound(AuthorizationError):
    code = "PROFILE_NOT_FOUND"
    status_code = 404
    default_message = "Profile not found"


class CompanyNotFound(AuthorizationError):
    code = "COMPANY_NOT_FOUND"
    status_code = 404
    default_message = "Company not found"


class JoinRequestNotFound(AuthorizationError):
    code = "JOIN_REQUEST_NOT_FOUND"
    status_code = 404
    default_message = "Join request not found"


class Forbidden(AuthorizationError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Forbidden"


class CrossTenantAccessError(Forbidden):
    """Raised when a non-superadmin names a company other than its own."""

    code = "CROSS_TENANT_FORBIDDEN"
    default_message = "Access to another company is not allowed"


class NoCompanyContext(AuthorizationError):
    code = "NO_COMPANY_CONTEXT"
    status_code = 403
    default_message = "No company is associated with this request"


class InvalidState(AuthorizationError):
    code = "INVALID_STATE"
    status_code = 403
    default_message = "Operation not allowed in the current state"


class TransientError(AuthorizationError):
    """Storage or upstream failure; the caller may retry."""

    code = "TRANSIENT_ERROR"
    status_code = 503
    default_message = "Service temporarily unavailable"
    retry_after_seconds = 1
