from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:

    - VALIDATION_ERROR / BAD_REQUEST (400)
    - UNAUTHORIZED / INVALID_CREDENTIALS / INVALID_TOKEN / TOKEN_EXPIRED (401)
    - FORBIDDEN (403)
    - NOT_FOUND (404)
    - CONFLICT (409)
    - GONE (410)
    - RATE_LIMITED (429)
    - INTERNAL_ERROR (500)
    - SERVICE_UNAVAILABLE (503)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class BadRequestError(ServiceError):
    """Request is malformed (400)."""
    status_code = 400
    error_code = "BAD_REQUEST"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected; never says which half was wrong."""
    error_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation or a consumed token (409)."""
    status_code = 409
    error_code = "CONFLICT"


class GoneError(ServiceError):
    """Resource existed but has expired (410)."""
    status_code = 410
    error_code = "GONE"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


class ServiceUnavailableError(ServiceError):
    """A dependency on a fail-closed path is unreachable (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


# Domain errors. The HTTP layer maps these by class, never by message text.


class PasswordPolicyError(ValidationError):
    rule = "policy"

    def __init__(self, message: str) -> None:
        super().__init__(message, detail={"password": message})


class PasswordTooShort(PasswordPolicyError):
    rule = "min_length"


class PasswordMissingUpper(PasswordPolicyError):
    rule = "require_upper"


class PasswordMissingLower(PasswordPolicyError):
    rule = "require_lower"


class PasswordMissingDigit(PasswordPolicyError):
    rule = "require_digit"


class PasswordMissingSpecial(PasswordPolicyError):
    rule = "require_special"


class AccountInactiveError(AuthenticationError):
    def __init__(self, message: str = "account is inactive") -> None:
        super().__init__(message)


class NoTenantContext(AuthenticationError):
    def __init__(self, message: str = "no tenant context") -> None:
        super().__init__(message)


class CrossTenantAccess(NotFoundError):
    """Resource belongs to another tenant; surfaced exactly like a missing row."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class LastOwnerError(ConflictError):
    def __init__(self) -> None:
        super().__init__("tenant must keep at least one active owner")


class CannotDemoteSelf(ForbiddenError):
    def __init__(self) -> None:
        super().__init__("cannot change your own role")


class CannotModifyOwner(ForbiddenError):
    def __init__(self) -> None:
        super().__init__("only an owner can modify another owner")


class InvitationNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("invitation not found")


class InvitationExpiredError(GoneError):
    def __init__(self) -> None:
        super().__init__("invitation has expired")


class InvitationUsedError(ConflictError):
    def __init__(self) -> None:
        super().__init__("invitation has already been used")


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "GoneError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
    "PasswordPolicyError",
    "PasswordTooShort",
    "PasswordMissingUpper",
    "PasswordMissingLower",
    "PasswordMissingDigit",
    "PasswordMissingSpecial",
    "AccountInactiveError",
    "NoTenantContext",
    "CrossTenantAccess",
    "LastOwnerError",
    "CannotDemoteSelf",
    "CannotModifyOwner",
    "InvitationNotFoundError",
    "InvitationExpiredError",
    "InvitationUsedError",
]
