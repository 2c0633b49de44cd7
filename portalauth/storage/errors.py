from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SlugExists(ConstraintViolation):
    def __init__(self, slug: str):
        super().__init__("tenant slug already exists", {"slug": "already taken"})
        self.slug = slug


class EmailExists(ConstraintViolation):
    def __init__(self) -> None:
        super().__init__("email already exists", {"email": "already registered"})


class EmailAlreadyInTenant(ConstraintViolation):
    def __init__(self) -> None:
        super().__init__(
            "email is already a member of this tenant", {"email": "already a member"}
        )


class PendingInvitationExists(ConstraintViolation):
    def __init__(self) -> None:
        super().__init__(
            "a pending invitation already exists for this email",
            {"email": "invitation pending"},
        )


class RoleInvalid(ConstraintViolation):
    def __init__(self, role: str):
        super().__init__("role cannot be granted", {"role": f"'{role}' is not assignable"})
        self.role = role


class LastOwnerProtected(ConstraintViolation):
    def __init__(self) -> None:
        super().__init__("tenant must keep at least one active owner")


class InvitationStateError(Exception):
    """Base for single-use token failures raised from inside a consume transaction."""

    reason = "invalid"


class InvitationNotFound(InvitationStateError):
    reason = "not_found"


class InvitationExpired(InvitationStateError):
    reason = "expired"


class InvitationUsed(InvitationStateError):
    reason = "used"


__all__ = [
    "ConstraintViolation",
    "SlugExists",
    "EmailExists",
    "EmailAlreadyInTenant",
    "PendingInvitationExists",
    "RoleInvalid",
    "LastOwnerProtected",
    "InvitationStateError",
    "InvitationNotFound",
    "InvitationExpired",
    "InvitationUsed",
]
