from __future__ import annotations

from typing import Dict, List

from portalauth.service.errors import CannotDemoteSelf, CannotModifyOwner, ForbiddenError

ROLE_LEVELS: Dict[str, int] = {
    "viewer": 1,
    "member": 2,
    "admin": 3,
    "owner": 4,
}

INVITABLE_ROLES = ("admin", "member", "viewer")


def role_level(role: str) -> int:
    return ROLE_LEVELS.get(role, 0)


def is_valid_role(role: str) -> bool:
    return role in ROLE_LEVELS


def has_minimum_role(role: str, minimum: str) -> bool:
    """Ordered comparison; unknown roles never satisfy anything."""
    level = role_level(role)
    return level > 0 and level >= role_level(minimum)


def can_invite(role: str) -> bool:
    return has_minimum_role(role, "admin")


def can_manage_users(role: str) -> bool:
    return has_minimum_role(role, "admin")


def can_assign_role(actor_role: str, target_role: str) -> bool:
    if actor_role == "owner":
        return is_valid_role(target_role)
    if actor_role == "admin":
        return target_role in ("member", "viewer")
    return False


def validate_role_assignment(
    actor_id: str,
    actor_role: str,
    target_id: str,
    target_role: str,
    new_role: str,
) -> None:
    if actor_id == target_id and role_level(new_role) < role_level(target_role):
        raise CannotDemoteSelf()
    if target_role == "owner" and actor_role != "owner":
        raise CannotModifyOwner()
    if not can_assign_role(actor_role, new_role):
        raise ForbiddenError("insufficient permissions to assign this role")


def role_hierarchy() -> List[str]:
    """Roles ordered from most to least privileged."""
    return sorted(ROLE_LEVELS, key=role_level, reverse=True)
