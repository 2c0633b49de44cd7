"""Unit tests for the role hierarchy and tenant-context guards."""

from dataclasses import FrozenInstanceError

import pytest

from portalauth.service.errors import (
    CannotDemoteSelf,
    CannotModifyOwner,
    CrossTenantAccess,
    ForbiddenError,
    NoTenantContext,
    NotFoundError,
)
from portalauth.service.roles import (
    can_assign_role,
    can_invite,
    has_minimum_role,
    role_hierarchy,
    validate_role_assignment,
)
from portalauth.service.tenant_context import (
    TenantContext,
    require_role,
    require_tenant_id,
    validate_tenant_access,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "role, minimum, expected",
        [
            ("owner", "admin", True),
            ("admin", "admin", True),
            ("member", "admin", False),
            ("viewer", "viewer", True),
            ("viewer", "member", False),
            ("superuser", "viewer", False),
            ("", "viewer", False),
        ],
    )
    def test_has_minimum_role(self, role, minimum, expected):
        assert has_minimum_role(role, minimum) is expected

    def test_hierarchy_order(self):
        assert role_hierarchy() == ["owner", "admin", "member", "viewer"]

    def test_only_admins_and_owners_invite(self):
        assert can_invite("owner") and can_invite("admin")
        assert not can_invite("member")

    def test_assignable_roles(self):
        assert can_assign_role("owner", "owner") is True
        assert can_assign_role("admin", "member") is True
        assert can_assign_role("admin", "admin") is False
        assert can_assign_role("member", "viewer") is False


class TestRoleAssignment:
    def test_cannot_demote_self(self):
        with pytest.raises(CannotDemoteSelf):
            validate_role_assignment("u1", "owner", "u1", "owner", "admin")

    def test_admin_cannot_touch_owner(self):
        with pytest.raises(CannotModifyOwner):
            validate_role_assignment("a", "admin", "o", "owner", "member")

    def test_admin_cannot_promote_to_admin(self):
        with pytest.raises(ForbiddenError):
            validate_role_assignment("a", "admin", "m", "member", "admin")

    def test_owner_can_promote_to_owner(self):
        validate_role_assignment("o", "owner", "m", "member", "owner")


class TestTenantContext:
    def test_require_tenant_id(self):
        ctx = TenantContext(tenant_id="t1", user_id="u1", role="member")
        assert require_tenant_id(ctx) == "t1"

    @pytest.mark.parametrize("ctx", [None, TenantContext(tenant_id=None, user_id="u", role="owner")])
    def test_missing_context_fails_closed(self, ctx):
        with pytest.raises(NoTenantContext):
            require_tenant_id(ctx)

    def test_cross_tenant_looks_like_not_found(self):
        ctx = TenantContext(tenant_id="t1", user_id="u1", role="owner")

        validate_tenant_access(ctx, "t1")
        with pytest.raises(CrossTenantAccess) as exc_info:
            validate_tenant_access(ctx, "t2")
        assert isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.status_code == 404

    def test_require_role(self):
        ctx = TenantContext(tenant_id="t1", user_id="u1", role="member")

        assert require_role(ctx, "viewer") is ctx
        with pytest.raises(ForbiddenError):
            require_role(ctx, "admin")

    def test_context_is_immutable(self):
        ctx = TenantContext(tenant_id="t1", user_id="u1", role="member")
        with pytest.raises(FrozenInstanceError):
            ctx.tenant_id = "t2"
