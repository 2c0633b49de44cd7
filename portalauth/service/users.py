from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from portalauth.logging import get_logger
from portalauth.service.errors import (
    AuthenticationError,
    CannotModifyOwner,
    ForbiddenError,
    LastOwnerError,
    NotFoundError,
    ValidationError,
)
from portalauth.service.roles import is_valid_role, validate_role_assignment
from portalauth.service.tenant_context import TenantContext, require_role, require_tenant_id
from portalauth.storage.errors import LastOwnerProtected
from portalauth.storage.models import PRINCIPAL_STAFF, Tenant, User

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]: ...

    def list_users(self, tenant_id: str, *, principal_type: str = PRINCIPAL_STAFF) -> List[User]: ...

    def update_user_role(self, tenant_id: str, user_id: str, role: str) -> Optional[User]: ...

    def deactivate_user(self, tenant_id: str, user_id: str) -> Optional[User]: ...


class UserService:
    """Tenant staff directory with role changes guarded by the last-owner rule."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def current(self, ctx: TenantContext) -> Tuple[User, Optional[Tenant]]:
        tenant_id = require_tenant_id(ctx)
        user = self.store.get_user(tenant_id, ctx.user_id) if ctx.user_id else None
        if user is None or not user.is_active:
            raise AuthenticationError("user not found")
        return user, self.store.get_tenant(tenant_id)

    def list_users(self, ctx: TenantContext) -> List[User]:
        require_role(ctx, "admin")
        return self.store.list_users(ctx.tenant_id)

    def _target(self, ctx: TenantContext, user_id: str) -> User:
        user = self.store.get_user(ctx.tenant_id, user_id)
        if user is None or user.principal_type != PRINCIPAL_STAFF:
            raise NotFoundError("user not found")
        return user

    def change_role(self, ctx: TenantContext, user_id: str, new_role: str) -> User:
        require_role(ctx, "admin")
        if not is_valid_role(new_role):
            raise ValidationError("unknown role", detail={"role": "invalid"})
        target = self._target(ctx, user_id)
        validate_role_assignment(ctx.user_id, ctx.role, target.id, target.role, new_role)
        if target.role == new_role:
            return target
        old_role = target.role
        try:
            updated = self.store.update_user_role(ctx.tenant_id, target.id, new_role)
        except LastOwnerProtected as exc:
            raise LastOwnerError() from exc
        if updated is None:
            raise NotFoundError("user not found")
        logger.info(
            "user_role_changed",
            user_id=target.id,
            tenant_id=ctx.tenant_id,
            old_role=old_role,
            new_role=new_role,
        )
        return updated

    def deactivate(self, ctx: TenantContext, user_id: str) -> User:
        require_role(ctx, "admin")
        target = self._target(ctx, user_id)
        if target.id == ctx.user_id:
            raise ForbiddenError("cannot deactivate yourself")
        if target.role == "owner" and ctx.role != "owner":
            raise CannotModifyOwner()
        try:
            updated = self.store.deactivate_user(ctx.tenant_id, target.id)
        except LastOwnerProtected as exc:
            raise LastOwnerError() from exc
        if updated is None:
            raise NotFoundError("user not found")
        logger.info("user_deactivated", user_id=target.id, tenant_id=ctx.tenant_id)
        return updated
