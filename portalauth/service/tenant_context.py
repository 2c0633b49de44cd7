from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from portalauth.service.errors import CrossTenantAccess, ForbiddenError, NoTenantContext
from portalauth.service.roles import has_minimum_role
from portalauth.storage.models import PRINCIPAL_STAFF

AUTH_METHOD_BEARER = "bearer"
AUTH_METHOD_API_KEY = "api_key"
AUTH_METHOD_PORTAL = "portal"


@dataclass(frozen=True)
class TenantContext:
    """Request-scoped principal, built once by the authenticator.

    It is passed explicitly to every service call; nothing downstream reads an
    ambient "current tenant".
    """

    tenant_id: Optional[str]
    user_id: Optional[str]
    role: str
    auth_method: str = AUTH_METHOD_BEARER
    principal_type: str = PRINCIPAL_STAFF
    session_id: Optional[str] = None
    api_key_id: Optional[str] = None
    client_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)

    @property
    def is_api_key(self) -> bool:
        return self.auth_method == AUTH_METHOD_API_KEY


def require_tenant_id(ctx: Optional[TenantContext]) -> str:
    """Tenant of the caller; a missing context fails instead of widening scope."""
    if ctx is None or not ctx.tenant_id:
        raise NoTenantContext()
    return ctx.tenant_id


def validate_tenant_access(ctx: Optional[TenantContext], resource_tenant_id: Optional[str]) -> None:
    tenant_id = require_tenant_id(ctx)
    if resource_tenant_id is None or str(resource_tenant_id) != tenant_id:
        raise CrossTenantAccess()


def require_role(ctx: Optional[TenantContext], minimum: str) -> TenantContext:
    require_tenant_id(ctx)
    if not has_minimum_role(ctx.role, minimum):
        raise ForbiddenError("insufficient permissions")
    return ctx
