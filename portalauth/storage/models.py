from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now, truncated to millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


TENANT_STATUSES = ("active", "suspended", "deleted")
STAFF_ROLES = ("owner", "admin", "member", "viewer")
PRINCIPAL_STAFF = "staff"
PRINCIPAL_CLIENT = "client"
CLIENT_STATUSES = ("invited", "active", "inactive")


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    settings: Dict = field(default_factory=dict)
    status: str = "active"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    """Staff user, or the login identity behind an activated portal client."""

    id: str
    tenant_id: str
    email: str
    name: str
    role: str = "member"
    password_hash: Optional[str] = None
    email_verified: bool = False
    oauth_provider: Optional[str] = None
    oauth_id: Optional[str] = None
    is_active: bool = True
    principal_type: str = PRINCIPAL_STAFF
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    recovery_codes: Optional[str] = None
    recovery_codes_used: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_oauth_only(self) -> bool:
        return self.password_hash is None


@dataclass
class PortalClient:
    id: str
    tenant_id: str
    email: str
    name: str
    status: str = "invited"
    user_id: Optional[str] = None
    company_name: Optional[str] = None
    language: str = "de"
    notify_email: bool = True
    notify_new_documents: bool = True
    invited_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Invitation:
    id: str
    tenant_id: str
    email: str
    role: str
    token_hash: str
    invited_by: str
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    @property
    def is_pending(self) -> bool:
        return self.accepted_at is None


@dataclass
class ClientInvitation:
    id: str
    tenant_id: str
    client_id: str
    email: str
    token_hash: str
    invited_by: str
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class Session:
    id: str
    user_id: str
    tenant_id: str
    refresh_token_hash: str
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    principal_type: str = PRINCIPAL_STAFF
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: str,
        refresh_token_hash: str,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        principal_type: str = PRINCIPAL_STAFF,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            tenant_id=tenant_id,
            refresh_token_hash=refresh_token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
            principal_type=principal_type,
            created_at=now,
            last_used_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class APIKey:
    id: str
    user_id: str
    tenant_id: str
    name: str
    key_hash: str
    key_prefix: str
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) > self.expires_at
