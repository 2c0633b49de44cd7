from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from portalauth.storage.models import APIKey, Invitation, PortalClient, Session, Tenant, User

MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 512


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class _Request(BaseModel):
    # Unknown fields are ignored rather than rejected
    model_config = ConfigDict(extra="ignore")


class ErrorEnvelope(BaseModel):
    """Error body returned by every failing endpoint."""

    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None


# auth
class RegisterRequest(_Request):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    tenant_name: str = Field(..., min_length=1, max_length=200)
    tenant_slug: str = Field(..., min_length=1, max_length=100)
    name: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email", "tenant_name", "name")
    @classmethod
    def _normalize_text(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value).strip() if value is not None else None


class LoginRequest(_Request):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value).strip().lower()


class TwoFactorLoginRequest(_Request):
    challenge_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    code: str = Field(..., min_length=1, max_length=32)


class RefreshRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class PasswordChangeRequest(_Request):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class TotpCodeRequest(_Request):
    code: str = Field(..., min_length=1, max_length=32)


class PasswordConfirmRequest(_Request):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class UserResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    name: str
    role: str
    is_active: bool
    email_verified: bool
    totp_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            tenant_id=user.tenant_id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_active=user.is_active,
            email_verified=user.email_verified,
            totp_enabled=user.totp_enabled,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    status: str

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(id=tenant.id, name=tenant.name, slug=tenant.slug, status=tenant.status)


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
    tenant: Optional[TenantResponse] = None


class TwoFactorChallengeResponse(BaseModel):
    requires_2fa: bool = True
    challenge_token: str
    expires_at: datetime


class MeResponse(BaseModel):
    user: UserResponse
    tenant: Optional[TenantResponse] = None
    auth_method: str
    scopes: List[str] = Field(default_factory=list)


class TotpSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class TotpStatusResponse(BaseModel):
    enabled: bool
    recovery_codes_remaining: int
    recovery_codes_used: int


# sessions
class SessionResponse(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            expires_at=session.expires_at,
            current=session.id == current_id,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


# users
class RoleChangeRequest(_Request):
    role: str = Field(..., min_length=1, max_length=32)


class UserListResponse(BaseModel):
    items: List[UserResponse]


# api keys
class APIKeyCreateRequest(_Request):
    name: str = Field(..., min_length=1, max_length=100)
    scopes: List[str] = Field(..., max_length=20)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)


class APIKeyResponse(BaseModel):
    id: str
    name: str
    key_prefix: str
    scopes: List[str]
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_key(cls, key: APIKey) -> "APIKeyResponse":
        return cls(
            id=key.id,
            name=key.name,
            key_prefix=key.key_prefix,
            scopes=list(key.scopes),
            is_active=key.is_active,
            expires_at=key.expires_at,
            last_used_at=key.last_used_at,
            created_at=key.created_at,
        )


class APIKeyCreatedResponse(APIKeyResponse):
    key: str = Field(..., description="Raw key; shown only once")


class APIKeyListResponse(BaseModel):
    items: List[APIKeyResponse]


# invitations
class InvitationCreateRequest(_Request):
    email: str = Field(..., max_length=254)
    role: str = Field(..., min_length=1, max_length=32)


class InvitationResponse(BaseModel):
    id: str
    email: str
    role: str
    invited_by: Optional[str] = None
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_invitation(cls, invitation: Invitation) -> "InvitationResponse":
        return cls(
            id=invitation.id,
            email=invitation.email,
            role=invitation.role,
            invited_by=invitation.invited_by,
            expires_at=invitation.expires_at,
            accepted_at=invitation.accepted_at,
            created_at=invitation.created_at,
        )


class InvitationCreatedResponse(InvitationResponse):
    token: str = Field(..., description="Raw invitation token; shown only once")


class InvitationListResponse(BaseModel):
    items: List[InvitationResponse]


class InvitationValidateResponse(BaseModel):
    email: str
    role: str
    tenant_name: Optional[str] = None
    expires_at: datetime


class InvitationAcceptRequest(_Request):
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


# portal
class PortalClientCreateRequest(_Request):
    email: str = Field(..., max_length=254)
    name: str = Field(..., min_length=1, max_length=200)
    company_name: Optional[str] = Field(default=None, max_length=200)
    language: str = Field(default="de", max_length=8)


class PortalClientResponse(BaseModel):
    id: str
    email: str
    name: str
    company_name: Optional[str] = None
    status: str
    language: str
    invited_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_client(cls, client: PortalClient) -> "PortalClientResponse":
        return cls(
            id=client.id,
            email=client.email,
            name=client.name,
            company_name=client.company_name,
            status=client.status,
            language=client.language,
            invited_at=client.invited_at,
            activated_at=client.activated_at,
            last_login_at=client.last_login_at,
            created_at=client.created_at,
        )


class PortalClientCreatedResponse(BaseModel):
    client: PortalClientResponse
    invitation_token: str
    invitation_expires_at: datetime


class PortalClientListResponse(BaseModel):
    items: List[PortalClientResponse]


class PortalActivationInfo(BaseModel):
    email: str
    name: str
    company_name: Optional[str] = None
    tenant_name: Optional[str] = None
    expires_at: datetime


class PortalActivateRequest(_Request):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PortalLoginRequest(LoginRequest):
    pass


class PortalMeResponse(BaseModel):
    client: PortalClientResponse
    tenant_name: Optional[str] = None
