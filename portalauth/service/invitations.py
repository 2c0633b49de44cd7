from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.credentials import CredentialService, validate_email
from portalauth.service.crypto import generate_raw_token, hash_token
from portalauth.service.email import EmailService
from portalauth.service.errors import (
    ConflictError,
    ForbiddenError,
    InvitationExpiredError,
    InvitationNotFoundError,
    InvitationUsedError,
    ValidationError,
)
from portalauth.service.roles import INVITABLE_ROLES, can_invite
from portalauth.service.sessions import SessionService, TokenPair
from portalauth.service.tenant_context import TenantContext, require_role, require_tenant_id
from portalauth.storage.errors import (
    InvitationExpired,
    InvitationNotFound,
    InvitationStateError,
    InvitationUsed,
    RoleInvalid,
)
from portalauth.storage.models import Invitation, Tenant, User, utcnow

logger = get_logger(__name__)


class InvitationStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def create_invitation(
        self,
        *,
        tenant_id: str,
        email: str,
        role: str,
        token_hash: str,
        invited_by: str,
        expires_at: datetime,
    ) -> Invitation: ...

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]: ...

    def get_invitation(self, tenant_id: str, invitation_id: str) -> Optional[Invitation]: ...

    def list_invitations(self, tenant_id: str) -> List[Invitation]: ...

    def delete_invitation(self, tenant_id: str, invitation_id: str) -> bool: ...

    def consume_invitation(
        self,
        token_hash: str,
        *,
        name: str,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Invitation, User]: ...


@dataclass
class IssuedInvitation:
    """A freshly created invitation plus its raw token, which is never stored."""

    invitation: Invitation
    token: str


def translate_invitation_error(exc: InvitationStateError) -> Exception:
    if isinstance(exc, InvitationExpired):
        return InvitationExpiredError()
    if isinstance(exc, InvitationUsed):
        return InvitationUsedError()
    return InvitationNotFoundError()


def check_invitation_state(invitation: Any, *, consumed: bool, now: datetime) -> None:
    """Shared validity rules: missing, then consumed, then expired."""
    if invitation is None:
        raise InvitationNotFoundError()
    if consumed:
        raise InvitationUsedError()
    if invitation.is_expired(now):
        raise InvitationExpiredError()


class InvitationService:
    """Staff invitations: one-shot tokens that create a user on acceptance."""

    def __init__(
        self,
        store: InvitationStore,
        settings: Settings,
        credentials: CredentialService,
        sessions: SessionService,
        *,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.sessions = sessions
        self.email = email
        self.ttl = timedelta(hours=settings.invitation_ttl_staff_hours)

    def create(self, ctx: TenantContext, email: str, role: str) -> IssuedInvitation:
        tenant_id = require_tenant_id(ctx)
        if not can_invite(ctx.role):
            raise ForbiddenError("insufficient permissions to invite")
        if role not in INVITABLE_ROLES:
            raise ValidationError(
                "role must be one of: " + ", ".join(INVITABLE_ROLES),
                detail={"role": "invalid"},
            )
        normalized = validate_email(email)
        token = generate_raw_token()
        try:
            invitation = self.store.create_invitation(
                tenant_id=tenant_id,
                email=normalized,
                role=role,
                token_hash=hash_token(token),
                invited_by=ctx.user_id,
                expires_at=utcnow() + self.ttl,
            )
        except RoleInvalid as exc:
            raise ValidationError(str(exc), detail={"role": "invalid"}) from exc
        logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            tenant_id=tenant_id,
            role=role,
        )
        self._deliver(invitation, token)
        return IssuedInvitation(invitation=invitation, token=token)

    def _deliver(self, invitation: Invitation, token: str) -> None:
        if self.email is None:
            return
        tenant = self.store.get_tenant(invitation.tenant_id)
        try:
            self.email.send_invitation(
                invitation.email,
                token,
                tenant_name=tenant.name if tenant else "",
                role=invitation.role,
                expires_in_hours=self.settings.invitation_ttl_staff_hours,
            )
        except Exception as exc:
            # The token is still returned to the inviter
            logger.warning("invitation_email_failed", invitation_id=invitation.id, error=str(exc))

    def validate(self, token: str) -> Dict[str, Any]:
        invitation = self.store.get_invitation_by_token_hash(hash_token(token or ""))
        check_invitation_state(
            invitation,
            consumed=invitation is not None and invitation.accepted_at is not None,
            now=utcnow(),
        )
        tenant = self.store.get_tenant(invitation.tenant_id)
        return {
            "email": invitation.email,
            "role": invitation.role,
            "tenant_name": tenant.name if tenant else None,
            "expires_at": invitation.expires_at,
        }

    def accept(
        self,
        token: str,
        name: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        token_hash = hash_token(token or "")
        invitation = self.store.get_invitation_by_token_hash(token_hash)
        check_invitation_state(
            invitation,
            consumed=invitation is not None and invitation.accepted_at is not None,
            now=utcnow(),
        )
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"name": "required"})
        password_hash = self.credentials.hash_password(password)
        try:
            invitation, user = self.store.consume_invitation(
                token_hash, name=name, password_hash=password_hash, now=utcnow()
            )
        except InvitationStateError as exc:
            raise translate_invitation_error(exc) from exc
        logger.info(
            "invitation_accepted",
            invitation_id=invitation.id,
            tenant_id=invitation.tenant_id,
            user_id=user.id,
        )
        return self.sessions.issue(user, user_agent=user_agent, ip_address=ip_address)

    def list(self, ctx: TenantContext) -> List[Invitation]:
        require_role(ctx, "admin")
        return self.store.list_invitations(ctx.tenant_id)

    def delete(self, ctx: TenantContext, invitation_id: str) -> None:
        require_role(ctx, "admin")
        if not self.store.delete_invitation(ctx.tenant_id, invitation_id):
            raise InvitationNotFoundError()
        logger.info("invitation_deleted", invitation_id=invitation_id, tenant_id=ctx.tenant_id)

    def resend(self, ctx: TenantContext, invitation_id: str) -> IssuedInvitation:
        """Re-issue a pending invitation with a fresh token and expiry."""
        require_role(ctx, "admin")
        existing = self.store.get_invitation(ctx.tenant_id, invitation_id)
        if existing is None:
            raise InvitationNotFoundError()
        if existing.accepted_at is not None:
            raise ConflictError("invitation has already been used")
        self.store.delete_invitation(ctx.tenant_id, invitation_id)
        return self.create(ctx, existing.email, existing.role)
