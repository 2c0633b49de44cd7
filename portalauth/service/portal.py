from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.credentials import CredentialService, validate_email
from portalauth.service.crypto import generate_raw_token, hash_token
from portalauth.service.email import EmailService
from portalauth.service.errors import (
    AccountInactiveError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from portalauth.service.invitations import (
    IssuedInvitation,
    check_invitation_state,
    translate_invitation_error,
)
from portalauth.service.sessions import SessionService, TokenPair
from portalauth.service.tenant_context import TenantContext, require_role, require_tenant_id
from portalauth.storage.errors import InvitationStateError
from portalauth.storage.models import (
    PRINCIPAL_CLIENT,
    ClientInvitation,
    PortalClient,
    Tenant,
    User,
    utcnow,
)

logger = get_logger(__name__)

SUPPORTED_LANGUAGES = ("de", "en")


class PortalStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def create_portal_client(
        self,
        *,
        tenant_id: str,
        email: str,
        name: str,
        company_name: Optional[str] = None,
        language: str = "de",
    ) -> PortalClient: ...

    def get_portal_client(self, tenant_id: str, client_id: str) -> Optional[PortalClient]: ...

    def get_portal_client_by_user(self, tenant_id: str, user_id: str) -> Optional[PortalClient]: ...

    def list_portal_clients(self, tenant_id: str) -> List[PortalClient]: ...

    def deactivate_portal_client(self, tenant_id: str, client_id: str) -> Optional[PortalClient]: ...

    def touch_portal_client_login(self, tenant_id: str, client_id: str, when: datetime) -> None: ...

    def create_client_invitation(
        self,
        *,
        tenant_id: str,
        client_id: str,
        email: str,
        token_hash: str,
        invited_by: str,
        expires_at: datetime,
    ) -> ClientInvitation: ...

    def get_client_invitation_by_token_hash(self, token_hash: str) -> Optional[ClientInvitation]: ...

    def consume_client_invitation(
        self,
        token_hash: str,
        *,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Tuple[ClientInvitation, PortalClient, User]: ...


class PortalService:
    """External client accounts: staff-managed records, invitation-based activation
    and cookie sessions that never mix with staff tokens."""

    def __init__(
        self,
        store: PortalStore,
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
        self.ttl = timedelta(hours=settings.invitation_ttl_portal_hours)

    # staff-side management
    def create_client(
        self,
        ctx: TenantContext,
        *,
        email: str,
        name: str,
        company_name: Optional[str] = None,
        language: str = "de",
    ) -> Tuple[PortalClient, IssuedInvitation]:
        require_role(ctx, "admin")
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"name": "required"})
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError("unsupported language", detail={"language": "invalid"})
        client = self.store.create_portal_client(
            tenant_id=ctx.tenant_id,
            email=validate_email(email),
            name=name,
            company_name=(company_name or "").strip() or None,
            language=language,
        )
        logger.info("portal_client_created", client_id=client.id, tenant_id=ctx.tenant_id)
        return client, self._invite(ctx, client)

    def _invite(self, ctx: TenantContext, client: PortalClient) -> IssuedInvitation:
        token = generate_raw_token()
        invitation = self.store.create_client_invitation(
            tenant_id=client.tenant_id,
            client_id=client.id,
            email=client.email,
            token_hash=hash_token(token),
            invited_by=ctx.user_id,
            expires_at=utcnow() + self.ttl,
        )
        if self.email is not None:
            tenant = self.store.get_tenant(client.tenant_id)
            try:
                self.email.send_client_invitation(
                    client.email,
                    token,
                    tenant_name=tenant.name if tenant else "",
                    client_name=client.name,
                    expires_in_hours=self.settings.invitation_ttl_portal_hours,
                )
            except Exception as exc:
                logger.warning("client_invitation_email_failed", client_id=client.id, error=str(exc))
        return IssuedInvitation(invitation=invitation, token=token)

    def list_clients(self, ctx: TenantContext) -> List[PortalClient]:
        require_role(ctx, "member")
        return self.store.list_portal_clients(ctx.tenant_id)

    def _get_client(self, ctx: TenantContext, client_id: str) -> PortalClient:
        client = self.store.get_portal_client(require_tenant_id(ctx), client_id)
        if client is None:
            raise NotFoundError("client not found")
        return client

    def resend_invitation(self, ctx: TenantContext, client_id: str) -> IssuedInvitation:
        require_role(ctx, "admin")
        client = self._get_client(ctx, client_id)
        if client.status != "invited" or client.user_id is not None:
            raise ConflictError("client is not awaiting activation")
        issued = self._invite(ctx, client)
        logger.info("client_invitation_resent", client_id=client.id)
        return issued

    def deactivate_client(self, ctx: TenantContext, client_id: str) -> PortalClient:
        require_role(ctx, "admin")
        self._get_client(ctx, client_id)
        client = self.store.deactivate_portal_client(ctx.tenant_id, client_id)
        if client is None:
            raise NotFoundError("client not found")
        logger.info("portal_client_deactivated", client_id=client_id, tenant_id=ctx.tenant_id)
        return client

    # client-side activation
    def validate_activation(self, token: str) -> Dict[str, Any]:
        invitation = self.store.get_client_invitation_by_token_hash(hash_token(token or ""))
        check_invitation_state(
            invitation,
            consumed=invitation is not None and invitation.used_at is not None,
            now=utcnow(),
        )
        client = self.store.get_portal_client(invitation.tenant_id, invitation.client_id)
        if client is None or client.status == "inactive":
            raise NotFoundError("invitation not found")
        tenant = self.store.get_tenant(invitation.tenant_id)
        return {
            "email": client.email,
            "name": client.name,
            "company_name": client.company_name,
            "tenant_name": tenant.name if tenant else None,
            "expires_at": invitation.expires_at,
        }

    def activate(
        self,
        token: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        self.validate_activation(token)
        password_hash = self.credentials.hash_password(password)
        try:
            _, client, user = self.store.consume_client_invitation(
                hash_token(token), password_hash=password_hash, now=utcnow()
            )
        except InvitationStateError as exc:
            raise translate_invitation_error(exc) from exc
        logger.info("portal_client_activated", client_id=client.id, tenant_id=client.tenant_id)
        return self.sessions.issue(user, user_agent=user_agent, ip_address=ip_address)

    def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        user = self.credentials.authenticate_password(
            email, password, principal_type=PRINCIPAL_CLIENT
        )
        client = self.store.get_portal_client_by_user(user.tenant_id, user.id)
        if client is None or client.status != "active":
            logger.info("portal_login_failed", reason="client_inactive", user_id=user.id)
            raise AccountInactiveError()
        try:
            self.store.touch_portal_client_login(client.tenant_id, client.id, utcnow())
        except Exception as exc:
            logger.warning("portal_last_login_update_failed", client_id=client.id, error=str(exc))
        return self.sessions.issue(user, user_agent=user_agent, ip_address=ip_address)

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.sessions.refresh(refresh_token, principal_type=PRINCIPAL_CLIENT)

    def logout(self, refresh_token: Optional[str]) -> bool:
        return self.sessions.logout_by_refresh_token(refresh_token or "")

    def profile(self, ctx: TenantContext) -> Tuple[PortalClient, Optional[Tenant]]:
        tenant_id = require_tenant_id(ctx)
        client = self.store.get_portal_client(tenant_id, ctx.client_id) if ctx.client_id else None
        if client is None or client.status != "active":
            raise NotFoundError("client not found")
        return client, self.store.get_tenant(tenant_id)
