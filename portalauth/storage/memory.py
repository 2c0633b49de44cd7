from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from portalauth.logging import get_logger
from portalauth.storage.errors import (
    ConstraintViolation,
    EmailAlreadyInTenant,
    EmailExists,
    InvitationExpired,
    InvitationNotFound,
    InvitationUsed,
    LastOwnerProtected,
    PendingInvitationExists,
    RoleInvalid,
    SlugExists,
)
from portalauth.storage.models import (
    PRINCIPAL_CLIENT,
    PRINCIPAL_STAFF,
    APIKey,
    ClientInvitation,
    Invitation,
    PortalClient,
    Session,
    Tenant,
    User,
    new_id,
    utcnow,
)


def _norm(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-memory principal store used by the test suite and local development.

    Every tenant-scoped method takes ``tenant_id`` and filters on it, mirroring
    the predicates the Postgres store sends to the database.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.portal_clients: Dict[str, PortalClient] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.client_invitations: Dict[str, ClientInvitation] = {}
        self.sessions: Dict[str, Session] = {}
        self.api_keys: Dict[str, APIKey] = {}
        # RLock so helpers can be called while a mutation already holds the lock
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    # tenants and users
    def create_tenant_with_owner(
        self,
        *,
        name: str,
        slug: str,
        owner_email: str,
        owner_name: str,
        password_hash: Optional[str],
    ) -> Tuple[Tenant, User]:
        email = _norm(owner_email)
        with self._data_lock:
            if any(t.slug == slug for t in self.tenants.values()):
                raise SlugExists(slug)
            if self.find_user_by_email_global(email) is not None:
                raise EmailExists()
            tenant = Tenant(id=new_id(), name=name, slug=slug)
            owner = User(
                id=new_id(),
                tenant_id=tenant.id,
                email=email,
                name=owner_name,
                role="owner",
                password_hash=password_hash,
            )
            self.tenants[tenant.id] = tenant
            self.users[owner.id] = owner
            return tenant, owner

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.tenant_id != tenant_id:
                return None
            return user

    def find_user_by_email_in_tenant(self, tenant_id: str, email: str) -> Optional[User]:
        email = _norm(email)
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.tenant_id == tenant_id and u.email == email
                ),
                None,
            )

    def find_user_by_email_global(
        self, email: str, *, principal_type: str = PRINCIPAL_STAFF
    ) -> Optional[User]:
        email = _norm(email)
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if u.email == email and u.principal_type == principal_type
            ]
            return min(matches, key=lambda u: u.created_at) if matches else None

    def find_user_by_oauth(self, provider: str, oauth_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.oauth_provider == provider and u.oauth_id == oauth_id
                ),
                None,
            )

    def list_users(
        self, tenant_id: str, *, principal_type: str = PRINCIPAL_STAFF
    ) -> List[User]:
        with self._data_lock:
            results = [
                u
                for u in self.users.values()
                if u.tenant_id == tenant_id and u.principal_type == principal_type
            ]
            return sorted(results, key=lambda u: u.created_at)

    def count_active_owners(self, tenant_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for u in self.users.values()
                if u.tenant_id == tenant_id
                and u.role == "owner"
                and u.is_active
                and u.principal_type == PRINCIPAL_STAFF
            )

    def _removes_last_owner(self, user: User) -> bool:
        return (
            user.role == "owner"
            and user.is_active
            and self.count_active_owners(user.tenant_id) <= 1
        )

    def update_user_role(self, tenant_id: str, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None:
                return None
            if role != "owner" and self._removes_last_owner(user):
                raise LastOwnerProtected()
            user.role = role
            user.updated_at = utcnow()
            return user

    def deactivate_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None:
                return None
            if self._removes_last_owner(user):
                raise LastOwnerProtected()
            user.is_active = False
            user.updated_at = utcnow()
            self.delete_user_sessions(tenant_id, user_id)
            return user

    def update_last_login(self, tenant_id: str, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is not None:
                user.last_login_at = when

    def update_password(self, tenant_id: str, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            return True

    def set_totp_secret(self, tenant_id: str, user_id: str, encrypted_secret: str) -> bool:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None:
                return False
            user.totp_secret = encrypted_secret
            user.totp_enabled = False
            user.updated_at = utcnow()
            return True

    def enable_totp(self, tenant_id: str, user_id: str, encrypted_codes: str) -> bool:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None or not user.totp_secret:
                return False
            user.totp_enabled = True
            user.recovery_codes = encrypted_codes
            user.recovery_codes_used = 0
            user.updated_at = utcnow()
            return True

    def disable_totp(self, tenant_id: str, user_id: str) -> bool:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None:
                return False
            user.totp_secret = None
            user.totp_enabled = False
            user.recovery_codes = None
            user.recovery_codes_used = 0
            user.updated_at = utcnow()
            return True

    def set_recovery_codes(self, tenant_id: str, user_id: str, encrypted_codes: str) -> bool:
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None:
                return False
            user.recovery_codes = encrypted_codes
            user.recovery_codes_used = 0
            user.updated_at = utcnow()
            return True

    def mark_recovery_code_used(
        self, tenant_id: str, user_id: str, expected_codes: str, encrypted_codes: str
    ) -> bool:
        """Swap the recovery blob only if it is still the one the caller decrypted."""
        with self._data_lock:
            user = self.get_user(tenant_id, user_id)
            if user is None or user.recovery_codes != expected_codes:
                return False
            user.recovery_codes = encrypted_codes
            user.recovery_codes_used += 1
            user.updated_at = utcnow()
            return True

    # sessions
    def create_session(
        self,
        tenant_id: str,
        user_id: str,
        refresh_token_hash: str,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        principal_type: str = PRINCIPAL_STAFF,
    ) -> Session:
        with self._data_lock:
            if self.get_user(tenant_id, user_id) is None:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                tenant_id=tenant_id,
                refresh_token_hash=refresh_token_hash,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_address=ip_address,
                principal_type=principal_type,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_hash == refresh_token_hash
                ),
                None,
            )

    def rotate_session(
        self,
        tenant_id: str,
        session_id: str,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.tenant_id != tenant_id:
                return False
            if sess.refresh_token_hash != old_hash:
                return False
            sess.refresh_token_hash = new_hash
            sess.expires_at = new_expires_at
            sess.last_used_at = utcnow()
            return True

    def delete_session(self, tenant_id: str, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.tenant_id != tenant_id:
                return False
            del self.sessions[session_id]
            return True

    def delete_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.get_session_by_refresh_hash(refresh_token_hash)
            if sess is not None:
                self.sessions.pop(sess.id, None)
            return sess

    def delete_user_session(self, tenant_id: str, user_id: str, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.tenant_id != tenant_id or sess.user_id != user_id:
                return False
            del self.sessions[session_id]
            return True

    def delete_user_sessions(self, tenant_id: str, user_id: str) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.tenant_id == tenant_id and sess.user_id == user_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def list_user_sessions(self, tenant_id: str, user_id: str) -> List[Session]:
        now = utcnow()
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.tenant_id == tenant_id and s.user_id == user_id and not s.is_expired(now)
            ]
            return sorted(results, key=lambda s: s.last_used_at, reverse=True)

    def cleanup_expired_sessions(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # staff invitations
    def create_invitation(
        self,
        *,
        tenant_id: str,
        email: str,
        role: str,
        token_hash: str,
        invited_by: str,
        expires_at: datetime,
    ) -> Invitation:
        if role == "owner":
            raise RoleInvalid(role)
        email = _norm(email)
        now = utcnow()
        with self._data_lock:
            if self.find_user_by_email_in_tenant(tenant_id, email) is not None:
                raise EmailAlreadyInTenant()
            # Login resolves staff by email alone, so the address must be free everywhere
            if self.find_user_by_email_global(email) is not None:
                raise EmailExists()
            for existing in list(self.invitations.values()):
                if (
                    existing.tenant_id == tenant_id
                    and existing.email == email
                    and existing.is_pending
                ):
                    if not existing.is_expired(now):
                        raise PendingInvitationExists()
                    # An expired pending row no longer blocks a fresh invitation
                    del self.invitations[existing.id]
            invitation = Invitation(
                id=new_id(),
                tenant_id=tenant_id,
                email=email,
                role=role,
                token_hash=token_hash,
                invited_by=invited_by,
                expires_at=expires_at,
            )
            self.invitations[invitation.id] = invitation
            return invitation

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]:
        with self._data_lock:
            return next(
                (i for i in self.invitations.values() if i.token_hash == token_hash), None
            )

    def get_invitation(self, tenant_id: str, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            if inv is None or inv.tenant_id != tenant_id:
                return None
            return inv

    def list_invitations(self, tenant_id: str) -> List[Invitation]:
        with self._data_lock:
            results = [i for i in self.invitations.values() if i.tenant_id == tenant_id]
            return sorted(results, key=lambda i: i.created_at, reverse=True)

    def delete_invitation(self, tenant_id: str, invitation_id: str) -> bool:
        with self._data_lock:
            if self.get_invitation(tenant_id, invitation_id) is None:
                return False
            del self.invitations[invitation_id]
            return True

    def consume_invitation(
        self,
        token_hash: str,
        *,
        name: str,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Invitation, User]:
        now = now or utcnow()
        with self._data_lock:
            invitation = self.get_invitation_by_token_hash(token_hash)
            if invitation is None:
                raise InvitationNotFound()
            if invitation.accepted_at is not None:
                raise InvitationUsed()
            if invitation.is_expired(now):
                raise InvitationExpired()
            if self.find_user_by_email_global(invitation.email) is not None:
                raise EmailExists()
            user = User(
                id=new_id(),
                tenant_id=invitation.tenant_id,
                email=invitation.email,
                name=name,
                role=invitation.role,
                password_hash=password_hash,
                email_verified=True,
            )
            self.users[user.id] = user
            invitation.accepted_at = now
            return invitation, user

    # portal clients
    def create_portal_client(
        self,
        *,
        tenant_id: str,
        email: str,
        name: str,
        company_name: Optional[str] = None,
        language: str = "de",
    ) -> PortalClient:
        email = _norm(email)
        with self._data_lock:
            taken = any(c.email == email for c in self.portal_clients.values())
            if taken or self.find_user_by_email_in_tenant(tenant_id, email):
                raise EmailExists()
            client = PortalClient(
                id=new_id(),
                tenant_id=tenant_id,
                email=email,
                name=name,
                company_name=company_name,
                language=language,
            )
            self.portal_clients[client.id] = client
            return client

    def get_portal_client(self, tenant_id: str, client_id: str) -> Optional[PortalClient]:
        with self._data_lock:
            client = self.portal_clients.get(client_id)
            if client is None or client.tenant_id != tenant_id:
                return None
            return client

    def get_portal_client_by_user(self, tenant_id: str, user_id: str) -> Optional[PortalClient]:
        with self._data_lock:
            return next(
                (
                    c
                    for c in self.portal_clients.values()
                    if c.tenant_id == tenant_id and c.user_id == user_id
                ),
                None,
            )

    def list_portal_clients(self, tenant_id: str) -> List[PortalClient]:
        with self._data_lock:
            results = [c for c in self.portal_clients.values() if c.tenant_id == tenant_id]
            return sorted(results, key=lambda c: c.created_at, reverse=True)

    def deactivate_portal_client(self, tenant_id: str, client_id: str) -> Optional[PortalClient]:
        with self._data_lock:
            client = self.get_portal_client(tenant_id, client_id)
            if client is None:
                return None
            client.status = "inactive"
            client.updated_at = utcnow()
            if client.user_id:
                user = self.get_user(tenant_id, client.user_id)
                if user is not None:
                    user.is_active = False
                self.delete_user_sessions(tenant_id, client.user_id)
            return client

    def touch_portal_client_login(self, tenant_id: str, client_id: str, when: datetime) -> None:
        with self._data_lock:
            client = self.get_portal_client(tenant_id, client_id)
            if client is not None:
                client.last_login_at = when

    def create_client_invitation(
        self,
        *,
        tenant_id: str,
        client_id: str,
        email: str,
        token_hash: str,
        invited_by: str,
        expires_at: datetime,
    ) -> ClientInvitation:
        with self._data_lock:
            client = self.get_portal_client(tenant_id, client_id)
            if client is None:
                raise ConstraintViolation("client does not exist", {"client_id": client_id})
            # Only the newest unused link stays valid
            stale = [
                i.id
                for i in self.client_invitations.values()
                if i.tenant_id == tenant_id and i.client_id == client_id and i.used_at is None
            ]
            for inv_id in stale:
                self.client_invitations.pop(inv_id, None)
            invitation = ClientInvitation(
                id=new_id(),
                tenant_id=tenant_id,
                client_id=client_id,
                email=_norm(email),
                token_hash=token_hash,
                invited_by=invited_by,
                expires_at=expires_at,
            )
            self.client_invitations[invitation.id] = invitation
            client.invited_at = invitation.created_at
            client.updated_at = utcnow()
            return invitation

    def get_client_invitation_by_token_hash(self, token_hash: str) -> Optional[ClientInvitation]:
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.client_invitations.values()
                    if i.token_hash == token_hash
                ),
                None,
            )

    def consume_client_invitation(
        self,
        token_hash: str,
        *,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Tuple[ClientInvitation, PortalClient, User]:
        now = now or utcnow()
        with self._data_lock:
            invitation = self.get_client_invitation_by_token_hash(token_hash)
            if invitation is None:
                raise InvitationNotFound()
            if invitation.used_at is not None:
                raise InvitationUsed()
            if invitation.is_expired(now):
                raise InvitationExpired()
            client = self.get_portal_client(invitation.tenant_id, invitation.client_id)
            if client is None or client.status == "inactive":
                raise InvitationNotFound()
            if client.user_id is not None:
                raise InvitationUsed()
            if self.find_user_by_email_global(client.email, principal_type=PRINCIPAL_CLIENT):
                raise EmailExists()
            user = User(
                id=new_id(),
                tenant_id=invitation.tenant_id,
                email=client.email,
                name=client.name,
                role="viewer",
                password_hash=password_hash,
                email_verified=True,
                principal_type=PRINCIPAL_CLIENT,
            )
            self.users[user.id] = user
            invitation.used_at = now
            invitation.accepted_at = now
            client.user_id = user.id
            client.status = "active"
            client.activated_at = now
            client.updated_at = now
            return invitation, client, user

    # api keys
    def create_api_key(
        self,
        *,
        tenant_id: str,
        user_id: str,
        name: str,
        key_hash: str,
        key_prefix: str,
        scopes: List[str],
        expires_at: Optional[datetime] = None,
    ) -> APIKey:
        with self._data_lock:
            if self.get_user(tenant_id, user_id) is None:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            key = APIKey(
                id=new_id(),
                user_id=user_id,
                tenant_id=tenant_id,
                name=name,
                key_hash=key_hash,
                key_prefix=key_prefix,
                scopes=list(scopes),
                expires_at=expires_at,
            )
            self.api_keys[key.id] = key
            return key

    def get_api_key_by_hash(self, key_hash: str) -> Optional[APIKey]:
        with self._data_lock:
            return next((k for k in self.api_keys.values() if k.key_hash == key_hash), None)

    def get_api_key(self, tenant_id: str, key_id: str) -> Optional[APIKey]:
        with self._data_lock:
            key = self.api_keys.get(key_id)
            if key is None or key.tenant_id != tenant_id:
                return None
            return key

    def list_api_keys(self, tenant_id: str, user_id: str) -> List[APIKey]:
        with self._data_lock:
            results = [
                k
                for k in self.api_keys.values()
                if k.tenant_id == tenant_id and k.user_id == user_id
            ]
            return sorted(results, key=lambda k: k.created_at, reverse=True)

    def revoke_api_key(self, tenant_id: str, key_id: str) -> bool:
        with self._data_lock:
            key = self.get_api_key(tenant_id, key_id)
            if key is None:
                return False
            key.is_active = False
            return True

    def touch_api_key(self, tenant_id: str, key_id: str, when: datetime) -> None:
        with self._data_lock:
            key = self.get_api_key(tenant_id, key_id)
            if key is not None:
                key.last_used_at = when

