from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.crypto import TokenSigner, generate_token, hash_token
from portalauth.service.errors import InvalidTokenError, NotFoundError, TokenExpiredError
from portalauth.service.tenant_context import TenantContext, require_tenant_id
from portalauth.storage.models import (
    PRINCIPAL_CLIENT,
    PRINCIPAL_STAFF,
    PortalClient,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_PORTAL = "portal"


class SessionStore(Protocol):
    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]: ...

    def get_portal_client_by_user(self, tenant_id: str, user_id: str) -> Optional[PortalClient]: ...

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
    ) -> Session: ...

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def rotate_session(
        self,
        tenant_id: str,
        session_id: str,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
    ) -> bool: ...

    def delete_session(self, tenant_id: str, session_id: str) -> bool: ...

    def delete_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]: ...

    def delete_user_session(self, tenant_id: str, user_id: str, session_id: str) -> bool: ...

    def delete_user_sessions(self, tenant_id: str, user_id: str) -> int: ...

    def list_user_sessions(self, tenant_id: str, user_id: str) -> List[Session]: ...

    def cleanup_expired_sessions(self) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    session: Session
    user: User

    def as_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.expires_in,
        }


class SessionService:
    """Issues access/refresh pairs backed by server-side session rows.

    Access tokens are self-contained and verified without touching storage.
    Refresh tokens are opaque; only their SHA-256 digest is persisted, and every
    refresh swaps that digest for a new one, so a rotated-out token can never
    be replayed.
    """

    def __init__(self, store: SessionStore, settings: Settings, *, signer: Optional[TokenSigner] = None) -> None:
        self.store = store
        self.settings = settings
        self.signer = signer or TokenSigner(settings.jwt_secret, settings.jwt_issuer)
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl_minutes = settings.refresh_token_ttl_minutes

    def _mint_access(self, user: User, session: Session) -> str:
        now = int(time.time())
        claims: Dict[str, Any] = {
            "sub": user.id,
            "tenant_id": user.tenant_id,
            "role": user.role,
            "session_id": session.id,
            "typ": TOKEN_TYPE_ACCESS,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(self.access_ttl.total_seconds()),
        }
        if user.principal_type == PRINCIPAL_CLIENT:
            client = self.store.get_portal_client_by_user(user.tenant_id, user.id)
            if client is None:
                raise InvalidTokenError("portal client not found")
            claims["typ"] = TOKEN_TYPE_PORTAL
            claims["client_id"] = client.id
        return self.signer.encode(claims)

    def _pair(self, user: User, session: Session, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=self._mint_access(user, session),
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=self.refresh_ttl_minutes * 60,
            session=session,
            user=user,
        )

    def issue(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        refresh_token = generate_token()
        session = self.store.create_session(
            user.tenant_id,
            user.id,
            hash_token(refresh_token),
            self.refresh_ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
            principal_type=user.principal_type,
        )
        logger.info("session_issued", session_id=session.id, user_id=user.id, tenant_id=user.tenant_id)
        return self._pair(user, session, refresh_token)

    def validate_access(self, token: str, *, expected_type: str = TOKEN_TYPE_ACCESS) -> Dict[str, Any]:
        claims = self.signer.decode(token)
        if claims.get("typ") != expected_type:
            raise InvalidTokenError("token not valid for this audience")
        if not claims.get("sub") or not claims.get("tenant_id"):
            raise InvalidTokenError("invalid token")
        return claims

    def refresh(
        self,
        refresh_token: str,
        *,
        principal_type: str = PRINCIPAL_STAFF,
    ) -> TokenPair:
        if not refresh_token:
            raise InvalidTokenError("invalid refresh token")
        old_hash = hash_token(refresh_token)
        session = self.store.get_session_by_refresh_hash(old_hash)
        if session is None or session.principal_type != principal_type:
            raise InvalidTokenError("invalid refresh token")
        if session.is_expired():
            self.store.delete_session(session.tenant_id, session.id)
            logger.info("refresh_expired", session_id=session.id)
            raise TokenExpiredError("refresh token has expired")
        user = self.store.get_user(session.tenant_id, session.user_id)
        if user is None or not user.is_active:
            self.store.delete_session(session.tenant_id, session.id)
            raise InvalidTokenError("invalid refresh token")

        new_token = generate_token()
        new_expires_at = utcnow() + timedelta(minutes=self.refresh_ttl_minutes)
        if not self.store.rotate_session(
            session.tenant_id, session.id, old_hash, hash_token(new_token), new_expires_at
        ):
            # A concurrent refresh already rotated this token
            logger.warning("refresh_rotation_lost", session_id=session.id)
            raise InvalidTokenError("invalid refresh token")
        session.refresh_token_hash = hash_token(new_token)
        session.expires_at = new_expires_at
        return self._pair(user, session, new_token)

    def logout(self, ctx: TenantContext) -> bool:
        tenant_id = require_tenant_id(ctx)
        if not ctx.session_id or not ctx.user_id:
            return False
        return self.store.delete_user_session(tenant_id, ctx.user_id, ctx.session_id)

    def logout_by_refresh_token(self, refresh_token: str) -> bool:
        if not refresh_token:
            return False
        return self.store.delete_session_by_refresh_hash(hash_token(refresh_token)) is not None

    def logout_all(self, ctx: TenantContext) -> int:
        """Global logout. Access tokens already issued stay valid until they expire."""
        tenant_id = require_tenant_id(ctx)
        removed = self.store.delete_user_sessions(tenant_id, ctx.user_id)
        logger.info("sessions_revoked_all", user_id=ctx.user_id, count=removed)
        return removed

    def list_sessions(self, ctx: TenantContext) -> List[Session]:
        tenant_id = require_tenant_id(ctx)
        return self.store.list_user_sessions(tenant_id, ctx.user_id)

    def terminate_session(self, ctx: TenantContext, session_id: str) -> None:
        tenant_id = require_tenant_id(ctx)
        if not self.store.delete_user_session(tenant_id, ctx.user_id, session_id):
            raise NotFoundError("session not found")

    def cleanup_expired(self) -> int:
        removed = self.store.cleanup_expired_sessions()
        if removed:
            logger.info("expired_sessions_removed", count=removed)
        return removed
