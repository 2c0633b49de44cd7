from __future__ import annotations

import asyncio
import base64
import secrets
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol, Set, Tuple

from portalauth.logging import get_logger
from portalauth.service.crypto import hash_token
from portalauth.service.errors import (
    AccountInactiveError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    ValidationError,
)
from portalauth.service.roles import has_minimum_role
from portalauth.service.tenant_context import TenantContext, require_tenant_id
from portalauth.storage.models import APIKey, User, utcnow

logger = get_logger(__name__)

KEY_PREFIX = "abp_"
KEY_RANDOM_BYTES = 32
KEY_PREFIX_LENGTH = 8
MAX_KEY_NAME_LENGTH = 100
MAX_EXPIRY_DAYS = 365
TOUCH_TIMEOUT_SECONDS = 2.0

# Role given to requests authenticated by an API key
API_KEY_ROLE = "member"

VALID_SCOPES = (
    "read:all",
    "write:all",
    "read:users",
    "write:users",
    "read:invitations",
    "write:invitations",
    "read:audit",
    "read:sessions",
    "write:sessions",
)


class APIKeyStore(Protocol):
    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]: ...

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
    ) -> APIKey: ...

    def get_api_key_by_hash(self, key_hash: str) -> Optional[APIKey]: ...

    def get_api_key(self, tenant_id: str, key_id: str) -> Optional[APIKey]: ...

    def list_api_keys(self, tenant_id: str, user_id: str) -> List[APIKey]: ...

    def revoke_api_key(self, tenant_id: str, key_id: str) -> bool: ...

    def touch_api_key(self, tenant_id: str, key_id: str, when: datetime) -> None: ...


def generate_api_key() -> Tuple[str, str, str]:
    """Return ``(raw_key, key_hash, key_prefix)`` for a new key."""
    random_part = base64.urlsafe_b64encode(secrets.token_bytes(KEY_RANDOM_BYTES)).rstrip(b"=")
    raw = KEY_PREFIX + random_part.decode("ascii")
    return raw, hash_token(raw), raw[:KEY_PREFIX_LENGTH]


def has_scope(scopes: Iterable[str], required: str) -> bool:
    granted = set(scopes or ())
    if required in granted or "write:all" in granted:
        return True
    return required.startswith("read:") and "read:all" in granted


def validate_scopes(scopes: Iterable[str]) -> List[str]:
    cleaned: List[str] = []
    for scope in scopes or ():
        scope = (scope or "").strip()
        if scope and scope not in cleaned:
            cleaned.append(scope)
    if not cleaned:
        raise ValidationError("at least one scope is required", detail={"scopes": "required"})
    unknown = [s for s in cleaned if s not in VALID_SCOPES]
    if unknown:
        raise ValidationError(
            "unknown scopes: " + ", ".join(unknown),
            detail={"scopes": "valid scopes are " + ", ".join(VALID_SCOPES)},
        )
    return cleaned


class APIKeyService:
    """Long-lived programmatic credentials stored only as SHA-256 digests."""

    def __init__(self, store: APIKeyStore) -> None:
        self.store = store
        # Strong references keep detached touch tasks alive until they finish
        self._background: Set[asyncio.Task] = set()

    def create(
        self,
        ctx: TenantContext,
        name: str,
        scopes: Iterable[str],
        *,
        expires_in_days: Optional[int] = None,
    ) -> Tuple[APIKey, str]:
        tenant_id = require_tenant_id(ctx)
        if ctx.is_api_key:
            raise ForbiddenError("api keys cannot create api keys")
        name = (name or "").strip()
        if not name or len(name) > MAX_KEY_NAME_LENGTH:
            raise ValidationError("name must be 1-100 characters", detail={"name": "invalid"})
        cleaned = validate_scopes(scopes)
        expires_at = None
        if expires_in_days is not None:
            if not 1 <= expires_in_days <= MAX_EXPIRY_DAYS:
                raise ValidationError(
                    "expires_in_days must be between 1 and 365",
                    detail={"expires_in_days": "out of range"},
                )
            expires_at = utcnow() + timedelta(days=expires_in_days)
        raw, key_hash, key_prefix = generate_api_key()
        key = self.store.create_api_key(
            tenant_id=tenant_id,
            user_id=ctx.user_id,
            name=name,
            key_hash=key_hash,
            key_prefix=key_prefix,
            scopes=cleaned,
            expires_at=expires_at,
        )
        logger.info("api_key_created", api_key_id=key.id, tenant_id=tenant_id, scopes=cleaned)
        return key, raw

    def validate(self, raw_key: str) -> Tuple[APIKey, User]:
        """Resolve a presented key to its record and owner, or raise.

        Checks run in a fixed order: length, lookup, active flag, expiry,
        owner state.
        """
        if not raw_key or len(raw_key) < KEY_PREFIX_LENGTH:
            raise InvalidTokenError("invalid api key")
        key = self.store.get_api_key_by_hash(hash_token(raw_key))
        if key is None:
            raise InvalidTokenError("invalid api key")
        if not key.is_active:
            raise AccountInactiveError("api key is inactive")
        if key.is_expired():
            raise TokenExpiredError("api key has expired")
        user = self.store.get_user(key.tenant_id, key.user_id)
        if user is None or not user.is_active:
            raise AccountInactiveError("api key is inactive")
        return key, user

    def touch_later(self, key: APIKey) -> None:
        """Record usage without holding up the request; failures are only logged."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._touch_now(key.tenant_id, key.id)
            return
        task = loop.create_task(self._touch(key.tenant_id, key.id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch(self, tenant_id: str, key_id: str) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.store.touch_api_key, tenant_id, key_id, utcnow()),
                timeout=TOUCH_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            logger.warning("api_key_touch_failed", api_key_id=key_id, error=str(exc))

    def _touch_now(self, tenant_id: str, key_id: str) -> None:
        try:
            self.store.touch_api_key(tenant_id, key_id, utcnow())
        except Exception as exc:
            logger.warning("api_key_touch_failed", api_key_id=key_id, error=str(exc))

    def list(self, ctx: TenantContext) -> List[APIKey]:
        tenant_id = require_tenant_id(ctx)
        return self.store.list_api_keys(tenant_id, ctx.user_id)

    def get(self, ctx: TenantContext, key_id: str) -> APIKey:
        """Tenant-scoped fetch; keys of other tenants look exactly like missing ones."""
        tenant_id = require_tenant_id(ctx)
        key = self.store.get_api_key(tenant_id, key_id)
        if key is None:
            raise NotFoundError("api key not found")
        if key.user_id != ctx.user_id and not has_minimum_role(ctx.role, "admin"):
            raise NotFoundError("api key not found")
        return key

    def revoke(self, ctx: TenantContext, key_id: str) -> None:
        key = self.get(ctx, key_id)
        if ctx.is_api_key:
            raise ForbiddenError("api keys cannot revoke api keys")
        self.store.revoke_api_key(key.tenant_id, key.id)
        logger.info("api_key_revoked", api_key_id=key.id, tenant_id=key.tenant_id)
