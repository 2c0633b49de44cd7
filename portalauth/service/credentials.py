from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from portalauth.config import PasswordPolicy, Settings
from portalauth.logging import get_logger
from portalauth.service.crypto import PasswordHashing, generate_token, hash_token
from portalauth.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    PasswordMissingDigit,
    PasswordMissingLower,
    PasswordMissingSpecial,
    PasswordMissingUpper,
    PasswordTooShort,
    ServerError,
    ValidationError,
)
from portalauth.service.tenant_context import TenantContext, require_tenant_id
from portalauth.storage.models import PRINCIPAL_STAFF, Tenant, User, utcnow

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SLUG_PATTERN = re.compile(r"^[a-z0-9](-?[a-z0-9])*$")
MAX_SLUG_LENGTH = 100

TOTP_SECRET_BYTES = 20
TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_SKEW = 1

RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_LENGTH = 10
RECOVERY_CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"

LOGIN_CHALLENGE_TTL_SECONDS = 5 * 60


class CredentialStore(Protocol):
    def create_tenant_with_owner(
        self,
        *,
        name: str,
        slug: str,
        owner_email: str,
        owner_name: str,
        password_hash: Optional[str],
    ) -> Tuple[Tenant, User]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]: ...

    def find_user_by_email_global(
        self, email: str, *, principal_type: str = PRINCIPAL_STAFF
    ) -> Optional[User]: ...

    def update_last_login(self, tenant_id: str, user_id: str, when: datetime) -> None: ...

    def update_password(self, tenant_id: str, user_id: str, password_hash: str) -> bool: ...

    def set_totp_secret(self, tenant_id: str, user_id: str, encrypted_secret: str) -> bool: ...

    def enable_totp(self, tenant_id: str, user_id: str, encrypted_codes: str) -> bool: ...

    def disable_totp(self, tenant_id: str, user_id: str) -> bool: ...

    def set_recovery_codes(self, tenant_id: str, user_id: str, encrypted_codes: str) -> bool: ...

    def mark_recovery_code_used(
        self, tenant_id: str, user_id: str, expected_codes: str, encrypted_codes: str
    ) -> bool: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if not normalized or len(normalized) > 254 or not EMAIL_PATTERN.match(normalized):
        raise ValidationError("invalid email address", detail={"email": "invalid email format"})
    return normalized


def validate_slug(slug: str) -> str:
    if not slug or len(slug) > MAX_SLUG_LENGTH or not SLUG_PATTERN.match(slug):
        raise ValidationError(
            "invalid tenant slug",
            detail={"tenant_slug": "lowercase letters, digits and single hyphens only"},
        )
    return slug


def validate_password(password: str, policy: PasswordPolicy) -> None:
    """Raise the specific policy error for the first unmet rule."""
    if len(password or "") < policy.min_length:
        raise PasswordTooShort(f"password must be at least {policy.min_length} characters")
    if policy.require_upper and not any(c.isupper() for c in password):
        raise PasswordMissingUpper("password must contain an uppercase letter")
    if policy.require_lower and not any(c.islower() for c in password):
        raise PasswordMissingLower("password must contain a lowercase letter")
    if policy.require_digit and not any(c.isdigit() for c in password):
        raise PasswordMissingDigit("password must contain a digit")
    if policy.require_special and all(c.isalnum() for c in password):
        raise PasswordMissingSpecial("password must contain a special character")


class SecretBox:
    """Fernet encryption for second-factor material at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("encryption key material is required")
        self._fernet = Fernet(
            base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        )

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            logger.error("mfa_decrypt_failed")
            raise ServerError("unable to read second-factor data") from exc


# TOTP (RFC 6238, SHA-1)


def generate_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(TOTP_SECRET_BYTES)).decode("ascii").rstrip("=")


def totp_code(secret: str, timestamp: float, *, period: int = TOTP_PERIOD, digits: int = TOTP_DIGITS) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, casefold=True)
    counter = int(timestamp // period).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(secret: str, code: str, *, now: Optional[float] = None, skew: int = TOTP_SKEW) -> bool:
    code = (code or "").strip().replace(" ", "")
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    ts = now if now is not None else time.time()
    matched = False
    for step in range(-skew, skew + 1):
        # No early exit: every window is compared
        if hmac.compare_digest(totp_code(secret, ts + step * TOTP_PERIOD), code):
            matched = True
    return matched


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        }
    )
    return f"otpauth://totp/{label}?{query}"


# Recovery codes


def _normalize_recovery_code(code: str) -> str:
    return (code or "").upper().replace("-", "").replace(" ", "").strip()


def format_recovery_code(raw: str) -> str:
    return f"{raw[0:4]}-{raw[4:8]}-{raw[8:]}"


def generate_recovery_codes(count: int = RECOVERY_CODE_COUNT) -> Tuple[List[str], str]:
    """Return display-formatted codes and the JSON blob to encrypt."""
    raw_codes = [
        "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))
        for _ in range(count)
    ]
    blob = json.dumps({"codes": [{"code": c, "used": False} for c in raw_codes]})
    return [format_recovery_code(c) for c in raw_codes], blob


def redeem_recovery_code(blob: str, code: str) -> Optional[str]:
    """Mark ``code`` used; return the updated blob, or None when it does not match."""
    candidate = _normalize_recovery_code(code)
    if len(candidate) != RECOVERY_CODE_LENGTH:
        return None
    data = json.loads(blob)
    hit = None
    for entry in data.get("codes", []):
        if hmac.compare_digest(entry["code"], candidate) and not entry.get("used"):
            hit = entry
    if hit is None:
        return None
    hit["used"] = True
    return json.dumps(data)


def remaining_recovery_codes(blob: Optional[str]) -> int:
    if not blob:
        return 0
    data = json.loads(blob)
    return sum(1 for entry in data.get("codes", []) if not entry.get("used"))


@dataclass
class LoginChallenge:
    token: str
    expires_at: datetime


class CredentialService:
    """Registration, password authentication and second-factor management."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        cache: Any = None,
        hasher: Optional[PasswordHashing] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.policy = settings.password_policy()
        self.hasher = hasher or PasswordHashing(
            time_cost=settings.argon2_time_cost,
            memory_cost_kib=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
        )
        self.secrets = SecretBox(settings.mfa_encryption_key or settings.jwt_secret)
        # In-memory challenge fallback when no cache tier is configured
        self._state_lock = threading.Lock()
        self._challenges: Dict[str, Tuple[str, str, datetime]] = {}

    def hash_password(self, password: str) -> str:
        validate_password(password, self.policy)
        return self.hasher.hash(password)

    def register_tenant(
        self,
        *,
        tenant_name: str,
        tenant_slug: str,
        email: str,
        password: str,
        owner_name: Optional[str] = None,
    ) -> Tuple[Tenant, User]:
        tenant_name = (tenant_name or "").strip()
        if not tenant_name:
            raise ValidationError("tenant name is required", detail={"tenant_name": "required"})
        slug = validate_slug((tenant_slug or "").strip())
        normalized = validate_email(email)
        password_hash = self.hash_password(password)
        name = (owner_name or "").strip() or normalized.split("@", 1)[0]
        tenant, owner = self.store.create_tenant_with_owner(
            name=tenant_name,
            slug=slug,
            owner_email=normalized,
            owner_name=name,
            password_hash=password_hash,
        )
        logger.info("tenant_registered", tenant_id=tenant.id, user_id=owner.id)
        return tenant, owner

    def authenticate_password(
        self, email: str, password: str, *, principal_type: str = PRINCIPAL_STAFF
    ) -> User:
        """Resolve an email/password pair to an active user.

        Unknown emails and OAuth-only accounts still pay for one hash
        verification so response timing does not reveal which case applied.
        """
        user = self.store.find_user_by_email_global(
            normalize_email(email), principal_type=principal_type
        )
        if user is None:
            self.hasher.dummy_verify(password or "")
            logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        if not user.is_active:
            logger.info("login_failed", reason="inactive", user_id=user.id)
            raise AccountInactiveError()
        if user.password_hash is None:
            self.hasher.dummy_verify(password or "")
            logger.info("login_failed", reason="oauth_only", user_id=user.id)
            raise InvalidCredentialsError()
        if not self.hasher.verify(user.password_hash, password or ""):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()

        tenant = self.store.get_tenant(user.tenant_id)
        if tenant is None or tenant.status != "active":
            logger.info("login_failed", reason="tenant_inactive", user_id=user.id)
            raise AccountInactiveError("tenant is not active")

        self._maybe_upgrade_hash(user, password)
        try:
            self.store.update_last_login(user.tenant_id, user.id, utcnow())
        except Exception as exc:
            logger.warning("last_login_update_failed", user_id=user.id, error=str(exc))
        return user

    def _maybe_upgrade_hash(self, user: User, password: str) -> None:
        if not user.password_hash or not self.hasher.needs_rehash(user.password_hash):
            return
        try:
            new_hash = self.hasher.hash(password)
            if self.store.update_password(user.tenant_id, user.id, new_hash):
                user.password_hash = new_hash
                logger.info("password_hash_upgraded", user_id=user.id)
        except Exception as exc:
            logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))

    def change_password(self, ctx: TenantContext, current_password: str, new_password: str) -> None:
        user = self._load_user(ctx)
        if user.password_hash is None or not self.hasher.verify(
            user.password_hash, current_password or ""
        ):
            raise InvalidCredentialsError("current password is incorrect")
        password_hash = self.hash_password(new_password)
        self.store.update_password(user.tenant_id, user.id, password_hash)
        logger.info("password_changed", user_id=user.id)

    def _load_user(self, ctx: TenantContext) -> User:
        tenant_id = require_tenant_id(ctx)
        user = self.store.get_user(tenant_id, ctx.user_id) if ctx.user_id else None
        if user is None or not user.is_active:
            raise AuthenticationError("user not found")
        return user

    def _confirm_password(self, user: User, password: str) -> None:
        if user.password_hash is None or not self.hasher.verify(user.password_hash, password or ""):
            raise InvalidCredentialsError("password is incorrect")

    # second factor
    def verify_second_factor(self, user: User, code: str) -> bool:
        """Accept a current TOTP code, or burn one unused recovery code."""
        if not user.totp_enabled or not user.totp_secret:
            return False
        secret = self.secrets.decrypt(user.totp_secret)
        if verify_totp(secret, code):
            return True
        if not user.recovery_codes:
            return False
        updated = redeem_recovery_code(self.secrets.decrypt(user.recovery_codes), code)
        if updated is None:
            return False
        encrypted = self.secrets.encrypt(updated)
        if not self.store.mark_recovery_code_used(
            user.tenant_id, user.id, user.recovery_codes, encrypted
        ):
            # Lost a race with another redemption of the same blob
            return False
        user.recovery_codes = encrypted
        logger.info("recovery_code_used", user_id=user.id, remaining=remaining_recovery_codes(updated))
        return True

    def setup_totp(self, ctx: TenantContext) -> Tuple[str, str]:
        user = self._load_user(ctx)
        if user.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = generate_totp_secret()
        self.store.set_totp_secret(user.tenant_id, user.id, self.secrets.encrypt(secret))
        return secret, provisioning_uri(secret, user.email, self.settings.totp_issuer)

    def enable_totp(self, ctx: TenantContext, code: str) -> List[str]:
        user = self._load_user(ctx)
        if user.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not user.totp_secret:
            raise BadRequestError("run two-factor setup first")
        if not verify_totp(self.secrets.decrypt(user.totp_secret), code):
            raise ValidationError("invalid verification code", detail={"code": "invalid"})
        codes, blob = generate_recovery_codes()
        self.store.enable_totp(user.tenant_id, user.id, self.secrets.encrypt(blob))
        logger.info("totp_enabled", user_id=user.id)
        return codes

    def disable_totp(self, ctx: TenantContext, password: str) -> None:
        user = self._load_user(ctx)
        if not user.totp_enabled:
            raise BadRequestError("two-factor authentication is not enabled")
        self._confirm_password(user, password)
        self.store.disable_totp(user.tenant_id, user.id)
        logger.info("totp_disabled", user_id=user.id)

    def regenerate_recovery_codes(self, ctx: TenantContext, password: str) -> List[str]:
        user = self._load_user(ctx)
        if not user.totp_enabled:
            raise BadRequestError("two-factor authentication is not enabled")
        self._confirm_password(user, password)
        codes, blob = generate_recovery_codes()
        self.store.set_recovery_codes(user.tenant_id, user.id, self.secrets.encrypt(blob))
        logger.info("recovery_codes_regenerated", user_id=user.id)
        return codes

    def totp_status(self, ctx: TenantContext) -> Dict[str, Any]:
        user = self._load_user(ctx)
        remaining = 0
        if user.totp_enabled and user.recovery_codes:
            remaining = remaining_recovery_codes(self.secrets.decrypt(user.recovery_codes))
        return {
            "enabled": user.totp_enabled,
            "recovery_codes_remaining": remaining,
            "recovery_codes_used": user.recovery_codes_used,
        }

    # login challenge
    async def create_login_challenge(self, user: User) -> LoginChallenge:
        token = generate_token()
        expires_at = utcnow() + timedelta(seconds=LOGIN_CHALLENGE_TTL_SECONDS)
        digest = hash_token(token)
        if self.cache is not None:
            await self.cache.set_login_challenge(
                digest,
                {"user_id": user.id, "tenant_id": user.tenant_id},
                LOGIN_CHALLENGE_TTL_SECONDS,
            )
        else:
            with self._state_lock:
                now = utcnow()
                for key in [k for k, v in self._challenges.items() if v[2] <= now]:
                    del self._challenges[key]
                self._challenges[digest] = (user.id, user.tenant_id, expires_at)
        return LoginChallenge(token=token, expires_at=expires_at)

    async def _pop_challenge(self, token: str) -> Optional[Tuple[str, str]]:
        digest = hash_token(token or "")
        if self.cache is not None:
            payload = await self.cache.pop_login_challenge(digest)
            if not payload:
                return None
            return payload.get("user_id"), payload.get("tenant_id")
        with self._state_lock:
            entry = self._challenges.pop(digest, None)
        if entry is None or entry[2] <= utcnow():
            return None
        return entry[0], entry[1]

    async def complete_login_challenge(self, challenge_token: str, code: str) -> User:
        """Redeem a single-use challenge with a TOTP or recovery code."""
        resolved = await self._pop_challenge(challenge_token)
        if resolved is None:
            raise InvalidTokenError("challenge is invalid or has expired")
        user_id, tenant_id = resolved
        user = self.store.get_user(tenant_id, user_id) if user_id and tenant_id else None
        if user is None:
            raise InvalidTokenError("challenge is invalid or has expired")
        if not user.is_active:
            raise AccountInactiveError()
        if not self.verify_second_factor(user, code):
            logger.info("login_failed", reason="bad_second_factor", user_id=user.id)
            raise InvalidCredentialsError("invalid verification code")
        return user
