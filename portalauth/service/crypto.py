from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from portalauth.config import MIN_JWT_SECRET_BYTES
from portalauth.logging import get_logger
from portalauth.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

TOKEN_BYTES = 32


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    """Opaque random token, base64url with padding (refresh tokens, challenges)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(nbytes)).decode("ascii")


def generate_raw_token(nbytes: int = TOKEN_BYTES) -> str:
    """Random token in unpadded base64url, safe to embed in a URL path."""
    return _b64url(secrets.token_bytes(nbytes))


def hash_token(raw: str) -> str:
    """Stored form of any bearer secret: SHA-256 hex digest."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class PasswordHashing:
    """Argon2id hashing with deploy-time cost parameters.

    Hashes are self-describing, so hashes minted under older parameters still
    verify; ``needs_rehash`` tells the caller when to upgrade them.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost_kib: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when no real hash exists so misses cost the same as hits
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return False

    def dummy_verify(self, password: str) -> None:
        self.verify(self._dummy_hash, password)


class TokenSigner:
    """HS256 signer for self-contained access tokens."""

    def __init__(self, secret: str, issuer: str) -> None:
        if len(secret.encode("utf-8")) < MIN_JWT_SECRET_BYTES:
            raise ValueError(f"signing secret must be at least {MIN_JWT_SECRET_BYTES} bytes")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer

    def _sign(self, signing_input: str) -> str:
        return _b64url(hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest())

    def encode(self, claims: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _b64url(json.dumps(header, separators=(",", ":")).encode())
        payload = {**claims, "iss": self.issuer}
        payload_enc = _b64url(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, now: Optional[float] = None) -> dict[str, Any]:
        """Verify signature, issuer and expiry; return the claims.

        Raises ``TokenExpiredError`` for a well-formed token past ``exp`` and
        ``InvalidTokenError`` for everything else.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token") from None

        try:
            header = json.loads(_b64url_decode(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token") from None
        if not isinstance(header, dict):
            raise InvalidTokenError("malformed token")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("invalid token")

        try:
            payload = json.loads(_b64url_decode(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token") from None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            raise InvalidTokenError("invalid token")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token") from None
        if (now if now is not None else time.time()) >= exp_ts:
            raise TokenExpiredError("token has expired")
        return payload
