"""Unit tests for password hashing, token signing and token helpers."""

import time

import pytest

from portalauth.service.crypto import (
    PasswordHashing,
    TokenSigner,
    constant_time_equals,
    generate_raw_token,
    generate_token,
    hash_token,
)
from portalauth.service.errors import InvalidTokenError, TokenExpiredError

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def hasher():
    return PasswordHashing(time_cost=1, memory_cost_kib=8, parallelism=1)


@pytest.fixture
def signer():
    return TokenSigner(SECRET, "portal-core")


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, hasher):
        first = hasher.hash("TestPassword123")
        second = hasher.hash("TestPassword123")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "TestPassword123" not in first

    def test_verify_accepts_right_password(self, hasher):
        stored = hasher.hash("TestPassword123")
        assert hasher.verify(stored, "TestPassword123") is True

    def test_verify_rejects_wrong_password(self, hasher):
        stored = hasher.hash("TestPassword123")
        assert hasher.verify(stored, "WrongPassword123") is False

    def test_verify_garbage_hash_returns_false(self, hasher):
        assert hasher.verify("not-a-hash", "TestPassword123") is False

    def test_needs_rehash_when_parameters_change(self, hasher):
        stored = hasher.hash("TestPassword123")
        stronger = PasswordHashing(time_cost=2, memory_cost_kib=8, parallelism=1)

        assert hasher.needs_rehash(stored) is False
        assert stronger.needs_rehash(stored) is True
        # Old parameters still verify under the new hasher
        assert stronger.verify(stored, "TestPassword123") is True

    def test_dummy_verify_does_not_raise(self, hasher):
        hasher.dummy_verify("anything")


class TestTokenSigner:
    def test_round_trip_keeps_claims(self, signer):
        exp = int(time.time()) + 60
        token = signer.encode({"sub": "u1", "tenant_id": "t1", "exp": exp})

        claims = signer.decode(token)

        assert claims["sub"] == "u1"
        assert claims["tenant_id"] == "t1"
        assert claims["iss"] == "portal-core"

    def test_short_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenSigner("too-short", "portal-core")

    def test_expired_token_raises_token_expired(self, signer):
        token = signer.encode({"sub": "u1", "exp": int(time.time()) - 1})
        with pytest.raises(TokenExpiredError):
            signer.decode(token)

    def test_expiry_is_exclusive(self, signer):
        token = signer.encode({"sub": "u1", "exp": 1000})
        with pytest.raises(TokenExpiredError):
            signer.decode(token, now=1000)

    def test_tampered_payload_rejected(self, signer):
        token = signer.encode({"sub": "u1", "exp": int(time.time()) + 60})
        other = signer.encode({"sub": "u2", "exp": int(time.time()) + 60})
        header, _, sig = token.split(".")
        forged = ".".join([header, other.split(".")[1], sig])

        with pytest.raises(InvalidTokenError):
            signer.decode(forged)

    def test_other_secret_rejected(self, signer):
        token = signer.encode({"sub": "u1", "exp": int(time.time()) + 60})
        other = TokenSigner(SECRET + "-rotated", "portal-core")
        with pytest.raises(InvalidTokenError):
            other.decode(token)

    def test_other_issuer_rejected(self, signer):
        token = signer.encode({"sub": "u1", "exp": int(time.time()) + 60})
        other = TokenSigner(SECRET, "someone-else")
        with pytest.raises(InvalidTokenError):
            other.decode(token)

    def test_alg_none_rejected(self, signer):
        token = signer.encode({"sub": "u1", "exp": int(time.time()) + 60})
        # {"alg":"none","typ":"JWT"}
        none_header = "eyJhbGciOiJub25lIiwidHlwIjoiSldUIn0"
        forged = ".".join([none_header] + token.split(".")[1:])
        with pytest.raises(InvalidTokenError):
            signer.decode(forged)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed_tokens_rejected(self, signer, token):
        with pytest.raises(InvalidTokenError):
            signer.decode(token)

    def test_missing_exp_rejected(self, signer):
        token = signer.encode({"sub": "u1"})
        with pytest.raises(InvalidTokenError):
            signer.decode(token)


class TestTokenHelpers:
    def test_generated_tokens_are_unique(self):
        assert generate_token() != generate_token()
        assert generate_raw_token() != generate_raw_token()

    def test_raw_token_is_url_safe(self):
        token = generate_raw_token()
        assert "=" not in token
        assert "/" not in token
        assert "+" not in token

    def test_hash_token_is_sha256_hex(self):
        digest = hash_token("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_constant_time_equals(self):
        assert constant_time_equals("same", "same") is True
        assert constant_time_equals("same", "diff") is False
