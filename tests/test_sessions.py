"""Unit tests for session issuance, refresh rotation and revocation."""

from datetime import timedelta

import pytest

from portalauth.service.errors import (
    InvalidTokenError,
    NoTenantContext,
    NotFoundError,
    TokenExpiredError,
)
from portalauth.service.sessions import TOKEN_TYPE_ACCESS, TOKEN_TYPE_PORTAL
from portalauth.service.tenant_context import TenantContext
from portalauth.storage.models import PRINCIPAL_CLIENT, utcnow


@pytest.fixture
def owner(tenant_owner):
    return tenant_owner[1]


def _ctx_for(pair):
    return TenantContext(
        tenant_id=pair.user.tenant_id,
        user_id=pair.user.id,
        role=pair.user.role,
        session_id=pair.session.id,
    )


class TestIssue:
    def test_issue_returns_pair_and_stores_only_digest(self, runtime, owner):
        pair = runtime.sessions.issue(owner, user_agent="pytest", ip_address="10.0.0.1")

        assert pair.access_token.count(".") == 2
        assert pair.refresh_token
        assert pair.expires_in == 15 * 60
        assert pair.session.user_agent == "pytest"
        assert pair.session.ip_address == "10.0.0.1"
        stored = runtime.store.sessions[pair.session.id]
        assert stored.refresh_token_hash != pair.refresh_token
        assert len(stored.refresh_token_hash) == 64

    def test_access_claims(self, runtime, owner):
        pair = runtime.sessions.issue(owner)

        claims = runtime.sessions.validate_access(pair.access_token)

        assert claims["sub"] == owner.id
        assert claims["tenant_id"] == owner.tenant_id
        assert claims["role"] == "owner"
        assert claims["session_id"] == pair.session.id
        assert claims["typ"] == TOKEN_TYPE_ACCESS
        assert claims["jti"]

    def test_staff_token_not_accepted_as_portal_token(self, runtime, owner):
        pair = runtime.sessions.issue(owner)
        with pytest.raises(InvalidTokenError):
            runtime.sessions.validate_access(pair.access_token, expected_type=TOKEN_TYPE_PORTAL)

    def test_each_issue_creates_distinct_session(self, runtime, owner):
        first = runtime.sessions.issue(owner)
        second = runtime.sessions.issue(owner)

        assert first.session.id != second.session.id
        assert first.refresh_token != second.refresh_token


class TestRefresh:
    def test_refresh_rotates_token(self, runtime, owner):
        pair = runtime.sessions.issue(owner)

        rotated = runtime.sessions.refresh(pair.refresh_token)

        assert rotated.refresh_token != pair.refresh_token
        assert rotated.session.id == pair.session.id
        runtime.sessions.validate_access(rotated.access_token)

    def test_rotated_out_token_cannot_be_replayed(self, runtime, owner):
        pair = runtime.sessions.issue(owner)
        runtime.sessions.refresh(pair.refresh_token)

        with pytest.raises(InvalidTokenError):
            runtime.sessions.refresh(pair.refresh_token)

    def test_unknown_token_rejected(self, runtime, owner):
        with pytest.raises(InvalidTokenError):
            runtime.sessions.refresh("not-a-real-token")

    def test_empty_token_rejected(self, runtime):
        with pytest.raises(InvalidTokenError):
            runtime.sessions.refresh("")

    def test_expired_session_rejected_and_removed(self, runtime, owner):
        pair = runtime.sessions.issue(owner)
        runtime.store.sessions[pair.session.id].expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(TokenExpiredError):
            runtime.sessions.refresh(pair.refresh_token)
        assert pair.session.id not in runtime.store.sessions

    def test_deactivated_user_cannot_refresh(self, runtime, owner):
        pair = runtime.sessions.issue(owner)
        owner.is_active = False

        with pytest.raises(InvalidTokenError):
            runtime.sessions.refresh(pair.refresh_token)

    def test_staff_token_refused_on_client_path(self, runtime, owner):
        pair = runtime.sessions.issue(owner)
        with pytest.raises(InvalidTokenError):
            runtime.sessions.refresh(pair.refresh_token, principal_type=PRINCIPAL_CLIENT)

    def test_lost_rotation_race_rejected(self, runtime, owner):
        pair = runtime.sessions.issue(owner)
        original = runtime.store.rotate_session
        runtime.store.rotate_session = lambda *args, **kwargs: False
        try:
            with pytest.raises(InvalidTokenError):
                runtime.sessions.refresh(pair.refresh_token)
        finally:
            runtime.store.rotate_session = original


class TestRevocation:
    def test_logout_removes_current_session(self, runtime, owner):
        pair = runtime.sessions.issue(owner)

        assert runtime.sessions.logout(_ctx_for(pair)) is True
        with pytest.raises(InvalidTokenError):
            runtime.sessions.refresh(pair.refresh_token)

    def test_logout_by_refresh_token(self, runtime, owner):
        pair = runtime.sessions.issue(owner)

        assert runtime.sessions.logout_by_refresh_token(pair.refresh_token) is True
        assert runtime.sessions.logout_by_refresh_token(pair.refresh_token) is False
        assert runtime.sessions.logout_by_refresh_token("") is False

    def test_logout_all_counts_sessions(self, runtime, owner):
        pairs = [runtime.sessions.issue(owner) for _ in range(3)]

        assert runtime.sessions.logout_all(_ctx_for(pairs[0])) == 3
        assert runtime.sessions.list_sessions(_ctx_for(pairs[0])) == []

    def test_list_sessions_skips_expired(self, runtime, owner):
        live = runtime.sessions.issue(owner)
        dead = runtime.sessions.issue(owner)
        runtime.store.sessions[dead.session.id].expires_at = utcnow() - timedelta(seconds=1)

        ids = [s.id for s in runtime.sessions.list_sessions(_ctx_for(live))]

        assert ids == [live.session.id]

    def test_terminate_other_session(self, runtime, owner):
        current = runtime.sessions.issue(owner)
        other = runtime.sessions.issue(owner)

        runtime.sessions.terminate_session(_ctx_for(current), other.session.id)

        with pytest.raises(InvalidTokenError):
            runtime.sessions.refresh(other.refresh_token)
        runtime.sessions.refresh(current.refresh_token)

    def test_cannot_terminate_someone_elses_session(self, runtime, owner):
        _, intruder = runtime.credentials.register_tenant(
            tenant_name="Other",
            tenant_slug="other",
            email="intruder@other.example",
            password="IntruderPassword123",
        )
        victim = runtime.sessions.issue(owner)
        attacker = runtime.sessions.issue(intruder)

        with pytest.raises(NotFoundError):
            runtime.sessions.terminate_session(_ctx_for(attacker), victim.session.id)
        assert victim.session.id in runtime.store.sessions

    def test_missing_tenant_context_fails(self, runtime):
        with pytest.raises(NoTenantContext):
            runtime.sessions.list_sessions(TenantContext(tenant_id=None, user_id="u", role="owner"))

    def test_cleanup_expired(self, runtime, owner):
        runtime.sessions.issue(owner)
        dead = runtime.sessions.issue(owner)
        runtime.store.sessions[dead.session.id].expires_at = utcnow() - timedelta(seconds=1)

        assert runtime.sessions.cleanup_expired() == 1
        assert len(runtime.store.sessions) == 1
