"""Integration tests for the staff HTTP surface.

Tests the complete flows including:
- Tenant registration
- Login with password and with a second factor
- Token refresh rotation
- Invitations
- Sessions, users and API keys
- Tenant isolation and fail-closed rate limiting
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from portalauth import app as app_module
from portalauth.service.credentials import totp_code
from portalauth.service.runtime import get_runtime

PASSWORD = "Password1234!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def register(client, email="o@a.com", slug="acme", name="Acme"):
    return client.post(
        "/auth/register",
        json={"email": email, "password": PASSWORD, "tenant_name": name, "tenant_slug": slug},
    )


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner(client):
    response = register(client)
    assert response.status_code == 201
    return response.json()


class TestRegisterOwner:
    def test_register_returns_tokens_and_owner(self, client):
        response = register(client)

        assert response.status_code == 201
        data = response.json()
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["user"]["role"] == "owner"
        assert data["tenant"]["slug"] == "acme"
        assert "password_hash" not in data["user"]

    def test_second_identical_registration_conflicts(self, client):
        register(client)

        response = register(client)

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"

    def test_same_email_other_slug_conflicts(self, client):
        register(client)
        response = register(client, slug="other")
        assert response.status_code == 409

    def test_register_sets_strict_refresh_cookie(self, client):
        response = register(client)

        cookie = response.headers["set-cookie"]
        assert cookie.startswith("refresh_token=")
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie or "samesite=strict" in cookie.lower()
        assert "Path=/auth" in cookie

    def test_weak_password_is_validation_error(self, client):
        response = client.post(
            "/auth/register",
            json={"email": "o@a.com", "password": "weak", "tenant_name": "Acme", "tenant_slug": "acme"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert "password" in response.json()["details"]

    def test_missing_field_is_validation_error(self, client):
        response = client.post("/auth/register", json={"email": "o@a.com"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_unknown_fields_are_ignored(self, client):
        response = client.post(
            "/auth/register",
            json={
                "email": "o@a.com",
                "password": PASSWORD,
                "tenant_name": "Acme",
                "tenant_slug": "acme",
                "role": "superuser",
            },
        )
        assert response.status_code == 201
        assert response.json()["user"]["role"] == "owner"


class TestLogin:
    def test_login_success(self, client, owner):
        response = client.post("/auth/login", json={"email": "O@A.com", "password": PASSWORD})

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["id"] == owner["user"]["id"]
        assert response.headers["X-RateLimit-Limit"]

    def test_bad_password_and_unknown_email_look_identical(self, client, owner):
        wrong_started = time.perf_counter()
        wrong = client.post("/auth/login", json={"email": "o@a.com", "password": "wrong"})
        wrong_elapsed = time.perf_counter() - wrong_started

        unknown_started = time.perf_counter()
        unknown = client.post("/auth/login", json={"email": "nobody@a.com", "password": PASSWORD})
        unknown_elapsed = time.perf_counter() - unknown_started

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["code"] == unknown.json()["code"] == "INVALID_CREDENTIALS"
        assert wrong.json()["error"] == unknown.json()["error"]
        # Both paths pay for one argon2 verification
        assert max(wrong_elapsed, unknown_elapsed) < 20 * max(min(wrong_elapsed, unknown_elapsed), 0.001)

    def test_login_rate_limited(self, client, owner):
        runtime = get_runtime()
        # One window for the whole loop
        runtime.settings.login_rate_limit_window_seconds = 3600
        limit = runtime.settings.login_rate_limit_requests
        for _ in range(limit):
            client.post("/auth/login", json={"email": "o@a.com", "password": "wrong"})

        response = client.post("/auth/login", json={"email": "o@a.com", "password": PASSWORD})

        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"


class TestRefreshRotation:
    def test_rotation(self, client, owner):
        first_refresh = owner["refresh_token"]

        rotated = client.post("/auth/refresh", json={"refresh_token": first_refresh})
        assert rotated.status_code == 200
        second_refresh = rotated.json()["refresh_token"]
        assert second_refresh != first_refresh

        replay = client.post("/auth/refresh", json={"refresh_token": first_refresh})
        assert replay.status_code == 401
        assert replay.json()["code"] == "INVALID_TOKEN"

        again = client.post("/auth/refresh", json={"refresh_token": second_refresh})
        assert again.status_code == 200
        assert again.json()["refresh_token"] not in (first_refresh, second_refresh)

    def test_refresh_from_cookie(self, client, owner):
        response = client.post("/auth/refresh")

        assert response.status_code == 200
        assert response.json()["refresh_token"] != owner["refresh_token"]

    def test_refresh_without_token(self):
        fresh = TestClient(app_module.app)
        response = fresh.post("/auth/refresh")
        assert response.status_code == 401


class TestLogout:
    def test_logout_ends_session(self, client, owner):
        response = client.post("/auth/logout", headers=bearer(owner["access_token"]))

        assert response.status_code == 204
        replay = client.post("/auth/refresh", json={"refresh_token": owner["refresh_token"]})
        assert replay.status_code == 401

    def test_logout_requires_auth(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"


class TestAuthenticator:
    def test_me_with_bearer(self, client, owner):
        response = client.get("/auth/me", headers=bearer(owner["access_token"]))

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["email"] == "o@a.com"
        assert data["tenant"]["name"] == "Acme"
        assert data["auth_method"] == "bearer"

    def test_malformed_authorization_header(self, client, owner):
        response = client.get("/auth/me", headers={"Authorization": owner["access_token"]})
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_garbage_bearer(self, client):
        response = client.get("/auth/me", headers=bearer("not.a.jwt"))
        assert response.status_code == 401

    def test_bad_api_key_never_falls_through_to_bearer(self, client, owner):
        headers = {**bearer(owner["access_token"]), "X-API-Key": "abp_bogus-key-value"}

        response = client.get("/auth/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_api_key_principal(self, client, owner):
        created = client.post(
            "/api-keys",
            json={"name": "CI", "scopes": ["read:users"]},
            headers=bearer(owner["access_token"]),
        ).json()

        response = client.get("/auth/me", headers={"X-API-Key": created["key"]})

        assert response.status_code == 200
        assert response.json()["auth_method"] == "api_key"
        assert response.json()["scopes"] == ["read:users"]

    def test_authenticated_requests_carry_rate_limit_headers(self, client, owner):
        response = client.get("/auth/me", headers=bearer(owner["access_token"]))

        assert response.headers["X-RateLimit-Limit"] == "100"
        assert int(response.headers["X-RateLimit-Remaining"]) < 100
        assert int(response.headers["X-RateLimit-Reset"]) > time.time() - 1

    def test_remaining_counts_down(self, client, owner):
        get_runtime().settings.rate_limit_window_seconds = 3600
        headers = bearer(owner["access_token"])

        remaining = [
            int(client.get("/auth/me", headers=headers).headers["X-RateLimit-Remaining"])
            for _ in range(3)
        ]

        assert remaining[0] > remaining[1] > remaining[2]

    def test_rejected_api_keys_are_rate_limited(self, client):
        runtime = get_runtime()
        runtime.settings.rate_limit_requests = 3
        runtime.settings.rate_limit_window_seconds = 3600

        statuses = [
            client.get("/auth/me", headers={"X-API-Key": f"abp_guess{i:040d}"}).status_code
            for i in range(6)
        ]

        assert statuses[:3] == [401, 401, 401]
        assert statuses[3:] == [429, 429, 429]

    def test_rejected_bearer_tokens_are_rate_limited(self, client):
        runtime = get_runtime()
        runtime.settings.rate_limit_requests = 2
        runtime.settings.rate_limit_window_seconds = 3600

        statuses = [client.get("/auth/me", headers=bearer("not.a.jwt")).status_code for _ in range(4)]

        assert statuses == [401, 401, 429, 429]
        limited = client.get("/auth/me", headers=bearer("not.a.jwt"))
        assert limited.json()["code"] == "RATE_LIMITED"
        assert limited.headers["Retry-After"]

    def test_inactive_api_key_code_differs_from_unknown(self, client, owner):
        headers = bearer(owner["access_token"])
        created = client.post(
            "/api-keys", json={"name": "CI", "scopes": ["read:all"]}, headers=headers
        ).json()
        client.delete(f"/api-keys/{created['id']}", headers=headers)

        inactive = client.get("/auth/me", headers={"X-API-Key": created["key"]})
        unknown = client.get("/auth/me", headers={"X-API-Key": "abp_" + "z" * 43})

        assert inactive.status_code == unknown.status_code == 401
        assert unknown.json()["code"] == "INVALID_TOKEN"
        assert inactive.json()["code"] != unknown.json()["code"]


class TestTwoFactorLogin:
    def _enroll(self, client, owner):
        headers = bearer(owner["access_token"])
        setup = client.post("/auth/2fa/setup", headers=headers)
        assert setup.status_code == 200
        secret = setup.json()["secret"]
        enable = client.post(
            "/auth/2fa/enable", json={"code": totp_code(secret, time.time())}, headers=headers
        )
        assert enable.status_code == 200
        return secret, enable.json()["recovery_codes"]

    def test_login_returns_challenge_then_tokens(self, client, owner):
        secret, _ = self._enroll(client, owner)

        first = client.post("/auth/login", json={"email": "o@a.com", "password": PASSWORD})
        assert first.status_code == 200
        challenge = first.json()
        assert challenge["requires_2fa"] is True
        assert "access_token" not in challenge

        second = client.post(
            "/auth/login/2fa",
            json={"challenge_token": challenge["challenge_token"], "code": totp_code(secret, time.time())},
        )
        assert second.status_code == 200
        assert second.json()["access_token"]

    def test_recovery_code_login_and_status(self, client, owner):
        _, codes = self._enroll(client, owner)
        challenge = client.post(
            "/auth/login", json={"email": "o@a.com", "password": PASSWORD}
        ).json()

        done = client.post(
            "/auth/login/2fa",
            json={"challenge_token": challenge["challenge_token"], "code": codes[0]},
        )
        assert done.status_code == 200

        status = client.get("/auth/2fa/status", headers=bearer(done.json()["access_token"]))
        assert status.json() == {"enabled": True, "recovery_codes_remaining": 9, "recovery_codes_used": 1}

    def test_bad_code_rejected(self, client, owner):
        secret, _ = self._enroll(client, owner)
        challenge = client.post(
            "/auth/login", json={"email": "o@a.com", "password": PASSWORD}
        ).json()
        now = time.time()
        accepted = {totp_code(secret, now + step * 30) for step in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)

        response = client.post(
            "/auth/login/2fa",
            json={"challenge_token": challenge["challenge_token"], "code": wrong},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"

    def test_disable(self, client, owner):
        self._enroll(client, owner)
        headers = bearer(owner["access_token"])

        response = client.post("/auth/2fa/disable", json={"password": PASSWORD}, headers=headers)

        assert response.status_code == 204
        login = client.post("/auth/login", json={"email": "o@a.com", "password": PASSWORD})
        assert login.json()["access_token"]


class TestPasswordChange:
    def test_change_then_login(self, client, owner):
        response = client.post(
            "/auth/password",
            json={"current_password": PASSWORD, "new_password": "AnotherPassword99"},
            headers=bearer(owner["access_token"]),
        )
        assert response.status_code == 204

        login = client.post("/auth/login", json={"email": "o@a.com", "password": "AnotherPassword99"})
        assert login.status_code == 200


class TestInvitations:
    def test_happy_path(self, client, owner):
        created = client.post(
            "/invitations",
            json={"email": "m@a.com", "role": "member"},
            headers=bearer(owner["access_token"]),
        )
        assert created.status_code == 201
        token = created.json()["token"]

        preflight = client.get(f"/invitations/validate/{token}")
        assert preflight.status_code == 200
        assert preflight.json()["tenant_name"] == "Acme"

        accepted = client.post(f"/invitations/{token}/accept", json={"name": "M", "password": PASSWORD})
        assert accepted.status_code == 200
        assert accepted.json()["user"]["role"] == "member"
        assert accepted.json()["access_token"]

        again = client.post(f"/invitations/{token}/accept", json={"name": "M", "password": PASSWORD})
        assert again.status_code == 409
        assert again.json()["code"] == "CONFLICT"

    def test_unknown_token(self, client):
        response = client.get("/invitations/validate/does-not-exist")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_member_cannot_invite(self, client, owner):
        token = client.post(
            "/invitations",
            json={"email": "m@a.com", "role": "member"},
            headers=bearer(owner["access_token"]),
        ).json()["token"]
        member = client.post(f"/invitations/{token}/accept", json={"name": "M", "password": PASSWORD}).json()

        response = client.post(
            "/invitations",
            json={"email": "x@a.com", "role": "viewer"},
            headers=bearer(member["access_token"]),
        )
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_list_resend_delete(self, client, owner):
        headers = bearer(owner["access_token"])
        created = client.post("/invitations", json={"email": "m@a.com", "role": "viewer"}, headers=headers).json()

        listed = client.get("/invitations", headers=headers).json()["items"]
        assert [i["email"] for i in listed] == ["m@a.com"]
        assert "token" not in listed[0]

        resent = client.post(f"/invitations/{created['id']}/resend", headers=headers)
        assert resent.status_code == 200
        new_id = resent.json()["id"]

        deleted = client.delete(f"/invitations/{new_id}", headers=headers)
        assert deleted.status_code == 204
        assert client.get("/invitations", headers=headers).json()["items"] == []

    def test_owner_of_another_tenant_cannot_be_invited(self, client, owner):
        other = register(client, email="b@b.com", slug="beta", name="Beta").json()

        response = client.post(
            "/invitations",
            json={"email": "o@a.com", "role": "member"},
            headers=bearer(other["access_token"]),
        )

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"
        login = client.post("/auth/login", json={"email": "o@a.com", "password": PASSWORD})
        assert login.status_code == 200
        assert login.json()["tenant"]["slug"] == "acme"

    def test_invitation_email_is_sent_off_the_event_loop(self, client, owner):
        class LoopCheckingEmail:
            def __init__(self):
                self.on_event_loop = []

            def send_invitation(self, to, token, **kwargs):
                try:
                    asyncio.get_running_loop()
                    self.on_event_loop.append(True)
                except RuntimeError:
                    self.on_event_loop.append(False)
                return True

        outbox = LoopCheckingEmail()
        get_runtime().invitations.email = outbox
        headers = bearer(owner["access_token"])

        created = client.post("/invitations", json={"email": "m@a.com", "role": "viewer"}, headers=headers)
        client.post(f"/invitations/{created.json()['id']}/resend", headers=headers)

        assert outbox.on_event_loop == [False, False]


class TestSessionsAndUsers:
    def test_list_and_terminate_sessions(self, client, owner):
        headers = bearer(owner["access_token"])
        client.post("/auth/login", json={"email": "o@a.com", "password": PASSWORD})

        sessions = client.get("/sessions", headers=headers).json()["items"]
        assert len(sessions) == 2
        current = [s for s in sessions if s["current"]]
        other = [s for s in sessions if not s["current"]]
        assert len(current) == 1

        response = client.delete(f"/sessions/{other[0]['id']}", headers=headers)
        assert response.status_code == 204
        assert len(client.get("/sessions", headers=headers).json()["items"]) == 1

        missing = client.delete(f"/sessions/{other[0]['id']}", headers=headers)
        assert missing.status_code == 404

    def test_terminate_all(self, client, owner):
        headers = bearer(owner["access_token"])
        client.post("/auth/login", json={"email": "o@a.com", "password": PASSWORD})

        response = client.delete("/sessions", headers=headers)

        assert response.json() == {"revoked": 2}

    def test_role_change_and_deactivate(self, client, owner):
        headers = bearer(owner["access_token"])
        token = client.post("/invitations", json={"email": "m@a.com", "role": "member"}, headers=headers).json()["token"]
        member = client.post(f"/invitations/{token}/accept", json={"name": "M", "password": PASSWORD}).json()
        member_id = member["user"]["id"]

        promoted = client.patch(f"/users/{member_id}/role", json={"role": "admin"}, headers=headers)
        assert promoted.status_code == 200
        assert promoted.json()["role"] == "admin"

        assert len(client.get("/users", headers=headers).json()["items"]) == 2

        removed = client.delete(f"/users/{member_id}", headers=headers)
        assert removed.status_code == 204
        login = client.post("/auth/login", json={"email": "m@a.com", "password": PASSWORD})
        assert login.status_code == 401

    def test_owner_cannot_demote_self(self, client, owner):
        response = client.patch(
            f"/users/{owner['user']['id']}/role",
            json={"role": "member"},
            headers=bearer(owner["access_token"]),
        )
        assert response.status_code == 403


class TestApiKeys:
    def test_create_list_get_revoke(self, client, owner):
        headers = bearer(owner["access_token"])

        created = client.post("/api-keys", json={"name": "CI", "scopes": ["read:all"]}, headers=headers)
        assert created.status_code == 201
        data = created.json()
        assert data["key"].startswith("abp_")
        assert data["key_prefix"] == data["key"][:8]

        listed = client.get("/api-keys", headers=headers).json()["items"]
        assert [k["id"] for k in listed] == [data["id"]]
        assert "key" not in listed[0]

        fetched = client.get(f"/api-keys/{data['id']}", headers=headers)
        assert fetched.status_code == 200
        assert "key" not in fetched.json()

        revoked = client.delete(f"/api-keys/{data['id']}", headers=headers)
        assert revoked.status_code == 204
        assert client.get("/auth/me", headers={"X-API-Key": data["key"]}).status_code == 401

    def test_unknown_scope_rejected(self, client, owner):
        response = client.post(
            "/api-keys",
            json={"name": "CI", "scopes": ["root"]},
            headers=bearer(owner["access_token"]),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_scope_enforced_for_key_callers(self, client, owner):
        key = client.post(
            "/api-keys",
            json={"name": "CI", "scopes": ["read:sessions"]},
            headers=bearer(owner["access_token"]),
        ).json()["key"]

        assert client.get("/sessions", headers={"X-API-Key": key}).status_code == 200
        denied = client.get("/users", headers={"X-API-Key": key})
        assert denied.status_code == 403
        assert denied.json()["code"] == "FORBIDDEN"

    def test_key_cannot_manage_keys(self, client, owner):
        key = client.post(
            "/api-keys",
            json={"name": "CI", "scopes": ["write:all"]},
            headers=bearer(owner["access_token"]),
        ).json()["key"]

        response = client.post(
            "/api-keys", json={"name": "nested", "scopes": ["read:all"]}, headers={"X-API-Key": key}
        )
        assert response.status_code == 403

    def test_cross_tenant_key_is_not_found(self, client, owner):
        other = register(client, email="b@b.com", slug="beta", name="Beta").json()
        foreign = client.post(
            "/api-keys",
            json={"name": "B-key", "scopes": ["read:all"]},
            headers=bearer(other["access_token"]),
        ).json()

        response = client.get(f"/api-keys/{foreign['id']}", headers=bearer(owner["access_token"]))

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
        assert "B-key" not in response.text
        assert foreign["key_prefix"] not in response.text


class TestCacheDown:
    def test_login_fails_closed(self, client, owner):
        class DownCache:
            async def incr_window(self, key, ttl_seconds):
                raise RedisConnectionError("connection refused")

        runtime = get_runtime()
        runtime.cache = DownCache()
        runtime.rate_limiter.cache = runtime.cache

        response = client.post("/auth/login", json={"email": "o@a.com", "password": PASSWORD})

        assert response.status_code == 503
        assert response.json()["code"] == "SERVICE_UNAVAILABLE"
        assert "access_token" not in response.text

    def test_bad_credentials_fail_closed(self, client, owner):
        class DownCache:
            async def incr_window(self, key, ttl_seconds):
                raise RedisConnectionError("connection refused")

        runtime = get_runtime()
        runtime.cache = DownCache()
        runtime.rate_limiter.cache = runtime.cache

        response = client.get("/auth/me", headers={"X-API-Key": "abp_" + "q" * 43})

        assert response.status_code == 503
        assert response.json()["code"] == "SERVICE_UNAVAILABLE"


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["cache"] == "not_configured"
