from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = [
    "tenants",
    "users",
    "portal_clients",
    "invitations",
    "client_invitations",
    "sessions",
    "api_keys",
]


def _str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _norm(email: str) -> str:
    return email.strip().lower()


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    """Ids from request paths are free text; one that is not a UUID matches no row."""
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
    settings = row.get("settings") or {}
    if isinstance(settings, str):
        settings = json.loads(settings)
    return Tenant(
        id=str(row["id"]),
        name=row["name"],
        slug=row["slug"],
        settings=settings,
        status=row.get("status", "active"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        email=row["email"],
        name=row["name"],
        role=row["role"],
        password_hash=row.get("password_hash"),
        email_verified=bool(row.get("email_verified", False)),
        oauth_provider=row.get("oauth_provider"),
        oauth_id=row.get("oauth_id"),
        is_active=bool(row.get("is_active", True)),
        principal_type=row.get("principal_type", PRINCIPAL_STAFF),
        totp_secret=row.get("totp_secret"),
        totp_enabled=bool(row.get("totp_enabled", False)),
        recovery_codes=row.get("recovery_codes"),
        recovery_codes_used=int(row.get("recovery_codes_used") or 0),
        last_login_at=row.get("last_login_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _client_from_row(row: Dict[str, Any]) -> PortalClient:
    return PortalClient(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        email=row["email"],
        name=row["name"],
        status=row["status"],
        user_id=_str(row.get("user_id")),
        company_name=row.get("company_name"),
        language=row.get("language", "de"),
        notify_email=bool(row.get("notify_email", True)),
        notify_new_documents=bool(row.get("notify_new_documents", True)),
        invited_at=row.get("invited_at"),
        activated_at=row.get("activated_at"),
        last_login_at=row.get("last_login_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _invitation_from_row(row: Dict[str, Any]) -> Invitation:
    return Invitation(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        email=row["email"],
        role=row["role"],
        token_hash=row["token_hash"],
        invited_by=str(row["invited_by"]),
        expires_at=row["expires_at"],
        accepted_at=row.get("accepted_at"),
        created_at=row["created_at"],
    )


def _client_invitation_from_row(row: Dict[str, Any]) -> ClientInvitation:
    return ClientInvitation(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        client_id=str(row["client_id"]),
        email=row["email"],
        token_hash=row["token_hash"],
        invited_by=str(row["invited_by"]),
        expires_at=row["expires_at"],
        accepted_at=row.get("accepted_at"),
        used_at=row.get("used_at"),
        created_at=row["created_at"],
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        tenant_id=str(row["tenant_id"]),
        refresh_token_hash=row["refresh_token_hash"],
        expires_at=row["expires_at"],
        user_agent=row.get("user_agent"),
        ip_address=row.get("ip_address"),
        principal_type=row.get("principal_type", PRINCIPAL_STAFF),
        created_at=row["created_at"],
        last_used_at=row["last_used_at"],
    )


def _api_key_from_row(row: Dict[str, Any]) -> APIKey:
    return APIKey(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        tenant_id=str(row["tenant_id"]),
        name=row["name"],
        key_hash=row["key_hash"],
        key_prefix=row["key_prefix"],
        scopes=list(row.get("scopes") or []),
        expires_at=row.get("expires_at"),
        last_used_at=row.get("last_used_at"),
        is_active=bool(row.get("is_active", True)),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed principal store.

    Tenant-scoped statements run inside a transaction that first pins
    ``app.tenant_id``; the row-level policies in ``schema.sql`` filter on that
    setting in addition to the explicit ``tenant_id`` predicates below.
    Credential resolution that happens before a tenant is known (login, token
    and key lookups) runs under ``app.auth_lookup``, which the policies admit
    for SELECT only.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _tenant_conn(self, tenant_id: str) -> Iterator[Any]:
        if not tenant_id:
            raise ValueError("tenant_id is required for tenant-scoped access")
        with self._connect() as conn:
            # is_local=true: the setting dies with the transaction, never with the pooled connection
            conn.execute("SELECT set_config('app.tenant_id', %s, true)", (str(tenant_id),))
            yield conn

    @contextmanager
    def _auth_lookup_conn(self) -> Iterator[Any]:
        with self._connect() as conn:
            conn.execute("SELECT set_config('app.auth_lookup', 'on', true)")
            yield conn

    def _verify_required_schema(self) -> None:
        """Ensure identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} first.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

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
        if self.find_user_by_email_global(email) is not None:
            raise EmailExists()
        tenant_id = new_id()
        user_id = new_id()
        try:
            with self._tenant_conn(tenant_id) as conn:
                tenant_row = conn.execute(
                    """
                    INSERT INTO tenants (id, name, slug)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (tenant_id, name, slug),
                ).fetchone()
                user_row = conn.execute(
                    """
                    INSERT INTO users (id, tenant_id, email, name, role, password_hash)
                    VALUES (%s, %s, %s, %s, 'owner', %s)
                    RETURNING *
                    """,
                    (user_id, tenant_id, email, owner_name, password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            if exc.diag.constraint_name == "tenants_slug_key":
                raise SlugExists(slug) from exc
            raise EmailExists() from exc
        return _tenant_from_row(tenant_row), _user_from_row(user_row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute("SELECT * FROM tenants WHERE id = %s", (tenant_id,)).fetchone()
        return _tenant_from_row(row) if row else None

    def get_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        if _as_uuid(user_id) is None:
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def find_user_by_email_in_tenant(self, tenant_id: str, email: str) -> Optional[User]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE tenant_id = %s AND email = %s",
                (tenant_id, _norm(email)),
            ).fetchone()
        return _user_from_row(row) if row else None

    def find_user_by_email_global(
        self, email: str, *, principal_type: str = PRINCIPAL_STAFF
    ) -> Optional[User]:
        with self._auth_lookup_conn() as conn:
            row = conn.execute(
                """
                SELECT * FROM users
                WHERE email = %s AND principal_type = %s
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (_norm(email), principal_type),
            ).fetchone()
        return _user_from_row(row) if row else None

    def find_user_by_oauth(self, provider: str, oauth_id: str) -> Optional[User]:
        with self._auth_lookup_conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE oauth_provider = %s AND oauth_id = %s",
                (provider, oauth_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(
        self, tenant_id: str, *, principal_type: str = PRINCIPAL_STAFF
    ) -> List[User]:
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE tenant_id = %s AND principal_type = %s
                ORDER BY created_at ASC
                """,
                (tenant_id, principal_type),
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def count_active_owners(self, tenant_id: str) -> int:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM users
                WHERE tenant_id = %s AND role = 'owner' AND is_active AND principal_type = 'staff'
                """,
                (tenant_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    @staticmethod
    def _lock_owners(conn: Any, tenant_id: str) -> List[str]:
        rows = conn.execute(
            """
            SELECT id FROM users
            WHERE tenant_id = %s AND role = 'owner' AND is_active AND principal_type = 'staff'
            FOR UPDATE
            """,
            (tenant_id,),
        ).fetchall()
        return [str(row["id"]) for row in rows]

    def update_user_role(self, tenant_id: str, user_id: str, role: str) -> Optional[User]:
        if _as_uuid(user_id) is None:
            return None
        with self._tenant_conn(tenant_id) as conn:
            owners = self._lock_owners(conn, tenant_id)
            if role != "owner" and owners == [str(user_id)]:
                raise LastOwnerProtected()
            row = conn.execute(
                """
                UPDATE users SET role = %s, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (role, user_id, tenant_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def deactivate_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        if _as_uuid(user_id) is None:
            return None
        with self._tenant_conn(tenant_id) as conn:
            owners = self._lock_owners(conn, tenant_id)
            if owners == [str(user_id)]:
                raise LastOwnerProtected()
            row = conn.execute(
                """
                UPDATE users SET is_active = false, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (user_id, tenant_id),
            ).fetchone()
            if row:
                conn.execute(
                    "DELETE FROM sessions WHERE tenant_id = %s AND user_id = %s",
                    (tenant_id, user_id),
                )
        return _user_from_row(row) if row else None

    def update_last_login(self, tenant_id: str, user_id: str, when: datetime) -> None:
        with self._tenant_conn(tenant_id) as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s WHERE id = %s AND tenant_id = %s",
                (when, user_id, tenant_id),
            )

    def _update_user(self, tenant_id: str, user_id: str, assignments: str, params: tuple) -> bool:
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s AND tenant_id = %s",
                (*params, user_id, tenant_id),
            )
            return cur.rowcount > 0

    def update_password(self, tenant_id: str, user_id: str, password_hash: str) -> bool:
        return self._update_user(tenant_id, user_id, "password_hash = %s", (password_hash,))

    def set_totp_secret(self, tenant_id: str, user_id: str, encrypted_secret: str) -> bool:
        return self._update_user(
            tenant_id, user_id, "totp_secret = %s, totp_enabled = false", (encrypted_secret,)
        )

    def enable_totp(self, tenant_id: str, user_id: str, encrypted_codes: str) -> bool:
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET totp_enabled = true, recovery_codes = %s, recovery_codes_used = 0, updated_at = now()
                WHERE id = %s AND tenant_id = %s AND totp_secret IS NOT NULL
                """,
                (encrypted_codes, user_id, tenant_id),
            )
            return cur.rowcount > 0

    def disable_totp(self, tenant_id: str, user_id: str) -> bool:
        return self._update_user(
            tenant_id,
            user_id,
            "totp_secret = NULL, totp_enabled = false, recovery_codes = NULL, recovery_codes_used = 0",
            (),
        )

    def set_recovery_codes(self, tenant_id: str, user_id: str, encrypted_codes: str) -> bool:
        return self._update_user(
            tenant_id,
            user_id,
            "recovery_codes = %s, recovery_codes_used = 0",
            (encrypted_codes,),
        )

    def mark_recovery_code_used(
        self, tenant_id: str, user_id: str, expected_codes: str, encrypted_codes: str
    ) -> bool:
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET recovery_codes = %s, recovery_codes_used = recovery_codes_used + 1, updated_at = now()
                WHERE id = %s AND tenant_id = %s AND recovery_codes = %s
                """,
                (encrypted_codes, user_id, tenant_id, expected_codes),
            )
            return cur.rowcount > 0

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
        sess = Session.new(
            user_id=user_id,
            tenant_id=tenant_id,
            refresh_token_hash=refresh_token_hash,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
            principal_type=principal_type,
        )
        try:
            with self._tenant_conn(tenant_id) as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, tenant_id, user_id, refresh_token_hash, principal_type,
                                          user_agent, ip_address, expires_at, created_at, last_used_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        tenant_id,
                        user_id,
                        refresh_token_hash,
                        principal_type,
                        user_agent,
                        ip_address,
                        sess.expires_at,
                        sess.created_at,
                        sess.last_used_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return sess

    def get_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._auth_lookup_conn() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def rotate_session(
        self,
        tenant_id: str,
        session_id: str,
        old_hash: str,
        new_hash: str,
        new_expires_at: datetime,
    ) -> bool:
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                """
                UPDATE sessions
                SET refresh_token_hash = %s, expires_at = %s, last_used_at = %s
                WHERE id = %s AND tenant_id = %s AND refresh_token_hash = %s
                """,
                (new_hash, new_expires_at, utcnow(), session_id, tenant_id, old_hash),
            )
            return cur.rowcount == 1

    def delete_session(self, tenant_id: str, session_id: str) -> bool:
        if _as_uuid(session_id) is None:
            return False
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE id = %s AND tenant_id = %s",
                (session_id, tenant_id),
            )
            return cur.rowcount > 0

    def delete_session_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        sess = self.get_session_by_refresh_hash(refresh_token_hash)
        if sess is None:
            return None
        with self._tenant_conn(sess.tenant_id) as conn:
            conn.execute(
                "DELETE FROM sessions WHERE id = %s AND tenant_id = %s AND refresh_token_hash = %s",
                (sess.id, sess.tenant_id, refresh_token_hash),
            )
        return sess

    def delete_user_session(self, tenant_id: str, user_id: str, session_id: str) -> bool:
        if _as_uuid(session_id) is None:
            return False
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE id = %s AND tenant_id = %s AND user_id = %s",
                (session_id, tenant_id, user_id),
            )
            return cur.rowcount > 0

    def delete_user_sessions(self, tenant_id: str, user_id: str) -> int:
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE tenant_id = %s AND user_id = %s",
                (tenant_id, user_id),
            )
            return cur.rowcount

    def list_user_sessions(self, tenant_id: str, user_id: str) -> List[Session]:
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE tenant_id = %s AND user_id = %s AND expires_at > now()
                ORDER BY last_used_at DESC
                """,
                (tenant_id, user_id),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def cleanup_expired_sessions(self) -> int:
        with self._auth_lookup_conn() as conn:
            rows = conn.execute(
                "SELECT DISTINCT tenant_id FROM sessions WHERE expires_at <= now()"
            ).fetchall()
        removed = 0
        for row in rows:
            tenant_id = str(row["tenant_id"])
            with self._tenant_conn(tenant_id) as conn:
                cur = conn.execute(
                    "DELETE FROM sessions WHERE tenant_id = %s AND expires_at <= now()",
                    (tenant_id,),
                )
                removed += cur.rowcount
        return removed

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
        existing = self.find_user_by_email_global(email)
        # Login resolves staff by email alone, so the address must be free everywhere
        if existing is not None and existing.tenant_id != str(tenant_id):
            raise EmailExists()
        try:
            with self._tenant_conn(tenant_id) as conn:
                member = conn.execute(
                    "SELECT 1 FROM users WHERE tenant_id = %s AND email = %s",
                    (tenant_id, email),
                ).fetchone()
                if member:
                    raise EmailAlreadyInTenant()
                pending = conn.execute(
                    """
                    SELECT id, expires_at FROM invitations
                    WHERE tenant_id = %s AND email = %s AND accepted_at IS NULL
                    FOR UPDATE
                    """,
                    (tenant_id, email),
                ).fetchone()
                if pending:
                    if pending["expires_at"] > utcnow():
                        raise PendingInvitationExists()
                    conn.execute("DELETE FROM invitations WHERE id = %s", (pending["id"],))
                row = conn.execute(
                    """
                    INSERT INTO invitations (id, tenant_id, email, role, token_hash, invited_by, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), tenant_id, email, role, token_hash, invited_by, expires_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise PendingInvitationExists() from exc
        return _invitation_from_row(row)

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]:
        with self._auth_lookup_conn() as conn:
            row = conn.execute(
                "SELECT * FROM invitations WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def get_invitation(self, tenant_id: str, invitation_id: str) -> Optional[Invitation]:
        if _as_uuid(invitation_id) is None:
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM invitations WHERE id = %s AND tenant_id = %s",
                (invitation_id, tenant_id),
            ).fetchone()
        return _invitation_from_row(row) if row else None

    def list_invitations(self, tenant_id: str) -> List[Invitation]:
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                "SELECT * FROM invitations WHERE tenant_id = %s ORDER BY created_at DESC",
                (tenant_id,),
            ).fetchall()
        return [_invitation_from_row(row) for row in rows]

    def delete_invitation(self, tenant_id: str, invitation_id: str) -> bool:
        if _as_uuid(invitation_id) is None:
            return False
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                "DELETE FROM invitations WHERE id = %s AND tenant_id = %s",
                (invitation_id, tenant_id),
            )
            return cur.rowcount > 0

    def consume_invitation(
        self,
        token_hash: str,
        *,
        name: str,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Invitation, User]:
        now = now or utcnow()
        found = self.get_invitation_by_token_hash(token_hash)
        if found is None:
            raise InvitationNotFound()
        if self.find_user_by_email_global(found.email) is not None:
            raise EmailExists()
        try:
            with self._tenant_conn(found.tenant_id) as conn:
                # Conditional claim: concurrent accepts of one token see a single winner
                claimed = conn.execute(
                    """
                    UPDATE invitations SET accepted_at = %s
                    WHERE token_hash = %s AND tenant_id = %s AND accepted_at IS NULL AND expires_at >= %s
                    RETURNING *
                    """,
                    (now, token_hash, found.tenant_id, now),
                ).fetchone()
                if not claimed:
                    current = conn.execute(
                        "SELECT accepted_at, expires_at FROM invitations WHERE token_hash = %s",
                        (token_hash,),
                    ).fetchone()
                    if current is None:
                        raise InvitationNotFound()
                    if current["accepted_at"] is not None:
                        raise InvitationUsed()
                    raise InvitationExpired()
                user_row = conn.execute(
                    """
                    INSERT INTO users (id, tenant_id, email, name, role, password_hash, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, true)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        found.tenant_id,
                        claimed["email"],
                        name,
                        claimed["role"],
                        password_hash,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise EmailExists() from exc
        return _invitation_from_row(claimed), _user_from_row(user_row)

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
        with self._auth_lookup_conn() as conn:
            elsewhere = conn.execute(
                "SELECT 1 FROM portal_clients WHERE email = %s", (email,)
            ).fetchone()
        if elsewhere:
            raise EmailExists()
        try:
            with self._tenant_conn(tenant_id) as conn:
                member = conn.execute(
                    "SELECT 1 FROM users WHERE tenant_id = %s AND email = %s",
                    (tenant_id, email),
                ).fetchone()
                if member:
                    raise EmailExists()
                row = conn.execute(
                    """
                    INSERT INTO portal_clients (id, tenant_id, email, name, company_name, language)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), tenant_id, email, name, company_name, language),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise EmailExists() from exc
        return _client_from_row(row)

    def get_portal_client(self, tenant_id: str, client_id: str) -> Optional[PortalClient]:
        if _as_uuid(client_id) is None:
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM portal_clients WHERE id = %s AND tenant_id = %s",
                (client_id, tenant_id),
            ).fetchone()
        return _client_from_row(row) if row else None

    def get_portal_client_by_user(self, tenant_id: str, user_id: str) -> Optional[PortalClient]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM portal_clients WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            ).fetchone()
        return _client_from_row(row) if row else None

    def list_portal_clients(self, tenant_id: str) -> List[PortalClient]:
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                "SELECT * FROM portal_clients WHERE tenant_id = %s ORDER BY created_at DESC",
                (tenant_id,),
            ).fetchall()
        return [_client_from_row(row) for row in rows]

    def deactivate_portal_client(self, tenant_id: str, client_id: str) -> Optional[PortalClient]:
        if _as_uuid(client_id) is None:
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                """
                UPDATE portal_clients SET status = 'inactive', updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (client_id, tenant_id),
            ).fetchone()
            if row and row.get("user_id"):
                conn.execute(
                    "UPDATE users SET is_active = false, updated_at = now() WHERE id = %s AND tenant_id = %s",
                    (row["user_id"], tenant_id),
                )
                conn.execute(
                    "DELETE FROM sessions WHERE tenant_id = %s AND user_id = %s",
                    (tenant_id, row["user_id"]),
                )
        return _client_from_row(row) if row else None

    def touch_portal_client_login(self, tenant_id: str, client_id: str, when: datetime) -> None:
        with self._tenant_conn(tenant_id) as conn:
            conn.execute(
                "UPDATE portal_clients SET last_login_at = %s WHERE id = %s AND tenant_id = %s",
                (when, client_id, tenant_id),
            )

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
        try:
            with self._tenant_conn(tenant_id) as conn:
                conn.execute(
                    """
                    DELETE FROM client_invitations
                    WHERE tenant_id = %s AND client_id = %s AND used_at IS NULL
                    """,
                    (tenant_id, client_id),
                )
                row = conn.execute(
                    """
                    INSERT INTO client_invitations (id, tenant_id, client_id, email, token_hash, invited_by, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), tenant_id, client_id, _norm(email), token_hash, invited_by, expires_at),
                ).fetchone()
                conn.execute(
                    """
                    UPDATE portal_clients SET invited_at = %s, updated_at = now()
                    WHERE id = %s AND tenant_id = %s
                    """,
                    (row["created_at"], client_id, tenant_id),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("client does not exist", {"client_id": client_id}) from exc
        return _client_invitation_from_row(row)

    def get_client_invitation_by_token_hash(self, token_hash: str) -> Optional[ClientInvitation]:
        with self._auth_lookup_conn() as conn:
            row = conn.execute(
                "SELECT * FROM client_invitations WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _client_invitation_from_row(row) if row else None

    def consume_client_invitation(
        self,
        token_hash: str,
        *,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Tuple[ClientInvitation, PortalClient, User]:
        now = now or utcnow()
        found = self.get_client_invitation_by_token_hash(token_hash)
        if found is None:
            raise InvitationNotFound()
        try:
            with self._tenant_conn(found.tenant_id) as conn:
                claimed = conn.execute(
                    """
                    UPDATE client_invitations SET used_at = %s, accepted_at = %s
                    WHERE token_hash = %s AND tenant_id = %s AND used_at IS NULL AND expires_at >= %s
                    RETURNING *
                    """,
                    (now, now, token_hash, found.tenant_id, now),
                ).fetchone()
                if not claimed:
                    current = conn.execute(
                        "SELECT used_at FROM client_invitations WHERE token_hash = %s",
                        (token_hash,),
                    ).fetchone()
                    if current is None:
                        raise InvitationNotFound()
                    if current["used_at"] is not None:
                        raise InvitationUsed()
                    raise InvitationExpired()
                client = conn.execute(
                    """
                    SELECT * FROM portal_clients
                    WHERE id = %s AND tenant_id = %s
                    FOR UPDATE
                    """,
                    (claimed["client_id"], found.tenant_id),
                ).fetchone()
                if client is None or client["status"] == "inactive":
                    raise InvitationNotFound()
                if client.get("user_id"):
                    raise InvitationUsed()
                user_row = conn.execute(
                    """
                    INSERT INTO users (id, tenant_id, email, name, role, password_hash,
                                       email_verified, principal_type)
                    VALUES (%s, %s, %s, %s, 'viewer', %s, true, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        found.tenant_id,
                        client["email"],
                        client["name"],
                        password_hash,
                        PRINCIPAL_CLIENT,
                    ),
                ).fetchone()
                client_row = conn.execute(
                    """
                    UPDATE portal_clients
                    SET user_id = %s, status = 'active', activated_at = %s, updated_at = %s
                    WHERE id = %s AND tenant_id = %s
                    RETURNING *
                    """,
                    (user_row["id"], now, now, claimed["client_id"], found.tenant_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise EmailExists() from exc
        return (
            _client_invitation_from_row(claimed),
            _client_from_row(client_row),
            _user_from_row(user_row),
        )

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
        try:
            with self._tenant_conn(tenant_id) as conn:
                row = conn.execute(
                    """
                    INSERT INTO api_keys (id, tenant_id, user_id, name, key_hash, key_prefix, scopes, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), tenant_id, user_id, name, key_hash, key_prefix, list(scopes), expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return _api_key_from_row(row)

    def get_api_key_by_hash(self, key_hash: str) -> Optional[APIKey]:
        with self._auth_lookup_conn() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = %s", (key_hash,)
            ).fetchone()
        return _api_key_from_row(row) if row else None

    def get_api_key(self, tenant_id: str, key_id: str) -> Optional[APIKey]:
        if _as_uuid(key_id) is None:
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE id = %s AND tenant_id = %s",
                (key_id, tenant_id),
            ).fetchone()
        return _api_key_from_row(row) if row else None

    def list_api_keys(self, tenant_id: str, user_id: str) -> List[APIKey]:
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                """
                SELECT * FROM api_keys
                WHERE tenant_id = %s AND user_id = %s
                ORDER BY created_at DESC
                """,
                (tenant_id, user_id),
            ).fetchall()
        return [_api_key_from_row(row) for row in rows]

    def revoke_api_key(self, tenant_id: str, key_id: str) -> bool:
        if _as_uuid(key_id) is None:
            return False
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                "UPDATE api_keys SET is_active = false WHERE id = %s AND tenant_id = %s",
                (key_id, tenant_id),
            )
            return cur.rowcount > 0

    def touch_api_key(self, tenant_id: str, key_id: str, when: datetime) -> None:
        with self._tenant_conn(tenant_id) as conn:
            conn.execute(
                "UPDATE api_keys SET last_used_at = %s WHERE id = %s AND tenant_id = %s",
                (when, key_id, tenant_id),
            )
