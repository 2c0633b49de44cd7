from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portalauth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_BYTES = 32

_DEFAULT_CSP = (
    "default-src 'self'; script-src 'self'; style-src 'self'; img-src 'self' data:; "
    "connect-src 'self'; font-src 'self'; frame-ancestors 'none'; base-uri 'self'; "
    "form-action 'self'"
)


@dataclass(frozen=True)
class PasswordPolicy:
    """Password rules applied on registration, invitation acceptance and change."""

    min_length: int = 12
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = False


@dataclass(frozen=True)
class RateLimit:
    requests: int
    window_seconds: int


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the identity core, loaded from env and .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/portalauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and in-memory fallbacks for the test suite.",
    )
    state_dir: str = env_field("/srv/portalauth", "STATE_DIR")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("portal-core", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Password hashing and policy
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH")
    password_require_upper: bool = env_field(True, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(True, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(False, "PASSWORD_REQUIRE_SPECIAL")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(64 * 1024, "ARGON2_MEMORY_COST_KIB")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Second factor
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for TOTP secrets and recovery codes; defaults to JWT_SECRET",
    )
    totp_issuer: str = env_field("Business Portal", "TOTP_ISSUER")

    # Invitations
    invitation_ttl_staff_hours: int = env_field(7 * 24, "INVITATION_TTL_STAFF_HOURS")
    invitation_ttl_portal_hours: int = env_field(24, "INVITATION_TTL_PORTAL_HOURS")

    # Request admission
    rate_limit_requests: int = env_field(100, "RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_requests: int = env_field(5, "LOGIN_RATE_LIMIT_REQUESTS")
    login_rate_limit_window_seconds: int = env_field(60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_timeout_ms: int = env_field(500, "RATE_LIMIT_TIMEOUT_MS")
    trusted_proxies: list[str] = env_field([], "TRUSTED_PROXIES")

    # HTTP surface
    cors_allow_origins: list[str] = env_field(
        [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ],
        "CORS_ALLOW_ORIGINS",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    csp_directives: str = env_field(_DEFAULT_CSP, "CSP_DIRECTIVES")

    # Email delivery; unset SMTP_HOST logs instead of sending
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Business Portal", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    portal_base_url: str = env_field("http://localhost:8000/portal", "PORTAL_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    def password_policy(self) -> PasswordPolicy:
        return PasswordPolicy(
            min_length=self.password_min_length,
            require_upper=self.password_require_upper,
            require_lower=self.password_require_lower,
            require_digit=self.password_require_digit,
            require_special=self.password_require_special,
        )

    def general_rate(self) -> RateLimit:
        return RateLimit(self.rate_limit_requests, self.rate_limit_window_seconds)

    def login_rate(self) -> RateLimit:
        return RateLimit(self.login_rate_limit_requests, self.login_rate_limit_window_seconds)

    @field_validator("trusted_proxies", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv_list(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("rate_limit_window_seconds", "login_rate_limit_window_seconds")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("rate limit window must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(str(value).encode()) < MIN_JWT_SECRET_BYTES:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes"
                )
            return value
        # Persist a generated secret so tokens remain valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/portalauth"))
        secret_path = state_dir / ".jwt_secret"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted.encode()) >= MIN_JWT_SECRET_BYTES:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
