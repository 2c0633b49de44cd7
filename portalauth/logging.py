from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id, or mint one, for the current context."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_principal(*, tenant_id: Optional[str], user_id: Optional[str], auth_method: str) -> None:
    """Attach the resolved principal to every log line for the rest of the request."""
    structlog.contextvars.bind_contextvars(
        tenant_id=tenant_id, user_id=user_id, auth_method=auth_method
    )


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Values under these keys are dropped entirely
_SECRET_KEY_PARTS = ("password", "secret", "token", "authorization", "api_key", "recovery", "totp")
# Bookkeeping keys that merely contain one of the words above
_NOT_SECRET_KEYS = {"token_type", "totp_enabled", "recovery_codes_remaining", "key_prefix"}
_EMAIL_KEYS = {"email", "to_email", "owner_email", "recipient"}


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Blank credential material and mask email addresses."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _NOT_SECRET_KEYS or value is None:
            continue
        if lower_key in _EMAIL_KEYS and isinstance(value, str):
            event_dict[key] = _mask_email(value)
        elif any(part in lower_key for part in _SECRET_KEY_PARTS):
            event_dict[key] = "[redacted]"
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    """Install the structlog pipeline.

    JSON lines are the default; ``dev_mode`` or ``json_output=False`` switch to
    the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_FRAGMENTS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(psycopg|postgres(ql)?|redis)[^\s]*\s*(error|exception)?:?[^\n]*",
        r"(?i)(/[\w.-]+){2,}",
        r"(?i)(password|secret|token|api.?key|dsn)\s*[:=]\s*\S+",
        r"(?i)traceback\s*\(most recent call last\).*",
    )
]


def sanitize_error_message(message: Optional[str], *, replacement: str = "[redacted]") -> str:
    """Scrub SQL, driver errors, filesystem paths and inline credentials from a client-facing message."""
    if not message or not isinstance(message, str):
        return "internal server error"
    for pattern in _LEAKY_FRAGMENTS:
        message = pattern.sub(replacement, message)
    return message[:300]
