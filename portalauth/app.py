from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portalauth.api.error_handling import register_exception_handlers, security_headers
from portalauth.api.portal_routes import router as portal_router
from portalauth.api.routes import router
from portalauth.config import Settings
from portalauth.logging import clear_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()
_SECURITY_HEADERS = security_headers(hsts=_settings.enable_hsts, csp=_settings.csp_directives)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5
SESSION_CLEANUP_INTERVAL_SECONDS = 60 * 60

_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(interval_seconds: int) -> None:
    from portalauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().sessions.cleanup_expired)
        except Exception as exc:
            logger.error("session_cleanup_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly and purge expired sessions in the background."""
    global _cleanup_task
    from portalauth.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(_run_session_cleanup(SESSION_CLEANUP_INTERVAL_SECONDS))

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        close_store = getattr(runtime.store, "close", None)
        if close_store is not None:
            close_store()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Business Portal Identity", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-API-Key",
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with a correlation id taken from X-Request-ID or minted.

    The id is attached to every log line and echoed in the X-Request-ID
    response header.
    """
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app, response_headers=_SECURITY_HEADERS)
app.include_router(router)
app.include_router(portal_router)


@app.get("/healthz", tags=["health"])
async def health():
    """Check the database and the cache tier, each bounded by a timeout."""
    from portalauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}

    async def _bounded(label: str, check) -> bool:
        try:
            return bool(await asyncio.wait_for(check(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _bounded("database", lambda: asyncio.to_thread(runtime.store.ping))
    checks["database"] = "healthy" if db_ok else "unhealthy"
    if runtime.cache is not None:
        cache_ok = await _bounded("cache", runtime.cache.ping)
        checks["cache"] = "healthy" if cache_ok else "unhealthy"
    else:
        cache_ok = True
        checks["cache"] = "not_configured"

    healthy = db_ok and cache_ok
    body = {
        "status": "healthy" if healthy else "unhealthy",
        **checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
