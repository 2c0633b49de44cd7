from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, Header, Request, Response

from portalauth.logging import bind_principal, get_logger
from portalauth.service.api_keys import API_KEY_ROLE, has_scope
from portalauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    ServiceError,
)
from portalauth.service.rate_limit import (
    NAMESPACE_GENERAL,
    NAMESPACE_LOGIN,
    client_ip,
    rate_limit_identifier,
)
from portalauth.service.runtime import get_runtime
from portalauth.service.sessions import TOKEN_TYPE_ACCESS, TOKEN_TYPE_PORTAL, TokenPair
from portalauth.service.tenant_context import (
    AUTH_METHOD_API_KEY,
    AUTH_METHOD_BEARER,
    AUTH_METHOD_PORTAL,
    TenantContext,
)
from portalauth.storage.models import PRINCIPAL_CLIENT, PRINCIPAL_STAFF

logger = get_logger(__name__)

STAFF_REFRESH_COOKIE = "refresh_token"
PORTAL_ACCESS_COOKIE = "portal_access_token"
PORTAL_REFRESH_COOKIE = "portal_refresh_token"


def request_ip(request: Request) -> str:
    runtime = get_runtime()
    remote = request.client.host if request.client else None
    return client_ip(remote, request.headers, runtime.trusted_proxies)


def _bearer_token(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("invalid authorization header")
    return token.strip()


def _context_from_claims(claims: dict, *, auth_method: str, principal_type: str) -> TenantContext:
    return TenantContext(
        tenant_id=claims["tenant_id"],
        user_id=claims["sub"],
        role=claims.get("role", ""),
        auth_method=auth_method,
        principal_type=principal_type,
        session_id=claims.get("session_id"),
        client_id=claims.get("client_id"),
    )


def _authenticate(
    request: Request,
    x_api_key: Optional[str],
    authorization: Optional[str],
    *,
    portal: bool,
) -> Optional[TenantContext]:
    """Resolve the caller, trying API key, then bearer token, then portal cookie.

    A credential that is present but invalid fails the request; it never falls
    through to the next mechanism.
    """
    runtime = get_runtime()
    if x_api_key is not None:
        key, user = runtime.api_keys.validate(x_api_key)
        runtime.api_keys.touch_later(key)
        return TenantContext(
            tenant_id=key.tenant_id,
            user_id=user.id,
            role=API_KEY_ROLE,
            auth_method=AUTH_METHOD_API_KEY,
            principal_type=PRINCIPAL_STAFF,
            api_key_id=key.id,
            scopes=list(key.scopes),
        )
    if authorization is not None:
        token = _bearer_token(authorization)
        if portal:
            claims = runtime.sessions.validate_access(token, expected_type=TOKEN_TYPE_PORTAL)
            return _context_from_claims(
                claims, auth_method=AUTH_METHOD_PORTAL, principal_type=PRINCIPAL_CLIENT
            )
        claims = runtime.sessions.validate_access(token, expected_type=TOKEN_TYPE_ACCESS)
        return _context_from_claims(
            claims, auth_method=AUTH_METHOD_BEARER, principal_type=PRINCIPAL_STAFF
        )
    if portal:
        cookie = request.cookies.get(PORTAL_ACCESS_COOKIE)
        if cookie:
            claims = runtime.sessions.validate_access(cookie, expected_type=TOKEN_TYPE_PORTAL)
            return _context_from_claims(
                claims, auth_method=AUTH_METHOD_PORTAL, principal_type=PRINCIPAL_CLIENT
            )
    return None


async def _admit(request: Request, response: Response, ctx: Optional[TenantContext]) -> None:
    runtime = get_runtime()
    identifier = rate_limit_identifier(ctx.tenant_id if ctx else None, request_ip(request))
    result = await runtime.rate_limiter.enforce(
        NAMESPACE_GENERAL, identifier, runtime.settings.general_rate()
    )
    response.headers.update(result.headers())


def _bind(request: Request, ctx: TenantContext) -> TenantContext:
    request.state.principal = ctx
    bind_principal(tenant_id=ctx.tenant_id, user_id=ctx.user_id, auth_method=ctx.auth_method)
    return ctx


async def _resolve(
    request: Request,
    response: Response,
    x_api_key: Optional[str],
    authorization: Optional[str],
    *,
    portal: bool,
) -> TenantContext:
    """Authenticate, then charge the limiter.

    Rejected credentials are charged to the caller's address before the
    error propagates, so guessed keys and tokens count against the window.
    """
    try:
        ctx = _authenticate(request, x_api_key, authorization, portal=portal)
        if ctx is None:
            raise AuthenticationError("authentication required")
    except ServiceError:
        await _admit(request, response, None)
        raise
    _bind(request, ctx)
    await _admit(request, response, ctx)
    return ctx


async def require_principal(
    request: Request,
    response: Response,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    authorization: Optional[str] = Header(None),
) -> TenantContext:
    """Authenticated staff principal (API key or bearer access token)."""
    return await _resolve(request, response, x_api_key, authorization, portal=False)


async def require_bearer(principal: TenantContext = Depends(require_principal)) -> TenantContext:
    """Session-backed staff principal; API keys are refused."""
    if principal.is_api_key:
        raise ForbiddenError("this endpoint requires a user session")
    return principal


def require_scope(scope: str) -> Callable:
    """Scope gate for API-key callers; session callers pass through."""

    async def dependency(principal: TenantContext = Depends(require_principal)) -> TenantContext:
        if principal.is_api_key and not has_scope(principal.scopes, scope):
            raise ForbiddenError(f"api key lacks scope {scope}")
        return principal

    return dependency


async def require_portal_principal(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> TenantContext:
    return await _resolve(request, response, None, authorization, portal=True)


async def public_rate_limit(request: Request, response: Response) -> None:
    await _admit(request, response, None)


async def login_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    identifier = rate_limit_identifier(None, request_ip(request))
    result = await runtime.rate_limiter.enforce(
        NAMESPACE_LOGIN, identifier, runtime.settings.login_rate()
    )
    response.headers.update(result.headers())


def set_staff_refresh_cookie(response: Response, pair: TokenPair) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        STAFF_REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=pair.refresh_expires_in,
        path="/auth",
        domain=settings.cookie_domain,
    )


def clear_staff_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        STAFF_REFRESH_COOKIE,
        path="/auth",
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def set_portal_cookies(response: Response, pair: TokenPair) -> None:
    settings = get_runtime().settings
    for name, value, max_age in (
        (PORTAL_ACCESS_COOKIE, pair.access_token, pair.expires_in),
        (PORTAL_REFRESH_COOKIE, pair.refresh_token, pair.refresh_expires_in),
    ):
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            max_age=max_age,
            path="/",
            domain=settings.cookie_domain,
        )


def clear_portal_cookies(response: Response) -> None:
    """Overwrite both portal cookies with an already-expired value."""
    settings = get_runtime().settings
    for name in (PORTAL_ACCESS_COOKIE, PORTAL_REFRESH_COOKIE):
        response.set_cookie(
            name,
            "",
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            max_age=0,
            expires=datetime(1970, 1, 1, tzinfo=timezone.utc),
            path="/",
            domain=settings.cookie_domain,
        )
