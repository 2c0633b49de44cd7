from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from portalauth.api.deps import (
    PORTAL_REFRESH_COOKIE,
    clear_portal_cookies,
    login_rate_limit,
    public_rate_limit,
    request_ip,
    require_portal_principal,
    require_principal,
    set_portal_cookies,
)
from portalauth.api.schemas import (
    PortalActivateRequest,
    PortalActivationInfo,
    PortalClientCreatedResponse,
    PortalClientCreateRequest,
    PortalClientListResponse,
    PortalClientResponse,
    PortalLoginRequest,
    PortalMeResponse,
)
from portalauth.logging import get_logger
from portalauth.service.errors import InvalidTokenError
from portalauth.service.runtime import get_runtime
from portalauth.service.sessions import TokenPair
from portalauth.service.tenant_context import TenantContext

logger = get_logger(__name__)

router = APIRouter(prefix="/portal", tags=["portal"])


def _portal_session(pair: TokenPair, response: Response) -> PortalMeResponse:
    """Set both portal cookies and describe the signed-in client."""
    set_portal_cookies(response, pair)
    runtime = get_runtime()
    client = runtime.store.get_portal_client_by_user(pair.user.tenant_id, pair.user.id)
    tenant = runtime.store.get_tenant(pair.user.tenant_id)
    return PortalMeResponse(
        client=PortalClientResponse.from_client(client),
        tenant_name=tenant.name if tenant else None,
    )


# staff-side client management
@router.post("/clients", response_model=PortalClientCreatedResponse, status_code=201)
async def create_client(
    body: PortalClientCreateRequest,
    principal: TenantContext = Depends(require_principal),
):
    # Activation email goes out over blocking SMTP
    client, issued = await asyncio.to_thread(
        get_runtime().portal.create_client,
        principal,
        email=body.email,
        name=body.name,
        company_name=body.company_name,
        language=body.language,
    )
    return PortalClientCreatedResponse(
        client=PortalClientResponse.from_client(client),
        invitation_token=issued.token,
        invitation_expires_at=issued.invitation.expires_at,
    )


@router.get("/clients", response_model=PortalClientListResponse)
async def list_clients(principal: TenantContext = Depends(require_principal)):
    clients = get_runtime().portal.list_clients(principal)
    return PortalClientListResponse(items=[PortalClientResponse.from_client(c) for c in clients])


@router.post("/clients/{client_id}/resend", response_model=PortalClientCreatedResponse)
async def resend_client_invitation(
    client_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_principal),
):
    runtime = get_runtime()
    issued = await asyncio.to_thread(runtime.portal.resend_invitation, principal, client_id)
    client = runtime.store.get_portal_client(principal.tenant_id, client_id)
    return PortalClientCreatedResponse(
        client=PortalClientResponse.from_client(client),
        invitation_token=issued.token,
        invitation_expires_at=issued.invitation.expires_at,
    )


@router.delete("/clients/{client_id}", status_code=204)
async def deactivate_client(
    client_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_principal),
):
    get_runtime().portal.deactivate_client(principal, client_id)
    return Response(status_code=204)


# client-side
@router.get(
    "/activate/{token}",
    response_model=PortalActivationInfo,
    dependencies=[Depends(public_rate_limit)],
)
async def validate_activation(token: str = Path(..., min_length=1, max_length=512)):
    return PortalActivationInfo(**get_runtime().portal.validate_activation(token))


@router.post(
    "/activate/{token}",
    response_model=PortalMeResponse,
    dependencies=[Depends(public_rate_limit)],
)
async def activate(
    body: PortalActivateRequest,
    request: Request,
    response: Response,
    token: str = Path(..., min_length=1, max_length=512),
    user_agent: Optional[str] = Header(None),
):
    pair = get_runtime().portal.activate(
        token, body.password, user_agent=user_agent, ip_address=request_ip(request)
    )
    return _portal_session(pair, response)


@router.post(
    "/login",
    response_model=PortalMeResponse,
    dependencies=[Depends(login_rate_limit)],
)
async def portal_login(
    body: PortalLoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    pair = get_runtime().portal.login(
        body.email, body.password, user_agent=user_agent, ip_address=request_ip(request)
    )
    logger.info("portal_login_succeeded", user_id=pair.user.id, tenant_id=pair.user.tenant_id)
    return _portal_session(pair, response)


@router.post(
    "/refresh",
    response_model=PortalMeResponse,
    dependencies=[Depends(public_rate_limit)],
)
async def portal_refresh(request: Request, response: Response):
    token = request.cookies.get(PORTAL_REFRESH_COOKIE)
    if not token:
        raise InvalidTokenError("refresh token is required")
    pair = get_runtime().portal.refresh(token)
    return _portal_session(pair, response)


@router.post("/logout", status_code=204, dependencies=[Depends(public_rate_limit)])
async def portal_logout(request: Request):
    get_runtime().portal.logout(request.cookies.get(PORTAL_REFRESH_COOKIE))
    result = Response(status_code=204)
    clear_portal_cookies(result)
    return result


@router.get("/me", response_model=PortalMeResponse)
async def portal_me(principal: TenantContext = Depends(require_portal_principal)):
    client, tenant = get_runtime().portal.profile(principal)
    return PortalMeResponse(
        client=PortalClientResponse.from_client(client),
        tenant_name=tenant.name if tenant else None,
    )
