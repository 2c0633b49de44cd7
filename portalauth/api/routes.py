from __future__ import annotations

import asyncio
from typing import Optional, Union

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from portalauth.api.deps import (
    STAFF_REFRESH_COOKIE,
    clear_staff_refresh_cookie,
    login_rate_limit,
    public_rate_limit,
    request_ip,
    require_bearer,
    require_principal,
    require_scope,
    set_staff_refresh_cookie,
)
from portalauth.api.schemas import (
    APIKeyCreatedResponse,
    APIKeyCreateRequest,
    APIKeyListResponse,
    APIKeyResponse,
    AuthResponse,
    InvitationAcceptRequest,
    InvitationCreatedResponse,
    InvitationCreateRequest,
    InvitationListResponse,
    InvitationResponse,
    InvitationValidateResponse,
    LoginRequest,
    MeResponse,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    RecoveryCodesResponse,
    RefreshRequest,
    RegisterRequest,
    RoleChangeRequest,
    SessionListResponse,
    SessionResponse,
    TenantResponse,
    TotpCodeRequest,
    TotpSetupResponse,
    TotpStatusResponse,
    TwoFactorChallengeResponse,
    TwoFactorLoginRequest,
    UserListResponse,
    UserResponse,
)
from portalauth.logging import get_logger
from portalauth.service.errors import InvalidTokenError
from portalauth.service.invitations import IssuedInvitation
from portalauth.service.runtime import get_runtime
from portalauth.service.sessions import TokenPair
from portalauth.service.tenant_context import TenantContext

logger = get_logger(__name__)

router = APIRouter()


def _auth_response(pair: TokenPair) -> AuthResponse:
    tenant = get_runtime().store.get_tenant(pair.user.tenant_id)
    return AuthResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        user=UserResponse.from_user(pair.user),
        tenant=TenantResponse.from_tenant(tenant) if tenant else None,
    )


def _invitation_created(issued: IssuedInvitation) -> InvitationCreatedResponse:
    base = InvitationResponse.from_invitation(issued.invitation)
    return InvitationCreatedResponse(**base.model_dump(), token=issued.token)


# auth
@router.post(
    "/auth/register",
    response_model=AuthResponse,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(public_rate_limit)],
)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Create a tenant with its first owner and sign the owner in."""
    runtime = get_runtime()
    _, owner = runtime.credentials.register_tenant(
        tenant_name=body.tenant_name,
        tenant_slug=body.tenant_slug,
        email=body.email,
        password=body.password,
        owner_name=body.name,
    )
    pair = runtime.sessions.issue(owner, user_agent=user_agent, ip_address=request_ip(request))
    set_staff_refresh_cookie(response, pair)
    return _auth_response(pair)


@router.post(
    "/auth/login",
    response_model=Union[AuthResponse, TwoFactorChallengeResponse],
    tags=["auth"],
    dependencies=[Depends(login_rate_limit)],
)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Password login.

    Accounts with two-factor authentication get a short-lived challenge token
    instead of session tokens; finish with ``POST /auth/login/2fa``.
    """
    runtime = get_runtime()
    user = runtime.credentials.authenticate_password(body.email, body.password)
    if user.totp_enabled:
        challenge = await runtime.credentials.create_login_challenge(user)
        return TwoFactorChallengeResponse(
            challenge_token=challenge.token, expires_at=challenge.expires_at
        )
    pair = runtime.sessions.issue(user, user_agent=user_agent, ip_address=request_ip(request))
    set_staff_refresh_cookie(response, pair)
    logger.info("login_succeeded", user_id=user.id, tenant_id=user.tenant_id)
    return _auth_response(pair)


@router.post(
    "/auth/login/2fa",
    response_model=AuthResponse,
    tags=["auth"],
    dependencies=[Depends(login_rate_limit)],
)
async def login_second_factor(
    body: TwoFactorLoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    user = await runtime.credentials.complete_login_challenge(body.challenge_token, body.code)
    pair = runtime.sessions.issue(user, user_agent=user_agent, ip_address=request_ip(request))
    set_staff_refresh_cookie(response, pair)
    logger.info("login_succeeded", user_id=user.id, tenant_id=user.tenant_id, second_factor=True)
    return _auth_response(pair)


@router.post(
    "/auth/refresh",
    response_model=AuthResponse,
    tags=["auth"],
    dependencies=[Depends(public_rate_limit)],
)
async def refresh(request: Request, response: Response, body: Optional[RefreshRequest] = None):
    """Rotate a refresh token taken from the body or the refresh cookie."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(STAFF_REFRESH_COOKIE)
    if not token:
        raise InvalidTokenError("refresh token is required")
    pair = runtime.sessions.refresh(token)
    set_staff_refresh_cookie(response, pair)
    return _auth_response(pair)


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(principal: TenantContext = Depends(require_bearer)):
    runtime = get_runtime()
    runtime.sessions.logout(principal)
    result = Response(status_code=204)
    clear_staff_refresh_cookie(result)
    return result


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(principal: TenantContext = Depends(require_principal)):
    runtime = get_runtime()
    user, tenant = runtime.users.current(principal)
    return MeResponse(
        user=UserResponse.from_user(user),
        tenant=TenantResponse.from_tenant(tenant) if tenant else None,
        auth_method=principal.auth_method,
        scopes=list(principal.scopes),
    )


@router.post("/auth/password", status_code=204, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: TenantContext = Depends(require_bearer)
):
    get_runtime().credentials.change_password(
        principal, body.current_password, body.new_password
    )
    return Response(status_code=204)


@router.post("/auth/2fa/setup", response_model=TotpSetupResponse, tags=["auth"])
async def totp_setup(principal: TenantContext = Depends(require_bearer)):
    secret, uri = get_runtime().credentials.setup_totp(principal)
    return TotpSetupResponse(secret=secret, otpauth_uri=uri)


@router.post("/auth/2fa/enable", response_model=RecoveryCodesResponse, tags=["auth"])
async def totp_enable(body: TotpCodeRequest, principal: TenantContext = Depends(require_bearer)):
    codes = get_runtime().credentials.enable_totp(principal, body.code)
    return RecoveryCodesResponse(recovery_codes=codes)


@router.post("/auth/2fa/disable", status_code=204, tags=["auth"])
async def totp_disable(
    body: PasswordConfirmRequest, principal: TenantContext = Depends(require_bearer)
):
    get_runtime().credentials.disable_totp(principal, body.password)
    return Response(status_code=204)


@router.post("/auth/2fa/recovery-codes", response_model=RecoveryCodesResponse, tags=["auth"])
async def totp_recovery_codes(
    body: PasswordConfirmRequest, principal: TenantContext = Depends(require_bearer)
):
    codes = get_runtime().credentials.regenerate_recovery_codes(principal, body.password)
    return RecoveryCodesResponse(recovery_codes=codes)


@router.get("/auth/2fa/status", response_model=TotpStatusResponse, tags=["auth"])
async def totp_status(principal: TenantContext = Depends(require_bearer)):
    return TotpStatusResponse(**get_runtime().credentials.totp_status(principal))


# sessions
@router.get("/sessions", response_model=SessionListResponse, tags=["sessions"])
async def list_sessions(principal: TenantContext = Depends(require_scope("read:sessions"))):
    sessions = get_runtime().sessions.list_sessions(principal)
    return SessionListResponse(
        items=[SessionResponse.from_session(s, current_id=principal.session_id) for s in sessions]
    )


@router.delete("/sessions/{session_id}", status_code=204, tags=["sessions"])
async def terminate_session(
    session_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_scope("write:sessions")),
):
    get_runtime().sessions.terminate_session(principal, session_id)
    return Response(status_code=204)


@router.delete("/sessions", tags=["sessions"])
async def terminate_all_sessions(
    principal: TenantContext = Depends(require_scope("write:sessions")),
):
    removed = get_runtime().sessions.logout_all(principal)
    return {"revoked": removed}


# users
@router.get("/users", response_model=UserListResponse, tags=["users"])
async def list_users(principal: TenantContext = Depends(require_scope("read:users"))):
    users = get_runtime().users.list_users(principal)
    return UserListResponse(items=[UserResponse.from_user(u) for u in users])


@router.patch("/users/{user_id}/role", response_model=UserResponse, tags=["users"])
async def change_user_role(
    body: RoleChangeRequest,
    user_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_scope("write:users")),
):
    user = get_runtime().users.change_role(principal, user_id, body.role)
    return UserResponse.from_user(user)


@router.delete("/users/{user_id}", status_code=204, tags=["users"])
async def deactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_scope("write:users")),
):
    get_runtime().users.deactivate(principal, user_id)
    return Response(status_code=204)


# api keys
@router.post("/api-keys", response_model=APIKeyCreatedResponse, status_code=201, tags=["api-keys"])
async def create_api_key(body: APIKeyCreateRequest, principal: TenantContext = Depends(require_bearer)):
    key, raw = get_runtime().api_keys.create(
        principal, body.name, body.scopes, expires_in_days=body.expires_in_days
    )
    return APIKeyCreatedResponse(**APIKeyResponse.from_key(key).model_dump(), key=raw)


@router.get("/api-keys", response_model=APIKeyListResponse, tags=["api-keys"])
async def list_api_keys(principal: TenantContext = Depends(require_bearer)):
    keys = get_runtime().api_keys.list(principal)
    return APIKeyListResponse(items=[APIKeyResponse.from_key(k) for k in keys])


@router.get("/api-keys/{key_id}", response_model=APIKeyResponse, tags=["api-keys"])
async def get_api_key(
    key_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_bearer),
):
    return APIKeyResponse.from_key(get_runtime().api_keys.get(principal, key_id))


@router.delete("/api-keys/{key_id}", status_code=204, tags=["api-keys"])
async def revoke_api_key(
    key_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_bearer),
):
    get_runtime().api_keys.revoke(principal, key_id)
    return Response(status_code=204)


# invitations
@router.post(
    "/invitations",
    response_model=InvitationCreatedResponse,
    status_code=201,
    tags=["invitations"],
)
async def create_invitation(
    body: InvitationCreateRequest,
    principal: TenantContext = Depends(require_scope("write:invitations")),
):
    # Invitation email goes out over blocking SMTP
    issued = await asyncio.to_thread(
        get_runtime().invitations.create, principal, body.email, body.role
    )
    return _invitation_created(issued)


@router.get("/invitations", response_model=InvitationListResponse, tags=["invitations"])
async def list_invitations(
    principal: TenantContext = Depends(require_scope("read:invitations")),
):
    invitations = get_runtime().invitations.list(principal)
    return InvitationListResponse(
        items=[InvitationResponse.from_invitation(i) for i in invitations]
    )


@router.get(
    "/invitations/validate/{token}",
    response_model=InvitationValidateResponse,
    tags=["invitations"],
    dependencies=[Depends(public_rate_limit)],
)
async def validate_invitation(token: str = Path(..., min_length=1, max_length=512)):
    return InvitationValidateResponse(**get_runtime().invitations.validate(token))


@router.post(
    "/invitations/{token}/accept",
    response_model=AuthResponse,
    tags=["invitations"],
    dependencies=[Depends(public_rate_limit)],
)
async def accept_invitation(
    body: InvitationAcceptRequest,
    request: Request,
    response: Response,
    token: str = Path(..., min_length=1, max_length=512),
    user_agent: Optional[str] = Header(None),
):
    pair = get_runtime().invitations.accept(
        token,
        body.name,
        body.password,
        user_agent=user_agent,
        ip_address=request_ip(request),
    )
    set_staff_refresh_cookie(response, pair)
    return _auth_response(pair)


@router.post(
    "/invitations/{invitation_id}/resend",
    response_model=InvitationCreatedResponse,
    tags=["invitations"],
)
async def resend_invitation(
    invitation_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_scope("write:invitations")),
):
    issued = await asyncio.to_thread(get_runtime().invitations.resend, principal, invitation_id)
    return _invitation_created(issued)


@router.delete("/invitations/{invitation_id}", status_code=204, tags=["invitations"])
async def delete_invitation(
    invitation_id: str = Path(..., max_length=64),
    principal: TenantContext = Depends(require_scope("write:invitations")),
):
    get_runtime().invitations.delete(principal, invitation_id)
    return Response(status_code=204)
