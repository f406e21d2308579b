from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, Response

from collabauth.api.schemas import (
    AuthActionRequest,
    CheckResponse,
    LoginResponse,
    NavigationRequest,
    NavigationResponse,
    PermissionsResponse,
    SessionResponse,
    SuccessResponse,
    SwitchTenantRequest,
    SwitchTenantResponse,
    TenantListResponse,
    TenantPayload,
    TerminateSessionsResponse,
    UserPayload,
)
from collabauth.logging import get_logger
from collabauth.service.auth import AuthContext
from collabauth.service.errors import (
    CsrfError,
    MissingFieldError,
    RateLimitedError,
    ServiceError,
    UnauthenticatedError,
)
from collabauth.service.runtime import Runtime, check_rate_limit, get_runtime
from collabauth.service.tenants import TenantChoice
from collabauth.storage.models import Session

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

SESSION_HEADER = "X-Session-ID"
CSRF_HEADER = "X-CSRF-Token"
AUTH_ACTIONS = ("login", "check", "logout", "switch_tenant", "get_tenants")


@dataclass
class SessionCredential:
    session_id: Optional[str]
    via_cookie: bool


def session_credential(request: Request) -> SessionCredential:
    """Session id from the ``X-Session-ID`` header, else the session cookie."""
    header_value = request.headers.get(SESSION_HEADER)
    if header_value:
        return SessionCredential(session_id=header_value.strip(), via_cookie=False)
    cookie_name = get_runtime().settings.session_cookie_name
    return SessionCredential(session_id=request.cookies.get(cookie_name), via_cookie=True)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_session_cookie(response: Response, runtime: Runtime, session: Session) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        session.id,
        max_age=settings.session_idle_minutes * 60,
        path=settings.app_base_path,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path=settings.app_base_path,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


def _publish_session(
    response: Response, runtime: Runtime, credential: SessionCredential, session: Session
) -> None:
    if credential.via_cookie:
        _apply_session_cookie(response, runtime, session)
    else:
        response.headers[SESSION_HEADER] = session.id


def _after_touch(
    response: Response, runtime: Runtime, credential: SessionCredential, session: Session
) -> None:
    """Keep the client credential in step with a touched session.

    The cookie max-age restarts with every touch; header clients only hear
    about a new id.
    """
    if credential.via_cookie or session.id != credential.session_id:
        _publish_session(response, runtime, credential, session)


def _require_csrf(
    runtime: Runtime, request: Request, credential: SessionCredential, ctx: AuthContext
) -> None:
    # header-borne session ids cannot be attached by a cross-site form
    if not credential.via_cookie:
        return
    token = request.headers.get(CSRF_HEADER)
    if not runtime.auth.sessions.validate_csrf_token(ctx.session, token):
        logger.warning("csrf_rejected", user_id=ctx.user.id, path=request.url.path)
        raise CsrfError()


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> None:
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise RateLimitedError(
            "Too many login attempts, try again later",
            detail={"retry_after": max(1, reset_seconds)},
        )


async def get_auth_context(
    request: Request,
    response: Response,
    credential: SessionCredential = Depends(session_credential),
) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(credential.session_id)
    _after_touch(response, runtime, credential, ctx.session)
    return ctx


def _tenant_payloads(choices: list[TenantChoice]) -> list[TenantPayload]:
    return [TenantPayload.from_choice(c) for c in choices]


# POST /api/auth action dispatcher
async def _action_login(
    runtime: Runtime,
    request: Request,
    response: Response,
    credential: SessionCredential,
    body: AuthActionRequest,
    next_param: Optional[str],
):
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request) or 'unknown'}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
    )
    result = runtime.auth.login(
        body.email,
        body.password,
        body.next if body.next is not None else next_param,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        previous_session_id=credential.session_id,
    )
    _apply_session_cookie(response, runtime, result.session)
    return LoginResponse.from_result(result)


def _action_check(runtime: Runtime, response: Response, credential: SessionCredential):
    if not credential.session_id:
        return CheckResponse.anonymous()
    try:
        ctx = runtime.auth.check(credential.session_id)
    except UnauthenticatedError as exc:
        if credential.via_cookie:
            _clear_session_cookie(response, runtime)
        return CheckResponse.anonymous(reason=exc.error_code)
    return CheckResponse.from_context(ctx)


def _action_logout(runtime: Runtime, response: Response, credential: SessionCredential):
    runtime.auth.logout(credential.session_id)
    _clear_session_cookie(response, runtime)
    return SuccessResponse()


def _action_switch_tenant(
    runtime: Runtime,
    request: Request,
    response: Response,
    credential: SessionCredential,
    tenant_id,
):
    if tenant_id is None or (isinstance(tenant_id, str) and not tenant_id.strip()):
        raise MissingFieldError(["tenant_id"])
    ctx = runtime.auth.check(credential.session_id)
    _require_csrf(runtime, request, credential, ctx)
    switched = runtime.auth.switch_tenant(credential.session_id, tenant_id)
    _after_touch(response, runtime, credential, switched.session)
    choice = TenantChoice(tenant=switched.tenant, membership=switched.membership)
    return SwitchTenantResponse(
        current_tenant_id=switched.tenant.id, tenant=TenantPayload.from_choice(choice)
    )


def _action_get_tenants(
    runtime: Runtime, response: Response, credential: SessionCredential
):
    ctx, choices = runtime.auth.available_tenants(credential.session_id)
    _after_touch(response, runtime, credential, ctx.session)
    return TenantListResponse(
        tenants=_tenant_payloads(choices), current_tenant_id=ctx.tenant.id
    )


@router.post("/auth", tags=["auth"])
async def auth_action(
    request: Request,
    response: Response,
    body: Optional[AuthActionRequest] = Body(None),
    next_param: Optional[str] = Query(None, alias="next", max_length=2048),
    credential: SessionCredential = Depends(session_credential),
):
    """Action-style auth endpoint: login, check, logout, switch_tenant, get_tenants."""
    runtime = get_runtime()
    body = body or AuthActionRequest()
    if not body.action:
        raise MissingFieldError(["action"])
    if body.action not in AUTH_ACTIONS:
        raise ServiceError(
            f"Unknown action '{body.action}'",
            fields=["action"],
            status_code=400,
            error_code="invalid_action",
        )
    if body.action == "login":
        return await _action_login(runtime, request, response, credential, body, next_param)
    if body.action == "check":
        return _action_check(runtime, response, credential)
    if body.action == "logout":
        return _action_logout(runtime, response, credential)
    if body.action == "switch_tenant":
        return _action_switch_tenant(runtime, request, response, credential, body.tenant_id)
    return _action_get_tenants(runtime, response, credential)


@router.get("/auth/session", response_model=SessionResponse, tags=["auth"])
async def current_session(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    csrf_token = runtime.auth.sessions.ensure_csrf_token(ctx.session)
    choice = TenantChoice(tenant=ctx.tenant, membership=ctx.membership)
    return SessionResponse(
        user=UserPayload.from_user(ctx.user, ctx.role),
        current_tenant=TenantPayload.from_choice(choice),
        session_id=ctx.session.id,
        csrf_token=csrf_token,
        last_activity_at=ctx.session.last_activity_at.isoformat(),
        idle_timeout_seconds=runtime.settings.session_idle_minutes * 60,
    )


@router.get("/me", response_model=CheckResponse, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return CheckResponse.from_context(ctx)


@router.post("/auth/refresh-session", response_model=SessionResponse, tags=["auth"])
async def refresh_session(
    request: Request,
    response: Response,
    credential: SessionCredential = Depends(session_credential),
):
    runtime = get_runtime()
    ctx = runtime.auth.check(credential.session_id)
    _require_csrf(runtime, request, credential, ctx)
    ctx = runtime.auth.refresh_session(credential.session_id)
    _publish_session(response, runtime, credential, ctx.session)
    choice = TenantChoice(tenant=ctx.tenant, membership=ctx.membership)
    return SessionResponse(
        user=UserPayload.from_user(ctx.user, ctx.role),
        current_tenant=TenantPayload.from_choice(choice),
        session_id=ctx.session.id,
        csrf_token=runtime.auth.sessions.ensure_csrf_token(ctx.session),
        last_activity_at=ctx.session.last_activity_at.isoformat(),
        idle_timeout_seconds=runtime.settings.session_idle_minutes * 60,
    )


@router.post(
    "/auth/terminate-other-sessions",
    response_model=TerminateSessionsResponse,
    tags=["auth"],
)
async def terminate_other_sessions(
    request: Request,
    credential: SessionCredential = Depends(session_credential),
):
    runtime = get_runtime()
    ctx = runtime.auth.check(credential.session_id)
    _require_csrf(runtime, request, credential, ctx)
    removed = runtime.auth.terminate_other_sessions(credential.session_id)
    return TerminateSessionsResponse(terminated=removed)


@router.get("/tenants", response_model=TenantListResponse, tags=["tenants"])
async def list_tenants(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    choices = runtime.auth.resolver.resolve_tenants(ctx.user)
    return TenantListResponse(
        tenants=_tenant_payloads(choices), current_tenant_id=ctx.tenant.id
    )


@router.post("/switch-tenant", response_model=SwitchTenantResponse, tags=["tenants"])
async def switch_tenant(
    request: Request,
    response: Response,
    body: SwitchTenantRequest,
    credential: SessionCredential = Depends(session_credential),
):
    runtime = get_runtime()
    return _action_switch_tenant(runtime, request, response, credential, body.tenant_id)


@router.get("/permissions", response_model=PermissionsResponse, tags=["authorization"])
async def permissions(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return PermissionsResponse(
        role=ctx.role.value if ctx.role else None,
        capabilities=runtime.auth.permissions(ctx),
    )


@router.post("/navigation/observe", response_model=NavigationResponse, tags=["navigation"])
async def observe_redirect(
    body: NavigationRequest,
    credential: SessionCredential = Depends(session_credential),
):
    runtime = get_runtime()
    count = runtime.auth.observe_redirect(credential.session_id, body.context)
    return NavigationResponse(context=body.context, count=count)


@router.post("/navigation/reset", response_model=NavigationResponse, tags=["navigation"])
async def reset_redirect(
    body: NavigationRequest,
    credential: SessionCredential = Depends(session_credential),
):
    runtime = get_runtime()
    runtime.auth.reset_redirect(credential.session_id, body.context)
    return NavigationResponse(context=body.context, count=0)
