from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from collabauth.service.auth import AuthContext, LoginResult
from collabauth.service.tenants import TenantChoice
from collabauth.storage.models import Role, User

MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 1024
MAX_REDIRECT_LENGTH = 2048


class ErrorBody(BaseModel):
    code: str
    message: str
    fields: List[str] = Field(default_factory=list)
    details: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody


class UserPayload(BaseModel):
    id: int
    email: str
    role: str
    is_admin: bool
    name: str

    @classmethod
    def from_user(cls, user: User, role: Optional[Role] = None) -> "UserPayload":
        effective = role.value if role is not None else user.role
        return cls(
            id=user.id,
            email=user.email,
            role=effective,
            is_admin=user.is_admin or role is Role.ADMIN,
            name=user.display_name or user.email,
        )


class TenantPayload(BaseModel):
    id: int
    code: str
    name: str
    is_default: bool = False

    @classmethod
    def from_choice(cls, choice: TenantChoice) -> "TenantPayload":
        return cls(**choice.to_dict())


class AuthActionRequest(BaseModel):
    """Body of ``POST /api/auth``; which fields matter depends on ``action``."""

    model_config = ConfigDict(extra="ignore")

    action: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    next: Optional[str] = Field(default=None, max_length=MAX_REDIRECT_LENGTH)
    tenant_id: Optional[Any] = None

    @field_validator("action")
    @classmethod
    def _normalize_action(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip().lower() or None


class SwitchTenantRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: Optional[Any] = None


class NavigationRequest(BaseModel):
    context: str = Field(..., min_length=1, max_length=64)


class SuccessResponse(BaseModel):
    success: bool = True


class LoginResponse(BaseModel):
    success: bool = True
    user: UserPayload
    tenants: List[TenantPayload]
    current_tenant_id: int
    auto_selected: bool
    needs_selection: bool
    redirect: str
    session_id: str
    csrf_token: str

    @classmethod
    def from_result(cls, result: LoginResult) -> "LoginResponse":
        return cls(
            user=UserPayload.from_user(result.user, result.role),
            tenants=[TenantPayload.from_choice(c) for c in result.tenants],
            current_tenant_id=result.selection.tenant.id,
            auto_selected=result.selection.auto_selected,
            needs_selection=result.selection.needs_selection,
            redirect=result.redirect,
            session_id=result.session.id,
            csrf_token=result.csrf_token,
        )


class CheckResponse(BaseModel):
    success: bool = True
    authenticated: bool
    user: Optional[UserPayload] = None
    current_tenant_id: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def anonymous(cls, reason: Optional[str] = None) -> "CheckResponse":
        return cls(authenticated=False, reason=reason)

    @classmethod
    def from_context(cls, ctx: AuthContext) -> "CheckResponse":
        return cls(
            authenticated=True,
            user=UserPayload.from_user(ctx.user, ctx.role),
            current_tenant_id=ctx.tenant.id,
        )


class SessionResponse(BaseModel):
    success: bool = True
    user: UserPayload
    current_tenant: TenantPayload
    session_id: str
    csrf_token: str
    last_activity_at: str
    idle_timeout_seconds: int


class TenantListResponse(BaseModel):
    success: bool = True
    tenants: List[TenantPayload]
    current_tenant_id: Optional[int] = None


class SwitchTenantResponse(BaseModel):
    success: bool = True
    current_tenant_id: int
    tenant: TenantPayload


class PermissionsResponse(BaseModel):
    success: bool = True
    role: Optional[str] = None
    capabilities: List[str]


class TerminateSessionsResponse(BaseModel):
    success: bool = True
    terminated: int


class NavigationResponse(BaseModel):
    success: bool = True
    context: str
    count: int
