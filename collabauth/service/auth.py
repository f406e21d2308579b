from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from collabauth.config import Settings
from collabauth.logging import get_logger, log_auth_event
from collabauth.service.authorization import RoleAuthorizer
from collabauth.service.credentials import CredentialVerifier
from collabauth.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    InvalidCredentialsError,
    InvalidFieldError,
    RedirectLoopDetectedError,
    ServiceError,
    SessionExpiredError,
    TenantAccessDeniedError,
    UnauthenticatedError,
)
from collabauth.service.loop_guard import RedirectLoopGuard
from collabauth.service.redirects import RedirectValidator
from collabauth.service.sessions import SessionManager
from collabauth.service.tenants import TenantChoice, TenantResolver, TenantSelection
from collabauth.storage.common import CredentialStore
from collabauth.storage.errors import ConstraintViolation, StoreUnavailable
from collabauth.storage.models import (
    Role,
    Session,
    Tenant,
    User,
    UserStatus,
    UserTenantAssociation,
)

logger = get_logger(__name__)



@dataclass
class AuthContext:
    """An authenticated session together with the records it is bound to."""

    session: Session
    user: User
    tenant: Tenant
    membership: Optional[UserTenantAssociation]
    role: Optional[Role]

    @property
    def is_admin(self) -> bool:
        return self.user.is_system_admin or self.role is Role.ADMIN


@dataclass
class LoginResult:
    user: User
    tenants: List[TenantChoice]
    selection: TenantSelection
    session: Session
    redirect: str
    csrf_token: str
    role: Optional[Role] = None
    context: Optional[AuthContext] = field(default=None, repr=False)


def _coerce_tenant_id(tenant_id: object) -> int:
    if isinstance(tenant_id, bool):
        raise InvalidFieldError("tenant_id must be an integer", fields=["tenant_id"])
    if isinstance(tenant_id, int):
        return tenant_id
    if isinstance(tenant_id, str) and tenant_id.strip().lstrip("-").isdigit():
        return int(tenant_id.strip())
    raise InvalidFieldError("tenant_id must be an integer", fields=["tenant_id"])


class AuthFacade:
    """Entry points the HTTP layer and other modules use for authentication.

    Holds no request state of its own; every call takes the session id and
    returns fresh values read from the store.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        verifier: Optional[CredentialVerifier] = None,
        resolver: Optional[TenantResolver] = None,
        sessions: Optional[SessionManager] = None,
        authorizer: Optional[RoleAuthorizer] = None,
        redirects: Optional[RedirectValidator] = None,
        loop_guard: Optional[RedirectLoopGuard] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier or CredentialVerifier(store, settings)
        self.resolver = resolver or TenantResolver(store)
        self.sessions = sessions or SessionManager(store, settings)
        self.authorizer = authorizer or RoleAuthorizer(store)
        self.redirects = redirects or RedirectValidator.from_settings(settings)
        self.loop_guard = loop_guard or RedirectLoopGuard(
            self.sessions, threshold=settings.redirect_loop_threshold
        )
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _audit(self, action: str, **fields) -> None:
        log_auth_event(action, logger=self.logger, **fields)
        try:
            self.store.record_audit_event(action, **fields)
        except (StoreUnavailable, ConstraintViolation) as exc:
            self.logger.warning("audit_write_failed", action=action, error=str(exc))

    def _landing_role(self, user: User, membership: Optional[UserTenantAssociation]) -> Optional[Role]:
        if user.is_admin:
            return Role.ADMIN
        return self.authorizer.role_for(user, membership)

    # login
    def login(
        self,
        email: Optional[str],
        password: Optional[str],
        next: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        previous_session_id: Optional[str] = None,
    ) -> LoginResult:
        """Verify credentials, pick a tenant, open a session and choose a landing page."""

        try:
            user = self.verifier.verify(email, password, ip_addr=ip_addr)
        except InvalidCredentialsError:
            self._audit("login.failed", ip_addr=ip_addr, user_agent=user_agent)
            raise
        except (AccountLockedError, AccountInactiveError) as exc:
            self._audit(
                "login.blocked",
                ip_addr=ip_addr,
                user_agent=user_agent,
                meta={"reason": exc.error_code},
            )
            raise

        try:
            choices = self.resolver.resolve_tenants(user)
        except TenantAccessDeniedError:
            self._audit(
                "login.blocked",
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                meta={"reason": "no_tenant"},
            )
            raise
        selection = self.resolver.pick_current(user, choices)
        session = self.sessions.create(
            user,
            selection.tenant,
            ip_addr=ip_addr,
            user_agent=user_agent,
            previous_session_id=previous_session_id,
        )
        self.store.touch_membership(user.id, selection.tenant.id, now=self._now())

        membership = _membership_for(choices, selection.tenant.id)
        role = self._landing_role(user, membership)
        redirect = self.redirects.resolve(next, role)
        csrf_token = self.sessions.ensure_csrf_token(session)
        self._audit(
            "login.success",
            user_id=user.id,
            tenant_id=selection.tenant.id,
            session_id=session.id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            meta={"auto_selected": selection.auto_selected},
        )
        context = AuthContext(
            session=session,
            user=user,
            tenant=selection.tenant,
            membership=membership,
            role=self.authorizer.role_for(user, membership),
        )
        return LoginResult(
            user=user,
            tenants=choices,
            selection=selection,
            session=session,
            redirect=redirect,
            csrf_token=csrf_token,
            role=context.role,
            context=context,
        )

    # session checks
    def check(self, session_id: Optional[str]) -> AuthContext:
        """Resolve a session without extending its idle window.

        Expired or no longer valid sessions are destroyed on the way out.
        """

        session = self.sessions.get(session_id)
        if session is None:
            raise UnauthenticatedError()
        if self.sessions.is_expired(session):
            self.sessions.destroy(session)
            raise SessionExpiredError()
        user = self.store.get_user(session.user_id)
        if user is None or user.status != UserStatus.ACTIVE.value:
            self.sessions.destroy(session)
            raise UnauthenticatedError()
        if not self.resolver.validate_binding(user, session.tenant_id):
            self.logger.warning(
                "session_binding_invalid", user_id=user.id, tenant_id=session.tenant_id
            )
            self.sessions.destroy(session)
            raise UnauthenticatedError()
        tenant = self.store.get_tenant(session.tenant_id)
        membership = self.store.get_membership(user.id, session.tenant_id)
        if membership is not None and not membership.is_active:
            membership = None
        return AuthContext(
            session=session,
            user=user,
            tenant=tenant,
            membership=membership,
            role=self.authorizer.role_for(user, membership),
        )

    def authenticate(self, session_id: Optional[str], *, renew: bool = True) -> AuthContext:
        """``check`` plus an activity touch, used by guarded routes."""

        ctx = self.check(session_id)
        previous_id = ctx.session.id
        ctx.session = self.sessions.touch(ctx.session, renew=renew)
        if ctx.session.id != previous_id:
            self._audit(
                "session.regenerated",
                user_id=ctx.user.id,
                tenant_id=ctx.tenant.id,
                session_id=ctx.session.id,
                meta={"reason": "renewal"},
            )
        return ctx

    # tenants
    def available_tenants(self, session_id: Optional[str]) -> Tuple[AuthContext, List[TenantChoice]]:
        ctx = self.authenticate(session_id)
        return ctx, self.resolver.resolve_tenants(ctx.user)

    def switch_tenant(self, session_id: Optional[str], tenant_id: object) -> AuthContext:
        """Move the session to another tenant; on any error the session is unchanged."""

        requested = _coerce_tenant_id(tenant_id)
        ctx = self.check(session_id)
        if requested == ctx.session.tenant_id:
            ctx.session = self.sessions.touch(ctx.session)
            return ctx
        try:
            if not self.authorizer.can_switch_tenant(ctx.user, ctx.membership):
                raise TenantAccessDeniedError("Role may not switch tenants")
            selection = self.resolver.pick_current(ctx.user, requested_tenant_id=requested)
        except ServiceError as exc:
            self._audit(
                "tenant.switch_denied",
                user_id=ctx.user.id,
                tenant_id=ctx.session.tenant_id,
                session_id=ctx.session.id,
                meta={"requested_tenant_id": requested, "reason": exc.error_code},
            )
            raise

        previous_tenant_id = ctx.session.tenant_id
        session = self.sessions.switch_tenant(ctx.session, selection.tenant)
        self.store.touch_membership(ctx.user.id, selection.tenant.id, now=self._now())
        self._audit(
            "tenant.switch",
            user_id=ctx.user.id,
            tenant_id=selection.tenant.id,
            session_id=session.id,
            meta={"from_tenant_id": previous_tenant_id},
        )
        membership = self.store.get_membership(ctx.user.id, selection.tenant.id)
        if membership is not None and not membership.is_active:
            membership = None
        return AuthContext(
            session=session,
            user=ctx.user,
            tenant=selection.tenant,
            membership=membership,
            role=self.authorizer.role_for(ctx.user, membership),
        )

    # logout and session maintenance
    def logout(self, session_id: Optional[str]) -> bool:
        """Destroy the session; calling it again, or without a session, is harmless."""

        session = self.sessions.get(session_id)
        if session is None:
            return False
        removed = self.sessions.destroy(session)
        if removed:
            self._audit(
                "logout",
                user_id=session.user_id,
                tenant_id=session.tenant_id,
                session_id=session.id,
            )
        return removed

    def refresh_session(self, session_id: Optional[str]) -> AuthContext:
        ctx = self.authenticate(session_id, renew=False)
        ctx.session = self.sessions.regenerate(ctx.session)
        self._audit(
            "session.regenerated",
            user_id=ctx.user.id,
            tenant_id=ctx.tenant.id,
            session_id=ctx.session.id,
            meta={"reason": "explicit"},
        )
        return ctx

    def terminate_other_sessions(self, session_id: Optional[str]) -> int:
        ctx = self.authenticate(session_id, renew=False)
        removed = self.sessions.destroy_other_sessions(ctx.user.id, ctx.session.id)
        self._audit(
            "session.terminate_others",
            user_id=ctx.user.id,
            tenant_id=ctx.tenant.id,
            session_id=ctx.session.id,
            meta={"count": removed},
        )
        return removed

    # authorization
    def authorize(self, session_id: Optional[str], capability: object) -> bool:
        try:
            ctx = self.check(session_id)
        except UnauthenticatedError:
            return False
        return self.authorizer.authorize(ctx.session, capability)

    def permissions(self, ctx: AuthContext) -> List[str]:
        return sorted(self.authorizer.effective_capabilities(ctx.user, ctx.membership))

    # navigation
    def observe_redirect(self, session_id: Optional[str], context: str) -> int:
        """Count one redirect for ``context``; raises once a loop is detected."""

        ctx = self.authenticate(session_id, renew=False)
        if self.loop_guard.observe(ctx.session, context):
            self._audit(
                "redirect.loop_detected",
                user_id=ctx.user.id,
                tenant_id=ctx.tenant.id,
                session_id=ctx.session.id,
                meta={"context": context},
            )
            raise RedirectLoopDetectedError(
                f"Redirect loop detected for '{context}'",
                detail={"context": context, "threshold": self.loop_guard.threshold},
            )
        return self.loop_guard.counters(ctx.session).get(context.strip(), 0)

    def reset_redirect(self, session_id: Optional[str], context: str) -> None:
        ctx = self.authenticate(session_id, renew=False)
        self.loop_guard.reset(ctx.session, context)


def _membership_for(
    choices: List[TenantChoice], tenant_id: int
) -> Optional[UserTenantAssociation]:
    for choice in choices:
        if choice.tenant.id == tenant_id:
            return choice.membership
    return None
