"""Common storage pieces shared between memory and postgres implementations.

Holds the store protocol every backend satisfies plus the small helpers both
backends use so that email matching, lockout arithmetic and membership
ordering behave identically.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Tuple

from collabauth.storage.models import (
    AuditEvent,
    Session,
    Tenant,
    User,
    UserTenantAssociation,
)


class CredentialStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: str = "",
        role: str = "standard_user",
        status: str = "active",
        is_system_admin: bool = False,
        password_algo: str = "argon2id",
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: int,
        *,
        threshold: int,
        lockout: timedelta,
        now: datetime,
    ) -> Optional[User]: ...

    def record_successful_login(
        self, user_id: int, *, now: datetime, ip_addr: Optional[str] = None
    ) -> Optional[User]: ...

    # tenants
    def create_tenant(self, code: str, name: str, *, status: str = "active") -> Tenant: ...

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]: ...

    def update_tenant_status(self, tenant_id: int, status: str) -> Optional[Tenant]: ...

    def list_tenants(self, status: Optional[str] = None) -> List[Tenant]: ...

    # memberships
    def add_membership(
        self,
        user_id: int,
        tenant_id: int,
        *,
        role_in_tenant: Optional[str] = None,
        is_default: bool = False,
        is_active: bool = True,
        permission_overrides: Optional[Dict[str, bool]] = None,
    ) -> UserTenantAssociation: ...

    def get_membership(
        self, user_id: int, tenant_id: int
    ) -> Optional[UserTenantAssociation]: ...

    def list_memberships(self, user_id: int) -> List[UserTenantAssociation]: ...

    def set_default_membership(
        self, user_id: int, tenant_id: int
    ) -> Optional[UserTenantAssociation]: ...

    def touch_membership(self, user_id: int, tenant_id: int, *, now: datetime) -> None: ...

    # sessions
    def create_session(
        self, session: Session, *, replaces: Optional[str] = None
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(
        self,
        session_id: str,
        *,
        tenant_id: Optional[int] = None,
        last_activity_at: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> Optional[Session]: ...

    def rotate_session_id(
        self, old_id: str, new_id: str, *, meta: Optional[dict] = None
    ) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: int, except_session_id: Optional[str] = None
    ) -> int: ...

    def delete_idle_sessions(self, idle_before: datetime) -> int: ...

    def list_user_sessions(self, user_id: int) -> List[Session]: ...

    # audit
    def record_audit_event(
        self,
        action: str,
        *,
        user_id: Optional[int] = None,
        tenant_id: Optional[int] = None,
        session_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> AuditEvent: ...

    def list_audit_events(
        self, *, user_id: Optional[int] = None, limit: int = 100
    ) -> List[AuditEvent]: ...

    def ping(self) -> None: ...


USER_MUTABLE_FIELDS = frozenset(
    {"display_name", "role", "status", "is_system_admin", "password_hash", "password_algo"}
)


def normalize_email(email: str) -> str:
    """Trim and lower-case an email address for lookups and uniqueness."""
    return (email or "").strip().lower()


def next_lockout_state(
    attempts: int,
    locked_until: Optional[datetime],
    *,
    threshold: int,
    lockout: timedelta,
    now: datetime,
) -> Tuple[int, Optional[datetime]]:
    """Return the (attempts, locked_until) pair after one more failed login.

    A failure after an elapsed lockout starts a fresh count. Reaching the
    threshold starts a new lockout window.
    """
    if locked_until is not None and locked_until <= now:
        attempts = 0
        locked_until = None
    attempts += 1
    if attempts >= threshold:
        locked_until = now + lockout
    return attempts, locked_until


def membership_sort_key(
    membership: Optional[UserTenantAssociation], tenant: Tenant
) -> Tuple[int, str, int]:
    """Default membership first, then tenant name, then id."""
    is_default = bool(membership and membership.is_default)
    return (0 if is_default else 1, tenant.name.casefold(), tenant.id)


def load_json_map(raw: Any) -> Dict[str, Any]:
    """Decode a JSON(B) column that may arrive as text, dict, or NULL."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def normalize_overrides(raw: Any) -> Dict[str, bool]:
    """Coerce a permission override payload into ``{capability: bool}``.

    A plain list of capability names is read as grants.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError):
            return {}
    if isinstance(raw, (list, tuple, set)):
        return {str(cap): True for cap in raw if isinstance(cap, str) and cap}
    overrides: Dict[str, bool] = {}
    for cap, allowed in load_json_map(raw).items():
        if isinstance(cap, str) and cap and isinstance(allowed, bool):
            overrides[cap] = allowed
    return overrides
