from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    """Opaque 256-bit identifier from the OS CSPRNG."""
    return secrets.token_urlsafe(32)


class Role(str, Enum):
    ADMIN = "admin"
    SPECIAL_USER = "special_user"
    STANDARD_USER = "standard_user"
    GUEST = "guest"

    @classmethod
    def parse(cls, value: object) -> Optional["Role"]:
        """Return the matching role, or None for anything unrecognised."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    LOCKED = "locked"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


@dataclass
class User:
    id: int
    email: str
    password_hash: str
    display_name: str = ""
    role: str = Role.STANDARD_USER.value
    status: str = UserStatus.ACTIVE.value
    is_system_admin: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.is_system_admin or self.role == Role.ADMIN.value

    def is_locked(self, now: datetime) -> bool:
        if self.status == UserStatus.LOCKED.value:
            return True
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Tenant:
    id: int
    code: str
    name: str
    status: str = TenantStatus.ACTIVE.value
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE.value


@dataclass
class UserTenantAssociation:
    user_id: int
    tenant_id: int
    role_in_tenant: Optional[str] = None
    is_default: bool = False
    is_active: bool = True
    # capability -> True grants, False revokes
    permission_overrides: Dict[str, bool] = field(default_factory=dict)
    joined_at: datetime = field(default_factory=utcnow)
    last_accessed_at: Optional[datetime] = None


@dataclass
class Session:
    id: str
    user_id: int
    tenant_id: Optional[int]
    created_at: datetime
    last_activity_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: int,
        tenant_id: Optional[int],
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        meta: Dict | None = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=new_session_id(),
            user_id=user_id,
            tenant_id=tenant_id,
            created_at=now,
            last_activity_at=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
            meta=meta,
        )

    def idle_deadline(self, idle: timedelta) -> datetime:
        return self.last_activity_at + idle

    def is_idle_expired(self, now: datetime, idle: timedelta) -> bool:
        return now >= self.idle_deadline(idle)


@dataclass
class AuditEvent:
    id: int
    action: str
    user_id: Optional[int] = None
    tenant_id: Optional[int] = None
    session_id: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    meta: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
