from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from collabauth.logging import get_logger
from collabauth.storage.common import (
    USER_MUTABLE_FIELDS,
    membership_sort_key,
    next_lockout_state,
    normalize_email,
    normalize_overrides,
)
from collabauth.storage.errors import ConstraintViolation, StoreUnavailable
from collabauth.storage.models import (
    AuditEvent,
    Session,
    Tenant,
    User,
    UserTenantAssociation,
    utcnow,
)


class MemoryStore:
    """In-process credential store persisted as JSON under ``fs_root/state``.

    Every read and write runs under one re-entrant lock, which is what makes
    the lockout counter and session id rotation atomic here.
    """

    # oldest audit events beyond this are dropped
    max_audit_events = 5000

    def __init__(self, fs_root: str = "/tmp/collabauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.tenants: Dict[int, Tenant] = {}
        self.memberships: Dict[Tuple[int, int], UserTenantAssociation] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_events: List[AuditEvent] = []
        self._user_seq = 1
        self._tenant_seq = 1
        self._audit_seq = 1
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._user_seq,
                email=normalized,
                password_hash=password_hash,
                password_algo=password_algo,
                display_name=display_name,
                role=role,
                status=status,
                is_system_admin=is_system_admin,
            )
            self._user_seq += 1
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            self._persist_state()
            return replace(user)

    def record_failed_login(
        self,
        user_id: int,
        *,
        threshold: int,
        lockout: timedelta,
        now: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts, user.locked_until = next_lockout_state(
                user.failed_login_attempts,
                user.locked_until,
                threshold=threshold,
                lockout=lockout,
                now=now,
            )
            self._persist_state()
            return replace(user)

    def record_successful_login(
        self, user_id: int, *, now: datetime, ip_addr: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            user.locked_until = None
            user.last_login_at = now
            user.last_login_ip = ip_addr
            self._persist_state()
            return replace(user)

    # tenants
    def create_tenant(self, code: str, name: str, *, status: str = "active") -> Tenant:
        with self._data_lock:
            if any(t.code == code for t in self.tenants.values()):
                raise ConstraintViolation("tenant code already exists", {"field": "code"})
            tenant = Tenant(id=self._tenant_seq, code=code, name=name, status=status)
            self._tenant_seq += 1
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return replace(tenant)

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def update_tenant_status(self, tenant_id: int, status: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.status = status
            self._persist_state()
            return replace(tenant)

    def list_tenants(self, status: Optional[str] = None) -> List[Tenant]:
        with self._data_lock:
            tenants = [
                replace(t)
                for t in self.tenants.values()
                if status is None or t.status == status
            ]
        return sorted(tenants, key=lambda t: membership_sort_key(None, t))

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
    ) -> UserTenantAssociation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            if (user_id, tenant_id) in self.memberships:
                raise ConstraintViolation(
                    "membership already exists",
                    {"user_id": user_id, "tenant_id": tenant_id},
                )
            if is_default and any(
                m.is_default for (uid, _), m in self.memberships.items() if uid == user_id
            ):
                raise ConstraintViolation(
                    "user already has a default tenant", {"user_id": user_id}
                )
            membership = UserTenantAssociation(
                user_id=user_id,
                tenant_id=tenant_id,
                role_in_tenant=role_in_tenant,
                is_default=is_default,
                is_active=is_active,
                permission_overrides=normalize_overrides(permission_overrides or {}),
            )
            self.memberships[(user_id, tenant_id)] = membership
            self._persist_state()
            return replace(membership)

    def get_membership(
        self, user_id: int, tenant_id: int
    ) -> Optional[UserTenantAssociation]:
        with self._data_lock:
            membership = self.memberships.get((user_id, tenant_id))
            return replace(membership) if membership else None

    def list_memberships(self, user_id: int) -> List[UserTenantAssociation]:
        with self._data_lock:
            return [
                replace(m) for (uid, _), m in self.memberships.items() if uid == user_id
            ]

    def set_default_membership(
        self, user_id: int, tenant_id: int
    ) -> Optional[UserTenantAssociation]:
        with self._data_lock:
            target = self.memberships.get((user_id, tenant_id))
            if not target:
                return None
            for (uid, _), membership in self.memberships.items():
                if uid == user_id:
                    membership.is_default = False
            target.is_default = True
            self._persist_state()
            return replace(target)

    def touch_membership(self, user_id: int, tenant_id: int, *, now: datetime) -> None:
        with self._data_lock:
            membership = self.memberships.get((user_id, tenant_id))
            if not membership:
                return
            membership.last_accessed_at = now
            self._persist_state()

    # sessions
    def create_session(
        self, session: Session, *, replaces: Optional[str] = None
    ) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"field": "id"})
            if replaces:
                self.sessions.pop(replaces, None)
            self.sessions[session.id] = replace(session, meta=dict(session.meta or {}))
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            return replace(sess, meta=dict(sess.meta or {}))

    def update_session(
        self,
        session_id: str,
        *,
        tenant_id: Optional[int] = None,
        last_activity_at: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if tenant_id is not None:
                sess.tenant_id = tenant_id
            if last_activity_at is not None:
                sess.last_activity_at = last_activity_at
            if meta is not None:
                sess.meta = dict(meta)
            self._persist_state()
            return replace(sess, meta=dict(sess.meta or {}))

    def rotate_session_id(
        self, old_id: str, new_id: str, *, meta: Optional[dict] = None
    ) -> Optional[Session]:
        with self._data_lock:
            if new_id in self.sessions:
                raise ConstraintViolation("session id collision", {"field": "id"})
            sess = self.sessions.pop(old_id, None)
            if not sess:
                return None
            sess.id = new_id
            if meta is not None:
                sess.meta = dict(meta)
            self.sessions[new_id] = sess
            self._persist_state()
            return replace(sess, meta=dict(sess.meta or {}))

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_user_sessions(
        self, user_id: int, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_idle_sessions(self, idle_before: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.last_activity_at < idle_before
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._data_lock:
            found = [
                replace(s, meta=dict(s.meta or {}))
                for s in self.sessions.values()
                if s.user_id == user_id
            ]
        return sorted(found, key=lambda s: s.created_at)

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
    ) -> AuditEvent:
        with self._data_lock:
            event = AuditEvent(
                id=self._audit_seq,
                action=action,
                user_id=user_id,
                tenant_id=tenant_id,
                session_id=session_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                meta=dict(meta) if meta else None,
            )
            self._audit_seq += 1
            self.audit_events.append(event)
            if len(self.audit_events) > self.max_audit_events:
                del self.audit_events[: -self.max_audit_events]
            self._persist_state()
            return event

    def list_audit_events(
        self, *, user_id: Optional[int] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e for e in self.audit_events if user_id is None or e.user_id == user_id
            ]
        return list(reversed(events))[:limit]

    def ping(self) -> None:
        with self._data_lock:
            self._state_path()

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "tenants": [self._serialize_tenant(t) for t in self.tenants.values()],
            "memberships": [
                self._serialize_membership(m) for m in self.memberships.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "audit_events": [self._serialize_audit(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable("failed to persist in-memory state", cause=exc) from exc

    def _load_state(self) -> bool:
        if not self.persist:
            return False
        path = self._state_path()
        # read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.tenants = {
            t["id"]: self._deserialize_tenant(t) for t in data.get("tenants", [])
        }
        self.memberships = {}
        for raw in data.get("memberships", []):
            membership = self._deserialize_membership(raw)
            self.memberships[(membership.user_id, membership.tenant_id)] = membership
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.audit_events = [
            self._deserialize_audit(e) for e in data.get("audit_events", [])
        ]
        self._user_seq = max(self.users, default=0) + 1
        self._tenant_seq = max(self.tenants, default=0) + 1
        self._audit_seq = max((e.id for e in self.audit_events), default=0) + 1
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "display_name": user.display_name,
            "role": user.role,
            "status": user.status,
            "is_system_admin": user.is_system_admin,
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            display_name=data.get("display_name", ""),
            role=data.get("role", "standard_user"),
            status=data.get("status", "active"),
            is_system_admin=data.get("is_system_admin", False),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_tenant(self, tenant: Tenant) -> dict:
        return {
            "id": tenant.id,
            "code": tenant.code,
            "name": tenant.name,
            "status": tenant.status,
            "created_at": self._serialize_datetime(tenant.created_at),
        }

    def _deserialize_tenant(self, data: dict) -> Tenant:
        return Tenant(
            id=int(data["id"]),
            code=data["code"],
            name=data["name"],
            status=data.get("status", "active"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_membership(self, membership: UserTenantAssociation) -> dict:
        return {
            "user_id": membership.user_id,
            "tenant_id": membership.tenant_id,
            "role_in_tenant": membership.role_in_tenant,
            "is_default": membership.is_default,
            "is_active": membership.is_active,
            "permission_overrides": membership.permission_overrides,
            "joined_at": self._serialize_datetime(membership.joined_at),
            "last_accessed_at": self._serialize_datetime(membership.last_accessed_at),
        }

    def _deserialize_membership(self, data: dict) -> UserTenantAssociation:
        return UserTenantAssociation(
            user_id=int(data["user_id"]),
            tenant_id=int(data["tenant_id"]),
            role_in_tenant=data.get("role_in_tenant"),
            is_default=data.get("is_default", False),
            is_active=data.get("is_active", True),
            permission_overrides=normalize_overrides(data.get("permission_overrides")),
            joined_at=self._deserialize_datetime(data.get("joined_at")) or utcnow(),
            last_accessed_at=self._deserialize_datetime(data.get("last_accessed_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "tenant_id": session.tenant_id,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=int(data["user_id"]),
            tenant_id=data.get("tenant_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity_at=self._deserialize_datetime(data["last_activity_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            meta=data.get("meta") or {},
        )

    def _serialize_audit(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "action": event.action,
            "user_id": event.user_id,
            "tenant_id": event.tenant_id,
            "session_id": event.session_id,
            "ip_addr": event.ip_addr,
            "user_agent": event.user_agent,
            "meta": event.meta,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=int(data["id"]),
            action=data["action"],
            user_id=data.get("user_id"),
            tenant_id=data.get("tenant_id"),
            session_id=data.get("session_id"),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            meta=data.get("meta"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
