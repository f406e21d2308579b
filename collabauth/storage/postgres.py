from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from collabauth.logging import get_logger
from collabauth.storage.common import (
    USER_MUTABLE_FIELDS,
    load_json_map,
    membership_sort_key,
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
)

REQUIRED_TABLES = ("tenant", "app_user", "user_tenant", "auth_session", "audit_event")


class PostgresStore:
    """Postgres-backed credential store.

    Lockout counters and session id rotation are single ``UPDATE`` statements
    so concurrent requests never observe a half-applied change.
    """

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.error("credential_store_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable", cause=exc) from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables have not been installed."""

        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            display_name=row.get("display_name") or "",
            role=row.get("role") or "standard_user",
            status=row.get("status") or "active",
            is_system_admin=bool(row.get("is_system_admin")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=str(row["last_login_ip"]) if row.get("last_login_ip") else None,
            created_at=row["created_at"],
        )

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=int(row["id"]),
            code=row["code"],
            name=row["name"],
            status=row.get("status") or "active",
            created_at=row["created_at"],
        )

    @staticmethod
    def _membership_from_row(row: Dict[str, Any]) -> UserTenantAssociation:
        return UserTenantAssociation(
            user_id=int(row["user_id"]),
            tenant_id=int(row["tenant_id"]),
            role_in_tenant=row.get("role_in_tenant"),
            is_default=bool(row.get("is_default")),
            is_active=bool(row.get("is_active", True)),
            permission_overrides=normalize_overrides(row.get("permission_overrides")),
            joined_at=row["joined_at"],
            last_accessed_at=row.get("last_accessed_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=int(row["user_id"]),
            tenant_id=int(row["tenant_id"]) if row.get("tenant_id") is not None else None,
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
            ip_addr=str(row["ip_addr"]) if row.get("ip_addr") else None,
            user_agent=row.get("user_agent"),
            meta=load_json_map(row.get("meta")),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditEvent:
        meta = load_json_map(row.get("meta"))
        return AuditEvent(
            id=int(row["id"]),
            action=row["action"],
            user_id=row.get("user_id"),
            tenant_id=row.get("tenant_id"),
            session_id=row.get("session_id"),
            ip_addr=str(row["ip_addr"]) if row.get("ip_addr") else None,
            user_agent=row.get("user_agent"),
            meta=meta or None,
            created_at=row["created_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, password_hash, password_algo, display_name, role, status, is_system_admin)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        normalize_email(email),
                        password_hash,
                        password_algo,
                        display_name,
                        role,
                        status,
                        is_system_admin,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s", (normalized,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: int, **fields: Any) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        # column names come from the allow-list above
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*fields.values(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_failed_login(
        self,
        user_id: int,
        *,
        threshold: int,
        lockout: timedelta,
        now: datetime,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN (CASE
                                WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                                ELSE failed_login_attempts + 1
                              END) >= %(threshold)s THEN %(until)s
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %(id)s
                RETURNING *
                """,
                {
                    "id": user_id,
                    "now": now,
                    "threshold": threshold,
                    "until": now + lockout,
                },
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_successful_login(
        self, user_id: int, *, now: datetime, ip_addr: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, locked_until = NULL,
                    last_login_at = %s, last_login_ip = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (now, ip_addr, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # tenants
    def create_tenant(self, code: str, name: str, *, status: str = "active") -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO tenant (code, name, status) VALUES (%s, %s, %s) RETURNING *",
                    (code, name, status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant code already exists", {"field": "code"})
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def update_tenant_status(self, tenant_id: int, status: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET status = %s WHERE id = %s RETURNING *",
                (status, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def list_tenants(self, status: Optional[str] = None) -> List[Tenant]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM tenant").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tenant WHERE status = %s", (status,)
                ).fetchall()
        tenants = [self._tenant_from_row(row) for row in rows]
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
        overrides = normalize_overrides(permission_overrides or {})
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_tenant (user_id, tenant_id, role_in_tenant, is_default, is_active, permission_overrides)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        tenant_id,
                        role_in_tenant,
                        is_default,
                        is_active,
                        json.dumps(overrides),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists or duplicate default tenant",
                {"user_id": user_id, "tenant_id": tenant_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or tenant does not exist",
                {"user_id": user_id, "tenant_id": tenant_id},
            )
        return self._membership_from_row(row)

    def get_membership(
        self, user_id: int, tenant_id: int
    ) -> Optional[UserTenantAssociation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_tenant WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def list_memberships(self, user_id: int) -> List[UserTenantAssociation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_tenant WHERE user_id = %s ORDER BY tenant_id",
                (user_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def set_default_membership(
        self, user_id: int, tenant_id: int
    ) -> Optional[UserTenantAssociation]:
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM user_tenant WHERE user_id = %s AND tenant_id = %s FOR UPDATE",
                (user_id, tenant_id),
            ).fetchone()
            if not exists:
                return None
            conn.execute(
                "UPDATE user_tenant SET is_default = FALSE WHERE user_id = %s AND is_default",
                (user_id,),
            )
            row = conn.execute(
                """
                UPDATE user_tenant SET is_default = TRUE
                WHERE user_id = %s AND tenant_id = %s
                RETURNING *
                """,
                (user_id, tenant_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def touch_membership(self, user_id: int, tenant_id: int, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_tenant SET last_accessed_at = %s WHERE user_id = %s AND tenant_id = %s",
                (now, user_id, tenant_id),
            )

    # sessions
    def create_session(
        self, session: Session, *, replaces: Optional[str] = None
    ) -> Session:
        try:
            with self._connect() as conn:
                if replaces:
                    conn.execute("DELETE FROM auth_session WHERE id = %s", (replaces,))
                row = conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, tenant_id, created_at, last_activity_at, ip_addr, user_agent, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.tenant_id,
                        session.created_at,
                        session.last_activity_at,
                        session.ip_addr,
                        session.user_agent,
                        json.dumps(session.meta or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"field": "id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return self._session_from_row(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(
        self,
        session_id: str,
        *,
        tenant_id: Optional[int] = None,
        last_activity_at: Optional[datetime] = None,
        meta: Optional[dict] = None,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET
                    tenant_id = COALESCE(%s, tenant_id),
                    last_activity_at = COALESCE(%s, last_activity_at),
                    meta = COALESCE(%s::jsonb, meta)
                WHERE id = %s
                RETURNING *
                """,
                (
                    tenant_id,
                    last_activity_at,
                    json.dumps(meta) if meta is not None else None,
                    session_id,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session_id(
        self, old_id: str, new_id: str, *, meta: Optional[dict] = None
    ) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_session SET id = %s, meta = COALESCE(%s::jsonb, meta)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (new_id, json.dumps(meta) if meta is not None else None, old_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", {"field": "id"})
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE id = %s RETURNING id", (session_id,)
            ).fetchone()
        return row is not None

    def delete_user_sessions(
        self, user_id: int, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s RETURNING id",
                    (user_id, except_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s RETURNING id", (user_id,)
                ).fetchall()
        return len(rows)

    def delete_idle_sessions(self, idle_before: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE last_activity_at < %s RETURNING id",
                (idle_before,),
            ).fetchall()
        return len(rows)

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_event (action, user_id, tenant_id, session_id, ip_addr, user_agent, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    action,
                    user_id,
                    tenant_id,
                    session_id,
                    ip_addr,
                    user_agent,
                    json.dumps(meta) if meta else None,
                ),
            ).fetchone()
        return self._audit_from_row(row)

    def list_audit_events(
        self, *, user_id: Optional[int] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM audit_event ORDER BY id DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_event WHERE user_id = %s ORDER BY id DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
        return [self._audit_from_row(row) for row in rows]

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
