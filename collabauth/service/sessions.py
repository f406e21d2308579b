from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from collabauth.config import Settings
from collabauth.logging import get_logger
from collabauth.service.errors import SessionExpiredError, UnauthenticatedError
from collabauth.storage.common import CredentialStore
from collabauth.storage.errors import ConstraintViolation
from collabauth.storage.models import Session, Tenant, User, new_session_id

logger = get_logger(__name__)

CSRF_TOKEN_KEY = "csrf_token"
CSRF_ISSUED_KEY = "csrf_issued_at"
REGENERATED_KEY = "regenerated_at"
# id collisions at 256 bits mean a broken RNG, but retry once anyway
_ROTATE_ATTEMPTS = 2


def _parse_ts(raw: object) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SessionManager:
    """Server-side session lifecycle: create, touch, regenerate, switch, destroy.

    Expiry is lazy. A session idle for longer than ``SESSION_IDLE_MINUTES`` is
    deleted the next time it is touched.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def idle_lifetime(self) -> timedelta:
        return timedelta(minutes=self.settings.session_idle_minutes)

    @property
    def renewal_interval(self) -> timedelta:
        return timedelta(minutes=self.settings.session_renewal_minutes)

    def _fresh_csrf(self, meta: dict, now: datetime) -> dict:
        meta[CSRF_TOKEN_KEY] = secrets.token_urlsafe(32)
        meta[CSRF_ISSUED_KEY] = now.isoformat()
        return meta

    def create(
        self,
        user: User,
        tenant: Optional[Tenant],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        previous_session_id: Optional[str] = None,
    ) -> Session:
        now = self._now()
        swept = self.store.delete_idle_sessions(now - self.idle_lifetime)
        if swept:
            self.logger.info("idle_sessions_swept", count=swept)
        meta = self._fresh_csrf({REGENERATED_KEY: now.isoformat()}, now)
        session = Session.new(
            user.id,
            tenant.id if tenant else None,
            ip_addr=ip_addr,
            user_agent=user_agent,
            meta=meta,
            now=now,
        )
        stored = self.store.create_session(session, replaces=previous_session_id)
        self.logger.info(
            "session_created",
            user_id=user.id,
            tenant_id=stored.tenant_id,
            replaced_previous=bool(previous_session_id),
        )
        return stored

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self.store.get_session(session_id)

    def is_expired(self, session: Session, now: Optional[datetime] = None) -> bool:
        return session.is_idle_expired(now or self._now(), self.idle_lifetime)

    def touch(self, session: Session, *, renew: bool = False) -> Session:
        """Extend the idle window, deleting the session if it already lapsed.

        With ``renew`` a session whose id is older than the renewal interval
        gets a fresh id first.
        """

        now = self._now()
        if self.is_expired(session, now):
            self.store.delete_session(session.id)
            self.logger.info("session_idle_expired", user_id=session.user_id)
            raise SessionExpiredError()

        if renew:
            regenerated_at = _parse_ts((session.meta or {}).get(REGENERATED_KEY))
            if regenerated_at is None or now - regenerated_at >= self.renewal_interval:
                session = self.regenerate(session)

        updated = self.store.update_session(session.id, last_activity_at=now)
        if updated is None:
            raise UnauthenticatedError()
        return updated

    def regenerate(self, session: Session) -> Session:
        """Move the session to a new id; the old id stops resolving at once."""

        now = self._now()
        meta = dict(session.meta or {})
        meta[REGENERATED_KEY] = now.isoformat()
        self._fresh_csrf(meta, now)
        rotated = None
        for attempt in range(_ROTATE_ATTEMPTS):
            try:
                rotated = self.store.rotate_session_id(session.id, new_session_id(), meta=meta)
                break
            except ConstraintViolation:
                if attempt + 1 >= _ROTATE_ATTEMPTS:
                    raise
        if rotated is None:
            raise UnauthenticatedError()
        self.logger.info("session_regenerated", user_id=session.user_id)
        return rotated

    def switch_tenant(self, session: Session, tenant: Tenant) -> Session:
        updated = self.store.update_session(
            session.id, tenant_id=tenant.id, last_activity_at=self._now()
        )
        if updated is None:
            raise UnauthenticatedError()
        return updated

    def update_meta(self, session: Session, meta: dict) -> Session:
        updated = self.store.update_session(session.id, meta=meta)
        if updated is None:
            raise UnauthenticatedError()
        return updated

    def destroy(self, session_or_id: Union[Session, str, None]) -> bool:
        session_id = session_or_id.id if isinstance(session_or_id, Session) else session_or_id
        if not session_id:
            return False
        return self.store.delete_session(session_id)

    def destroy_other_sessions(self, user_id: int, keep_session_id: Optional[str]) -> int:
        removed = self.store.delete_user_sessions(user_id, except_session_id=keep_session_id)
        self.logger.info("sessions_terminated", user_id=user_id, count=removed)
        return removed

    # csrf
    def ensure_csrf_token(self, session: Session) -> str:
        """Return the session's CSRF token, issuing a new one if missing or stale."""

        meta = dict(session.meta or {})
        token = meta.get(CSRF_TOKEN_KEY)
        issued = _parse_ts(meta.get(CSRF_ISSUED_KEY))
        now = self._now()
        ttl = timedelta(seconds=self.settings.csrf_token_ttl_seconds)
        if token and issued is not None and now - issued < ttl:
            return token
        self._fresh_csrf(meta, now)
        self.update_meta(session, meta)
        session.meta = meta
        return meta[CSRF_TOKEN_KEY]

    def validate_csrf_token(self, session: Session, token: Optional[str]) -> bool:
        if not token:
            return False
        meta = session.meta or {}
        expected = meta.get(CSRF_TOKEN_KEY)
        issued = _parse_ts(meta.get(CSRF_ISSUED_KEY))
        if not expected or issued is None:
            return False
        if self._now() - issued >= timedelta(seconds=self.settings.csrf_token_ttl_seconds):
            return False
        return hmac.compare_digest(str(expected), str(token))
