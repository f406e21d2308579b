from __future__ import annotations

from typing import Dict

from collabauth.logging import get_logger
from collabauth.service.errors import InvalidFieldError
from collabauth.service.sessions import SessionManager
from collabauth.storage.models import Session

logger = get_logger(__name__)

COUNTERS_KEY = "redirect_counters"


class RedirectLoopGuard:
    """Per-session, per-context redirect counters kept in session meta.

    ``observe`` returns True once a context has already seen ``threshold``
    redirects; the counter is cleared at that point so the next visit starts
    over.
    """

    def __init__(self, sessions: SessionManager, *, threshold: int = 3) -> None:
        self.sessions = sessions
        self.threshold = threshold
        self.logger = logger

    @staticmethod
    def _context(context: object) -> str:
        if not isinstance(context, str) or not context.strip():
            raise InvalidFieldError("context must be a non-empty string", fields=["context"])
        return context.strip()

    def counters(self, session: Session) -> Dict[str, int]:
        raw = (session.meta or {}).get(COUNTERS_KEY) or {}
        return {str(k): int(v) for k, v in raw.items() if isinstance(v, int)}

    def _store(self, session: Session, counters: Dict[str, int]) -> None:
        meta = dict(session.meta or {})
        if counters:
            meta[COUNTERS_KEY] = counters
        else:
            meta.pop(COUNTERS_KEY, None)
        updated = self.sessions.update_meta(session, meta)
        session.meta = updated.meta

    def observe(self, session: Session, context: str) -> bool:
        context = self._context(context)
        counters = self.counters(session)
        count = counters.get(context, 0)
        if count >= self.threshold:
            counters.pop(context, None)
            self._store(session, counters)
            self.logger.warning(
                "redirect_loop_detected",
                user_id=session.user_id,
                context=context,
                redirects=count,
            )
            return True
        counters[context] = count + 1
        self._store(session, counters)
        return False

    def reset(self, session: Session, context: str) -> None:
        context = self._context(context)
        counters = self.counters(session)
        if counters.pop(context, None) is None:
            return
        self._store(session, counters)
