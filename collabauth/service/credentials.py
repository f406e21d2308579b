from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from collabauth.config import Settings
from collabauth.logging import get_logger
from collabauth.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    InvalidCredentialsError,
    MissingFieldError,
)
from collabauth.storage.common import CredentialStore, normalize_email
from collabauth.storage.models import User, UserStatus

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

_dummy_hash: Optional[str] = None
_dummy_lock = threading.Lock()


class CredentialVerifier:
    """Checks email/password pairs and maintains the per-account lockout counter.

    Unknown emails and wrong passwords raise the same ``InvalidCredentialsError``
    and both pay for one argon2 verification, so neither the response nor its
    timing tells a caller whether an account exists.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_minutes)

    def hash_password(self, password: str) -> str:
        if not password:
            raise MissingFieldError(["password"])
        return self._pwd_hasher.hash(password)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def _dummy_verify(self, password: str) -> None:
        global _dummy_hash
        with _dummy_lock:
            if _dummy_hash is None:
                _dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(_dummy_hash, password)
        except VerificationError:
            pass

    def _password_matches(self, user: User, password: str) -> bool:
        if user.password_algo != PASSWORD_ALGO:
            self.logger.warning(
                "password_algo_mismatch", user_id=user.id, algo=user.password_algo
            )
            self._dummy_verify(password)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify(
        self, email: Optional[str], password: Optional[str], *, ip_addr: Optional[str] = None
    ) -> User:
        """Return the authenticated user or raise a credential error."""

        missing = []
        if not email or not str(email).strip():
            missing.append("email")
        if not password:
            missing.append("password")
        if missing:
            raise MissingFieldError(missing)

        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self._dummy_verify(password)
            self.logger.info("login_unknown_email")
            raise InvalidCredentialsError()

        now = self._now()
        if user.is_locked(now):
            self.logger.warning(
                "login_blocked_locked",
                user_id=user.id,
                locked_until=user.locked_until.isoformat() if user.locked_until else None,
            )
            raise AccountLockedError()

        if not self._password_matches(user, password):
            updated = self.store.record_failed_login(
                user.id,
                threshold=self.settings.max_login_attempts,
                lockout=self.lockout_window,
                now=now,
            )
            attempts = updated.failed_login_attempts if updated else None
            if updated and updated.is_locked(now):
                self.logger.warning(
                    "account_lockout_triggered", user_id=user.id, attempts=attempts
                )
            else:
                self.logger.info("login_password_mismatch", user_id=user.id, attempts=attempts)
            raise InvalidCredentialsError()

        if user.status != UserStatus.ACTIVE.value:
            self.logger.warning("login_inactive_account", user_id=user.id, status=user.status)
            raise AccountInactiveError()

        refreshed = self.store.record_successful_login(user.id, now=now, ip_addr=ip_addr)
        if self.needs_rehash(user.password_hash):
            refreshed = self.store.update_user(
                user.id,
                password_hash=self._pwd_hasher.hash(password),
                password_algo=PASSWORD_ALGO,
            )
            self.logger.info("password_rehashed", user_id=user.id)
        return refreshed or user
