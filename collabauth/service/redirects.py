from __future__ import annotations

import re
from typing import Iterable, Optional
from urllib.parse import unquote, urlsplit

from collabauth.config import Settings
from collabauth.logging import get_logger
from collabauth.storage.models import Role

logger = get_logger(__name__)

_DENIED_SCHEMES = ("javascript:", "data:", "vbscript:", "file:", "ftp:", "mailto:")
_ABSOLUTE_URL = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_PHP_FILE = re.compile(r"^[A-Za-z0-9_-]+(?:/[A-Za-z0-9_-]+)*\.php(?:\?[^#\s]*)?$")
_HASH_TOKEN = re.compile(r"^#[a-zA-Z0-9_-]+$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_ENCODED_DOT_DOT = re.compile(r"%2e%2e", re.IGNORECASE)


class RedirectValidator:
    """Decides whether a client supplied post-login destination is safe.

    Deny rules are evaluated before allow rules; anything matching neither is
    rejected and the caller falls back to the role's landing page.
    """

    def __init__(
        self,
        *,
        base_path: str = "/",
        app_origin: Optional[str] = None,
        login_paths: Iterable[str] = ("/login", "/login.php", "/index.php"),
        admin_landing_path: str = "/admin/index",
        default_landing_path: str = "/home",
    ) -> None:
        self.base_path = base_path or "/"
        self.app_origin = app_origin.rstrip("/").lower() if app_origin else None
        self.login_paths = frozenset(p.rstrip("/") or "/" for p in login_paths)
        self.admin_landing_path = admin_landing_path
        self.default_landing_path = default_landing_path
        self.logger = logger

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedirectValidator":
        return cls(
            base_path=settings.app_base_path,
            app_origin=settings.app_origin,
            login_paths=settings.login_paths,
            admin_landing_path=settings.admin_landing_path,
            default_landing_path=settings.default_landing_path,
        )

    def _denied(self, candidate: str) -> bool:
        lowered = candidate.lower()
        if _CONTROL_CHARS.search(candidate) or "\\" in candidate:
            return True
        if candidate.startswith("//"):
            return True
        if lowered.startswith(_DENIED_SCHEMES):
            return True
        if "../" in candidate or "..\\" in candidate or _ENCODED_DOT_DOT.search(candidate):
            return True
        if candidate in ("..",) or candidate.endswith("/.."):
            return True
        return False

    def _same_origin_path(self, candidate: str) -> Optional[str]:
        if not self.app_origin:
            return None
        parts = urlsplit(candidate)
        if parts.scheme.lower() not in ("http", "https"):
            return None
        origin = f"{parts.scheme}://{parts.netloc}".lower()
        if origin != self.app_origin:
            return None
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        if parts.fragment:
            path = f"{path}#{parts.fragment}"
        return path

    def _under_base_path(self, candidate: str) -> bool:
        if not candidate.startswith("/"):
            return False
        if self.base_path == "/":
            return True
        return candidate == self.base_path or candidate.startswith(
            (self.base_path + "/", self.base_path + "?", self.base_path + "#")
        )

    def _is_login_page(self, candidate: str) -> bool:
        path = urlsplit(candidate).path
        if not path.startswith("/"):
            path = "/" + path
        if self.base_path != "/" and path.startswith(self.base_path + "/"):
            relative = path[len(self.base_path):]
        else:
            relative = path
        relative = relative.rstrip("/") or "/"
        return relative in self.login_paths or (path.rstrip("/") or "/") in self.login_paths

    def validate(self, candidate: Optional[str]) -> Optional[str]:
        """Return the destination if it is safe, otherwise None."""

        if not isinstance(candidate, str):
            return None
        candidate = candidate.strip()
        if not candidate:
            return None
        if self._denied(candidate) or self._denied(unquote(candidate)):
            self.logger.warning("redirect_rejected", reason="deny_list")
            return None
        if _ABSOLUTE_URL.match(candidate):
            reduced = self._same_origin_path(candidate)
            if reduced is None:
                self.logger.warning("redirect_rejected", reason="foreign_origin")
                return None
            return self.validate(reduced)
        if _HASH_TOKEN.match(candidate):
            return candidate
        if self._under_base_path(candidate) or _PHP_FILE.match(candidate):
            if self._is_login_page(candidate):
                self.logger.info("redirect_rejected", reason="login_page")
                return None
            return candidate
        self.logger.info("redirect_rejected", reason="not_allowed")
        return None

    def default_for_role(self, role: object) -> str:
        if Role.parse(role) is Role.ADMIN:
            return self.admin_landing_path
        return self.default_landing_path

    def resolve(self, candidate: Optional[str], role: object) -> str:
        """Safe destination for ``candidate``, falling back to the role default."""

        return self.validate(candidate) or self.default_for_role(role)
