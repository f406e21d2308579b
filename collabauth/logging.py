from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

# keys whose values never reach a log line
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "cookie", "hash")
_SESSION_MARKERS = ("session_id", "sid")
_SESSION_PREFIX_LEN = 6


def _truthy_env(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def mask_email(value: str) -> str:
    """``alice@example.com`` -> ``a***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def mask_session_id(value: str) -> str:
    if len(value) <= _SESSION_PREFIX_LEN:
        return "***"
    return value[:_SESSION_PREFIX_LEN] + "***"


def _mask_value(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if any(marker in lower_key for marker in _SECRET_MARKERS):
        return "***" if value is not None else None
    if not isinstance(value, str):
        return value
    if "email" in lower_key:
        return mask_email(value)
    if any(lower_key == m or lower_key.endswith("_" + m) for m in _SESSION_MARKERS):
        return mask_session_id(value)
    return value


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, session ids and email addresses before rendering."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _mask_value(key, event_dict[key])
    return event_dict


def bind_request_context(**fields: Any) -> None:
    """Attach fields to every log line emitted while handling this request."""
    bind_contextvars(**{k: v for k, v in fields.items() if v is not None})


def clear_request_context() -> None:
    clear_contextvars()


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's request id, or a fresh uuid4, as ``correlation_id``."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    bind_contextvars(correlation_id=cid)
    return cid


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog once for the process.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: render one JSON object per line
        development_mode: coloured console output, overrides ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_truthy_env("LOG_JSON", "true"),
    development_mode=_truthy_env("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_auth_event(action: str, logger: Optional[Any] = None, **context: Any) -> None:
    """Log an audit-relevant auth event under a stable event name."""
    log = logger or get_logger("audit")
    log.info("auth_event", action=action, **context)
