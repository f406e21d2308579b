from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from collabauth.api.error_handling import register_exception_handlers
from collabauth.api.routes import CSRF_HEADER, SESSION_HEADER, router
from collabauth.config import Settings
from collabauth.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    set_correlation_id,
)
from collabauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from collabauth.service.runtime import get_runtime

    get_runtime()
    logger.info("app_started", version=__version__, build=__build__)
    yield
    runtime = get_runtime()
    if runtime.cache is not None:
        await runtime.cache.close()
    logger.info("app_stopped")


app = FastAPI(title="Collab Auth Core", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    if _settings.app_origin:
        return [_settings.app_origin]
    return ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", SESSION_HEADER, CSRF_HEADER, "X-Request-ID"],
    expose_headers=["X-Request-ID", SESSION_HEADER],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every log line of a request with the client's X-Request-ID, or a fresh one."""
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    bind_request_context(method=request.method, path=request.url.path)
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report credential store and Redis reachability plus build info."""
    from collabauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except (StoreUnavailable, RedisError, OSError) as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.ping)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    healthy = db_ok
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
