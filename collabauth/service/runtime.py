from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from collabauth.config import get_settings, reset_settings_cache
from collabauth.logging import get_logger
from collabauth.service.auth import AuthFacade
from collabauth.storage.memory import MemoryStore
from collabauth.storage.postgres import PostgresStore
from collabauth.storage.redis_cache import (
    RedisCache,
    SyncRedisCache,
    build_redis_cache,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class LocalTokenBuckets:
    """Per-process token buckets used when no Redis is configured.

    Buckets refill continuously at ``limit / window_seconds`` tokens per second.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def take(
        self, key: str, limit: int, window_seconds: int, cost: int = 1
    ) -> Tuple[bool, int, int]:
        rate = limit / window_seconds
        cost = max(1, cost)
        with self._lock:
            now = self._clock()
            tokens, stamp = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - stamp) * rate)
            if tokens >= cost:
                self._buckets[key] = (tokens - cost, now)
                return True, int(tokens - cost), 0
            self._buckets[key] = (tokens, now)
        return False, int(tokens), math.ceil((cost - tokens) * window_seconds / limit)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.database_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        if self.settings.redis_url:
            try:
                cache = build_redis_cache(
                    self.settings.redis_url, test_mode=self.settings.test_mode
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Login rate limits fall back to per-process buckets",
                )

        self.auth = AuthFacade(self.store, self.settings)
        self.local_buckets = LocalTokenBuckets()
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.close_sync()
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except (OSError, RuntimeError) as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token bucket rate limit; Redis when configured, per-process otherwise.

    Returns a bool, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window", key=key, window_seconds=window_seconds
        )
        window_seconds = 60
    if runtime.cache:
        try:
            return await runtime.cache.check_rate_limit(
                key, limit, window_seconds, return_remaining=return_remaining, cost=cost
            )
        except RedisError as exc:
            logger.warning("rate_limit_redis_unavailable", key=key, error=str(exc))
    result = runtime.local_buckets.take(key, limit, window_seconds, cost)
    return result if return_remaining else result[0]
