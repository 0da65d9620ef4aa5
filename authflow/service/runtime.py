from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

from authflow.config import Settings, get_settings, reset_settings_cache
from authflow.logging import get_logger
from authflow.service.auth import AuthFlowService
from authflow.service.delivery import (
    Dispatcher,
    build_confirmation_channel,
    build_otp_channel,
)
from authflow.storage.memory import MemoryStore
from authflow.storage.postgres import PostgresStore
from authflow.storage.protocol import AuthStore
from authflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _redis_host(url: str) -> str:
    """Host and port of a Redis URL, without credentials, for log lines."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "unparseable"
    return f"{parsed.hostname or ''}:{parsed.port or 6379}"


class LocalRateLimiter:
    """Per-process fixed-window counters used when Redis is not configured."""

    def __init__(self) -> None:
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int, window_seconds: int, *, cost: int = 1) -> Tuple[bool, int, int]:
        now = time.time()
        window_index = int(now // window_seconds)
        with self._lock:
            current_window, count = self._windows.get(key, (window_index, 0))
            if current_window != window_index:
                count = 0
            count += max(1, cost)
            self._windows[key] = (window_index, count)
            if len(self._windows) > 10_000:
                # Drop counters from finished windows
                self._windows = {
                    k: v for k, v in self._windows.items() if v[0] == window_index
                }
        reset_seconds = max(1, int((window_index + 1) * window_seconds - now))
        return count <= limit, max(0, limit - count), reset_seconds


def _build_store(settings: Settings) -> AuthStore:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        store = (
            MemoryStore(fs_root=settings.shared_fs_root)
            if settings.use_memory_store
            else PostgresStore(settings.database_url)
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
    return store


def _connect_cache(settings: Settings) -> Optional[RedisCache]:
    """Connect to Redis, or decide whether running without it is acceptable."""
    error: Optional[Exception] = None
    if settings.redis_url:
        cache = RedisCache(settings.redis_url)
        try:
            cache.verify_connection()
            return cache
        except Exception as exc:
            error = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for shared rate limits and the access-token denylist; "
            "set TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true to run on per-process state"
        ) from error
    logger.warning(
        "redis_disabled_fallback",
        redis_host=_redis_host(settings.redis_url) if settings.redis_url else None,
        reason=str(error) if error else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Process-wide wiring of settings, store, channels and the flow service."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_store(self.settings)
        self.cache = _connect_cache(self.settings)
        self.rate_limiter = LocalRateLimiter()
        self.dispatcher = Dispatcher()
        self.otp_channel = build_otp_channel(self.settings)
        self.confirmation_channel = build_confirmation_channel(self.settings)
        self.auth = AuthFlowService(
            self.store,
            self.settings,
            cache=self.cache,
            otp_channel=self.otp_channel,
            confirmation_channel=self.confirmation_channel,
            dispatcher=self.dispatcher,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            otp_channel=type(self.otp_channel).__name__,
            confirmation_channel=type(self.confirmation_channel).__name__,
            device_confirmation_enabled=self.settings.device_confirmation_enabled,
            require_login_otp=self.settings.require_login_otp,
        )

    async def aclose(self) -> None:
        await self.auth.aclose()
        for channel in (self.otp_channel, self.confirmation_channel):
            close = getattr(channel, "close", None)
            if close is not None:
                await close()
        if self.cache is not None:
            await self.cache.close()
        store_close = getattr(self.store, "close", None)
        if store_close is not None:
            store_close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from the current environment. Only allowed in TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Count a request against ``key``; returns ``(allowed, remaining, reset_seconds)``."""
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    return runtime.rate_limiter.check(key, limit, window_seconds, cost=cost)
