from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from trackerauth.config import get_settings, reset_settings_cache
from trackerauth.logging import get_logger
from trackerauth.service.auth import AuthService
from trackerauth.service.lockout import AttemptTracker, InMemoryAttemptTracker
from trackerauth.storage.memory import MemoryStore
from trackerauth.storage.models import DEFAULT_ROLES
from trackerauth.storage.postgres import PostgresStore
from trackerauth.storage.redis_cache import RedisAttemptTracker

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        for role in DEFAULT_ROLES:
            self.store.create_role(role)
        logger.info("runtime_store_initialized", store_type=store_type)

        self.attempt_tracker = self._build_attempt_tracker()
        self.auth = AuthService(
            self.store,
            self.settings,
            attempt_tracker=self.attempt_tracker,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            shared_attempt_tracker=isinstance(self.attempt_tracker, RedisAttemptTracker),
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_days=self.settings.refresh_token_ttl_days,
        )

    def _build_attempt_tracker(self) -> AttemptTracker:
        window = timedelta(minutes=self.settings.login_lockout_minutes)
        if not self.settings.redis_url:
            return InMemoryAttemptTracker(window)

        redis_error: Exception | None = None
        try:
            tracker = RedisAttemptTracker(
                self.settings.redis_url, window_seconds=int(window.total_seconds())
            )
            tracker.verify_connection()
            return tracker
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "REDIS_URL is set but Redis is unreachable; start Redis, unset REDIS_URL, "
                "or set ALLOW_REDIS_FALLBACK_DEV=true for a process-local attempt counter."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message=(
                f"Running without Redis under {fallback_mode}; failed login counters are "
                "process-local."
            ),
            mode=fallback_mode,
        )
        return InMemoryAttemptTracker(window)

    async def close(self) -> None:
        if isinstance(self.attempt_tracker, RedisAttemptTracker):
            await self.attempt_tracker.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.attempt_tracker, RedisAttemptTracker):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
