from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from storefront_auth.config import get_settings, reset_settings_cache
from storefront_auth.logging import get_logger
from storefront_auth.service.auth import AuthOrchestrator
from storefront_auth.service.email import EmailService
from storefront_auth.service.rate_limit import InMemoryCounterStore, RateLimiter
from storefront_auth.storage.memory import MemoryStore
from storefront_auth.storage.postgres import PostgresStore
from storefront_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton store, limiter, notifier and orchestrator."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        mfa_key = self.settings.mfa_encryption_key or self.settings.jwt_secret

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                # tests get a fresh, non-persistent store on every reset
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root,
                    mfa_encryption_key=mfa_key,
                )
            else:
                self.store = PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: RedisCache | None = None
        if self.settings.use_redis_rate_limits:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is required when USE_REDIS_RATE_LIMITS is set; start Redis or unset it."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        counters = self.cache if self.cache is not None else InMemoryCounterStore()
        self.limiter = RateLimiter(counters)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        if not self.email.is_configured:
            logger.info("email_not_configured", message="notifications are logged, not sent")

        self.auth = AuthOrchestrator(
            self.store,
            self.settings,
            limiter=self.limiter,
            notifier=self.email,
        )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            rate_limit_backend="redis" if self.cache else "memory",
        )

    async def close(self) -> None:
        await self.auth.drain_notifications()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
