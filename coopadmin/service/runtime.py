from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from fastapi import Request

from coopadmin.config import Settings, get_settings
from coopadmin.logging import get_logger
from coopadmin.service.auth import AuthService
from coopadmin.service.email import EmailService
from coopadmin.service.revocation import RevocationCache
from coopadmin.storage.memory import MemoryStore
from coopadmin.storage.postgres import PostgresStore
from coopadmin.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
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


class Runtime:
    """Owns the store, cache and services for one application instance."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store: Union[MemoryStore, PostgresStore, None] = None
        self.cache: Union[RedisCache, MemoryCache, None] = None
        self.revocation: Optional[RevocationCache] = None
        self.email: Optional[EmailService] = None
        self.auth: Optional[AuthService] = None

    def connect(self) -> "Runtime":
        """Open the store, reach the cache (or fall back) and wire the services."""
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
            else:
                store = PostgresStore(
                    self.settings.database_url, timeout=self.settings.store_timeout_seconds
                )
                store.open()
                self.store = store
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.cache_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.is_test and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for logout revocation and login throttling; "
                    "start Redis or set NODE_ENV=test/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "test" if self.settings.is_test else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revoked tokens and login "
                    "throttle markers are kept in process memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.revocation = RevocationCache(
            self.cache,
            ceiling_seconds=self.settings.revocation_ceiling_seconds,
            timeout_seconds=self.settings.cache_timeout_seconds,
            fail_open=self.settings.revocation_fail_open,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
            max_attempts=self.settings.email_max_attempts,
            backoff_seconds=self.settings.email_backoff_seconds,
        )
        self.auth = AuthService(
            self.store, self.revocation, self.settings, email=self.email
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)
        return self

    async def close(self) -> None:
        if self.auth is not None:
            await self.auth.drain()
        if self.cache is not None:
            await self.cache.close()
        if self.store is not None:
            self.store.close()
        logger.info("runtime_closed")


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the runtime attached at startup."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("application runtime is not initialized")
    return runtime
