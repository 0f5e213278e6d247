from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from korella.config import get_settings, reset_settings_cache
from korella.logging import get_logger
from korella.service.accounts import AccountService
from korella.service.auth_log import AuthEventLogger
from korella.service.email import EmailService
from korella.service.hashing import CredentialHasher
from korella.service.password_reset import PasswordService
from korella.service.rate_limit import (
    CounterStore,
    MemoryCounterStore,
    RateLimitPolicies,
    RateLimiter,
)
from korella.service.retention import RetentionPurger
from korella.service.sessions import SessionValidator
from korella.service.tokens import TokenService
from korella.storage.memory import MemoryStore
from korella.storage.postgres import PostgresStore
from korella.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password part of a connection URL with ``***``."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    user = parsed.username or ""
    return urlunparse(parsed._replace(netloc=f"{user}:***@{host}"))


class Runtime:
    """Owns the store, counters and services shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
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
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.counters = self._build_counter_store()
        self.rate_limiter = RateLimiter(self.counters)
        self.rate_limits = RateLimitPolicies.from_settings(self.settings)

        self.email = EmailService.from_settings(self.settings)
        self.hasher = CredentialHasher(self.settings.bcrypt_cost_factor)
        self.tokens = TokenService(self.settings)
        self.auth_log = AuthEventLogger(self.store)
        self.session_validator = SessionValidator(self.store)
        self.passwords = PasswordService(
            self.store,
            self.hasher,
            self.email,
            self.auth_log,
            reset_expiration_hours=self.settings.password_reset_expiration_hours,
        )
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.tokens,
            self.session_validator,
            self.email,
            self.auth_log,
            self.settings,
        )
        self.retention = RetentionPurger(
            self.store,
            auth_log_retention_days=self.settings.auth_log_retention_days,
            used_token_retention_hours=self.settings.used_token_retention_hours,
        )
        logger.info(
            "runtime_init_complete",
            store_type=store_type,
            shared_counters=isinstance(self.counters, RedisCounterStore),
            email_configured=self.email.is_configured,
            enforce_server_sessions=self.settings.enforce_server_sessions,
        )

    def _build_counter_store(self) -> CounterStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(self.settings.redis_url)
                counters.verify_connection()
                return counters
            except (RedisError, ValueError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for in-process counters."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCounterStore()

    def close(self) -> None:
        if isinstance(self.counters, RedisCounterStore):
            self.counters.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, creating it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
