"""Fixed-window rate limiting for sensitive endpoints.

Counters live behind a :class:`CounterStore` so a single process can use the
in-memory map while multi-node deployments share counters in Redis.
"""

from __future__ import annotations

import asyncio
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional, Protocol

from korella.logging import get_logger
from korella.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 300


@dataclass(frozen=True)
class RateLimitPolicy:
    max: int
    window_seconds: int


@dataclass
class RateLimitEntry:
    count: int
    reset_at: datetime

    def expired(self, now: datetime) -> bool:
        return self.reset_at < now


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    def retry_after(self, now: Optional[datetime] = None) -> int:
        """Whole seconds until the window resets, rounded up."""
        delta = (self.reset_at - (now or utcnow())).total_seconds()
        return max(0, math.ceil(delta))


class CounterStore(Protocol):
    def get(self, key: str, now: datetime) -> Optional[RateLimitEntry]: ...

    def increment(
        self, key: str, window_seconds: int, now: datetime
    ) -> RateLimitEntry: ...

    def delete(self, key: str) -> None: ...

    def sweep(self, now: datetime) -> int: ...


class MemoryCounterStore:
    """Process-local counters guarded by one lock."""

    def __init__(self) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str, now: datetime) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return RateLimitEntry(entry.count, entry.reset_at)

    def increment(
        self, key: str, window_seconds: int, now: datetime
    ) -> RateLimitEntry:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(now):
                entry = RateLimitEntry(1, now + timedelta(seconds=window_seconds))
                self._entries[key] = entry
            else:
                entry.count += 1
            return RateLimitEntry(entry.count, entry.reset_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self, now: datetime) -> int:
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def check(self, key: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Count one hit against ``key`` and report whether it fits the policy."""

        entry = self.store.increment(key, policy.window_seconds, self.now())
        allowed = entry.count <= policy.max
        remaining = max(0, policy.max - entry.count)
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                key=key,
                count=entry.count,
                limit=policy.max,
                reset_at=entry.reset_at.isoformat(),
            )
        return RateLimitResult(allowed, policy.max, remaining, entry.reset_at)

    def reset(self, key: str) -> None:
        self.store.delete(key)

    def status(self, key: str, policy: RateLimitPolicy) -> Optional[RateLimitResult]:
        """Peek at the current window without counting a hit."""

        entry = self.store.get(key, self.now())
        if entry is None:
            return None
        return RateLimitResult(
            entry.count <= policy.max,
            policy.max,
            max(0, policy.max - entry.count),
            entry.reset_at,
        )

    def sweep(self) -> int:
        removed = self.store.sweep(self.now())
        if removed:
            logger.debug("rate_limit_sweep", removed=removed)
        return removed

    async def run_sweeper(
        self, interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    ) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()


@dataclass(frozen=True)
class RateLimitPolicies:
    login: RateLimitPolicy
    password_reset: RateLimitPolicy
    email_verification: RateLimitPolicy
    api_general: RateLimitPolicy
    api_strict: RateLimitPolicy

    @classmethod
    def from_settings(cls, settings) -> "RateLimitPolicies":
        return cls(
            login=RateLimitPolicy(
                settings.login_rate_limit_max, settings.login_rate_limit_window_seconds
            ),
            password_reset=RateLimitPolicy(
                settings.password_reset_rate_limit_max,
                settings.password_reset_rate_limit_window_seconds,
            ),
            email_verification=RateLimitPolicy(
                settings.email_verification_rate_limit_max,
                settings.email_verification_rate_limit_window_seconds,
            ),
            api_general=RateLimitPolicy(
                settings.api_rate_limit_max, settings.api_rate_limit_window_seconds
            ),
            api_strict=RateLimitPolicy(
                settings.api_strict_rate_limit_max,
                settings.api_strict_rate_limit_window_seconds,
            ),
        )


def password_reset_key(email: str, ip: str) -> str:
    return f"password-reset:{email}:{ip}"


def login_attempt_key(ip: str) -> str:
    return f"login-attempt:{ip}"


def email_verification_key(email: str) -> str:
    return f"email-verification:{email}"


def api_key(ip: str, endpoint: str) -> str:
    return f"api:{endpoint}:{ip}"


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Resolve the caller address, preferring proxy headers."""

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    return peer or "unknown"


__all__ = [
    "CounterStore",
    "MemoryCounterStore",
    "RateLimitEntry",
    "RateLimitPolicies",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimiter",
    "api_key",
    "client_ip",
    "email_verification_key",
    "login_attempt_key",
    "password_reset_key",
]
