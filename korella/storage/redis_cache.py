from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Optional

from redis import Redis

from korella.service.rate_limit import RateLimitEntry


class RedisCounterStore:
    """Fixed-window rate-limit counters shared across processes via Redis."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and the first-hit PEXPIRE run atomically; a key without TTL is
    # re-armed so it cannot count forever.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "korella:rate",
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def _key(self, key: str) -> str:
        """Hash caller keys so emails and IPs never collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{self.prefix}:{digest}"

    def verify_connection(self) -> None:
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def get(self, key: str, now: datetime) -> Optional[RateLimitEntry]:
        pipe = self.client.pipeline()
        pipe.get(self._key(key))
        pipe.pttl(self._key(key))
        raw_count, ttl_ms = pipe.execute()
        if raw_count is None or ttl_ms is None or int(ttl_ms) <= 0:
            return None
        return RateLimitEntry(
            int(raw_count), now + timedelta(milliseconds=int(ttl_ms))
        )

    def increment(
        self, key: str, window_seconds: int, now: datetime
    ) -> RateLimitEntry:
        count, ttl_ms = self._fixed_window(
            keys=[self._key(key)], args=[int(window_seconds * 1000)]
        )
        return RateLimitEntry(int(count), now + timedelta(milliseconds=int(ttl_ms)))

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def sweep(self, now: datetime) -> int:
        # Redis expires windows on its own
        return 0


__all__ = ["RedisCounterStore"]
