"""Unit tests for the fixed-window rate limiter.

Tests for:
- Window counting and reset
- Peek/reset/sweep operations
- Thread safety of the in-memory counters
- Client IP resolution and key helpers
"""

import threading

import pytest

from korella.service.rate_limit import (
    MemoryCounterStore,
    RateLimitPolicies,
    RateLimitPolicy,
    RateLimiter,
    api_key,
    client_ip,
    email_verification_key,
    login_attempt_key,
    password_reset_key,
)


@pytest.fixture
def limiter(clock):
    return RateLimiter(MemoryCounterStore(), clock=clock)


class TestFixedWindow:
    def test_allows_up_to_max_then_blocks(self, limiter):
        policy = RateLimitPolicy(max=3, window_seconds=60)

        results = [limiter.check("k", policy) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert all(r.limit == 3 for r in results)

    def test_blocked_result_reports_retry_after(self, limiter, clock):
        policy = RateLimitPolicy(max=1, window_seconds=3600)
        limiter.check("k", policy)
        clock.advance(seconds=10.5)

        blocked = limiter.check("k", policy)

        assert not blocked.allowed
        assert blocked.retry_after(clock()) == 3590

    def test_window_resets_after_expiry(self, limiter, clock):
        policy = RateLimitPolicy(max=2, window_seconds=60)
        limiter.check("k", policy)
        limiter.check("k", policy)
        assert not limiter.check("k", policy).allowed

        clock.advance(seconds=61)
        fresh = limiter.check("k", policy)

        assert fresh.allowed
        assert fresh.remaining == 1

    def test_keys_are_independent(self, limiter):
        policy = RateLimitPolicy(max=1, window_seconds=60)
        assert limiter.check("a", policy).allowed
        assert not limiter.check("a", policy).allowed
        assert limiter.check("b", policy).allowed

    def test_reset_at_is_fixed_by_first_hit(self, limiter, clock):
        policy = RateLimitPolicy(max=5, window_seconds=60)
        first = limiter.check("k", policy)
        clock.advance(seconds=30)
        second = limiter.check("k", policy)
        assert second.reset_at == first.reset_at


class TestStatusResetSweep:
    def test_status_does_not_count(self, limiter):
        policy = RateLimitPolicy(max=2, window_seconds=60)
        assert limiter.status("k", policy) is None

        limiter.check("k", policy)
        for _ in range(5):
            status = limiter.status("k", policy)

        assert status.allowed
        assert status.remaining == 1

    def test_status_of_expired_window_is_none(self, limiter, clock):
        policy = RateLimitPolicy(max=2, window_seconds=60)
        limiter.check("k", policy)
        clock.advance(seconds=120)
        assert limiter.status("k", policy) is None

    def test_reset_clears_counter(self, limiter):
        policy = RateLimitPolicy(max=1, window_seconds=60)
        limiter.check("k", policy)
        limiter.reset("k")
        assert limiter.check("k", policy).allowed

    def test_reset_unknown_key_is_noop(self, limiter):
        limiter.reset("missing")

    def test_sweep_drops_only_expired_entries(self, clock):
        store = MemoryCounterStore()
        limiter = RateLimiter(store, clock=clock)
        limiter.check("old", RateLimitPolicy(max=5, window_seconds=10))
        limiter.check("new", RateLimitPolicy(max=5, window_seconds=600))
        clock.advance(seconds=60)

        assert limiter.sweep() == 1
        assert len(store) == 1


class TestConcurrency:
    def test_parallel_increments_are_not_lost(self, limiter):
        policy = RateLimitPolicy(max=10_000, window_seconds=60)
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            for _ in range(50):
                limiter.check("shared", policy)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert limiter.status("shared", policy).remaining == 10_000 - 1000


class TestKeysAndPolicies:
    def test_key_helpers(self):
        assert password_reset_key("a@b.co", "1.2.3.4") == "password-reset:a@b.co:1.2.3.4"
        assert login_attempt_key("1.2.3.4") == "login-attempt:1.2.3.4"
        assert email_verification_key("a@b.co") == "email-verification:a@b.co"
        assert api_key("1.2.3.4", "register") == "api:register:1.2.3.4"

    def test_policies_from_settings_defaults(self, settings):
        policies = RateLimitPolicies.from_settings(settings)
        assert policies.password_reset == RateLimitPolicy(3, 3600)
        assert policies.email_verification == RateLimitPolicy(3, 3600)
        assert policies.api_strict.max < policies.api_general.max


class TestClientIp:
    def test_prefers_first_forwarded_for_entry(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert client_ip(headers, "127.0.0.1") == "203.0.113.7"

    def test_falls_back_through_proxy_headers(self):
        assert client_ip({"x-real-ip": "198.51.100.2"}) == "198.51.100.2"
        assert client_ip({"cf-connecting-ip": "198.51.100.3"}) == "198.51.100.3"

    def test_uses_peer_then_unknown(self):
        assert client_ip({}, "192.0.2.9") == "192.0.2.9"
        assert client_ip({}) == "unknown"
        assert client_ip({"x-forwarded-for": " "}) == "unknown"
