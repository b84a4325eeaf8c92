"""
Unit tests for fixed-window rate limiting.

Tests window counting, isolation between keys, caller identity, and sweeping.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from ai_credit_meter.core.keyed_lock import KeyedLock
from ai_credit_meter.core.rate_limit import (
    RATE_LIMITS,
    InMemoryWindowStore,
    RateLimitConfig,
    RateLimiter,
    caller_key_from_headers,
)


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class TestRateLimiter:
    """Test window counting."""

    def setup_method(self):
        self.clock = FakeClock(1_000_000.0)
        self.limiter = RateLimiter(clock=self.clock)
        self.config = RateLimitConfig(window_ms=60000, limit=3)

    def test_allows_up_to_limit(self):
        """Verify the first `limit` requests pass and the next is refused."""
        decisions = [self.limiter.check("1.2.3.4", "/api/ai/translate", self.config) for _ in range(4)]
        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    def test_denied_decision_reports_wait(self):
        """Verify a refused request says how long until the window resets."""
        for _ in range(3):
            self.limiter.check("1.2.3.4", "/r", self.config)
        self.clock.advance(15000)
        decision = self.limiter.check("1.2.3.4", "/r", self.config)
        assert not decision.allowed
        assert decision.reset_in == 45000
        assert decision.retry_after == 45
        assert decision.limit == 3

    def test_retry_after_rounds_up(self):
        for _ in range(4):
            self.limiter.check("a", "/r", self.config)
        self.clock.advance(100)
        decision = self.limiter.check("a", "/r", self.config)
        # 59900 ms -> 60 s
        assert decision.retry_after == 60

    def test_window_resets(self):
        """Verify a fresh window starts once window_ms has elapsed."""
        for _ in range(4):
            self.limiter.check("a", "/r", self.config)
        self.clock.advance(60000)
        decision = self.limiter.check("a", "/r", self.config)
        assert decision.allowed
        assert decision.remaining == 2
        assert decision.reset_in == 60000

    def test_callers_are_isolated(self):
        """Verify one caller exhausting a route does not affect another."""
        for _ in range(4):
            self.limiter.check("a", "/r", self.config)
        assert self.limiter.check("b", "/r", self.config).allowed

    def test_routes_are_isolated(self):
        """Verify one route exhausting does not affect another for the same caller."""
        for _ in range(4):
            self.limiter.check("a", "/api/ai/translate", self.config)
        assert self.limiter.check("a", "/api/ai/summarize", self.config).allowed

    def test_concurrent_checks_never_exceed_limit(self):
        """Verify exactly `limit` of many simultaneous requests are allowed."""
        limiter = RateLimiter()
        config = RateLimitConfig(window_ms=60000, limit=10)
        with ThreadPoolExecutor(max_workers=8) as pool:
            decisions = list(pool.map(lambda _: limiter.check("a", "/r", config), range(50)))
        assert sum(1 for d in decisions if d.allowed) == 10

    def test_sweep_drops_expired_windows(self):
        """Verify sweep removes windows older than the longest window."""
        store = InMemoryWindowStore()
        limiter = RateLimiter(store=store, clock=self.clock)
        limiter.check("a", "/r", self.config)
        self.clock.advance(30000)
        limiter.check("b", "/r", self.config)
        self.clock.advance(30000)

        assert limiter.sweep() == 1
        assert len(store) == 1

    def test_sweeps_and_resets_alongside_checks(self):
        """Verify store maintenance can run while other threads are counting."""
        limiter = RateLimiter(clock=self.clock)

        def work(i):
            limiter.check(f"caller-{i % 20}", "/r", self.config)
            if i % 7 == 0:
                self.clock.advance(61000)
                limiter.sweep()
            if i % 50 == 0:
                limiter.reset()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, range(500)))
        self.clock.advance(61000)
        limiter.sweep()
        assert len(limiter.store) == 0

    def test_reset_clears_all_windows(self):
        for _ in range(4):
            self.limiter.check("a", "/r", self.config)
        self.limiter.reset()
        assert self.limiter.check("a", "/r", self.config).allowed


class TestRateLimitConfig:
    """Test quota validation and presets."""

    def test_presets(self):
        assert RATE_LIMITS["ai"] == RateLimitConfig(window_ms=60000, limit=10)
        assert RATE_LIMITS["api"].limit == 60
        assert RATE_LIMITS["auth"].limit == 5
        assert RATE_LIMITS["webhook"] == RateLimitConfig(window_ms=1000, limit=100)

    def test_rejects_non_positive_values(self):
        with pytest.raises(ValueError, match="window_ms"):
            RateLimitConfig(window_ms=0, limit=1)
        with pytest.raises(ValueError, match="limit"):
            RateLimitConfig(window_ms=1000, limit=0)


class TestCallerKey:
    """Test caller identity derivation from headers."""

    def test_first_forwarded_address(self):
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        assert caller_key_from_headers(headers) == "203.0.113.7"

    def test_real_ip_fallback(self):
        assert caller_key_from_headers({"x-real-ip": " 198.51.100.2 "}) == "198.51.100.2"

    def test_unknown_when_missing(self):
        """Verify requests without address headers share one key."""
        assert caller_key_from_headers({}) == "unknown"
        assert caller_key_from_headers({"X-Forwarded-For": ""}) == "unknown"


class TestKeyedLock:
    """Test per-key lock bookkeeping."""

    def test_entries_released_after_use(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_serializes_same_key(self):
        """Verify increments under the same key are not lost."""
        locks = KeyedLock()
        counter = {"value": 0}

        def bump(_):
            with locks.hold("k"):
                current = counter["value"]
                counter["value"] = current + 1

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(bump, range(200)))
        assert counter["value"] == 200
