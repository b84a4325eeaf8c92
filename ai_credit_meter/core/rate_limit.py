"""
Fixed-window request throttling.

Counts requests per (caller, route) pair. The algorithm lives in RateLimiter;
where the windows are kept is behind the WindowStore interface so a shared
store can replace the in-process one without changing the counting rules.

Windows are ephemeral. After a restart every caller starts with a fresh
window (fail-open).
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from .keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

UNKNOWN_CALLER = "unknown"


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota for one route: `limit` requests per `window_ms`."""
    window_ms: int = 60000
    limit: int = 10

    def __post_init__(self):
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if self.limit <= 0:
            raise ValueError("limit must be > 0")


DEFAULT_RATE_LIMIT = RateLimitConfig()

# Route presets
RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "ai": RateLimitConfig(window_ms=60000, limit=10),
    "api": RateLimitConfig(window_ms=60000, limit=60),
    "auth": RateLimitConfig(window_ms=60000, limit=5),
    "webhook": RateLimitConfig(window_ms=1000, limit=100),
}


@dataclass(frozen=True)
class RateWindow:
    count: int
    window_start: float  # ms


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a rate-limit check."""
    allowed: bool
    remaining: int
    reset_in: float  # ms until the current window ends
    limit: int

    @property
    def retry_after(self) -> int:
        """Seconds a throttled caller should wait."""
        return math.ceil(self.reset_in / 1000)


WindowKey = Tuple[str, str]


class WindowStore:
    """Storage for rate windows.

    update() must apply fn atomically for a key: no other update for the same
    key may interleave between reading the old window and storing the new one.
    """

    def update(self, key: WindowKey, fn: Callable[[Optional[RateWindow]], RateWindow]) -> RateWindow:
        raise NotImplementedError

    def purge(self, is_expired: Callable[[RateWindow], bool]) -> int:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class InMemoryWindowStore(WindowStore):
    """Process-local window store with one lock per key.

    The per-key lock makes each read-modify-write atomic. Single dict
    operations (get, set, del, copy, clear) are atomic on their own, so the
    table itself needs no lock.
    """

    def __init__(self):
        self._windows: Dict[WindowKey, RateWindow] = {}
        self._locks = KeyedLock()

    def update(self, key: WindowKey, fn: Callable[[Optional[RateWindow]], RateWindow]) -> RateWindow:
        with self._locks.hold(key):
            window = fn(self._windows.get(key))
            self._windows[key] = window
            return window

    def purge(self, is_expired: Callable[[RateWindow], bool]) -> int:
        removed = 0
        for key in list(self._windows):
            with self._locks.hold(key):
                window = self._windows.get(key)
                if window is not None and is_expired(window):
                    self._windows.pop(key, None)
                    removed += 1
        return removed

    def clear(self) -> None:
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """Fixed-window counter keyed by (caller_key, route_key)."""

    def __init__(self, store: Optional[WindowStore] = None, clock: Callable[[], float] = _monotonic_ms):
        """
        Args:
            store: Window store (defaults to an in-memory store)
            clock: Millisecond clock, injectable for tests
        """
        self.store = store if store is not None else InMemoryWindowStore()
        self.clock = clock
        self._longest_window_ms = DEFAULT_RATE_LIMIT.window_ms

    def check(self, caller_key: str, route_key: str, config: RateLimitConfig = DEFAULT_RATE_LIMIT) -> RateDecision:
        """Count a request and decide whether it may proceed."""
        now = self.clock()
        self._longest_window_ms = max(self._longest_window_ms, config.window_ms)

        def advance(window: Optional[RateWindow]) -> RateWindow:
            if window is None or now - window.window_start >= config.window_ms:
                return RateWindow(count=1, window_start=now)
            return RateWindow(count=window.count + 1, window_start=window.window_start)

        window = self.store.update((caller_key, route_key), advance)
        allowed = window.count <= config.limit
        decision = RateDecision(
            allowed=allowed,
            remaining=max(0, config.limit - window.count),
            reset_in=window.window_start + config.window_ms - now,
            limit=config.limit,
        )
        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s on %s (%d/%d)",
                caller_key, route_key, window.count, config.limit,
            )
        return decision

    def sweep(self) -> int:
        """Drop windows older than the longest window seen. Returns the count removed."""
        now = self.clock()
        horizon = self._longest_window_ms
        return self.store.purge(lambda window: now - window.window_start >= horizon)

    def reset(self) -> None:
        self.store.clear()


def caller_key_from_headers(headers: Mapping[str, str]) -> str:
    """Derive the rate-limit identity of a request.

    Uses the first address in X-Forwarded-For, then X-Real-IP. Requests with
    neither share the "unknown" key.
    """
    lowered = {name.lower(): value for name, value in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = lowered.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return UNKNOWN_CALLER
