"""
Rate Limiting Service

WHY: Signup/login, verification emails, borrowing and owner actions are all
abuse targets. Each is capped per IP, per user or per email address within a
fixed window.

Counters live behind a CounterStore so a shared store can replace the
in-process one when running more than one instance. The clock is injectable
so window expiry can be tested without sleeping.

Expired windows are swept lazily, at most once every cleanup_interval
seconds, on the next hit after the interval has passed.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from ..errors import RateLimited


@dataclass(frozen=True)
class RateLimit:
    name: str
    limit: int
    window_seconds: int


# Named limits used by the routes (key prefix decides ip:/user:/email:)
LIMITS: dict[str, RateLimit] = {
    "auth": RateLimit("auth", 5, 60),
    "verification": RateLimit("verification", 3, 3600),
    "password_reset": RateLimit("password_reset", 3, 3600),
    "borrow": RateLimit("borrow", 20, 3600),
    "tool_create": RateLimit("tool_create", 5, 3600),
    "tool_update": RateLimit("tool_update", 10, 3600),
    "owner_action": RateLimit("owner_action", 20, 3600),
    "claim": RateLimit("claim", 10, 3600),
}


@dataclass
class Window:
    count: int
    reset_at: float


class CounterStore:
    """Storage interface for fixed-window counters."""

    def increment(self, key: str, window_seconds: int, now: float) -> Window:
        raise NotImplementedError

    def cleanup(self, now: float) -> int:
        raise NotImplementedError

    def reset(self, key: str | None = None) -> None:
        raise NotImplementedError


class MemoryCounterStore(CounterStore):
    """Process-local store. Correct for a single instance only."""

    def __init__(self):
        self._windows: dict[str, Window] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, window_seconds: int, now: float) -> Window:
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = Window(count=0, reset_at=now + window_seconds)
                self._windows[key] = window
            window.count += 1
            return Window(count=window.count, reset_at=window.reset_at)

    def cleanup(self, now: float) -> int:
        with self._lock:
            expired = [key for key, window in self._windows.items() if window.reset_at <= now]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def __len__(self) -> int:
        return len(self._windows)


class RateLimiter:
    def __init__(self, store: CounterStore | None = None, clock=time.monotonic, cleanup_interval: int = 300):
        self.store = store if store is not None else MemoryCounterStore()
        self.clock = clock
        self.cleanup_interval = cleanup_interval
        self.enabled = True
        self._last_cleanup = clock()

    def init_app(self, app) -> None:
        self.enabled = bool(app.config.get("RATE_LIMIT_ENABLED", True))
        self.cleanup_interval = int(app.config.get("RATE_LIMIT_CLEANUP_SECONDS", self.cleanup_interval))
        app.extensions["rate_limiter"] = self

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup >= self.cleanup_interval:
            self.store.cleanup(now)
            self._last_cleanup = now

    def hit(self, limit: RateLimit | str, key: str) -> int:
        """
        Count one request against a named limit.

        Returns the remaining allowance; raises RateLimited once the limit
        is exceeded, with retry_after set to the seconds until the window
        resets.
        """
        if isinstance(limit, str):
            limit = LIMITS[limit]
        if not self.enabled:
            return limit.limit

        now = self.clock()
        self._maybe_cleanup(now)

        window = self.store.increment(f"{limit.name}:{key}", limit.window_seconds, now)
        if window.count > limit.limit:
            retry_after = max(1, int(window.reset_at - now + 0.999))
            raise RateLimited("Too many requests, please try again later", retry_after=retry_after)
        return limit.limit - window.count

    def reset(self) -> None:
        self.store.reset()
