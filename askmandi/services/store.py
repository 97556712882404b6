"""
In-process response cache and rate limiter.

Both expose coroutine methods so an external key-value store with the same
interface (get/set/limit) can replace them without touching the pipeline.
"""
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple


class ResponseCache:
    """Thread-safe TTL cache, LRU-bounded."""

    def __init__(self, max_size: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.max_size = max(10, int(max_size or os.getenv("RESPONSE_CACHE_MAX_ENTRIES", "1000")))
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.RLock()

    async def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            self._entries.move_to_end(key)
            return value

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        expires_at = self._clock() + max(1.0, float(ttl_seconds))
        with self._lock:
            self._entries[key] = (value, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds


class RateLimiter:
    """Fixed-window request counter per caller identity.

    Expired windows are swept at most once per ``min(window, 60s)`` so the map
    only holds callers seen within the current window.
    """

    def __init__(self, max_requests: int = 20, window_seconds: float = 86400, clock: Callable[[], float] = time.time):
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(1.0, float(window_seconds))
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.RLock()
        self._sweep_every = min(self.window_seconds, 60.0)
        self._next_sweep = clock() + self._sweep_every

    def _sweep(self, now: float) -> None:
        expired = [key for key, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self._sweep_every

    async def limit(self, identity: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            started, used = self._windows.get(identity, (now, 0))
            if now - started >= self.window_seconds:
                started, used = now, 0
            reset_at = started + self.window_seconds
            if used >= self.max_requests:
                self._windows[identity] = (started, used)
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)
            used += 1
            self._windows[identity] = (started, used)
            return RateLimitResult(allowed=True, remaining=self.max_requests - used, reset_at=reset_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
