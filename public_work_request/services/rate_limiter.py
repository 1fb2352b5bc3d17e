from dataclasses import dataclass
from typing import Optional
import math
import threading
import time


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: Optional[int] = None # whole seconds, only on deny


class RateLimiter:
    """
    Fixed-window request counter per key (caller IP).

    A key's window resets lazily on the first check after it expires. Stale
    keys are evicted at most once per window to bound memory.
    """

    def __init__(self, max_requests, window_ms, clock=time.monotonic):
        self.max_requests = max_requests
        self.window = window_ms / 1000.0
        self.clock = clock
        self._lock = threading.Lock()
        self._entries = {} # key -> [count, reset_at]
        self._next_sweep = 0.0

    def check(self, key):
        with self._lock:
            now = self.clock()
            self._sweep(now)

            entry = self._entries.get(key)
            if entry is None or now >= entry[1]:
                self._entries[key] = [1, now + self.window]
                return RateLimitResult(allowed=True)

            if entry[0] >= self.max_requests:
                return RateLimitResult(allowed=False, retry_after=max(1, math.ceil(entry[1] - now)))

            entry[0] += 1
            return RateLimitResult(allowed=True)

    def _sweep(self, now):
        if now < self._next_sweep:
            return
        for key in [k for k, (_, reset_at) in self._entries.items() if now >= reset_at]:
            del self._entries[key]
        self._next_sweep = now + self.window

    def __len__(self):
        with self._lock:
            return len(self._entries)
