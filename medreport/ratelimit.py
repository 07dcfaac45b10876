"""In-process sliding-window rate limiting keyed by client address."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple


class SlidingWindowLimiter:
    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    @property
    def enabled(self) -> bool:
        return self.limit > 0 and self.window > 0

    def _sweep(self, cutoff: float) -> None:
        # Keys come from request headers; drop clients with no hit inside the window.
        for key in [k for k, hits in self._hits.items() if hits[-1] <= cutoff]:
            del self._hits[key]

    def hit(self, key: str) -> Tuple[bool, int]:
        """Record a request for ``key``.

        Returns ``(allowed, retry_after)``; ``retry_after`` is whole seconds
        until the oldest request leaves the window (0 when allowed).
        """
        if not self.enabled:
            return True, 0
        now = self._clock()
        cutoff = now - self.window
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._sweep(cutoff)
                self._last_sweep = now

            hits = self._hits.get(key)
            if hits is not None:
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                if len(hits) >= self.limit:
                    return False, max(1, math.ceil(hits[0] + self.window - now))
            if not hits:
                hits = self._hits[key] = deque()
            hits.append(now)
            return True, 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def client_key(request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    return request.remote_addr or "unknown"
