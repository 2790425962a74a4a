# Overview: Fixed-window request limiter keyed by device token.

from __future__ import annotations

import math
import threading
import time
from typing import Callable

from ..errors import RateLimitError


class FixedWindowLimiter:
    """
    Allow ``limit`` requests per ``window`` seconds per key.

    A limit of 0 disables the limiter.
    """

    def __init__(self, limit: int, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, key: str) -> None:
        """Count one request; raises RateLimitError once the window is full."""
        if self.limit <= 0:
            return

        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window:
                started, count = now, 0

            if count >= self.limit:
                retry_after = max(1, math.ceil(self.window - (now - started)))
                raise RateLimitError(f"Too many requests, retry after {retry_after}s", retry_after=retry_after)

            self._windows[key] = (started, count + 1)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
