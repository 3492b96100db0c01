from __future__ import annotations
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable


class RateLimiter:
    """
    Sliding window rate limiter. Allows at most `events_per_window` events per
    key within any `window_seconds` long window. Keys without events in the
    current window are forgotten, at most once per window. The rate limiter is
    thread-safe.
    """

    def __init__(
        self,
        events_per_window: int,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not isinstance(events_per_window, int) or events_per_window <= 0:
            raise ValueError("events_per_window must be greater than 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be greater than 0")
        self._limit = events_per_window
        self._window = window_seconds
        self._clock = clock
        self._mu = threading.Lock()
        self._events: defaultdict[str, deque[float]] = defaultdict(deque)
        self._last_sweep = clock()

    def is_allowed(self, key: str) -> bool:
        """
        Record an event for the key and return True, or return False without
        recording anything if the key already used up its budget.
        """
        now = self._clock()
        with self._mu:
            if now - self._last_sweep > self._window:
                self._sweep(now)
            events = self._events[key]
            while events and now - events[0] > self._window:
                events.popleft()
            if len(events) >= self._limit:
                return False
            events.append(now)
            return True

    def _sweep(self, now: float):
        # Must be called with _mu held. Every tracked key holds at least one
        # event, so keys whose newest event left the window are dropped.
        expired = [k for k, events in self._events.items() if now - events[-1] > self._window]
        for k in expired:
            del self._events[k]
        self._last_sweep = now

    def __len__(self) -> int:
        """
        Number of keys currently tracked.
        """
        with self._mu:
            return len(self._events)

    def clear(self):
        with self._mu:
            self._events.clear()
