"""Adaptive pacing for APS requests shared by listings and downloads."""

import time
from collections import deque
from threading import Event, Lock


class AdaptiveRateLimiter:
    """
    Space out API requests and slow down when the service pushes back.

    - Every HTTP 429 widens the gap between requests; bursts of 429s within
      ``window_seconds`` double it.
    - A server supplied ``Retry-After`` blocks all callers until it passes.
    - Long runs of successes slowly shrink the gap back to the floor.
    """

    SUCCESSES_BEFORE_RELAX = 20

    def __init__(
        self,
        initial_delay: float = 0.0,
        max_delay: float = 5.0,
        window_seconds: float = 60.0,
        threshold: int = 3,
    ):
        self.min_delay = initial_delay
        self.current_delay = initial_delay
        self.max_delay = max_delay
        self.window_seconds = window_seconds
        self.threshold = threshold

        self._lock = Lock()
        self._next_allowed = 0.0
        self._hits: deque[float] = deque()
        self._successes = 0

    def wait(self, stop_event: Event | None = None) -> None:
        """Block until the next request may be sent (or the run is stopped)."""
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next_allowed)
            self._next_allowed = start + self.current_delay
            pause = start - now
        if pause <= 0:
            return
        if stop_event is not None:
            stop_event.wait(pause)
        else:
            time.sleep(pause)

    def record_success(self) -> None:
        with self._lock:
            self._successes += 1
            if self._successes >= self.SUCCESSES_BEFORE_RELAX:
                self.current_delay = max(self.min_delay, self.current_delay * 0.9)
                self._successes = 0

    def record_rate_limit(self, retry_after: float | None = None) -> None:
        """Record an HTTP 429 and widen the request gap."""
        with self._lock:
            now = time.monotonic()
            self._successes = 0
            self._hits.append(now)
            while self._hits and now - self._hits[0] >= self.window_seconds:
                self._hits.popleft()

            floor = max(self.current_delay, 0.05)
            factor = 2.0 if len(self._hits) >= self.threshold else 1.5
            self.current_delay = min(self.max_delay, floor * factor)

            if retry_after:
                self._next_allowed = max(self._next_allowed, now + retry_after)

    @property
    def is_throttled(self) -> bool:
        return self.current_delay > max(self.min_delay * 2, 0.05)

    @property
    def delay(self) -> float:
        with self._lock:
            return self.current_delay

    @property
    def recent_hits(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self.current_delay = self.min_delay
            self._next_allowed = 0.0
            self._hits.clear()
            self._successes = 0
