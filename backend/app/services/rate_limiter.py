from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from threading import Lock


@dataclass(frozen=True)
class RateWindowDecision:
    allowed: bool
    limit: int
    in_window: int
    retry_after_seconds: float


class SlidingWindowCounter:
    """Counts dispatches inside a rolling window.

    Checking capacity and recording a dispatch are separate steps so callers
    can wait out other delays between the check and the actual dispatch and
    record the real dispatch instant.
    """

    def __init__(self, *, max_requests: int, window_seconds: float = 60.0) -> None:
        self._max_requests = max(1, max_requests)
        self._window_seconds = window_seconds
        self._lock = Lock()
        self._timestamps: deque[float] = deque()

    @property
    def limit(self) -> int:
        return self._max_requests

    def check(self, now: float) -> RateWindowDecision:
        with self._lock:
            self._evict(now)
            in_window = len(self._timestamps)
            if in_window < self._max_requests:
                return RateWindowDecision(
                    allowed=True,
                    limit=self._max_requests,
                    in_window=in_window,
                    retry_after_seconds=0.0,
                )
            retry_after = max(0.0, (self._timestamps[0] + self._window_seconds) - now)
            return RateWindowDecision(
                allowed=False,
                limit=self._max_requests,
                in_window=in_window,
                retry_after_seconds=retry_after,
            )

    def record(self, at: float) -> None:
        with self._lock:
            self._timestamps.append(at)

    def count(self, now: float) -> int:
        with self._lock:
            self._evict(now)
            return len(self._timestamps)

    def _evict(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()
