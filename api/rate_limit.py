import math
import threading
import time
from typing import Callable, Dict, List, NamedTuple, Tuple


class RateDecision(NamedTuple):
    allowed: bool
    retry_after: float = 0.0

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.retry_after)


class SlidingWindowRateLimiter:
    """Per-caller point budget over a sliding time window.

    State lives in process memory only and resets on restart.  The lock
    covers the bucket map because sync request handlers run in a thread pool.
    """

    def __init__(self, max_points: int, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_points = max_points
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: Dict[str, List[Tuple[float, int]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _evict_idle(self, now: float) -> None:
        idle = [k for k, entries in self._buckets.items() if now - entries[-1][0] >= self.window_seconds]
        for k in idle:
            del self._buckets[k]

    def consume(self, key: str, points: int) -> RateDecision:
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            recent = [(t, p) for t, p in self._buckets.get(key, []) if now - t < self.window_seconds]
            used = sum(p for _, p in recent)
            if used + points > self.max_points:
                oldest = recent[0][0] if recent else now
                if recent:
                    self._buckets[key] = recent
                return RateDecision(False, max(1.0, self.window_seconds - (now - oldest)))
            recent.append((now, points))
            self._buckets[key] = recent
            return RateDecision(True, 0.0)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
