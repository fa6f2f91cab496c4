import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Deque, Dict


class RateLimiter:
    """Sliding one-minute window per key. ``rpm <= 0`` disables limiting."""

    def __init__(self, rpm: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.rpm = max(0, rpm)
        self._clock = clock
        self._events: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.rpm > 0

    def allow(self, key: str) -> bool:
        if not self.enabled:
            return True
        now = self._clock()
        window = 60.0
        with self._lock:
            events = self._events[key]
            while events and now - events[0] >= window:
                events.popleft()
            if len(events) >= self.rpm:
                return False
            events.append(now)
            return True

    def retry_after(self, key: str) -> int:
        with self._lock:
            events = self._events.get(key)
            if not events:
                return 0
            remaining = 60.0 - (self._clock() - events[0])
        return max(1, int(remaining + 0.999))
