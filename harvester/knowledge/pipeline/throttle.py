"""Per-host request serialization with politeness delays.

One ``HostThrottle`` is shared by every job in the process, so two jobs
crawling the same host take turns and keep the politeness interval between
their requests, while different hosts proceed in parallel.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator


class HostThrottle:
    """Tracks the last request per host and enforces a minimum spacing.

    Usage:
        throttle = HostThrottle()
        with throttle.slot("example.com", 1.5):
            fetch(...)
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self._guard = threading.Lock()
        self._host_locks: dict[str, threading.Lock] = {}
        self._last_request: dict[str, float] = {}

    def _lock_for(self, host: str) -> threading.Lock:
        with self._guard:
            lock = self._host_locks.get(host)
            if lock is None:
                lock = self._host_locks[host] = threading.Lock()
            return lock

    def cooldown(self, host: str, min_interval: float) -> float:
        """Seconds to wait before the next request to ``host`` (0 if none)."""
        last = self._last_request.get(host)
        if last is None:
            return 0.0
        remaining = min_interval - (self._clock() - last)
        return max(0.0, remaining)

    @contextmanager
    def slot(self, host: str, min_interval: float) -> Iterator[float]:
        """Hold the host exclusively for one request.

        Yields the seconds waited. The host is stamped when the slot is
        released, so the interval runs from the end of one request to the
        start of the next.
        """
        lock = self._lock_for(host)
        with lock:
            waited = self.cooldown(host, min_interval)
            if waited > 0:
                self._sleep(waited)
            try:
                yield waited
            finally:
                self._last_request[host] = self._clock()
