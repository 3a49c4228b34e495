from __future__ import annotations

from collections.abc import Callable
from threading import Event, Lock
from time import monotonic


class TokenBucket:
    """Thread-safe token bucket: ``max_tokens`` starts per ``window_seconds``.

    The bucket starts full and refills continuously.
    """

    def __init__(
        self,
        *,
        max_tokens: int,
        window_seconds: float,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._capacity = float(max_tokens)
        self._refill_per_second = max_tokens / window_seconds
        self._clock = clock
        self._tokens = float(max_tokens)
        self._updated_at = clock()
        self._lock = Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_per_second)
        self._updated_at = now

    def try_acquire(self) -> float:
        """Take a token if one is available.

        Returns ``0.0`` on success, otherwise the seconds until the next token.
        """
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / self._refill_per_second

    def acquire(self, stop_event: Event | None = None) -> bool:
        """Block until a token is taken; ``False`` if ``stop_event`` fires first."""
        stop_event = stop_event or Event()
        while not stop_event.is_set():
            wait_seconds = self.try_acquire()
            if wait_seconds == 0.0:
                return True
            stop_event.wait(wait_seconds)
        return False
