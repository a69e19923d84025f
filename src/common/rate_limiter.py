from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional


class RateLimitError(RuntimeError):
    """Raised when a permit could not be obtained (non-blocking or timed out)."""


@dataclass
class _WindowConfig:
    max_calls: int
    per_seconds: float


class SlidingWindowRateLimiter:
    """
    Thread-safe sliding-window throttle for outbound decryption calls.

    - At most `max_calls` permits are handed out in any `per_seconds` window.
    - `acquire(blocking=True)` waits for the oldest permit in the window to
      expire; `acquire(blocking=False)` raises `RateLimitError` instead.
    - `acquire(timeout=...)` bounds the total wait.

    Worker tasks share one limiter per decryption client, so a burst of
    requests from the ledger cannot hammer the decryption service. It is a
    per-process limiter, not a distributed one.
    """

    def __init__(
        self,
        max_calls: int,
        per_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be > 0")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be > 0")
        self._cfg = _WindowConfig(max_calls=max_calls, per_seconds=per_seconds)
        self._events: Deque[float] = deque()
        self._lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep

    @property
    def max_calls(self) -> int:
        return self._cfg.max_calls

    def _prune(self, now: float) -> None:
        window_start = now - self._cfg.per_seconds
        while self._events and self._events[0] <= window_start:
            self._events.popleft()

    def _next_available_delay(self, now: float) -> float:
        if len(self._events) < self._cfg.max_calls:
            return 0.0
        return max(0.0, self._events[0] + self._cfg.per_seconds - now)

    def acquire(self, *, blocking: bool = True, timeout: Optional[float] = None) -> None:
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                delay = self._next_available_delay(now)
                if delay == 0.0:
                    self._events.append(now)
                    return
            if not blocking:
                raise RateLimitError("rate limit exceeded; no slot available")
            if deadline is not None and now + delay > deadline:
                raise RateLimitError(f"no slot available within {timeout:.2f}s")
            # short naps keep shutdown responsive
            self._sleep(min(delay, 1.0))
