"""In-memory fixed-window counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- A window starts at the first attempt for a key and lasts window_seconds,
  the same expiry semantics as INCR + EXPIRE in a cache.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from app.adapters.rate_limit.base import CounterSnapshot, CounterStore


@dataclass
class _WindowState:
    expires_at: float
    count: int


class InMemoryCounterStore(CounterStore):
    """Counter store keeping one fixed window per key in process memory.

    Important:
        This store is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits. Enable distributed mode to share counters.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _WindowState] = {}

    def _live_state(self, key: str, now: float) -> _WindowState | None:
        state = self._state_by_key.get(key)
        if state is not None and state.expires_at <= now:
            del self._state_by_key[key]
            return None
        return state

    @staticmethod
    def _retry_after(state: _WindowState, now: float) -> int:
        return max(0, int(math.ceil(state.expires_at - now)))

    def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        """Record one attempt for the key, opening a window if needed.

        Raises:
            ValueError: If key is empty or window_seconds is invalid.
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        now = self._clock()
        with self._lock:
            state = self._live_state(key, now)
            if state is None:
                state = _WindowState(expires_at=now + window_seconds, count=0)
                self._state_by_key[key] = state
            state.count += 1
            return CounterSnapshot(
                count=state.count,
                retry_after_seconds=self._retry_after(state, now),
            )

    def peek(self, key: str) -> CounterSnapshot:
        now = self._clock()
        with self._lock:
            state = self._live_state(key, now)
            if state is None:
                return CounterSnapshot(count=0, retry_after_seconds=0)
            return CounterSnapshot(
                count=state.count,
                retry_after_seconds=self._retry_after(state, now),
            )

    def reset(self, key: str) -> None:
        with self._lock:
            self._state_by_key.pop(key, None)
