"""Counter store interfaces.

The rate limit engine depends on this abstraction (not the concrete
implementation) so storage can be in-memory for a single process or Redis
when counters must be shared between workers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class CounterSnapshot:
    """State of one counter key as reported by the store.

    Attributes:
        count: Attempts recorded in the key's current window (0 when fresh).
        retry_after_seconds: Seconds until the current window expires
            (0 when the key has no live window).
    """

    count: int
    retry_after_seconds: int


class CounterStore(ABC):
    """Interface for keyed, expiring attempt counters.

    Implementations must make ``increment`` atomic: concurrent callers sharing
    a key each observe a distinct count.
    """

    @abstractmethod
    def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        """Record one attempt for ``key``.

        Starts a new window of ``window_seconds`` when the key is fresh or its
        previous window has expired.

        Args:
            key: Counter key.
            window_seconds: Window length applied when a new window starts.

        Returns:
            CounterSnapshot after the increment.
        """
        raise NotImplementedError

    @abstractmethod
    def peek(self, key: str) -> CounterSnapshot:
        """Read the current state of ``key`` without recording an attempt."""
        raise NotImplementedError

    @abstractmethod
    def reset(self, key: str) -> None:
        """Drop the counter for ``key`` so the next attempt starts fresh."""
        raise NotImplementedError
