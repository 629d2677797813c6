"""Redis-backed counter store for distributed rate limiting.

Counters are shared by every worker pointing at the same Redis. Increment and
expiry happen in one Lua script so concurrent callers sharing a key can never
both observe the same count, and a key can never be left without a TTL.

Store failures are wrapped in InfrastructureAppError and re-raised; they are
never converted into an allow or deny decision.
"""

from __future__ import annotations

import logging

import redis

from app.adapters.rate_limit.base import CounterSnapshot, CounterStore
from app.core.errors import InfrastructureAppError

logger = logging.getLogger(__name__)


# KEYS[1] = counter key, ARGV[1] = window seconds
# Returns {count, ttl_seconds}
INCREMENT_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    local ttl = redis.call('TTL', KEYS[1])
    if count == 1 or ttl < 0 then
        redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
        ttl = tonumber(ARGV[1])
    end
    return {count, ttl}
"""


class RedisCounterStore(CounterStore):
    """Counter store using INCR + EXPIRE on Redis."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = "rate_limit:") -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._increment = client.register_script(INCREMENT_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = "rate_limit:") -> "RedisCounterStore":
        """Build a store from a Redis URL with a pooled client."""
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        return cls(client, key_prefix=key_prefix)

    def _make_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _fail(self, operation: str, exc: redis.RedisError) -> InfrastructureAppError:
        logger.error(
            "rate_limit.store_unavailable",
            extra={
                "backend": "redis",
                "operation": operation,
                "error_type": type(exc).__name__,
            },
        )
        return InfrastructureAppError(
            code="rate_limit_store_unavailable",
            message="Rate limit store is unavailable",
            details={"backend": "redis", "operation": operation},
        )

    def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        try:
            count, ttl = self._increment(keys=[self._make_key(key)], args=[window_seconds])
        except redis.RedisError as exc:
            raise self._fail("increment", exc) from exc

        return CounterSnapshot(count=int(count), retry_after_seconds=max(0, int(ttl)))

    def peek(self, key: str) -> CounterSnapshot:
        full_key = self._make_key(key)
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.get(full_key)
            pipe.ttl(full_key)
            raw_count, ttl = pipe.execute()
        except redis.RedisError as exc:
            raise self._fail("peek", exc) from exc

        if raw_count is None:
            return CounterSnapshot(count=0, retry_after_seconds=0)
        return CounterSnapshot(count=int(raw_count), retry_after_seconds=max(0, int(ttl)))

    def reset(self, key: str) -> None:
        try:
            self._client.delete(self._make_key(key))
        except redis.RedisError as exc:
            raise self._fail("reset", exc) from exc
