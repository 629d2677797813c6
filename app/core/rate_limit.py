"""Rate limiting dependencies for FastAPI routes.

This module wires the rate limit engine into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on dependency factories only.
- Swap-friendly: the counter store is chosen from settings (in-memory for a
  single process, Redis when distributed mode is enabled).
- Explicit actions: every dependency names the action it limits.
- Blocking store calls: dependencies that reach the engine are plain ``def``
  so FastAPI runs them in its threadpool, off the event loop.

Denials surface as RateLimitExceededError and are turned into 429 responses
by the global exception handlers.
"""

import logging
import threading
from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Request

from app.adapters.behavior import BehaviorScorer, ProfileBehaviorScorer, StaticBehaviorScorer
from app.adapters.behavior.profile_scorer import NEUTRAL_SCORE
from app.adapters.rate_limit.base import CounterStore
from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.adapters.rate_limit.redis_store import RedisCounterStore
from app.core.auth import Principal, verify_api_key
from app.core.config import RateLimitSettings, settings
from app.services.rate_limit_engine import RateLimitEngine
from app.services.rate_limit_types import CallerContext
from app.utils.profile_cache import ProfileTTLCache

logger = logging.getLogger(__name__)


_engine: RateLimitEngine | None = None
_engine_config: tuple[object, ...] | None = None
_engine_lock = threading.Lock()


def _build_store(config: RateLimitSettings) -> CounterStore:
    if config.enable_distributed:
        logger.info("rate_limit.store_selected", extra={"backend": "redis"})
        return RedisCounterStore.from_url(config.redis_url, key_prefix=config.key_prefix)
    logger.info("rate_limit.store_selected", extra={"backend": "memory"})
    return InMemoryCounterStore()


def _build_scorer(config: RateLimitSettings) -> BehaviorScorer:
    if not config.enable_adaptive:
        # no attempts are recorded without adaptive evaluation
        return StaticBehaviorScorer(NEUTRAL_SCORE)
    profiles = ProfileTTLCache(
        ttl_seconds=config.profile_ttl_seconds,
        max_entries=config.profile_max_entries,
    )
    return ProfileBehaviorScorer(profiles, statistical_adjustment=config.enable_ml)


def get_rate_limit_engine() -> RateLimitEngine:
    """Return a process-wide rate limit engine.

    The instance is cached in-module so in-memory counters and behavior
    profiles survive across requests. If the backend configuration changes
    (primarily in tests), the engine is rebuilt.

    Returns:
        RateLimitEngine: Configured engine instance.
    """

    global _engine, _engine_config

    cfg = settings.rate_limit
    config_key = (
        cfg.enable_distributed,
        cfg.redis_url,
        cfg.key_prefix,
        cfg.enable_adaptive,
        cfg.enable_ml,
    )

    # resolved from threadpool workers; build at most once per config
    with _engine_lock:
        if _engine is None or _engine_config != config_key:
            _engine = RateLimitEngine(_build_store(cfg), _build_scorer(cfg), cfg)
            _engine_config = config_key

    return _engine


EngineDep = Annotated[RateLimitEngine, Depends(get_rate_limit_engine)]


def build_caller_context(request: Request, principal: Principal | None, scope: str) -> CallerContext:
    """Describe the caller of the current request.

    Args:
        request: FastAPI request.
        principal: Authenticated principal, None for anonymous callers.
        scope: Component identity used to namespace counter keys.

    Returns:
        CallerContext for the engine.
    """

    client_host = request.client.host if request.client else "unknown"
    if principal is None:
        return CallerContext(
            scope=scope,
            ip=client_host,
            user_agent=request.headers.get("User-Agent"),
            http_method=request.method,
        )
    return CallerContext(
        scope=scope,
        ip=client_host,
        user_id=principal.user_id,
        user_agent=request.headers.get("User-Agent"),
        http_method=request.method,
        is_admin=principal.is_admin,
        capabilities=principal.capabilities,
        permissions=principal.permissions,
    )


def caller_context(scope: str) -> Callable[..., Awaitable[CallerContext]]:
    """Dependency factory resolving the CallerContext for ``scope``."""

    async def dependency(
        request: Request,
        principal: Annotated[Principal | None, Depends(verify_api_key)],
    ) -> CallerContext:
        return build_caller_context(request, principal, scope)

    return dependency


def enforce_rate_limit(
    scope: str,
    action: str,
    *,
    max_attempts: int | None = None,
    window_seconds: int | None = None,
    adaptive: bool = True,
) -> Callable[..., None]:
    """Dependency factory applying ``RateLimitEngine.rate_limit``.

    Usage:
        @router.get("/users", dependencies=[Depends(enforce_rate_limit("users", "list"))])
    """

    def dependency(
        ctx: Annotated[CallerContext, Depends(caller_context(scope))],
        engine: EngineDep,
    ) -> None:
        if not settings.rate_limit.enabled:
            return
        engine.rate_limit(ctx, action, max_attempts, window_seconds, adaptive)

    return dependency


def enforce_resource_rate_limit(scope: str, resource: str, operation: str) -> Callable[..., None]:
    """Dependency factory applying ``RateLimitEngine.rate_limit_resource``."""

    def dependency(
        ctx: Annotated[CallerContext, Depends(caller_context(scope))],
        engine: EngineDep,
    ) -> None:
        if not settings.rate_limit.enabled:
            return
        engine.rate_limit_resource(ctx, resource, operation)

    return dependency


def enforce_conditional_rate_limit(scope: str, action: str) -> Callable[..., None]:
    """Dependency factory applying ``RateLimitEngine.conditional_rate_limit``."""

    def dependency(
        ctx: Annotated[CallerContext, Depends(caller_context(scope))],
        engine: EngineDep,
    ) -> None:
        if not settings.rate_limit.enabled:
            return
        engine.conditional_rate_limit(ctx, action)

    return dependency
