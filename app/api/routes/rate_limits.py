"""Rate limit administration endpoints.

Exposes the engine's policies to operators and client tooling: evaluate a
policy for the caller, read the caller's current status without consuming
an attempt, run the low-risk behavior gate, and reset counters.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response

from app.core.rate_limit import (
    EngineDep,
    caller_context,
    enforce_conditional_rate_limit,
    enforce_rate_limit,
    enforce_resource_rate_limit,
)
from app.schemas.rate_limit import (
    BehaviorCheckResponse,
    RateLimitCheckRequest,
    RateLimitCheckResponse,
    RateLimitResetRequest,
    RateLimitResetResponse,
    RateLimitStatusResponse,
)
from app.services.rate_limit_engine import RateLimitEngine
from app.services.rate_limit_types import AttemptResult, CallerContext, RateLimitOptions

SCOPE = "rate_limits"

router = APIRouter(prefix="/rate-limits", tags=["Rate Limits"])

CallerDep = Annotated[CallerContext, Depends(caller_context(SCOPE))]


def _run_policy(
    engine: RateLimitEngine,
    ctx: CallerContext,
    body: RateLimitCheckRequest,
) -> list[AttemptResult]:
    if body.policy == "method":
        options = RateLimitOptions(body.max_attempts, body.window_seconds, body.adaptive)
        return [engine.rate_limit_method(ctx, body.action, options)]
    if body.policy == "resource":
        return [
            engine.rate_limit_resource(
                ctx,
                body.resource or "",
                body.operation or "",
                body.max_attempts,
                body.window_seconds,
            )
        ]
    if body.policy == "multi_level":
        return engine.multi_level_rate_limit(ctx, body.action, body.levels)
    if body.policy == "conditional":
        return [engine.conditional_rate_limit(ctx, body.action)]
    if body.policy == "burst":
        return [
            engine.burst_rate_limit(
                ctx,
                body.action,
                burst_size=body.burst_size,
                sustained_rate=body.sustained_rate,
                window_seconds=body.window_seconds or 60,
            )
        ]
    return [
        engine.rate_limit(
            ctx,
            body.action,
            body.max_attempts,
            body.window_seconds,
            True if body.adaptive is None else body.adaptive,
        )
    ]


@router.post("/check", response_model=RateLimitCheckResponse)
def check_rate_limit(
    body: RateLimitCheckRequest,
    response: Response,
    ctx: CallerDep,
    engine: EngineDep,
) -> RateLimitCheckResponse:
    """Evaluate a rate limit policy for the caller.

    Consumes one attempt from every window the policy evaluates. Denials are
    raised as RateLimitExceededError and returned as HTTP 429 with a
    Retry-After header.
    """
    results = _run_policy(engine, ctx, body)
    deciding = min(results, key=lambda result: result.remaining)

    response.headers["X-RateLimit-Limit"] = str(deciding.limit)
    response.headers["X-RateLimit-Remaining"] = str(deciding.remaining)
    response.headers["X-RateLimit-Reset"] = str(deciding.reset_at)

    return RateLimitCheckResponse(
        allowed=True,
        policy=body.policy,
        limit=deciding.limit,
        remaining=deciding.remaining,
        reset_at=deciding.reset_at,
        levels_checked=len(results),
        behavior_score=deciding.behavior_score,
    )


@router.get(
    "/status",
    response_model=RateLimitStatusResponse,
    dependencies=[Depends(enforce_conditional_rate_limit(SCOPE, "status"))],
)
def rate_limit_status(
    response: Response,
    ctx: CallerDep,
    engine: EngineDep,
    action: Annotated[str, Query(min_length=1, max_length=200)],
) -> RateLimitStatusResponse:
    """Report the caller's current window for ``action`` without consuming it."""
    status = engine.rate_limit_headers(ctx, action)
    response.headers.update(status.as_headers())
    return RateLimitStatusResponse(
        action=action,
        limit=status.limit,
        remaining=status.remaining,
        reset_at=status.reset_at,
        policy=status.policy,
    )


@router.get(
    "/behavior",
    response_model=BehaviorCheckResponse,
    dependencies=[Depends(enforce_rate_limit(SCOPE, "behavior", max_attempts=30, adaptive=False))],
)
def behavior_check(
    ctx: CallerDep,
    engine: EngineDep,
    operation: Annotated[str, Query(min_length=1, max_length=200)] = "sensitive_action",
    max_score: Annotated[float, Query(ge=0.0, le=1.0)] = 0.6,
) -> BehaviorCheckResponse:
    """Run the low-risk behavior gate for the caller.

    Returns 401 for anonymous callers and 403 when the caller's behavior
    score exceeds ``max_score``.
    """
    score = engine.require_low_risk_behavior(ctx, max_score, operation)
    return BehaviorCheckResponse(operation=operation, behavior_score=score, max_score=max_score)


@router.post(
    "/reset",
    response_model=RateLimitResetResponse,
    dependencies=[Depends(enforce_resource_rate_limit(SCOPE, "rate_limits", "write"))],
)
def reset_rate_limit(
    body: RateLimitResetRequest,
    ctx: CallerDep,
    engine: EngineDep,
) -> RateLimitResetResponse:
    """Clear a counter. Requires the ``system.rate_limits.reset`` permission."""
    key = engine.reset_rate_limits(ctx, identifier=body.identifier, action=body.action)
    return RateLimitResetResponse(key=key)
