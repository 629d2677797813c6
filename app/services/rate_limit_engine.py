"""Rate limit engine: the policy layer shared by every controller.

The engine decides whether a logical action performed by a subject is allowed
right now, and if not, how long the caller must wait. It owns no counter state:
counts live in an injected CounterStore (atomic increment-with-expiry), risk
estimates come from an injected BehaviorScorer. Each decision asks the store
for current state; nothing is cached between calls.

Building blocks:
- ``evaluate``: one fixed-window check of a key.
- ``evaluate_adaptive``: behavior-aware check, never more permissive than
  ``evaluate``.

Composite policies (raise RateLimitExceededError when denied):
- ``rate_limit``, ``rate_limit_method``, ``rate_limit_resource``
- ``multi_level_rate_limit``, ``conditional_rate_limit``, ``burst_rate_limit``

Gates and administration:
- ``require_low_risk_behavior``, ``reset_rate_limits``, ``rate_limit_headers``

Composite policies inspect AttemptResult values to decide what to do next;
exceptions only leave the engine once a final denial is reached.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Mapping

from app.adapters.behavior.base import BehaviorScorer
from app.adapters.rate_limit.base import CounterStore
from app.core.config import LimitConfig, RateLimitSettings
from app.core.errors import (
    PermissionDeniedAppError,
    RateLimitExceededError,
    SecurityAppError,
    UnauthorizedAppError,
    ValidationAppError,
)
from app.core.logging import AUDIT_LOGGER_NAME, hash_identifier
from app.services.adaptive_rules import DEFAULT_RULES, AdaptiveRule, adjust_window
from app.services.rate_limit_types import (
    AttemptResult,
    CallerContext,
    RateLimitDecision,
    RateLimitOptions,
    RateLimitStatus,
    Window,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)

RESET_PERMISSION = "system.rate_limits.reset"
PREMIUM_CAPABILITY = "premium"
BURST_WINDOW_SECONDS = 10
LEVEL_SCOPES = ("ip", "user", "endpoint", "global", "subject")

LevelsInput = Mapping[str, LimitConfig | Mapping[str, Any]]


def _as_limit_config(value: LimitConfig | Mapping[str, Any]) -> LimitConfig:
    if isinstance(value, LimitConfig):
        return value
    return LimitConfig.model_validate(value)


class RateLimitEngine:
    """Composes fixed-window counting and behavior scoring into policies."""

    def __init__(
        self,
        store: CounterStore,
        scorer: BehaviorScorer,
        config: RateLimitSettings,
        *,
        rules: tuple[AdaptiveRule, ...] = DEFAULT_RULES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Counter store shared by every evaluation.
            scorer: Behavior scorer consulted by adaptive evaluation.
            config: Policy configuration (defaults, tables, flags).
            rules: Adaptive rules applied to suspicious actors.
            clock: Time source function returning UNIX time in seconds.
        """
        self._store = store
        self._scorer = scorer
        self._config = config
        self._rules = rules
        self._clock = clock

    # ------------------------------------------------------------------
    # Keys and defaults
    # ------------------------------------------------------------------

    @staticmethod
    def derive_key(scope: str, action: str, subject_id: str) -> str:
        """Build the counting key ``{scope}:{action}:{subject_id}``."""
        return f"{scope}:{action}:{subject_id}"

    @property
    def default_window(self) -> Window:
        return Window(
            max_attempts=self._config.default_max_attempts,
            window_seconds=self._config.default_window_seconds,
        )

    def _window(self, max_attempts: int | None, window_seconds: int | None) -> Window:
        return Window(
            max_attempts=self._config.default_max_attempts if max_attempts is None else max_attempts,
            window_seconds=(
                self._config.default_window_seconds if window_seconds is None else window_seconds
            ),
        )

    def _use_adaptive(self, requested: bool | None) -> bool:
        return (True if requested is None else requested) and self._config.enable_adaptive

    @staticmethod
    def _metadata(ctx: CallerContext, action: str, **extra: str | None) -> dict[str, str | None]:
        metadata: dict[str, str | None] = {
            "controller": ctx.scope,
            "action": action,
            "subject": ctx.subject,
            "user_id": ctx.user_id,
            "ip": ctx.ip,
            "user_agent": ctx.user_agent,
        }
        metadata.update(extra)
        return metadata

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, key: str, window: Window) -> AttemptResult:
        """Record one attempt for ``key`` and compare it against ``window``.

        The increment and the count it returns come from a single atomic
        store operation; exactly ``window.max_attempts`` attempts are allowed
        per window.
        """
        snapshot = self._store.increment(key, window.window_seconds)
        now = int(self._clock())
        reset_at = now + snapshot.retry_after_seconds

        if snapshot.count <= window.max_attempts:
            return AttemptResult(
                decision=RateLimitDecision.ALLOWED,
                limit=window.max_attempts,
                remaining=max(0, window.max_attempts - snapshot.count),
                retry_after_seconds=0,
                reset_at=reset_at,
            )

        return AttemptResult(
            decision=RateLimitDecision.DENIED,
            limit=window.max_attempts,
            remaining=0,
            retry_after_seconds=max(1, snapshot.retry_after_seconds),
            reset_at=reset_at,
            reason="limit_exceeded",
        )

    def evaluate_adaptive(
        self,
        key: str,
        window: Window,
        metadata: Mapping[str, str | None],
    ) -> AttemptResult:
        """Behavior-aware evaluation of ``key`` against ``window``.

        Actors scoring above the deny threshold are rejected without touching
        their counter. Otherwise the window may be tightened by the adaptive
        rules before the standard evaluation runs.
        """
        score = max(0.0, min(1.0, float(self._scorer.score(key, metadata))))

        if score > self._config.adaptive_deny_threshold:
            snapshot = self._store.peek(key)
            backoff = self._config.adaptive_backoff_seconds or window.window_seconds
            retry_after = max(snapshot.retry_after_seconds, backoff)
            logger.warning(
                "rate_limit.adaptive_denied",
                extra={
                    "key_hash": hash_identifier(key),
                    "behavior_score": round(score, 4),
                    "threshold": self._config.adaptive_deny_threshold,
                    "retry_after_s": retry_after,
                },
            )
            return AttemptResult(
                decision=RateLimitDecision.DENIED,
                limit=window.max_attempts,
                remaining=max(0, window.max_attempts - snapshot.count),
                retry_after_seconds=retry_after,
                reset_at=int(self._clock()) + retry_after,
                reason="behavior_score",
                behavior_score=score,
            )

        adjustment = adjust_window(key, window, score, self._rules)
        if adjustment.tightened:
            logger.info(
                "rate_limit.adaptive_tightened",
                extra={
                    "key_hash": hash_identifier(key),
                    "behavior_score": round(score, 4),
                    "normal_limit": window.max_attempts,
                    "adjusted_limit": adjustment.window.max_attempts,
                    "rules_applied": list(adjustment.rules_applied),
                    "progressive": adjustment.progressive,
                },
            )

        result = self.evaluate(key, adjustment.window)
        if result.allowed:
            self._scorer.record_attempt(key, metadata)
        return replace(result, behavior_score=score)

    def _enforce(self, key: str, action: str, window: Window, result: AttemptResult) -> AttemptResult:
        """Log the decision; raise RateLimitExceededError when denied."""
        key_hash = hash_identifier(key)
        if result.allowed:
            logger.info(
                "rate_limit.allowed",
                extra={
                    "action": action,
                    "key_hash": key_hash,
                    "limit": result.limit,
                    "remaining": result.remaining,
                    "window_s": window.window_seconds,
                },
            )
            return result

        logger.warning(
            "rate_limit.exceeded",
            extra={
                "action": action,
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
                "window_s": window.window_seconds,
                "retry_after_s": result.retry_after_seconds,
                "reason": result.reason,
            },
        )

        if result.reason == "behavior_score":
            message = "Suspicious behavior detected. Please try again later."
        else:
            message = (
                f"Rate limit exceeded for {action}. "
                f"Please try again in {result.retry_after_seconds} seconds."
            )
        raise RateLimitExceededError(
            message=message,
            details={
                "action": action,
                "limit": result.limit,
                "remaining": result.remaining,
                "reset_at": result.reset_at,
                "retry_after": result.retry_after_seconds,
            },
            retry_after_seconds=result.retry_after_seconds,
            limit=result.limit,
            reset_at=result.reset_at,
        )

    def _check(
        self,
        ctx: CallerContext,
        key: str,
        action: str,
        window: Window,
        adaptive: bool,
    ) -> AttemptResult:
        if adaptive:
            result = self.evaluate_adaptive(key, window, self._metadata(ctx, action))
        else:
            result = self.evaluate(key, window)
        return self._enforce(key, action, window, result)

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def rate_limit(
        self,
        ctx: CallerContext,
        action: str,
        max_attempts: int | None = None,
        window_seconds: int | None = None,
        use_adaptive: bool = True,
    ) -> AttemptResult:
        """Limit ``action`` for the caller's subject.

        Missing limits fall back to the configured global defaults. Adaptive
        evaluation runs only when both requested and enabled in config.

        Raises:
            RateLimitExceededError: When the action is denied.
        """
        window = self._window(max_attempts, window_seconds)
        key = self.derive_key(ctx.scope, action, ctx.subject)
        return self._check(ctx, key, action, window, self._use_adaptive(use_adaptive))

    def resolve_method_options(
        self,
        ctx: CallerContext,
        method: str,
        custom_limits: RateLimitOptions | None = None,
    ) -> RateLimitOptions:
        """Resolve limits for a controller method.

        Each field is taken from the first layer that sets it: explicit
        ``custom_limits``, ``controller_limits[scope][method]``,
        ``method_limits[HTTP verb]``, then the global defaults.
        """
        layers: list[RateLimitOptions] = []
        if custom_limits is not None:
            layers.append(custom_limits)
        controller_cfg = self._config.controller_limits.get(ctx.scope, {}).get(method)
        if controller_cfg is not None:
            layers.append(
                RateLimitOptions(controller_cfg.attempts, controller_cfg.window, controller_cfg.adaptive)
            )
        verb_cfg = self._config.method_limits.get(ctx.http_method.upper())
        if verb_cfg is not None:
            layers.append(RateLimitOptions(verb_cfg.attempts, verb_cfg.window, verb_cfg.adaptive))

        def first(field: str) -> Any:
            for layer in layers:
                value = getattr(layer, field)
                if value is not None:
                    return value
            return None

        max_attempts = first("max_attempts")
        window_seconds = first("window_seconds")
        adaptive = first("adaptive")
        return RateLimitOptions(
            max_attempts=self._config.default_max_attempts if max_attempts is None else max_attempts,
            window_seconds=(
                self._config.default_window_seconds if window_seconds is None else window_seconds
            ),
            adaptive=True if adaptive is None else adaptive,
        )

    def rate_limit_method(
        self,
        ctx: CallerContext,
        method: str,
        custom_limits: RateLimitOptions | None = None,
    ) -> AttemptResult:
        """Limit a named controller method using its resolved options."""
        options = self.resolve_method_options(ctx, method, custom_limits)
        return self.rate_limit(
            ctx,
            method,
            options.max_attempts,
            options.window_seconds,
            bool(options.adaptive),
        )

    def rate_limit_resource(
        self,
        ctx: CallerContext,
        resource: str,
        operation: str,
        max_attempts: int | None = None,
        window_seconds: int | None = None,
    ) -> AttemptResult:
        """Limit an operation class (read, write, delete, export, bulk) on a resource."""
        op_cfg = self._config.operation_limits.get(operation, self._config.unknown_operation_limit)
        return self.rate_limit(
            ctx,
            f"{resource}:{operation}",
            op_cfg.attempts if max_attempts is None else max_attempts,
            op_cfg.window if window_seconds is None else window_seconds,
            True if op_cfg.adaptive is None else op_cfg.adaptive,
        )

    def level_key(self, ctx: CallerContext, action: str, level: str, cfg: LimitConfig) -> str:
        """Key for one level of a multi-level limit.

        ``ip`` counts per address, ``user`` per user (address for anonymous
        callers), ``endpoint`` per scope and action across all callers,
        ``global`` across every scope and action, ``subject`` per caller.
        """
        scope = cfg.scope or (level if level in LEVEL_SCOPES else "subject")
        level_action = f"{action}:level_{level}"
        if scope == "ip":
            return self.derive_key(f"ip:{ctx.scope}", level_action, ctx.ip)
        if scope == "user":
            return self.derive_key(f"user:{ctx.scope}", level_action, ctx.user_id or ctx.ip)
        if scope == "endpoint":
            return self.derive_key(f"endpoint:{ctx.scope}", level_action, "*")
        if scope == "global":
            return self.derive_key("global", f"level_{level}", "*")
        if scope == "subject":
            return self.derive_key(ctx.scope, level_action, ctx.subject)
        raise ValidationAppError(
            code="invalid_rate_limit_level",
            message=f"Unknown rate limit level scope '{scope}'",
            details={"hint": f"Use one of: {', '.join(LEVEL_SCOPES)}"},
        )

    def multi_level_rate_limit(
        self,
        ctx: CallerContext,
        action: str,
        levels: LevelsInput | None = None,
    ) -> list[AttemptResult]:
        """Require every level to pass, in the order given.

        The first denied level raises; later levels are not evaluated. Counters
        of levels already evaluated keep their increments.
        """
        configs = {
            level: _as_limit_config(cfg)
            for level, cfg in (levels or self._config.multi_level).items()
        }
        if not configs:
            raise ValidationAppError(
                code="rate_limit_levels_missing",
                message="Multi-level rate limit needs at least one level",
                details={"action": action},
            )

        results: list[AttemptResult] = []
        for level, cfg in configs.items():
            key = self.level_key(ctx, action, level, cfg)
            window = Window(max_attempts=cfg.attempts, window_seconds=cfg.window)
            adaptive = bool(cfg.adaptive) and self._config.enable_adaptive
            results.append(self._check(ctx, key, f"{action}:level_{level}", window, adaptive))
        return results

    def select_tier(
        self,
        ctx: CallerContext,
        limits: Mapping[str, LimitConfig],
    ) -> tuple[str, LimitConfig]:
        """Pick the first privilege tier that matches the caller."""
        tiers = (
            ("admin", ctx.is_admin),
            ("premium", ctx.is_authenticated and ctx.has_capability(PREMIUM_CAPABILITY)),
            ("authenticated", ctx.is_authenticated),
            ("anonymous", True),
        )
        for tier, matches in tiers:
            if matches and tier in limits:
                return tier, limits[tier]
        return "default", LimitConfig(
            attempts=self._config.default_max_attempts,
            window=self._config.default_window_seconds,
        )

    def conditional_rate_limit(
        self,
        ctx: CallerContext,
        action: str,
        custom_limits: LevelsInput | None = None,
    ) -> AttemptResult:
        """Limit ``action`` with the window of the caller's privilege tier.

        Tiers in priority order: admin, premium, authenticated, anonymous.
        """
        limits = (
            {tier: _as_limit_config(cfg) for tier, cfg in custom_limits.items()}
            if custom_limits
            else self._config.tier_limits
        )
        tier, cfg = self.select_tier(ctx, limits)
        logger.debug("rate_limit.tier_selected", extra={"action": action, "tier": tier})
        return self.rate_limit(
            ctx,
            action,
            cfg.attempts,
            cfg.window,
            True if cfg.adaptive is None else cfg.adaptive,
        )

    def burst_rate_limit(
        self,
        ctx: CallerContext,
        action: str,
        burst_size: int = 10,
        sustained_rate: int = 60,
        window_seconds: int = 60,
    ) -> AttemptResult:
        """Allow short spikes while bounding the long-run rate.

        The burst bucket (``burst_size`` per 10s, non-adaptive) is tried first;
        only when it denies is the independent sustained bucket
        (``sustained_rate`` per ``window_seconds``, adaptive) evaluated.
        """
        burst_action = f"{action}:burst"
        burst_key = self.derive_key(ctx.scope, burst_action, ctx.subject)
        burst = self.evaluate(burst_key, Window(burst_size, BURST_WINDOW_SECONDS))
        if burst.allowed:
            return burst

        sustained_action = f"{action}:sustained"
        sustained_key = self.derive_key(ctx.scope, sustained_action, ctx.subject)
        return self._check(
            ctx,
            sustained_key,
            sustained_action,
            Window(sustained_rate, window_seconds),
            self._use_adaptive(True),
        )

    # ------------------------------------------------------------------
    # Behavior gate, administration, reporting
    # ------------------------------------------------------------------

    def behavior_score(self, ctx: CallerContext, operation: str | None = None) -> float:
        """Current behavior score of the caller, without recording an attempt."""
        key = f"user:{ctx.user_id}" if ctx.is_authenticated else f"ip:{ctx.ip}"
        metadata = self._metadata(ctx, operation or "sensitive_action", operation=operation)
        return max(0.0, min(1.0, float(self._scorer.score(key, metadata))))

    def require_low_risk_behavior(
        self,
        ctx: CallerContext,
        max_score: float = 0.6,
        operation: str | None = None,
    ) -> float:
        """Gate an irreversible operation on the caller's behavior score.

        Returns:
            The caller's behavior score.

        Raises:
            UnauthorizedAppError: When the caller is not authenticated.
            SecurityAppError: When the score exceeds ``max_score``.
        """
        if not ctx.is_authenticated:
            raise UnauthorizedAppError(
                code="authentication_required",
                message="Authentication required for this operation",
                details={"operation": operation or "sensitive_action"},
            )

        score = self.behavior_score(ctx, operation)
        if score > max_score:
            logger.warning(
                "behavior.high_risk",
                extra={
                    "operation": operation or "sensitive_action",
                    "controller": ctx.scope,
                    "behavior_score": round(score, 4),
                    "max_score": max_score,
                },
            )
            raise SecurityAppError(
                code="behavior_verification_required",
                message=(
                    "This operation requires additional verification due to "
                    "unusual account activity"
                ),
                details={
                    "operation": operation or "sensitive_action",
                    "max_score": max_score,
                },
            )
        return score

    def reset_rate_limits(
        self,
        ctx: CallerContext,
        identifier: str | None = None,
        action: str | None = None,
    ) -> str:
        """Clear a counter; requires the reset permission.

        Args:
            ctx: Caller performing the reset.
            identifier: Exact counter key to clear.
            action: Clear the caller's own key for this action instead.

        Returns:
            The key that was cleared.

        Raises:
            PermissionDeniedAppError: When the caller lacks the permission.
            ValidationAppError: When neither identifier nor action is given.
        """
        if not ctx.has_permission(RESET_PERMISSION):
            raise PermissionDeniedAppError(
                code="permission_denied",
                message="Insufficient permissions to reset rate limits",
                details={"permission": RESET_PERMISSION},
            )

        if identifier:
            key = identifier
        elif action:
            key = self.derive_key(ctx.scope, action, ctx.subject)
        else:
            raise ValidationAppError(
                code="rate_limit_reset_target_missing",
                message="Provide an identifier or an action to reset",
            )

        self._store.reset(key)
        audit_logger.info(
            "rate_limit.reset",
            extra={
                "category": "security",
                "actor": ctx.user_id,
                "controller": ctx.scope,
                "key_hash": hash_identifier(key),
                "explicit_identifier": identifier is not None,
            },
        )
        return key

    def probe_store(self) -> None:
        """Read a sentinel key; store failures propagate to the caller."""
        self._store.peek("health:probe")

    def rate_limit_headers(
        self,
        ctx: CallerContext,
        action: str,
        window: Window | None = None,
    ) -> RateLimitStatus:
        """Report the caller's state for ``action`` without counting an attempt."""
        window = window or self.default_window
        key = self.derive_key(ctx.scope, action, ctx.subject)
        snapshot = self._store.peek(key)
        now = int(self._clock())
        expires_in = snapshot.retry_after_seconds if snapshot.count else window.window_seconds
        return RateLimitStatus(
            limit=window.max_attempts,
            remaining=max(0, window.max_attempts - snapshot.count),
            reset_at=now + expires_in,
            policy=window.policy,
        )
