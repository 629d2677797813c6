"""Score-triggered rules that tighten a window for suspicious actors.

A rule applies when the actor's behavior score reaches its threshold and
scales the window's limit down by its ratio. On top of the rules, a
progressive limit shrinks the window further as the score rises above 0.6.
Adaptive evaluation counts against the strictest of these limits, so it can
only ever be more restrictive than the plain window.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.services.rate_limit_types import Window

PROGRESSIVE_THRESHOLD = 0.6


@dataclass(frozen=True)
class AdaptiveRule:
    """Stricter limit applied once the behavior score reaches ``threshold``.

    Attributes:
        rule_id: Stable identifier, reported in logs.
        max_attempts_ratio: Fraction of the window's limit this rule allows.
        threshold: Minimum behavior score that activates the rule.
        key_type: Only applies to keys starting with ``{key_type}:`` when set.
        priority: Higher priority rules are reported first.
        active: Inactive rules never apply.
    """

    rule_id: str
    max_attempts_ratio: float
    threshold: float
    key_type: str | None = None
    priority: int = 10
    active: bool = True

    def applies_to(self, key: str, score: float) -> bool:
        if not self.active or score < self.threshold:
            return False
        return self.key_type is None or key.startswith(f"{self.key_type}:")

    def limit_for(self, window: Window) -> int:
        return int(round(window.max_attempts * self.max_attempts_ratio))


DEFAULT_RULES: tuple[AdaptiveRule, ...] = (
    AdaptiveRule("suspicious_activity", 0.5, 0.75),
    AdaptiveRule("burst_traffic", 0.7, 0.6),
    AdaptiveRule("multiple_accounts", 0.3, 0.7, key_type="ip"),
    AdaptiveRule("account_testing", 0.5, 0.65, key_type="user"),
    AdaptiveRule("endpoint_abuse", 0.6, 0.5, key_type="endpoint"),
)


@dataclass(frozen=True)
class AdaptiveAdjustment:
    """Window to enforce after applying rules, and why."""

    window: Window
    rules_applied: tuple[str, ...] = ()
    progressive: bool = False

    @property
    def tightened(self) -> bool:
        return bool(self.rules_applied) or self.progressive


def progressive_limit(window: Window, score: float) -> int:
    """Limit scaled by ``1 - score / 2`` once the score exceeds 0.6."""
    if score <= PROGRESSIVE_THRESHOLD:
        return window.max_attempts
    return int(round(window.max_attempts * (1 - score * 0.5)))


def adjust_window(
    key: str,
    window: Window,
    score: float,
    rules: tuple[AdaptiveRule, ...] = DEFAULT_RULES,
) -> AdaptiveAdjustment:
    """Return the strictest window for ``key`` given the actor's score.

    The adjusted limit never exceeds the original and never drops below 1.
    """
    applicable = sorted(
        (rule for rule in rules if rule.applies_to(key, score)),
        key=lambda rule: rule.priority,
        reverse=True,
    )

    limit = window.max_attempts
    applied: list[str] = []
    for rule in applicable:
        rule_limit = rule.limit_for(window)
        if rule_limit < window.max_attempts:
            applied.append(rule.rule_id)
        limit = min(limit, rule_limit)

    progressive = progressive_limit(window, score)
    is_progressive = progressive < limit
    limit = max(1, min(limit, progressive))

    if limit == window.max_attempts:
        return AdaptiveAdjustment(window=window)
    return AdaptiveAdjustment(
        window=Window(max_attempts=limit, window_seconds=window.window_seconds),
        rules_applied=tuple(applied),
        progressive=is_progressive,
    )
