"""Tests for rate limit configuration defaults and environment overrides."""

import pytest
from pydantic import ValidationError

from app.core.config import LimitConfig, RateLimitSettings


def test_defaults() -> None:
    config = RateLimitSettings()

    assert config.default_max_attempts == 60
    assert config.default_window_seconds == 60
    assert config.enable_adaptive is True
    assert config.enable_distributed is False
    assert config.adaptive_deny_threshold == 0.8
    assert config.operation_limits["export"] == LimitConfig(attempts=5, window=300)
    assert config.operation_limits["bulk"] == LimitConfig(attempts=3, window=600)
    assert config.tier_limits["admin"].attempts == 1000
    assert config.tier_limits["anonymous"].attempts == 30
    assert list(config.multi_level) == ["minute", "hour", "day"]


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DEFAULT_MAX_ATTEMPTS", "120")
    monkeypatch.setenv("RATE_LIMIT_ENABLE_DISTRIBUTED", "true")
    monkeypatch.setenv(
        "RATE_LIMIT_CONTROLLER_LIMITS",
        '{"users": {"export": {"attempts": 2, "window": 600}}}',
    )

    config = RateLimitSettings()

    assert config.default_max_attempts == 120
    assert config.enable_distributed is True
    assert config.controller_limits["users"]["export"].window == 600


@pytest.mark.parametrize(
    "kwargs",
    [
        {"attempts": 0, "window": 60},
        {"attempts": 1, "window": 0},
    ],
)
def test_limit_config_rejects_non_positive(kwargs: dict) -> None:
    with pytest.raises(ValidationError):
        LimitConfig(**kwargs)


def test_multi_level_requires_a_level() -> None:
    with pytest.raises(ValidationError):
        RateLimitSettings(multi_level={})
