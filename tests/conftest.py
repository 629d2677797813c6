"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It ensures that the TESTING environment variable is set to prevent
loading the .env file during tests, and provides engine fixtures with a
controllable clock.
"""

import os

# CRITICAL: Set this before any imports that might load settings
# This prevents Pydantic from loading the .env file in tests
os.environ["TESTING"] = "true"

# Set default env vars that all tests might need
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault(
    "APP_API_KEYS",
    "test-api-key-123=alice,"
    "admin-key=root:admin,"
    "premium-key=bob:premium,"
    "reset-key=carol:system.rate_limits.reset",
)

from unittest.mock import Mock

import pytest

from app.adapters.behavior.static_scorer import StaticBehaviorScorer
from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.core.config import RateLimitSettings
from app.services.rate_limit_engine import RateLimitEngine
from app.services.rate_limit_types import CallerContext


@pytest.fixture
def clock() -> Mock:
    return Mock(return_value=1000.0)


@pytest.fixture
def store(clock: Mock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def rate_limit_config() -> RateLimitSettings:
    return RateLimitSettings()


@pytest.fixture
def engine(store: InMemoryCounterStore, rate_limit_config: RateLimitSettings, clock: Mock) -> RateLimitEngine:
    """Engine over in-memory counters with a zero behavior score."""
    return RateLimitEngine(store, StaticBehaviorScorer(0.0), rate_limit_config, clock=clock)


@pytest.fixture
def anonymous_ctx() -> CallerContext:
    return CallerContext(scope="users", ip="203.0.113.7")


@pytest.fixture
def user_ctx() -> CallerContext:
    return CallerContext(scope="users", ip="203.0.113.7", user_id="alice")
