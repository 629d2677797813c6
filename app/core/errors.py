"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    action: str
    operation: str
    permission: str
    limit: int
    remaining: int
    reset_at: int
    retry_after: int
    behavior_score: float
    max_score: float
    backend: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class AuthenticationAppError(AppError):
    """Raised when API key authentication fails."""


class UnauthorizedAppError(AppError):
    """Raised when an operation needs an authenticated subject and has none."""


class PermissionDeniedAppError(AppError):
    """Raised when the authenticated subject lacks a required permission."""


class SecurityAppError(AppError):
    """Raised when the subject's behavior score is too high for an operation."""


class InfrastructureAppError(AppError):
    """Raised when the counter store or behavior scorer is unreachable."""


@dataclass
class RateLimitExceededError(AppError):
    """Raised when a rate limit denies an action.

    Attributes:
        retry_after_seconds: Seconds the caller should wait before retrying.
        limit: Effective limit of the window that denied, when known.
        reset_at: UNIX epoch seconds at which the window resets, when known.
    """

    code: str = "rate_limit_exceeded"
    message: str = "Rate limit exceeded. Try again later."
    details: ErrorDetails | None = None
    retry_after_seconds: int = 0
    limit: int | None = None
    reset_at: int | None = None
