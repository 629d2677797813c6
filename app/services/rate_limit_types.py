"""Value types shared by the rate limit engine and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class RateLimitDecision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


@dataclass(frozen=True)
class Window:
    """Fixed-size time bucket: at most ``max_attempts`` per ``window_seconds``."""

    max_attempts: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

    @property
    def policy(self) -> str:
        """Policy descriptor in the ``X-RateLimit-Policy`` format."""
        return f"{self.max_attempts};w={self.window_seconds}"


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one evaluation of a key against a window.

    Attributes:
        decision: ALLOWED or DENIED.
        limit: Effective max attempts the key was checked against.
        remaining: Attempts left in the current window (0 when denied).
        retry_after_seconds: Seconds to wait before retrying (0 when allowed).
        reset_at: UNIX epoch seconds when the current window ends.
        reason: Why the decision was taken (``within_limit``, ``limit_exceeded``,
            ``behavior_score``).
        behavior_score: Score used by adaptive evaluation, if any.
    """

    decision: RateLimitDecision
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_at: int
    reason: str = "within_limit"
    behavior_score: float | None = None

    @property
    def allowed(self) -> bool:
        return self.decision is RateLimitDecision.ALLOWED


@dataclass(frozen=True)
class RateLimitOptions:
    """Optional overrides for a single rate limit call.

    Missing values are resolved in this order: explicit argument, per-controller
    method config, HTTP-verb default, global default.
    """

    max_attempts: int | None = None
    window_seconds: int | None = None
    adaptive: bool | None = None


@dataclass(frozen=True)
class CallerContext:
    """Who is calling, from where, on behalf of which component.

    Attributes:
        scope: Calling component identity (e.g. controller name).
        ip: Client network address.
        user_id: Authenticated user identifier, None for anonymous callers.
        user_agent: Client user agent, if sent.
        http_method: HTTP verb of the inbound request.
        is_admin: Whether the subject has the admin role.
        capabilities: Capability names (e.g. ``premium``).
        permissions: Permission names (e.g. ``system.rate_limits.reset``).
    """

    scope: str
    ip: str
    user_id: str | None = None
    user_agent: str | None = None
    http_method: str = "GET"
    is_admin: bool = False
    capabilities: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def subject(self) -> str:
        """Counting subject: the user when authenticated, otherwise the IP."""
        return self.user_id if self.user_id is not None else self.ip

    def has_capability(self, name: str) -> bool:
        return name in self.capabilities

    def has_permission(self, name: str) -> bool:
        return self.is_admin or name in self.permissions


@dataclass(frozen=True)
class RateLimitStatus:
    """Current state of a key, reported without recording an attempt."""

    limit: int
    remaining: int
    reset_at: int
    policy: str

    def as_headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
            "X-RateLimit-Policy": self.policy,
        }
