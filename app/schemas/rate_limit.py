"""Pydantic schemas for the rate limit administration endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

from app.core.config import LimitConfig


PolicyName = Literal["standard", "method", "resource", "multi_level", "conditional", "burst"]


class RateLimitCheckRequest(BaseModel):
    """Evaluate one policy for the caller, consuming one attempt."""

    policy: PolicyName = Field(
        "standard",
        description="Which composite policy to apply.",
    )
    action: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Action (or method name for the 'method' policy) being limited.",
    )
    resource: str | None = Field(
        default=None,
        description="Resource identifier, required by the 'resource' policy.",
    )
    operation: str | None = Field(
        default=None,
        description="Operation class for the 'resource' policy: read, write, delete, export, bulk.",
    )
    max_attempts: int | None = Field(default=None, ge=1, description="Override max attempts.")
    window_seconds: int | None = Field(default=None, ge=1, description="Override window size.")
    adaptive: bool | None = Field(default=None, description="Request behavior-aware evaluation.")
    burst_size: int = Field(10, ge=1, description="Burst bucket size ('burst' policy).")
    sustained_rate: int = Field(60, ge=1, description="Sustained attempts per window ('burst' policy).")
    levels: dict[str, LimitConfig] | None = Field(
        default=None,
        description="Ordered levels for the 'multi_level' policy; configured defaults when omitted.",
    )

    @model_validator(mode="after")
    def _require_resource_fields(self) -> "RateLimitCheckRequest":
        if self.policy == "resource" and not (self.resource and self.operation):
            raise ValueError("'resource' policy requires both resource and operation")
        return self


class RateLimitCheckResponse(BaseModel):
    """Outcome of an allowed check (denials are returned as 429 errors)."""

    allowed: bool = Field(..., description="Always true; denied checks return HTTP 429.")
    policy: PolicyName
    limit: int = Field(..., description="Effective limit of the deciding window.")
    remaining: int = Field(..., ge=0)
    reset_at: int = Field(..., description="UNIX epoch seconds when the deciding window resets.")
    levels_checked: int = Field(1, description="Windows evaluated to reach the decision.")
    behavior_score: float | None = Field(default=None, ge=0.0, le=1.0)


class RateLimitStatusResponse(BaseModel):
    """Caller's current state for an action; reading it consumes nothing."""

    action: str
    limit: int
    remaining: int = Field(..., ge=0)
    reset_at: int
    policy: str = Field(..., description="Policy descriptor '{limit};w={window}'.")


class BehaviorCheckResponse(BaseModel):
    """Result of the low-risk behavior gate."""

    operation: str
    behavior_score: float = Field(..., ge=0.0, le=1.0)
    max_score: float = Field(..., ge=0.0, le=1.0)
    allowed: bool = True


class RateLimitResetRequest(BaseModel):
    """Counter to clear: an exact key, or the caller's key for an action."""

    identifier: str | None = Field(default=None, min_length=1)
    action: str | None = Field(default=None, min_length=1)


class RateLimitResetResponse(BaseModel):
    reset: bool = True
    key: str
