"""Behavior scoring adapters used by adaptive rate limiting."""

from app.adapters.behavior.base import BehaviorScorer, tracking_id
from app.adapters.behavior.profile_scorer import ProfileBehaviorScorer
from app.adapters.behavior.static_scorer import StaticBehaviorScorer

__all__ = [
    "BehaviorScorer",
    "ProfileBehaviorScorer",
    "StaticBehaviorScorer",
    "tracking_id",
]
