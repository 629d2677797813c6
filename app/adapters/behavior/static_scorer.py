"""Behavior scorer returning a fixed score."""

from __future__ import annotations

from typing import Mapping

from app.adapters.behavior.base import BehaviorScorer


class StaticBehaviorScorer(BehaviorScorer):
    """Scorer that reports the same score for every actor.

    Used when adaptive limiting is disabled so the low-risk gate still has a
    scorer to ask, and in tests to pin a score.
    """

    def __init__(self, score: float = 0.0) -> None:
        if not 0.0 <= score <= 1.0:
            raise ValueError("score must be within [0.0, 1.0]")
        self._score = score

    def score(self, key: str, metadata: Mapping[str, str | None]) -> float:
        return self._score
