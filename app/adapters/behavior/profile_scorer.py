"""Behavior scorer backed by per-actor request profiles.

Each allowed attempt updates the actor's profile: request count, first/last
seen timestamps and the most recent inter-request intervals. Once enough
intervals exist, an anomaly score is derived from three signals and smoothed
into the stored score:

- rapid requests: share of intervals under one second (weight 0.4)
- automation: low interval variance with a short mean interval (+0.3)
- volume: sustained request rate above one request per five seconds (up to +0.3)

Actors with no profile yet get a neutral score of 0.25.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Mapping

from app.adapters.behavior.base import BehaviorScorer, tracking_id
from app.utils.profile_cache import Profile, ProfileTTLCache

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.25
MAX_INTERVALS = 20
MIN_INTERVALS_FOR_SCORING = 5
RAPID_INTERVAL_SECONDS = 1.0
SMOOTHING_WEIGHT = 0.7


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ProfileBehaviorScorer(BehaviorScorer):
    """Scores actors from interval and volume statistics of their requests."""

    def __init__(
        self,
        profiles: ProfileTTLCache | None = None,
        *,
        statistical_adjustment: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the scorer.

        Args:
            profiles: Profile storage; a private 24h TTL cache when omitted.
            statistical_adjustment: Blend extra automation signals into the
                stored score when reading it.
            clock: Time source function returning UNIX time in seconds.
        """
        self._profiles = profiles or ProfileTTLCache(ttl_seconds=86400, clock=clock)
        self._statistical_adjustment = statistical_adjustment
        self._clock = clock
        # serializes read-modify-write of profiles across worker threads
        self._lock = threading.Lock()

    @staticmethod
    def _profile_key(actor: str) -> str:
        return f"behavior_profile:{actor}"

    def score(self, key: str, metadata: Mapping[str, str | None]) -> float:
        actor = tracking_id(key, metadata)
        if not actor:
            return 0.0

        profile = self._profiles.get(self._profile_key(actor))
        if not profile or "anomaly_score" not in profile:
            return NEUTRAL_SCORE

        score = float(profile["anomaly_score"])
        if self._statistical_adjustment:
            adjusted = score * 0.7 + self._statistical_signals(profile) * 0.3
            logger.debug(
                "behavior.statistical_adjustment",
                extra={"original_score": score, "adjusted_score": adjusted},
            )
            score = adjusted

        return _clamp(score)

    def _statistical_signals(self, profile: Profile) -> float:
        extra = 0.0
        if profile.get("rapid_request_ratio", 0.0) > 0.6:
            extra += 0.15
        if "interval_variance" in profile and profile["interval_variance"] < 0.05:
            # very regular spacing looks automated
            extra += 0.2
        if "request_count" in profile and "first_seen" in profile:
            elapsed = max(1.0, self._clock() - profile["first_seen"])
            rate = profile["request_count"] / elapsed
            if rate > 0.5:
                extra += min(0.25, rate * 0.2)
        return extra

    def record_attempt(self, key: str, metadata: Mapping[str, str | None]) -> None:
        actor = tracking_id(key, metadata)
        if not actor:
            return

        profile_key = self._profile_key(actor)
        with self._lock:
            profile = self._profiles.get(profile_key) or {}
            now = self._clock()

            profile["request_count"] = profile.get("request_count", 0) + 1
            profile.setdefault("first_seen", now)
            profile["last_seen"] = now
            if metadata.get("user_agent"):
                profile["user_agent"] = metadata["user_agent"]

            last_request_time = profile.get("last_request_time", 0.0)
            profile["last_request_time"] = now
            intervals: list[float] = list(profile.get("intervals", []))
            if last_request_time > 0:
                interval = now - last_request_time
                if interval >= 0:
                    intervals.append(interval)
            profile["intervals"] = intervals[-MAX_INTERVALS:]

            if len(profile["intervals"]) >= MIN_INTERVALS_FOR_SCORING:
                self._update_anomaly_score(profile, now)

            self._profiles.set(profile_key, profile)

    @staticmethod
    def _update_anomaly_score(profile: Profile, now: float) -> None:
        intervals = profile["intervals"]
        avg_interval = sum(intervals) / len(intervals)
        rapid_ratio = sum(1 for i in intervals if i < RAPID_INTERVAL_SECONDS) / len(intervals)
        variance = sum((i - avg_interval) ** 2 for i in intervals) / len(intervals)
        request_rate = profile["request_count"] / max(1.0, now - profile["first_seen"])

        profile["avg_interval"] = avg_interval
        profile["rapid_request_ratio"] = rapid_ratio
        profile["interval_variance"] = variance
        profile["request_rate"] = request_rate

        anomaly = rapid_ratio * 0.4
        if variance < 0.1 and avg_interval < 2.0:
            anomaly += 0.3
        if request_rate > 0.2:
            anomaly += min(0.3, request_rate * 0.5)
        anomaly = _clamp(anomaly)

        previous = profile.get("anomaly_score")
        if previous is None:
            profile["anomaly_score"] = anomaly
        else:
            profile["anomaly_score"] = previous * SMOOTHING_WEIGHT + anomaly * (1 - SMOOTHING_WEIGHT)
