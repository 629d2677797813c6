from abc import ABC, abstractmethod
from typing import Mapping


class BehaviorScorer(ABC):
	"""Interface for behavior (risk) scorers used by adaptive rate limiting."""

	@abstractmethod
	def score(self, key: str, metadata: Mapping[str, str | None]) -> float:
		"""Estimate how suspicious the actor behind ``key`` currently looks.

		Args:
			key: Rate limit key or subject key (e.g. ``user:<id>``).
			metadata: Request context (controller, action, subject, ip,
				user agent...). See ``tracking_id`` for how the actor is found.

		Returns:
			float: Risk score in [0.0, 1.0]; 0.0 is normal, 1.0 highly suspicious.
		"""
		...

	def record_attempt(self, key: str, metadata: Mapping[str, str | None]) -> None:
		"""Feed an allowed attempt back into the actor's profile.

		Scorers without state can keep this default no-op.
		"""
		return None


def tracking_id(key: str, metadata: Mapping[str, str | None]) -> str:
	"""Identify the actor being scored.

	Prefers the explicit ``subject`` metadata entry (IPv6 addresses contain
	colons), falling back to the last ``:``-separated segment of the key.
	"""
	subject = metadata.get("subject")
	if subject:
		return subject
	return key.rsplit(":", 1)[-1]
