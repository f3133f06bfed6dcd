"""Candidate ranking for stream resolution.

Orders candidates by translation match, then closeness to the requested
quality tier, then provider preference.
"""

from __future__ import annotations

from collections.abc import Sequence

from anil.domain.entities.stream import (
    ResolutionPolicy,
    StreamCandidate,
    StreamQuality,
    TranslationType,
)

_FIXED = StreamQuality.fixed_tiers()
_ORDINAL = {tier: i for i, tier in enumerate(_FIXED)}


class CandidateSorter:
    """Ranking: Translation (exact first) + Quality (closest first) + Provider order.

    Quality closeness is measured in tier steps. When a lower and a higher
    tier are equally far from the request, ``prefer_lower_on_tie`` decides.
    ``AUTO`` candidates rank behind every fixed tier unless ``AUTO`` itself
    was requested; an ``AUTO`` request ranks fixed tiers best-first.
    """

    def __init__(self, policy: ResolutionPolicy) -> None:
        self._prefer_lower = policy.prefer_lower_on_tie

    def quality_distance(
        self, candidate: StreamQuality, requested: StreamQuality
    ) -> tuple[int, int]:
        """Return ``(steps, tie_break)``; smaller sorts first."""
        if requested is StreamQuality.AUTO:
            if candidate is StreamQuality.AUTO:
                return (0, 0)
            return (len(_FIXED) - _ORDINAL[candidate], 0)

        if candidate is StreamQuality.AUTO:
            return (len(_FIXED), 0)

        delta = _ORDINAL[candidate] - _ORDINAL[requested]
        if delta == 0:
            return (0, 0)
        is_lower = delta < 0
        tie = 0 if is_lower == self._prefer_lower else 1
        return (abs(delta), tie)

    def sort(
        self,
        candidates: Sequence[StreamCandidate],
        *,
        quality: StreamQuality,
        translation: TranslationType,
        provider_order: Sequence[str],
    ) -> list[StreamCandidate]:
        """Return a new list, best candidate first. The sort is stable."""
        provider_rank = {name: i for i, name in enumerate(provider_order)}
        fallback_rank = len(provider_rank)

        def key(item: tuple[int, StreamCandidate]) -> tuple[int, int, int, int, int]:
            index, cand = item
            steps, tie = self.quality_distance(cand.quality, quality)
            return (
                0 if cand.translation == translation else 1,
                steps,
                tie,
                provider_rank.get(cand.provider, fallback_rank),
                index,
            )

        return [cand for _, cand in sorted(enumerate(candidates), key=key)]
