"""
Quality scoring - decides which candidates are admitted to a repository.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from snowball_worker.features.snowball.domain import Candidate, Repository
from snowball_worker.features.snowball.pipeline.reputation import ReputationCache

TRUSTED_DOMAIN_WEIGHT = 0.3
VERIFIED_SOURCE_WEIGHT = 0.4
REPUTATION_WEIGHT = 0.3
VERIFIED_SOURCE = "verified_user"


@dataclass(slots=True)
class ScoredCandidate:
    candidate: Candidate
    score: float
    components: dict[str, float]
    accepted: bool


def compute_quality_score(trusted: bool, verified_source: bool, reputation: float) -> float:
    """Weighted sum clipped to [0, 1], rounded to 6 places before the threshold check."""
    if not math.isfinite(reputation):
        reputation = 0.0
    raw = (
        TRUSTED_DOMAIN_WEIGHT * float(trusted)
        + VERIFIED_SOURCE_WEIGHT * float(verified_source)
        + REPUTATION_WEIGHT * reputation
    )
    return round(min(max(raw, 0.0), 1.0), 6)


class QualityScorer:
    def __init__(self, reputation_cache: ReputationCache, threshold: float = 0.7):
        self.reputation = reputation_cache
        self.threshold = threshold

    async def score(self, candidate: Candidate, repository: Repository) -> ScoredCandidate:
        trusted_domains = {domain.lower() for domain in repository.trusted_domains}
        trusted = candidate.domain in trusted_domains
        verified = candidate.source == VERIFIED_SOURCE
        reputation = await self.reputation.get_reputation(candidate.domain)

        score = compute_quality_score(trusted, verified, reputation)
        return ScoredCandidate(
            candidate=candidate,
            score=score,
            components={
                "trusted_domain": float(trusted),
                "verified_source": float(verified),
                "domain_reputation": reputation,
            },
            accepted=score >= self.threshold,
        )

    async def score_all(
        self, candidates: list[Candidate], repository: Repository
    ) -> list[ScoredCandidate]:
        return [await self.score(candidate, repository) for candidate in candidates]
