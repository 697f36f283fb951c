"""
Per-domain reputation cache in front of the external reputation service.

Entries live in Redis under ``domain_reputation:{domain}`` with a fixed TTL
and are shared by every worker; staleness within the TTL is accepted.
"""

import json
import math
from datetime import UTC, datetime, timedelta

from snowball_worker.features.snowball.clients import DomainReputationService
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.services.infrastructure.redis_client import FastRedisClient

logger = get_logger(__name__)

CACHE_PREFIX = "domain_reputation"


def clamp_score(value: float) -> float:
    """Bound a reputation to [0, 1]. NaN and infinities count as no reputation."""
    score = float(value)
    if not math.isfinite(score):
        return 0.0
    return min(max(score, 0.0), 1.0)


class ReputationCache:
    def __init__(
        self,
        redis_client: FastRedisClient,
        service: DomainReputationService,
        ttl_s: int = 24 * 60 * 60,
    ):
        self.redis = redis_client
        self.service = service
        self.ttl_s = ttl_s
        self.hits = 0
        self.misses = 0

    @staticmethod
    def cache_key(domain: str) -> str:
        return f"{CACHE_PREFIX}:{domain.lower()}"

    async def get_reputation(self, domain: str) -> float:
        """
        Cached score for ``domain`` in [0, 1].

        A Redis outage behaves like a miss. Errors from the reputation service
        propagate so the job can be retried.
        """
        key = self.cache_key(domain)
        cached = await self.redis.get(key)
        if cached is not None:
            try:
                score = clamp_score(json.loads(cached)["score"])
                self.hits += 1
                return score
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding corrupt reputation entry", domain=domain)

        self.misses += 1
        score = clamp_score(await self.service.check(domain))
        expires_at = datetime.now(UTC) + timedelta(seconds=self.ttl_s)
        await self.redis.set_with_ttl(
            key,
            json.dumps({"domain": domain, "score": score, "expiresAt": expires_at.isoformat()}),
            self.ttl_s,
        )
        logger.debug("Domain reputation refreshed", domain=domain, score=score)
        return score
