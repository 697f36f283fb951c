"""
Network analysis for a repository: estimated reach, engagement and the
members whose invitations grew it the most.
"""

from collections import defaultdict
from datetime import datetime

from snowball_worker.features.snowball.domain import (
    EmailEntry,
    NetworkAnalysisSnapshot,
    Repository,
)
from snowball_worker.features.snowball.repository import DataStore
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.services.infrastructure.redis_client import FastRedisClient

logger = get_logger(__name__)

PERSONAL_DOMAINS = {
    "gmail.com",
    "googlemail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "live.com",
    "icloud.com",
    "aol.com",
}
BUSINESS_NETWORK_SIZE = 50
PERSONAL_NETWORK_SIZE = 20
SNOWBALL_MULTIPLIER = 1.5
TOP_CONTRIBUTORS = 5
CACHE_PREFIX = "network_analysis"


def is_business_domain(domain: str) -> bool:
    return domain.lower() not in PERSONAL_DOMAINS


def estimated_reach(address: str) -> int:
    domain = address.rsplit("@", 1)[-1]
    size = BUSINESS_NETWORK_SIZE if is_business_domain(domain) else PERSONAL_NETWORK_SIZE
    return int(size * SNOWBALL_MULTIPLIER)


def top_contributors(emails: list[EmailEntry], limit: int = TOP_CONTRIBUTORS) -> list[dict]:
    counts: dict[str, int] = defaultdict(int)
    reach: dict[str, int] = defaultdict(int)
    for email in emails:
        if not email.added_by:
            continue
        counts[email.added_by] += 1
        reach[email.added_by] += estimated_reach(email.address)

    ranked = sorted(counts, key=lambda user_id: (-counts[user_id], -reach[user_id], user_id))
    return [
        {"userId": user_id, "count": counts[user_id], "totalReach": reach[user_id]}
        for user_id in ranked[:limit]
    ]


def build_snapshot(
    repository: Repository, active_emails: list[EmailEntry], analyzed_at: datetime
) -> NetworkAnalysisSnapshot:
    total_reach = sum(estimated_reach(email.address) for email in active_emails)
    if active_emails:
        avg_engagement = sum(email.quality_score for email in active_emails) / len(active_emails)
    else:
        avg_engagement = 0.0

    return NetworkAnalysisSnapshot(
        repository_id=repository.id,
        total_reach=total_reach,
        avg_engagement=round(avg_engagement, 4),
        top_contributors=top_contributors(active_emails),
        growth_rate=repository.growth_rate,
        analyzed_at=analyzed_at,
    )


class NetworkAnalyzer:
    def __init__(self, data_store: DataStore, redis_client: FastRedisClient, ttl_s: int = 3600):
        self.store = data_store
        self.redis = redis_client
        self.ttl_s = ttl_s

    @staticmethod
    def cache_key(repository_id: str) -> str:
        return f"{CACHE_PREFIX}:{repository_id}"

    async def analyze(self, repository: Repository, now: datetime) -> NetworkAnalysisSnapshot:
        """Recompute, persist and cache the snapshot for ``repository``."""
        active = await self.store.list_active_emails(repository.id)
        snapshot = build_snapshot(repository, active, now)

        await self.store.save_network_snapshot(snapshot)
        await self.redis.set_with_ttl(
            self.cache_key(repository.id), snapshot.model_dump_json(by_alias=True), self.ttl_s
        )
        logger.info(
            "Network analysis stored",
            repository_id=repository.id,
            active_emails=len(active),
            total_reach=snapshot.total_reach,
        )
        return snapshot
