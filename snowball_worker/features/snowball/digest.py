"""
Owner digests: periodic summaries of how each repository grew.

The time of the last digest per owner and frequency lives in Redis under
``last_digest:{owner_id}:{frequency}``. Owners already served within the
current period are skipped, so a retried digest job does not send twice.
"""

from datetime import datetime, timedelta

from snowball_worker.features.snowball.clients import NotificationSender
from snowball_worker.features.snowball.domain import DigestSummary, PlatformUser, Repository
from snowball_worker.features.snowball.repository import DataStore
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.services.infrastructure.redis_client import FastRedisClient

logger = get_logger(__name__)

DIGEST_TEMPLATE = "repository-digest"
PERIODS = {"daily": timedelta(days=1), "weekly": timedelta(days=7)}
LAST_DIGEST_TTL_S = 30 * 24 * 60 * 60


def summarize_repository(repository: Repository, since: datetime) -> dict:
    added = sum(entry.count_added for entry in repository.growth_history if entry.date > since)
    return {
        "repositoryId": repository.id,
        "name": repository.name,
        "added": added,
        "total": repository.email_count,
        "growthRate": repository.growth_rate,
    }


class DigestService:
    def __init__(
        self,
        data_store: DataStore,
        redis_client: FastRedisClient,
        sender: NotificationSender,
    ):
        self.store = data_store
        self.redis = redis_client
        self.sender = sender

    @staticmethod
    def last_digest_key(owner_id: str, frequency: str) -> str:
        return f"last_digest:{owner_id}:{frequency}"

    async def _last_sent(self, owner_id: str, frequency: str) -> datetime | None:
        raw = await self.redis.get(self.last_digest_key(owner_id, frequency))
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Ignoring unreadable last digest time", owner_id=owner_id, value=raw)
            return None

    async def build_summary(self, owner: PlatformUser, since: datetime) -> DigestSummary:
        repositories = await self.store.list_repositories_for_owner(owner.id)
        return DigestSummary(
            owner_id=owner.id,
            repositories=[summarize_repository(repo, since) for repo in repositories],
        )

    async def send_digests(self, frequency: str, now: datetime) -> dict:
        """
        Send one digest per opted-in owner.

        Returns counts of owners sent, skipped and failed. Failures for one
        owner do not stop the others; the caller decides whether to retry.
        """
        period = PERIODS[frequency]
        recipients = await self.store.list_digest_recipients(frequency)
        stats = {
            "frequency": frequency,
            "recipients": len(recipients),
            "sent": 0,
            "skipped": 0,
            "failed": 0,
        }

        for owner in recipients:
            last_sent = await self._last_sent(owner.id, frequency)
            if last_sent is not None and now - last_sent < period / 2:
                stats["skipped"] += 1
                continue

            since = last_sent or now - period
            summary = await self.build_summary(owner, since)
            if not summary.repositories:
                stats["skipped"] += 1
                continue

            try:
                await self.sender.send(
                    owner.id,
                    DIGEST_TEMPLATE,
                    {
                        "frequency": frequency,
                        "since": since.isoformat(),
                        "repositories": summary.repositories,
                    },
                )
            except Exception as e:
                stats["failed"] += 1
                logger.error(
                    "Digest delivery failed",
                    owner_id=owner.id,
                    frequency=frequency,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            await self.redis.set_with_ttl(
                self.last_digest_key(owner.id, frequency), now.isoformat(), LAST_DIGEST_TTL_S
            )
            stats["sent"] += 1

        logger.info("Digests dispatched", **stats)
        return stats
