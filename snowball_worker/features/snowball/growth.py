"""
Repository growth statistics and owner notifications.
"""

from datetime import datetime
from typing import Any

from snowball_worker.features.snowball.clients import NotificationSender
from snowball_worker.features.snowball.domain import Repository
from snowball_worker.features.snowball.repository import DataStore
from snowball_worker.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SNOWBALL_UPDATE_TEMPLATE = "snowball-update"
SECONDS_PER_DAY = 24 * 60 * 60


def calculate_growth_rate(
    old_total: int, new_total: int, created_at: datetime, now: datetime
) -> float:
    """
    Relative growth per day active.

    Repositories younger than a day, or that were empty before this batch,
    report 0 rather than a division error or an inflated spike.
    """
    days_active = (now - created_at).total_seconds() / SECONDS_PER_DAY
    if days_active < 1 or old_total == 0:
        return 0.0
    return ((new_total - old_total) / old_total) / days_active


class GrowthTracker:
    def __init__(self, data_store: DataStore):
        self.store = data_store

    async def record(self, repository_id: str, count_added: int, now: datetime) -> Repository | None:
        """Append a growth entry for ``count_added`` new emails and refresh the rate."""
        updated = await self.store.record_growth(repository_id, count_added, now)
        if updated is None:
            return None

        old_total = updated.email_count - count_added
        rate = calculate_growth_rate(old_total, updated.email_count, updated.created_at, now)
        await self.store.update_growth_rate(repository_id, rate)
        updated.growth_rate = rate

        logger.info(
            "Repository growth recorded",
            repository_id=repository_id,
            added=count_added,
            total=updated.email_count,
            growth_rate=rate,
        )
        return updated


class OwnerNotifier:
    """Tells repository owners about snowball growth, if they asked to hear about it."""

    def __init__(self, data_store: DataStore, sender: NotificationSender):
        self.store = data_store
        self.sender = sender

    async def notify_growth(self, repository: Repository, data: dict[str, Any]) -> bool:
        owner = await self.store.get_user(repository.owner_id)
        if owner is None or not owner.notify_snowball_updates:
            return False

        try:
            await self.sender.send(
                owner.id,
                SNOWBALL_UPDATE_TEMPLATE,
                {"repositoryId": repository.id, "repositoryName": repository.name, **data},
            )
        except Exception as e:
            # Growth is already persisted; a lost notification must not re-run the job.
            logger.warning(
                "Owner notification failed",
                repository_id=repository.id,
                owner_id=owner.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        return True
