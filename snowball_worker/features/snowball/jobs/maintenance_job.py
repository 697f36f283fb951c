"""
Housekeeping handlers run by the scheduler.

cleanup:
    Purges completed and failed jobs past their grace periods on every queue
    and deletes emails that failed verification more than ``daysToKeep`` days
    ago.

sweep-pending-snowballs:
    Claims uploads still waiting to be processed and queues a depth-0
    process-csv job for each. Uploads not queued when an enqueue fails go
    back to pending.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.features.snowball.repository import DataStore
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.models import Job
from snowball_worker.jobs.payloads import CleanupPayload, SweepPendingSnowballsPayload
from snowball_worker.jobs.queue import QueueService

from .process_csv_job import enqueue_csv_processing

logger = get_logger(__name__)


class CleanupJob:
    def __init__(
        self,
        data_store: DataStore,
        queue_service: QueueService,
        *,
        app_settings: Settings | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = data_store
        self.queue = queue_service
        self.settings = app_settings or default_settings
        self._clock = clock

    async def __call__(self, job: Job, payload: CleanupPayload) -> dict:
        result: dict = {"purgedJobs": {}, "purgedFailedJobs": {}, "deletedInvalidEmails": 0}

        if "completed-jobs" in payload.targets:
            for queue in self.queue.queue_names:
                result["purgedJobs"][queue] = await self.queue.clean(
                    queue,
                    "completed",
                    self.settings.COMPLETED_JOB_GRACE_MS,
                    self.settings.PURGE_BATCH_LIMIT,
                )

        if "failed-jobs" in payload.targets:
            for queue in self.queue.queue_names:
                result["purgedFailedJobs"][queue] = await self.queue.clean(
                    queue,
                    "failed",
                    self.settings.FAILED_JOB_GRACE_MS,
                    self.settings.PURGE_BATCH_LIMIT,
                )

        if "invalid-emails" in payload.targets:
            cutoff = self._clock() - timedelta(days=payload.days_to_keep)
            result["deletedInvalidEmails"] = await self.store.delete_invalid_emails(cutoff)

        logger.info("Cleanup finished", **result)
        return result


class SweepPendingSnowballsJob:
    def __init__(self, data_store: DataStore, queue_service: QueueService):
        self.store = data_store
        self.queue = queue_service

    async def __call__(self, job: Job, payload: SweepPendingSnowballsPayload) -> dict:
        uploads = await self.store.claim_pending_uploads(payload.limit)
        enqueued = 0
        try:
            for upload in uploads:
                await enqueue_csv_processing(
                    self.queue,
                    upload.repository_id,
                    upload.data,
                    upload.user_id,
                    upload_id=upload.upload_id,
                )
                enqueued += 1
        except Exception:
            # Hand the rest back so the retry (or the next sweep) picks them up.
            unsent = [upload.upload_id for upload in uploads[enqueued:]]
            await self.store.release_uploads(unsent)
            logger.warning(
                "Sweep interrupted, uploads released",
                claimed=len(uploads),
                enqueued=enqueued,
                released=len(unsent),
            )
            raise

        if uploads:
            logger.info("Pending uploads queued", claimed=len(uploads), enqueued=enqueued)
        return {"claimed": len(uploads), "enqueued": enqueued}
