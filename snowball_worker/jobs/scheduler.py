"""
Cron-like scheduler that enqueues recurring jobs.

A failed enqueue is logged and the schedule still advances, so one bad tick
never blocks the next.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from croniter import croniter

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.models import CLEANUP_QUEUE, DIGEST_QUEUE, SNOWBALL_QUEUE
from snowball_worker.jobs.payloads import CLEANUP, SEND_DIGEST, SWEEP_PENDING_SNOWBALLS
from snowball_worker.jobs.queue import QueueService

logger = get_logger(__name__)


@dataclass
class RecurringJob:
    name: str
    queue: str
    job_type: str
    cron: str
    payload: dict[str, Any] = field(default_factory=dict)
    next_run: datetime | None = None

    def advance(self, after: datetime) -> datetime:
        self.next_run = croniter(self.cron, after).get_next(datetime)
        return self.next_run


def default_schedule(app_settings: Settings | None = None) -> list[RecurringJob]:
    """Recurring jobs every deployment runs."""
    cfg = app_settings or default_settings
    return [
        RecurringJob(
            name="daily-cleanup",
            queue=CLEANUP_QUEUE,
            job_type=CLEANUP,
            cron=cfg.CLEANUP_CRON,
            payload={
                "targets": ["completed-jobs", "failed-jobs", "invalid-emails"],
                "daysToKeep": cfg.INVALID_EMAIL_RETENTION_DAYS,
            },
        ),
        RecurringJob(
            name="daily-digest",
            queue=DIGEST_QUEUE,
            job_type=SEND_DIGEST,
            cron=cfg.DAILY_DIGEST_CRON,
            payload={"frequency": "daily"},
        ),
        RecurringJob(
            name="weekly-digest",
            queue=DIGEST_QUEUE,
            job_type=SEND_DIGEST,
            cron=cfg.WEEKLY_DIGEST_CRON,
            payload={"frequency": "weekly"},
        ),
        RecurringJob(
            name="process-pending-snowballs",
            queue=SNOWBALL_QUEUE,
            job_type=SWEEP_PENDING_SNOWBALLS,
            cron=cfg.SNOWBALL_SWEEP_CRON,
            payload={"limit": cfg.PENDING_UPLOAD_SWEEP_LIMIT},
        ),
    ]


class Scheduler:
    def __init__(
        self,
        queue_service: QueueService,
        jobs: list[RecurringJob] | None = None,
        *,
        clock=time.time,
    ):
        self.queue = queue_service
        self.jobs = jobs if jobs is not None else default_schedule()
        self._clock = clock
        self._stopping = asyncio.Event()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    def register(self, job: RecurringJob) -> None:
        croniter(job.cron)  # raises on a malformed expression
        self.jobs.append(job)

    def prime(self) -> None:
        now = self._now()
        for job in self.jobs:
            if job.next_run is None:
                job.advance(now)
                logger.info("Recurring job scheduled", name=job.name, next_run=job.next_run.isoformat())

    async def tick(self) -> list[str]:
        """Enqueue every recurring job that is due. Returns the names that fired."""
        self.prime()
        now = self._now()
        fired: list[str] = []
        for job in self.jobs:
            if job.next_run > now:
                continue
            try:
                job_id = await self.queue.enqueue(job.queue, job.job_type, job.payload)
                fired.append(job.name)
                logger.info("Recurring job enqueued", name=job.name, job_id=job_id)
            except Exception as e:
                logger.error(
                    "Recurring job enqueue failed",
                    name=job.name,
                    queue=job.queue,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                job.advance(now)
        return fired

    def seconds_until_next(self) -> float:
        self.prime()
        soonest = min(job.next_run for job in self.jobs)
        return max((soonest - self._now()).total_seconds(), 0.0)

    async def run(self) -> None:
        if not self.jobs:
            logger.info("Scheduler has no recurring jobs, exiting")
            return

        logger.info("Scheduler STARTED", jobs=[job.name for job in self.jobs])
        while not self._stopping.is_set():
            try:
                # stop() ends the wait early instead of at the next fire time
                await asyncio.wait_for(self._stopping.wait(), timeout=self.seconds_until_next())
            except asyncio.TimeoutError:
                await self.tick()
            except asyncio.CancelledError:
                logger.info("Scheduler cancelled")
                break
        logger.info("Scheduler STOPPED")

    def stop(self) -> None:
        self._stopping.set()
