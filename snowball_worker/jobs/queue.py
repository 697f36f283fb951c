"""
Durable job queue backed by Redis sorted sets.

Layout per named queue (``{prefix}:{queue}:...``):

    job:{id}    JSON job record
    waiting     jobs ready to run, best priority first
    delayed     jobs scheduled for later, scored by ready time (ms)
    active      claimed jobs, scored by lock expiry (ms)
    completed   finished jobs, scored by finish time (ms)
    failed      dead jobs kept for inspection, scored by finish time (ms)
    paused      flag key; while present nothing is claimed

Delivery is at-least-once. Every transition between sets runs as one Redis
script, so a job is always in exactly one set even when a command fails
halfway through a handler's lifecycle. Claiming pops from ``waiting`` into
``active`` atomically, so two workers never run the same job concurrently
unless its lock expired.
"""

import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.models import (
    QUEUE_NAMES,
    Job,
    JobOptions,
    QueueStats,
    default_options,
)
from snowball_worker.jobs.payloads import JobPayload, parse_payload
from snowball_worker.services.infrastructure.redis_client import FastRedisClient

logger = get_logger(__name__)

# Priority dominates the waiting score; creation time breaks ties (FIFO).
PRIORITY_WEIGHT = 10**13

Clock = Callable[[], float]


def _to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, UTC)


class QueueService:
    """Named queues holding jobs with payload, retry policy, delay and priority."""

    def __init__(
        self,
        redis_client: FastRedisClient,
        *,
        app_settings: Settings | None = None,
        clock: Clock = time.time,
        queue_names: tuple[str, ...] = QUEUE_NAMES,
    ):
        self.redis = redis_client
        self.settings = app_settings or default_settings
        self.prefix = self.settings.QUEUE_PREFIX
        self.queue_names = queue_names
        self._clock = clock

    # ------------------------------------------------------------------
    # Keys and helpers
    # ------------------------------------------------------------------

    def _key(self, queue: str, part: str) -> str:
        return f"{self.prefix}:{queue}:{part}"

    def _job_key(self, queue: str, job_id: str) -> str:
        return self._key(queue, f"job:{job_id}")

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _waiting_score(job: Job) -> float:
        created_ms = int(job.created_at.timestamp() * 1000)
        return -job.priority * PRIORITY_WEIGHT + created_ms

    def _check_queue(self, queue: str) -> None:
        if queue not in self.queue_names:
            raise ValueError(
                f"Unknown queue '{queue}'. Available queues: {', '.join(self.queue_names)}"
            )

    async def _save(self, job: Job) -> None:
        await self.redis.store(self._job_key(job.queue, job.id), job.model_dump_json())

    async def _move(
        self,
        job: Job,
        target: str,
        score: float,
        *sources: str,
        require_source: bool = False,
    ) -> tuple[bool, bool]:
        """Write ``job`` and move it from ``sources`` to ``target`` in one step."""
        return await self.redis.move_member(
            self._job_key(job.queue, job.id),
            job.model_dump_json(),
            job.id,
            self._key(job.queue, target),
            score,
            sources=tuple(self._key(job.queue, source) for source in sources),
            require_source=require_source,
        )

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        queue: str,
        job_type: str,
        payload: dict[str, Any] | JobPayload,
        options: JobOptions | None = None,
    ) -> str:
        """
        Validate the payload, persist a new job and return its id.

        Jobs with ``delay_ms > 0`` start in ``delayed``; the rest are
        immediately eligible.
        """
        self._check_queue(queue)
        opts = options or default_options(job_type)
        validated = parse_payload(job_type, payload, max_depth=self.settings.SNOWBALL_MAX_DEPTH)

        now_ms = self.now_ms()
        job = Job(
            id=uuid.uuid4().hex,
            queue=queue,
            type=job_type,
            payload=validated.to_wire(),
            max_attempts=opts.attempts,
            backoff=opts.backoff,
            priority=opts.priority,
            delay_ms=opts.delay_ms,
            status="delayed" if opts.delay_ms > 0 else "waiting",
            created_at=_to_datetime(now_ms),
        )

        if opts.delay_ms > 0:
            await self._move(job, "delayed", now_ms + opts.delay_ms)
        else:
            await self._move(job, "waiting", self._waiting_score(job))

        logger.info(
            "Job enqueued",
            job_id=job.id,
            queue=queue,
            job_type=job_type,
            priority=job.priority,
            delay_ms=job.delay_ms,
            max_attempts=job.max_attempts,
        )
        return job.id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def get_job(self, queue: str, job_id: str) -> Job | None:
        raw = await self.redis.load(self._job_key(queue, job_id))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def promote_delayed(self, queue: str, limit: int = 100) -> int:
        """Move delayed jobs whose time has come into ``waiting``."""
        due = await self.redis.zrangebyscore(
            self._key(queue, "delayed"), 0, self.now_ms(), limit=limit
        )
        promoted = 0
        for job_id in due:
            job = await self.get_job(queue, job_id)
            if job is None:
                await self.redis.zrem(self._key(queue, "delayed"), job_id)
                continue
            job.status = "waiting"
            # only the worker that still finds it in delayed gets to move it
            moved, _ = await self._move(
                job, "waiting", self._waiting_score(job), "delayed", require_source=True
            )
            promoted += moved
        return promoted

    async def claim(self, queue: str, lock_ms: int | None = None) -> Job | None:
        """
        Take the best eligible job and lock it for ``lock_ms``.

        Returns None when nothing is waiting or the queue is paused. The job
        enters ``active`` before its record is rewritten, so a failed write
        leaves it to stall recovery rather than losing it.
        """
        await self.promote_delayed(queue)
        lock_ms = lock_ms or self.settings.JOB_LOCK_TIMEOUT_MS

        while True:
            now_ms = self.now_ms()
            job_id = await self.redis.pop_to(
                self._key(queue, "waiting"),
                self._key(queue, "active"),
                now_ms + lock_ms,
                unless_key=self._key(queue, "paused"),
            )
            if job_id is None:
                return None
            job = await self.get_job(queue, job_id)
            if job is not None:
                break
            logger.warning("Dropping dangling job id", queue=queue, job_id=job_id)
            await self.redis.zrem(self._key(queue, "active"), job_id)

        job.status = "active"
        job.attempts += 1
        job.processed_at = _to_datetime(now_ms)
        job.locked_until = _to_datetime(now_ms + lock_ms)
        await self._save(job)
        return job

    async def renew_lock(self, job: Job, lock_ms: int | None = None) -> bool:
        """Extend the lock of a running job. False means the lock was lost."""
        locked_until = self.now_ms() + (lock_ms or self.settings.JOB_LOCK_TIMEOUT_MS)
        active_key = self._key(job.queue, "active")
        changed = await self.redis.zadd(active_key, job.id, locked_until, only_existing=True)
        if not changed and await self.redis.zscore(active_key, job.id) is None:
            return False
        job.locked_until = _to_datetime(locked_until)
        return True

    async def complete(self, job: Job, result: dict[str, Any] | None = None) -> None:
        now_ms = self.now_ms()
        job.status = "completed"
        job.result = result
        job.locked_until = None
        job.finished_at = _to_datetime(now_ms)
        # A requeued copy is dropped too so the job doesn't run twice.
        _, held = await self._move(job, "completed", now_ms, "active", "waiting", "failed")
        if not held:
            logger.warning("Job completed after losing its lock", **job.log_context())

    async def fail(self, job: Job, error: BaseException | str, *, retryable: bool = True) -> str:
        """
        Record a handler failure.

        Returns the new status: ``delayed`` when a retry was scheduled,
        ``failed`` when the job is dead and retained for inspection.
        """
        now_ms = self.now_ms()
        job.last_error = str(error)
        job.locked_until = None

        if retryable and not job.attempts_exhausted:
            backoff_ms = job.backoff.delay_for(job.attempts - 1)
            job.status = "delayed"
            _, held = await self._move(job, "delayed", now_ms + backoff_ms, "active", "waiting")
            if not held:
                logger.warning("Job failed after losing its lock", **job.log_context())
            logger.warning(
                "Job failed, retry scheduled",
                **job.log_context(),
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                backoff_ms=backoff_ms,
                error=job.last_error,
            )
            return job.status

        job.status = "failed"
        job.finished_at = _to_datetime(now_ms)
        _, held = await self._move(job, "failed", now_ms, "active", "waiting")
        if not held:
            logger.warning("Job failed after losing its lock", **job.log_context())
        logger.error(
            "Job failed permanently",
            **job.log_context(),
            attempts=job.attempts,
            retryable=retryable,
            error=job.last_error,
            payload=job.payload,
        )
        return job.status

    # ------------------------------------------------------------------
    # Liveness and housekeeping
    # ------------------------------------------------------------------

    async def recover_stalled(self, queue: str, limit: int = 100) -> list[str]:
        """
        Requeue jobs whose lock expired without completion.

        A stalled job with no attempts left is moved to ``failed``.
        """
        now_ms = self.now_ms()
        expired = await self.redis.zrangebyscore(
            self._key(queue, "active"), 0, now_ms, limit=limit
        )
        recovered: list[str] = []
        for job_id in expired:
            job = await self.get_job(queue, job_id)
            if job is None:
                await self.redis.zrem(self._key(queue, "active"), job_id)
                continue

            job.locked_until = None
            if job.attempts_exhausted:
                job.status = "failed"
                job.last_error = "job stalled more than allowable limit"
                job.finished_at = _to_datetime(now_ms)
                moved, _ = await self._move(job, "failed", now_ms, "active", require_source=True)
                if moved:
                    logger.error("Stalled job moved to failed", **job.log_context())
            else:
                job.status = "stalled"
                moved, _ = await self._move(
                    job, "waiting", self._waiting_score(job), "active", require_source=True
                )
                if moved:
                    logger.warning(
                        "Stalled job requeued", **job.log_context(), attempts=job.attempts
                    )
            if moved:
                recovered.append(job_id)
        return recovered

    async def clean(self, queue: str, status: str, grace_ms: int, limit: int = 1000) -> int:
        """Delete ``completed`` or ``failed`` jobs that finished more than ``grace_ms`` ago."""
        if status not in ("completed", "failed"):
            raise ValueError(f"Cannot clean jobs with status '{status}'")
        cutoff = self.now_ms() - grace_ms
        old_ids = await self.redis.zrangebyscore(self._key(queue, status), 0, cutoff, limit=limit)
        cleaned = 0
        for job_id in old_ids:
            if await self.redis.zrem(self._key(queue, status), job_id):
                await self.redis.remove(self._job_key(queue, job_id))
                cleaned += 1
        if cleaned:
            logger.info(
                "Finished jobs cleaned",
                queue=queue,
                status=status,
                cleaned=cleaned,
                grace_ms=grace_ms,
            )
        return cleaned

    async def retry_failed(self, queue: str, job_id: str) -> Job | None:
        """Give a dead job a fresh set of attempts."""
        job = await self.get_job(queue, job_id)
        if job is None or job.status != "failed":
            return None
        job.attempts = 0
        job.status = "waiting"
        job.finished_at = None
        moved, _ = await self._move(
            job, "waiting", self._waiting_score(job), "failed", require_source=True
        )
        if not moved:
            return None
        logger.info("Failed job requeued manually", **job.log_context())
        return job

    # ------------------------------------------------------------------
    # Pausing
    # ------------------------------------------------------------------

    async def pause(self, queue: str) -> None:
        """Stop handing out jobs. Running jobs finish; new ones keep queueing."""
        self._check_queue(queue)
        await self.redis.store(self._key(queue, "paused"), "1")
        logger.info("Queue paused", queue=queue)

    async def resume(self, queue: str) -> None:
        self._check_queue(queue)
        await self.redis.remove(self._key(queue, "paused"))
        logger.info("Queue resumed", queue=queue)

    async def is_paused(self, queue: str) -> bool:
        return await self.redis.load(self._key(queue, "paused")) is not None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def list_jobs(self, queue: str, status: str, limit: int = 50) -> list[Job]:
        if status not in ("waiting", "active", "delayed", "completed", "failed"):
            raise ValueError(f"Cannot list jobs with status '{status}'")
        ids = await self.redis.zrange(self._key(queue, status), 0, limit - 1)
        jobs = []
        for job_id in ids:
            job = await self.get_job(queue, job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def stats(self, queue: str) -> QueueStats:
        """Counts per status; while paused, waiting jobs are reported as ``paused``."""
        counts = {}
        for status in ("waiting", "active", "delayed", "completed", "failed"):
            counts[status] = await self.redis.zcard(self._key(queue, status))
        if await self.is_paused(queue):
            counts["paused"] = counts.pop("waiting")
            return QueueStats(**counts, is_paused=True)
        return QueueStats(**counts)

    async def all_stats(self) -> dict[str, QueueStats]:
        return {queue: await self.stats(queue) for queue in self.queue_names}
