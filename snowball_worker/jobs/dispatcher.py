"""
Worker pool that routes claimed jobs to handler coroutines.

Each named queue runs a fixed number of worker loops (its concurrency); a
separate maintenance loop requeues stalled jobs. Payloads are validated
against their typed model before any handler runs, which is also where the
snowball depth cap is enforced.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.infrastructure.observability.logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
)
from snowball_worker.jobs.errors import ValidationError, is_retryable
from snowball_worker.jobs.models import Job
from snowball_worker.jobs.payloads import JobPayload, parse_payload
from snowball_worker.jobs.queue import QueueService

logger = get_logger(__name__)

JobHandler = Callable[[Job, JobPayload], Awaitable[dict[str, Any] | None]]


class Dispatcher:
    """Per-queue concurrency limits and job-type routing."""

    def __init__(self, queue_service: QueueService, *, app_settings: Settings | None = None):
        self.queue = queue_service
        self.settings = app_settings or default_settings
        self._handlers: dict[tuple[str, str], JobHandler] = {}
        self._concurrency: dict[str, int] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def process(
        self, queue: str, job_type: str, handler: JobHandler, concurrency: int | None = None
    ) -> None:
        """Route ``job_type`` jobs on ``queue`` to ``handler``."""
        self._handlers[(queue, job_type)] = handler
        limit = concurrency or self.settings.queue_concurrency().get(queue, 1)
        self._concurrency[queue] = max(self._concurrency.get(queue, 0), limit)
        logger.debug("Handler registered", queue=queue, job_type=job_type, concurrency=limit)

    @property
    def queues(self) -> list[str]:
        return sorted(self._concurrency)

    def concurrency_for(self, queue: str) -> int:
        return self._concurrency.get(queue, 0)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_once(self, queue: str) -> bool:
        """Claim and process at most one job. Returns False when the queue was idle."""
        job = await self.queue.claim(queue, self.settings.JOB_LOCK_TIMEOUT_MS)
        if job is None:
            return False
        await self.execute(job)
        return True

    async def execute(self, job: Job) -> None:
        bind_job_context(job.id, job.queue, job.type)
        try:
            await self._execute(job)
        finally:
            clear_job_context()

    async def _execute(self, job: Job) -> None:
        handler = self._handlers.get((job.queue, job.type))
        if handler is None:
            await self.queue.fail(
                job, ValidationError(f"No handler registered for '{job.type}'"), retryable=False
            )
            return

        try:
            payload = parse_payload(
                job.type, job.payload, max_depth=self.settings.SNOWBALL_MAX_DEPTH
            )
        except ValidationError as e:
            await self.queue.fail(job, e, retryable=False)
            return

        logger.info("Job started", **job.log_context(), attempt=job.attempts)
        heartbeat = asyncio.create_task(self._keep_lock(job))
        try:
            result = await handler(job, payload)
        except asyncio.CancelledError:
            # Leave the job locked; stall recovery hands it to another worker.
            raise
        except Exception as e:
            retryable = is_retryable(e)
            logger.error(
                "Job handler raised",
                **job.log_context(),
                payload=job.payload,
                error=str(e),
                error_type=type(e).__name__,
                retryable=retryable,
            )
            await self.queue.fail(job, e, retryable=retryable)
            return
        finally:
            heartbeat.cancel()

        await self.queue.complete(job, result)
        logger.info("Job completed", **job.log_context(), result=result)

    async def _keep_lock(self, job: Job) -> None:
        interval = self.settings.JOB_LOCK_TIMEOUT_MS / 2000
        while True:
            await asyncio.sleep(interval)
            if not await self.queue.renew_lock(job, self.settings.JOB_LOCK_TIMEOUT_MS):
                logger.warning("Job lock lost while running", **job.log_context())
                return

    async def drain(self, queue: str | None = None, max_jobs: int = 1000) -> int:
        """Process jobs until every selected queue is idle (used by tests and one-shot runs)."""
        queues = [queue] if queue else self.queues
        handled = 0
        while handled < max_jobs:
            progressed = False
            for name in queues:
                if await self.run_once(name):
                    handled += 1
                    progressed = True
            if not progressed:
                break
        return handled

    # ------------------------------------------------------------------
    # Long-running loops
    # ------------------------------------------------------------------

    async def _worker_loop(self, queue: str, slot: int) -> None:
        poll_interval = self.settings.WORKER_POLL_INTERVAL_S
        while not self._stopping.is_set():
            try:
                handled = await self.run_once(queue)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker loop error", queue=queue, slot=slot, error=str(e))
                handled = False
            if not handled:
                await asyncio.sleep(poll_interval)

    async def _maintenance_loop(self) -> None:
        while not self._stopping.is_set():
            for queue in self.queues:
                try:
                    await self.queue.recover_stalled(queue)
                except Exception as e:
                    logger.error("Stall recovery failed", queue=queue, error=str(e))
            await asyncio.sleep(self.settings.STALL_CHECK_INTERVAL_S)

    def start(self) -> list[asyncio.Task]:
        """Spawn worker loops for every registered queue plus the maintenance loop."""
        self._stopping.clear()
        for queue in self.queues:
            for slot in range(self._concurrency[queue]):
                self._tasks.append(
                    asyncio.create_task(self._worker_loop(queue, slot), name=f"{queue}:{slot}")
                )
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="maintenance"))
        logger.info(
            "Dispatcher started",
            queues={queue: self._concurrency[queue] for queue in self.queues},
        )
        return self._tasks

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Dispatcher stopped")
