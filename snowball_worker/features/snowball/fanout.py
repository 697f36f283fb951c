"""
Recursive fan-out controller.

After a batch is admitted at depth ``d`` this plans one verification job per
admitted address and, while ``d < SNOWBALL_MAX_DEPTH``, one ``process-csv``
job at ``d + 1`` for every previously uploaded list owned by an opted-in
platform user whose address was just admitted. Depth only ever grows and is
capped, so the resulting job tree is finite.
"""

import random
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.features.snowball.domain import Candidate, PlatformUser
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.models import (
    EMAIL_PROCESSING_QUEUE,
    SNOWBALL_QUEUE,
    JobOptions,
    default_options,
)
from snowball_worker.jobs.payloads import (
    PROCESS_CSV,
    VERIFY_EMAIL,
    ProcessCsvPayload,
    VerifyEmailPayload,
)
from snowball_worker.jobs.queue import QueueService

logger = get_logger(__name__)


@dataclass(slots=True)
class PlannedJob:
    queue: str
    job_type: str
    payload: ProcessCsvPayload | VerifyEmailPayload
    options: JobOptions


class FanoutPlanner:
    def __init__(self, app_settings: Settings | None = None, rng: random.Random | None = None):
        self.settings = app_settings or default_settings
        self.rng = rng or random.Random()

    def verification_jobs(self, repository_id: str, addresses: Iterable[str]) -> Iterator[PlannedJob]:
        jitter_ms = self.settings.VERIFICATION_JITTER_MS
        for address in addresses:
            options = default_options(VERIFY_EMAIL)
            options.delay_ms = self.rng.randint(0, jitter_ms)
            yield PlannedJob(
                queue=EMAIL_PROCESSING_QUEUE,
                job_type=VERIFY_EMAIL,
                payload=VerifyEmailPayload(email=address, repository_id=repository_id),
                options=options,
            )

    def child_jobs(
        self,
        repository_id: str,
        depth: int,
        admitted: dict[str, Candidate],
        users: Iterable[PlatformUser],
    ) -> Iterator[PlannedJob]:
        """
        Plan the next wave. Nothing is produced at the depth cap.

        ``admitted`` maps each newly stored address to the row it came from;
        both the row's ``allow_snowball`` flag and the user's own
        ``allowSnowball`` preference must permit the hop.
        """
        max_depth = self.settings.SNOWBALL_MAX_DEPTH
        if depth >= max_depth:
            return

        child_depth = depth + 1
        for user in users:
            candidate = admitted.get(user.email.lower())
            if candidate is None or not candidate.allows_snowball or not user.allows_snowball:
                continue
            for upload in user.csv_uploads:
                options = default_options(PROCESS_CSV)
                options.delay_ms = child_depth * self.settings.SNOWBALL_DEPTH_DELAY_MS
                options.priority = max_depth - child_depth
                yield PlannedJob(
                    queue=SNOWBALL_QUEUE,
                    job_type=PROCESS_CSV,
                    payload=ProcessCsvPayload(
                        repository_id=repository_id,
                        csv_payload=upload.data,
                        user_id=user.id,
                        depth=child_depth,
                    ),
                    options=options,
                )


async def enqueue_planned(queue_service: QueueService, planned: Iterable[PlannedJob]) -> int:
    """Enqueue every planned job and return how many were accepted."""
    count = 0
    for job in planned:
        await queue_service.enqueue(job.queue, job.job_type, job.payload, job.options)
        count += 1
    return count
