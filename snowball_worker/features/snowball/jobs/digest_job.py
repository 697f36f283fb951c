"""
send-digest handler.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from snowball_worker.features.snowball.digest import DigestService
from snowball_worker.jobs.errors import TransientError
from snowball_worker.jobs.models import Job
from snowball_worker.jobs.payloads import SendDigestPayload


class SendDigestJob:
    def __init__(
        self,
        digests: DigestService,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.digests = digests
        self._clock = clock

    async def __call__(self, job: Job, payload: SendDigestPayload) -> dict:
        stats = await self.digests.send_digests(payload.frequency, self._clock())
        if stats["failed"]:
            # Owners already served are skipped on the retry.
            raise TransientError(
                f"{stats['failed']} of {stats['recipients']} digests failed",
                context=stats,
            )
        return stats
