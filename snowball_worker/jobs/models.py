"""
Queue domain models.

Jobs are owned by the queue: only the queue service and the dispatcher
running a job's handler mutate them.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

JobStatus = Literal["waiting", "active", "completed", "failed", "delayed", "stalled"]

EMAIL_PROCESSING_QUEUE = "email-processing"
DIGEST_QUEUE = "digest-generation"
SNOWBALL_QUEUE = "snowball-distribution"
CLEANUP_QUEUE = "data-cleanup"

QUEUE_NAMES = (EMAIL_PROCESSING_QUEUE, DIGEST_QUEUE, SNOWBALL_QUEUE, CLEANUP_QUEUE)


class BackoffPolicy(BaseModel):
    """Retry-delay schedule applied after a handler failure."""

    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = Field(default=1000, ge=0)

    def delay_for(self, attempt: int) -> int:
        """Delay before the next try, where ``attempt`` is the zero-based failed attempt."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * (2 ** max(attempt, 0))


class JobOptions(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    delay_ms: int = Field(default=0, ge=0)
    priority: int = 0


_DEFAULT_OPTIONS: dict[str, JobOptions] = {
    "process-csv": JobOptions(
        attempts=3, backoff=BackoffPolicy(type="exponential", delay_ms=3000)
    ),
    "verify-email": JobOptions(
        attempts=3, backoff=BackoffPolicy(type="exponential", delay_ms=2000)
    ),
    "send-digest": JobOptions(attempts=2, backoff=BackoffPolicy(type="fixed", delay_ms=5000)),
    "cleanup": JobOptions(attempts=1),
}


def default_options(job_type: str) -> JobOptions:
    """Retry policy a job type gets when the producer passes no options."""
    return _DEFAULT_OPTIONS.get(job_type, JobOptions()).model_copy()


class Job(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    queue: str
    type: str
    payload: dict[str, Any]
    attempts: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    priority: int = 0
    delay_ms: int = 0
    status: JobStatus = "waiting"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    locked_until: datetime | None = None
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def log_context(self) -> dict[str, Any]:
        """Identifiers worth attaching to every log line about this job."""
        context = {"job_id": self.id, "queue": self.queue, "job_type": self.type}
        for key in ("repositoryId", "depth", "email"):
            if key in self.payload:
                context[key] = self.payload[key]
        return context


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    is_paused: bool = False
