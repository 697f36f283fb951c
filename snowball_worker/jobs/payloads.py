"""
Typed job payloads, one model per job type.

Payloads travel as camelCase JSON (``{repositoryId, csvPayload, userId,
depth}``) and are validated here, at the deserialization boundary, both on
enqueue and again in the dispatcher before a handler runs.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from snowball_worker.config import settings
from snowball_worker.jobs.errors import ValidationError

PROCESS_CSV = "process-csv"
VERIFY_EMAIL = "verify-email"
ANALYZE_NETWORK = "analyze-network"
SEND_DIGEST = "send-digest"
CLEANUP = "cleanup"
SWEEP_PENDING_SNOWBALLS = "sweep-pending-snowballs"


class JobPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ProcessCsvPayload(JobPayload):
    repository_id: str = Field(min_length=1)
    csv_payload: str
    user_id: str = Field(min_length=1)
    depth: int = Field(default=0, ge=0)
    upload_id: str | None = None


class VerifyEmailPayload(JobPayload):
    email: str = Field(min_length=3)
    repository_id: str = Field(min_length=1)


class AnalyzeNetworkPayload(JobPayload):
    repository_id: str = Field(min_length=1)


class SendDigestPayload(JobPayload):
    frequency: Literal["daily", "weekly"]


class CleanupPayload(JobPayload):
    targets: list[Literal["completed-jobs", "failed-jobs", "invalid-emails"]] = Field(
        default_factory=lambda: ["completed-jobs", "failed-jobs", "invalid-emails"]
    )
    days_to_keep: int = Field(default=30, ge=0)


class SweepPendingSnowballsPayload(JobPayload):
    limit: int = Field(default=100, ge=1)


PAYLOAD_TYPES: dict[str, type[JobPayload]] = {
    PROCESS_CSV: ProcessCsvPayload,
    VERIFY_EMAIL: VerifyEmailPayload,
    ANALYZE_NETWORK: AnalyzeNetworkPayload,
    SEND_DIGEST: SendDigestPayload,
    CLEANUP: CleanupPayload,
    SWEEP_PENDING_SNOWBALLS: SweepPendingSnowballsPayload,
}


def parse_payload(
    job_type: str, data: dict[str, Any] | JobPayload, *, max_depth: int | None = None
) -> JobPayload:
    """
    Validate raw payload data for ``job_type``.

    Raises:
        ValidationError: unknown job type, malformed payload, or a snowball
            depth beyond the configured cap.
    """
    model = PAYLOAD_TYPES.get(job_type)
    if model is None:
        raise ValidationError(f"Unknown job type '{job_type}'")

    if isinstance(data, JobPayload):
        if not isinstance(data, model):
            raise ValidationError(
                f"Payload {type(data).__name__} does not match job type '{job_type}'"
            )
        payload = data
    else:
        try:
            payload = model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid payload for '{job_type}': {e.error_count()} error(s)",
                context={"errors": e.errors(include_url=False)},
            ) from e

    if isinstance(payload, ProcessCsvPayload):
        cap = settings.SNOWBALL_MAX_DEPTH if max_depth is None else max_depth
        if payload.depth > cap:
            raise ValidationError(
                f"Snowball depth {payload.depth} exceeds maximum {cap}",
                context={"depth": payload.depth, "max_depth": cap},
            )

    return payload
