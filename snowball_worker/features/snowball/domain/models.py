"""
Domain models for the snowball distribution feature.

Plain pydantic models shared by the data store, the ingestion pipeline and
the job handlers. They carry no persistence logic.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

VerificationStatus = Literal["pending", "active", "invalid"]

# Job results and cached snapshots are emitted as camelCase JSON.
CAMEL_CASE = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RepositoryLimits(BaseModel):
    max_emails: int | None = None


class GrowthEntry(BaseModel):
    date: datetime
    count_added: int
    total: int


class Repository(BaseModel):
    """A named, owned collection of email addresses grouped by topic."""

    id: str
    owner_id: str
    name: str = ""
    trusted_domains: list[str] = Field(default_factory=list)
    blocked_domains: list[str] = Field(default_factory=list)
    blacklist: list[str] = Field(default_factory=list)
    email_count: int = 0
    growth_rate: float = 0.0
    growth_history: list[GrowthEntry] = Field(default_factory=list)
    limits: RepositoryLimits = Field(default_factory=RepositoryLimits)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def remaining_capacity(self) -> int | None:
        if self.limits.max_emails is None:
            return None
        return max(self.limits.max_emails - self.email_count, 0)


class EmailEntry(BaseModel):
    address: str
    repository_id: str
    source: str
    tags: list[str] = Field(default_factory=list)
    quality_score: float = Field(ge=0.0, le=1.0)
    verification_status: VerificationStatus = "pending"
    snowball_depth: int = 0
    added_by: str | None = None
    name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    added_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CsvUpload(BaseModel):
    """A contact list a platform user uploaded earlier."""

    id: str
    data: str
    repository_id: str | None = None
    status: Literal["pending", "queued", "processed"] = "processed"


class PlatformUser(BaseModel):
    id: str
    email: str
    name: str | None = None
    csv_uploads: list[CsvUpload] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    notify_snowball_updates: bool = False
    digest_frequency: Literal["daily", "weekly", "never"] = "never"

    @property
    def allows_snowball(self) -> bool:
        return self.metadata.get("allowSnowball") is not False


class Candidate(BaseModel):
    """A parsed CSV row that survived validation and awaits scoring."""

    address: str
    row_number: int
    name: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def domain(self) -> str:
        return self.address.rsplit("@", 1)[-1]

    @property
    def source(self) -> str | None:
        return self.metadata.get("source")

    @property
    def allows_snowball(self) -> bool:
        return self.metadata.get("allow_snowball") is not False


class NetworkAnalysisSnapshot(BaseModel):
    model_config = CAMEL_CASE

    repository_id: str
    total_reach: int
    avg_engagement: float
    top_contributors: list[dict[str, Any]] = Field(default_factory=list)
    growth_rate: float
    analyzed_at: datetime


class PendingUpload(BaseModel):
    """An upload claimed by the sweep, ready to become a depth-0 job."""

    upload_id: str
    repository_id: str
    user_id: str
    data: str


class DigestSummary(BaseModel):
    owner_id: str
    repositories: list[dict[str, Any]] = Field(default_factory=list)


class ProcessCsvResult(BaseModel):
    model_config = CAMEL_CASE

    processed: int = 0
    added: int = 0
    skipped: int = 0
    rejected: int = 0
    reasons: dict[str, int] = Field(default_factory=dict)
    depth: int = 0
    verification_jobs: int = 0
    child_jobs: int = 0
    notified: bool = False

    def count(self, reason: str, amount: int = 1) -> None:
        if amount:
            self.reasons[reason] = self.reasons.get(reason, 0) + amount
