"""
Persistence contract consumed by the snowball job handlers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from snowball_worker.features.snowball.domain import (
    EmailEntry,
    NetworkAnalysisSnapshot,
    PendingUpload,
    PlatformUser,
    Repository,
    VerificationStatus,
)


@dataclass(slots=True)
class InsertOutcome:
    inserted: list[str] = field(default_factory=list)
    # refused because the repository reached max_emails while inserting
    over_limit: list[str] = field(default_factory=list)


class DataStore(Protocol):
    async def get_repository(self, repository_id: str) -> Repository | None: ...

    async def list_repositories_for_owner(self, owner_id: str) -> list[Repository]: ...

    async def existing_addresses(self, repository_id: str, addresses: list[str]) -> set[str]: ...

    async def insert_emails(self, repository_id: str, entries: list[EmailEntry]) -> InsertOutcome:
        """Insert entries, skipping any (repository, address) pair already present.

        The repository's ``max_emails`` is checked against its stored rows
        while holding the repository lock, so concurrent inserts cannot
        overshoot it.
        """
        ...

    async def set_verification_status(
        self, repository_id: str, address: str, status: VerificationStatus
    ) -> bool: ...

    async def list_active_emails(self, repository_id: str) -> list[EmailEntry]: ...

    async def delete_invalid_emails(self, older_than: datetime) -> int: ...

    async def get_user(self, user_id: str) -> PlatformUser | None: ...

    async def find_users_by_email(self, addresses: list[str]) -> list[PlatformUser]:
        """Registered users owning any of ``addresses``, with their uploaded lists."""
        ...

    async def list_digest_recipients(self, frequency: str) -> list[PlatformUser]: ...

    async def record_growth(
        self, repository_id: str, count_added: int, recorded_at: datetime
    ) -> Repository | None:
        """Atomically bump the email count and append a growth history entry."""
        ...

    async def update_growth_rate(self, repository_id: str, growth_rate: float) -> None: ...

    async def save_network_snapshot(self, snapshot: NetworkAnalysisSnapshot) -> None: ...

    async def claim_pending_uploads(self, limit: int) -> list[PendingUpload]:
        """Mark up to ``limit`` pending uploads as queued and return them."""
        ...

    async def release_uploads(self, upload_ids: list[str]) -> None:
        """Put claimed uploads that were never queued back to pending."""
        ...

    async def mark_upload_processed(self, upload_id: str) -> None: ...
