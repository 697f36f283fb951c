"""
PostgreSQL implementation of the snowball ``DataStore``.

Email admission relies on the ``UNIQUE (repository_id, address)`` constraint:
rows that conflict are silently skipped and reported back as not inserted,
so two jobs racing on the same repository can never produce a duplicate.
The repository row is locked for the length of an insert so ``max_emails``
holds under concurrent jobs as well.
"""

from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from snowball_worker.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from snowball_worker.db.pool import DatabasePoolManager
from snowball_worker.features.snowball.domain import (
    CsvUpload,
    EmailEntry,
    GrowthEntry,
    NetworkAnalysisSnapshot,
    PendingUpload,
    PlatformUser,
    Repository,
    RepositoryLimits,
    VerificationStatus,
)
from snowball_worker.infrastructure.observability.logging import get_logger

from .data_store import InsertOutcome

logger = get_logger(__name__)

REPOSITORY_COLUMNS = """
    id, owner_id, name, trusted_domains, blocked_domains, blacklist,
    email_count, growth_rate, growth_history, max_emails, created_at
"""

EMAIL_COLUMNS = """
    address, repository_id, name, source, tags, quality_score,
    verification_status, snowball_depth, added_by, metadata, added_at
"""


INSERT_EMAIL = """
    INSERT INTO repository_emails (
        repository_id, address, name, source, tags, quality_score,
        verification_status, snowball_depth, added_by, metadata, added_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (repository_id, address) DO NOTHING
    RETURNING address
"""


def _email_params(entry: EmailEntry) -> tuple:
    return (
        entry.repository_id,
        entry.address,
        entry.name,
        entry.source,
        entry.tags,
        entry.quality_score,
        entry.verification_status,
        entry.snowball_depth,
        entry.added_by,
        Jsonb(entry.metadata),
        entry.added_at,
    )


def _repository_from_row(
row: dict[str, Any]) -> Repository:
    history = [
        GrowthEntry(
            date=entry["date"],
            count_added=entry.get("countAdded", 0),
            total=entry.get("total", 0),
        )
        for entry in row.get("growth_history") or []
    ]
    return Repository(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row.get("name") or "",
        trusted_domains=row.get("trusted_domains") or [],
        blocked_domains=row.get("blocked_domains") or [],
        blacklist=row.get("blacklist") or [],
        email_count=row.get("email_count") or 0,
        growth_rate=row.get("growth_rate") or 0.0,
        growth_history=history,
        limits=RepositoryLimits(max_emails=row.get("max_emails")),
        created_at=row["created_at"],
    )


def _email_from_row(row: dict[str, Any]) -> EmailEntry:
    return EmailEntry(
        address=row["address"],
        repository_id=row["repository_id"],
        name=row.get("name"),
        source=row["source"],
        tags=row.get("tags") or [],
        quality_score=row["quality_score"],
        verification_status=row["verification_status"],
        snowball_depth=row.get("snowball_depth") or 0,
        added_by=row.get("added_by"),
        metadata=row.get("metadata") or {},
        added_at=row["added_at"],
    )


def _user_from_row(row: dict[str, Any], uploads: list[CsvUpload] | None = None) -> PlatformUser:
    return PlatformUser(
        id=row["id"],
        email=row["email"],
        name=row.get("name"),
        metadata=row.get("metadata") or {},
        notify_snowball_updates=bool(row.get("notify_snowball_updates")),
        digest_frequency=row.get("digest_frequency") or "never",
        csv_uploads=uploads or [],
    )


class PostgresDataStore:
    """Persistence for repositories, their emails, users and uploads."""

    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def get_repository(self, repository_id: str) -> Repository | None:
        row = await fetch_one(
            self.pool,
            f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE id = %s",
            (repository_id,),
        )
        return _repository_from_row(row) if row else None

    async def list_repositories_for_owner(self, owner_id: str) -> list[Repository]:
        rows = await fetch_all(
            self.pool,
            f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE owner_id = %s ORDER BY name",
            (owner_id,),
        )
        return [_repository_from_row(row) for row in rows]

    async def record_growth(
        self, repository_id: str, count_added: int, recorded_at: datetime
    ) -> Repository | None:
        # The right-hand side sees the pre-update email_count.
        query = f"""
            UPDATE repositories
            SET email_count = email_count + %(added)s,
                growth_history = growth_history || jsonb_build_array(
                    jsonb_build_object(
                        'date', %(recorded_at)s::timestamptz,
                        'countAdded', %(added)s::integer,
                        'total', email_count + %(added)s
                    )
                )
            WHERE id = %(repository_id)s
            RETURNING {REPOSITORY_COLUMNS}
        """
        row = await fetch_one(
            self.pool,
            query,
            {"added": count_added, "recorded_at": recorded_at, "repository_id": repository_id},
        )
        return _repository_from_row(row) if row else None

    async def update_growth_rate(self, repository_id: str, growth_rate: float) -> None:
        await execute_query(
            self.pool,
            "UPDATE repositories SET growth_rate = %s WHERE id = %s",
            (growth_rate, repository_id),
        )

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------

    async def existing_addresses(self, repository_id: str, addresses: list[str]) -> set[str]:
        if not addresses:
            return set()
        rows = await fetch_all(
            self.pool,
            """
            SELECT address FROM repository_emails
            WHERE repository_id = %s AND address = ANY(%s)
            """,
            (repository_id, addresses),
        )
        return {row["address"] for row in rows}

    async def insert_emails(self, repository_id: str, entries: list[EmailEntry]) -> InsertOutcome:
        outcome = InsertOutcome()
        if not entries:
            return outcome

        try:
            async with self.pool.transaction() as conn:
                async with conn.cursor() as cur:
                    # Row lock serialises inserts into one repository until commit.
                    await cur.execute(
                        "SELECT max_emails FROM repositories WHERE id = %s FOR UPDATE",
                        (repository_id,),
                    )
                    locked = await cur.fetchone()
                    room = None
                    if locked and locked["max_emails"] is not None:
                        await cur.execute(
                            "SELECT count(*) AS held FROM repository_emails WHERE repository_id = %s",
                            (repository_id,),
                        )
                        held = (await cur.fetchone())["held"]
                        room = max(locked["max_emails"] - held, 0)

                    for entry in entries:
                        if room is not None and len(outcome.inserted) >= room:
                            outcome.over_limit.append(entry.address)
                            continue
                        await cur.execute(INSERT_EMAIL, _email_params(entry))
                        if await cur.fetchone():
                            outcome.inserted.append(entry.address)

        except psycopg.Error as e:
            logger.error(
                "Repository email insert failed", repository_id=repository_id, error=str(e)
            )
            raise DatabaseError(f"Insert failed: {e}", operation="insert_emails") from e

        logger.info(
            "Repository emails inserted",
            repository_id=repository_id,
            attempted=len(entries),
            inserted=len(outcome.inserted),
            over_limit=len(outcome.over_limit),
        )
        return outcome

    async def set_verification_status(
        self, repository_id: str, address: str, status: VerificationStatus
    ) -> bool:
        updated = await execute_query(
            self.pool,
            """
            UPDATE repository_emails
            SET verification_status = %s, verified_at = now()
            WHERE repository_id = %s AND address = %s
            """,
            (status, repository_id, address),
        )
        return updated > 0

    async def list_active_emails(self, repository_id: str) -> list[EmailEntry]:
        rows = await fetch_all(
            self.pool,
            f"""
            SELECT {EMAIL_COLUMNS} FROM repository_emails
            WHERE repository_id = %s AND verification_status = 'active'
            """,
            (repository_id,),
        )
        return [_email_from_row(row) for row in rows]

    async def delete_invalid_emails(self, older_than: datetime) -> int:
        deleted = await execute_query(
            self.pool,
            """
            DELETE FROM repository_emails
            WHERE verification_status = 'invalid'
              AND COALESCE(verified_at, added_at) < %s
            """,
            (older_than,),
        )
        logger.info("Invalid emails deleted", deleted=deleted, older_than=older_than.isoformat())
        return deleted

    # ------------------------------------------------------------------
    # Users and uploads
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> PlatformUser | None:
        row = await fetch_one(self.pool, "SELECT * FROM users WHERE id = %s", (user_id,))
        return _user_from_row(row) if row else None

    async def find_users_by_email(self, addresses: list[str]) -> list[PlatformUser]:
        if not addresses:
            return []
        users = await fetch_all(
            self.pool, "SELECT * FROM users WHERE email = ANY(%s)", (addresses,)
        )
        if not users:
            return []

        uploads = await fetch_all(
            self.pool,
            """
            SELECT id, user_id, repository_id, data, status
            FROM csv_uploads
            WHERE user_id = ANY(%s)
            ORDER BY created_at
            """,
            ([user["id"] for user in users],),
        )
        by_user: dict[str, list[CsvUpload]] = {}
        for upload in uploads:
            by_user.setdefault(upload["user_id"], []).append(
                CsvUpload(
                    id=upload["id"],
                    data=upload["data"],
                    repository_id=upload.get("repository_id"),
                    status=upload["status"],
                )
            )
        return [_user_from_row(user, by_user.get(user["id"])) for user in users]

    async def list_digest_recipients(self, frequency: str) -> list[PlatformUser]:
        rows = await fetch_all(
            self.pool,
            "SELECT * FROM users WHERE digest_frequency = %s ORDER BY id",
            (frequency,),
        )
        return [_user_from_row(row) for row in rows]

    async def claim_pending_uploads(self, limit: int) -> list[PendingUpload]:
        # SKIP LOCKED lets two sweeps run side by side without double-claiming.
        rows = await fetch_all(
            self.pool,
            """
            UPDATE csv_uploads
            SET status = 'queued'
            WHERE id IN (
                SELECT id FROM csv_uploads
                WHERE status = 'pending' AND repository_id IS NOT NULL
                ORDER BY created_at
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id, repository_id, user_id, data
            """,
            (limit,),
        )
        return [
            PendingUpload(
                upload_id=row["id"],
                repository_id=row["repository_id"],
                user_id=row["user_id"],
                data=row["data"],
            )
            for row in rows
        ]

    async def release_uploads(self, upload_ids: list[str]) -> None:
        if not upload_ids:
            return
        released = await execute_query(
            self.pool,
            "UPDATE csv_uploads SET status = 'pending' WHERE id = ANY(%s) AND status = 'queued'",
            (upload_ids,),
        )
        logger.info("Uploads released", requested=len(upload_ids), released=released)

    async def mark_upload_processed(self, upload_id: str) -> None:
        await execute_query(
            self.pool,
            "UPDATE csv_uploads SET status = 'processed' WHERE id = %s",
            (upload_id,),
        )

    async def save_network_snapshot(self, snapshot: NetworkAnalysisSnapshot) -> None:
        await execute_query(
            self.pool,
            """
            INSERT INTO network_snapshots (
                repository_id, total_reach, avg_engagement,
                top_contributors, growth_rate, analyzed_at
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                snapshot.repository_id,
                snapshot.total_reach,
                snapshot.avg_engagement,
                Jsonb(snapshot.top_contributors),
                snapshot.growth_rate,
                snapshot.analyzed_at,
            ),
        )
