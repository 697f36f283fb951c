"""
process-csv handler - the snowball pipeline for one uploaded contact list.

Stages, in order:
1. Parse the CSV (structural problems fail the job without retry).
2. Validate rows: format, blacklist, blocked domains, spam, in-file duplicates.
3. Drop addresses the repository already holds.
4. Score the rest; below-threshold candidates are rejected.
5. Trim to the repository's remaining capacity.
6. Insert under the repository lock; rows that lose a concurrent insert race
   count as existing, rows past the cap at insert time as limit_reached.
7. Fan out: verification jobs, then next-depth process-csv jobs.
8. Record growth, notify the owner and mark the source upload processed.

Result counters always satisfy processed == added + skipped + rejected.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.features.snowball.domain import EmailEntry, ProcessCsvResult
from snowball_worker.features.snowball.fanout import FanoutPlanner, enqueue_planned
from snowball_worker.features.snowball.growth import GrowthTracker, OwnerNotifier
from snowball_worker.features.snowball.ingestion import EmailValidator, parse_contact_csv
from snowball_worker.features.snowball.pipeline.scoring import QualityScorer, ScoredCandidate
from snowball_worker.features.snowball.repository import DataStore
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.errors import FatalError
from snowball_worker.jobs.models import SNOWBALL_QUEUE, Job, JobOptions
from snowball_worker.jobs.payloads import (
    ANALYZE_NETWORK,
    PROCESS_CSV,
    AnalyzeNetworkPayload,
    ProcessCsvPayload,
)
from snowball_worker.jobs.queue import QueueService

logger = get_logger(__name__)

EXISTING = "existing"
LOW_QUALITY = "low_quality"
LIMIT_REACHED = "limit_reached"


def entry_source(metadata: dict, depth: int) -> str:
    if metadata.get("source"):
        return str(metadata["source"])
    return "snowball" if depth > 0 else "csv_upload"


async def enqueue_csv_processing(
    queue_service: QueueService,
    repository_id: str,
    csv_payload: str,
    user_id: str,
    *,
    depth: int = 0,
    upload_id: str | None = None,
    options: JobOptions | None = None,
) -> str:
    """Queue a contact list for processing into ``repository_id``."""
    payload = ProcessCsvPayload(
        repository_id=repository_id,
        csv_payload=csv_payload,
        user_id=user_id,
        depth=depth,
        upload_id=upload_id,
    )
    return await queue_service.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, payload, options)


class ProcessCsvJob:
    def __init__(
        self,
        data_store: DataStore,
        queue_service: QueueService,
        scorer: QualityScorer,
        planner: FanoutPlanner,
        growth: GrowthTracker,
        notifier: OwnerNotifier,
        *,
        app_settings: Settings | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = data_store
        self.queue = queue_service
        self.scorer = scorer
        self.planner = planner
        self.growth = growth
        self.notifier = notifier
        self.settings = app_settings or default_settings
        self._clock = clock

    async def __call__(self, job: Job, payload: ProcessCsvPayload) -> dict:
        result = await self.run(payload)
        return result.model_dump(by_alias=True)

    async def run(self, payload: ProcessCsvPayload) -> ProcessCsvResult:
        repository = await self.store.get_repository(payload.repository_id)
        if repository is None:
            raise FatalError(
                f"Repository {payload.repository_id} not found",
                context={"repository_id": payload.repository_id},
            )

        rows = parse_contact_csv(
            payload.csv_payload,
            max_rows=self.settings.CSV_MAX_ROWS,
            max_bytes=self.settings.CSV_MAX_BYTES,
        )
        result = ProcessCsvResult(processed=len(rows), depth=payload.depth)

        outcome = EmailValidator(repository).validate(rows)
        for reason, count in outcome.rejections.items():
            result.count(reason, count)
        result.skipped += outcome.rejected_count

        existing = await self.store.existing_addresses(
            repository.id, [candidate.address for candidate in outcome.candidates]
        )
        fresh = [c for c in outcome.candidates if c.address not in existing]
        result.count(EXISTING, len(outcome.candidates) - len(fresh))
        result.skipped += len(outcome.candidates) - len(fresh)

        scored = await self.scorer.score_all(fresh, repository)
        accepted = [s for s in scored if s.accepted]
        result.rejected = len(scored) - len(accepted)
        result.count(LOW_QUALITY, result.rejected)

        capacity = repository.remaining_capacity()
        if capacity is not None and len(accepted) > capacity:
            result.count(LIMIT_REACHED, len(accepted) - capacity)
            result.skipped += len(accepted) - capacity
            accepted = accepted[:capacity]

        now = self._clock()
        entries = [
            EmailEntry(
                address=s.candidate.address,
                repository_id=repository.id,
                source=entry_source(s.candidate.metadata, payload.depth),
                tags=s.candidate.tags,
                quality_score=s.score,
                snowball_depth=payload.depth,
                added_by=payload.user_id,
                name=s.candidate.name,
                metadata=s.candidate.metadata,
                added_at=now,
            )
            for s in accepted
        ]
        stored = await self.store.insert_emails(repository.id, entries)
        inserted = stored.inserted
        if stored.over_limit:
            result.count(LIMIT_REACHED, len(stored.over_limit))
            result.skipped += len(stored.over_limit)
        lost_race = len(entries) - len(inserted) - len(stored.over_limit)
        if lost_race:
            logger.info(
                "Concurrent insert already admitted addresses",
                repository_id=repository.id,
                count=lost_race,
            )
        result.count(EXISTING, lost_race)
        result.skipped += lost_race
        result.added = len(inserted)

        if inserted:
            await self._fan_out(repository.id, payload.depth, inserted, accepted, result)
            updated = await self.growth.record(repository.id, result.added, now) or repository
            result.notified = await self.notifier.notify_growth(
                updated,
                {"added": result.added, "depth": payload.depth, "total": updated.email_count},
            )
            await self.queue.enqueue(
                SNOWBALL_QUEUE, ANALYZE_NETWORK, AnalyzeNetworkPayload(repository_id=repository.id)
            )

        if payload.upload_id:
            await self.store.mark_upload_processed(payload.upload_id)

        logger.info(
            "CSV processed",
            repository_id=repository.id,
            depth=payload.depth,
            processed=result.processed,
            added=result.added,
            skipped=result.skipped,
            rejected=result.rejected,
            child_jobs=result.child_jobs,
        )
        return result

    async def _fan_out(
        self,
        repository_id: str,
        depth: int,
        inserted: list[str],
        accepted: list[ScoredCandidate],
        result: ProcessCsvResult,
    ) -> None:
        result.verification_jobs = await enqueue_planned(
            self.queue, self.planner.verification_jobs(repository_id, inserted)
        )

        if depth >= self.settings.SNOWBALL_MAX_DEPTH:
            return

        inserted_set = set(inserted)
        admitted = {
            s.candidate.address: s.candidate for s in accepted if s.candidate.address in inserted_set
        }
        users = await self.store.find_users_by_email(inserted)
        result.child_jobs = await enqueue_planned(
            self.queue, self.planner.child_jobs(repository_id, depth, admitted, users)
        )
        if result.child_jobs:
            logger.info(
                "Snowball wave scheduled",
                repository_id=repository_id,
                depth=depth + 1,
                child_jobs=result.child_jobs,
            )
