"""
Service wiring.

Everything the worker needs is built once here and passed down explicitly;
no component reaches for a module-level queue or cache. Tests build the same
graph with in-memory collaborators swapped in.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.db.pool import DatabasePoolManager
from snowball_worker.features.snowball.clients import (
    DomainReputationService,
    EmailVerificationService,
    HttpDomainReputationService,
    HttpEmailVerificationService,
    HttpNotificationSender,
    NotificationSender,
)
from snowball_worker.features.snowball.digest import DigestService
from snowball_worker.features.snowball.fanout import FanoutPlanner
from snowball_worker.features.snowball.growth import GrowthTracker, OwnerNotifier
from snowball_worker.features.snowball.jobs import (
    AnalyzeNetworkJob,
    CleanupJob,
    ProcessCsvJob,
    SendDigestJob,
    SweepPendingSnowballsJob,
    VerifyEmailJob,
    register_snowball_handlers,
)
from snowball_worker.features.snowball.network import NetworkAnalyzer
from snowball_worker.features.snowball.pipeline.reputation import ReputationCache
from snowball_worker.features.snowball.pipeline.scoring import QualityScorer
from snowball_worker.features.snowball.repository import DataStore, PostgresDataStore
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.dispatcher import Dispatcher
from snowball_worker.jobs.queue import QueueService
from snowball_worker.jobs.scheduler import Scheduler, default_schedule
from snowball_worker.services.infrastructure.redis_client import FastRedisClient

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    redis: FastRedisClient
    data_store: DataStore
    queue: QueueService
    reputation: ReputationCache
    dispatcher: Dispatcher
    scheduler: Scheduler
    db_pool: DatabasePoolManager | None = None
    _started: list[str] = field(default_factory=list)

    async def start(self) -> None:
        """Open connection pools, closing whatever opened if a later step fails."""
        try:
            if self.db_pool is not None:
                logger.info("Initializing database pool")
                await self.db_pool.initialize()
                self._started.append("database_pool")

            logger.info("Initializing Redis connection")
            await self.redis.initialize()
            self._started.append("redis")

            logger.info("All services initialized successfully", services=self._started)
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), completed_tasks=self._started)
            await self.close()
            raise

    async def close(self) -> None:
        shutdown_errors = []

        if "redis" in self._started:
            try:
                await self.redis.close()
            except Exception as e:
                logger.error("Error closing Redis", error=str(e))
                shutdown_errors.append(f"Redis: {e}")

        if "database_pool" in self._started and self.db_pool is not None:
            try:
                await self.db_pool.close()
            except Exception as e:
                logger.error("Error closing database pool", error=str(e))
                shutdown_errors.append(f"Database: {e}")

        self._started.clear()
        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)


def build_services(
    app_settings: Settings | None = None,
    *,
    redis_client: FastRedisClient | None = None,
    data_store: DataStore | None = None,
    reputation_service: DomainReputationService | None = None,
    verifier: EmailVerificationService | None = None,
    sender: NotificationSender | None = None,
    clock: Callable[[], float] = time.time,
) -> ServiceContainer:
    """Build the full service graph. Anything not passed in gets its production default."""
    cfg = app_settings or default_settings

    def now() -> datetime:
        return datetime.fromtimestamp(clock(), UTC)

    redis_client = redis_client or FastRedisClient(cfg)
    db_pool = None
    if data_store is None:
        db_pool = DatabasePoolManager(cfg)
        data_store = PostgresDataStore(db_pool)

    reputation_service = reputation_service or HttpDomainReputationService.from_settings(cfg)
    verifier = verifier or HttpEmailVerificationService.from_settings(cfg)
    sender = sender or HttpNotificationSender.from_settings(cfg)

    queue = QueueService(redis_client, app_settings=cfg, clock=clock)
    reputation = ReputationCache(redis_client, reputation_service, cfg.DOMAIN_REPUTATION_TTL_S)
    scorer = QualityScorer(reputation, cfg.QUALITY_THRESHOLD)

    dispatcher = Dispatcher(queue, app_settings=cfg)
    register_snowball_handlers(
        dispatcher,
        process_csv=ProcessCsvJob(
            data_store,
            queue,
            scorer,
            FanoutPlanner(cfg),
            GrowthTracker(data_store),
            OwnerNotifier(data_store, sender),
            app_settings=cfg,
            clock=now,
        ),
        verify_email=VerifyEmailJob(data_store, verifier),
        analyze_network=AnalyzeNetworkJob(
            data_store,
            NetworkAnalyzer(data_store, redis_client, cfg.NETWORK_ANALYSIS_TTL_S),
            clock=now,
        ),
        send_digest=SendDigestJob(DigestService(data_store, redis_client, sender), clock=now),
        cleanup=CleanupJob(data_store, queue, app_settings=cfg, clock=now),
        sweep_pending=SweepPendingSnowballsJob(data_store, queue),
    )

    scheduler = Scheduler(queue, default_schedule(cfg), clock=clock)

    return ServiceContainer(
        settings=cfg,
        redis=redis_client,
        data_store=data_store,
        queue=queue,
        reputation=reputation,
        dispatcher=dispatcher,
        scheduler=scheduler,
        db_pool=db_pool,
    )
