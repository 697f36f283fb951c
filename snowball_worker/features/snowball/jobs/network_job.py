"""
analyze-network handler.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from snowball_worker.features.snowball.network import NetworkAnalyzer
from snowball_worker.features.snowball.repository import DataStore
from snowball_worker.jobs.errors import FatalError
from snowball_worker.jobs.models import Job
from snowball_worker.jobs.payloads import AnalyzeNetworkPayload


class AnalyzeNetworkJob:
    def __init__(
        self,
        data_store: DataStore,
        analyzer: NetworkAnalyzer,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = data_store
        self.analyzer = analyzer
        self._clock = clock

    async def __call__(self, job: Job, payload: AnalyzeNetworkPayload) -> dict:
        repository = await self.store.get_repository(payload.repository_id)
        if repository is None:
            raise FatalError(f"Repository {payload.repository_id} not found")
        snapshot = await self.analyzer.analyze(repository, self._clock())
        return snapshot.model_dump(mode="json", by_alias=True)
