import asyncio
import copy
from datetime import UTC, datetime

import pytest

from snowball_worker.bootstrap import build_services
from snowball_worker.config import Settings
from snowball_worker.features.snowball.domain import (
    CsvUpload,
    EmailEntry,
    GrowthEntry,
    PendingUpload,
    PlatformUser,
    Repository,
)
from snowball_worker.features.snowball.repository import InsertOutcome

START = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: datetime = START):
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    def __init__(self):
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.cache_down = False

    async def initialize(self):
        return None

    async def close(self):
        return None

    async def ping(self) -> bool:
        return True

    # cache helpers fail soft, like the real client
    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        if self.cache_down:
            return False
        self.values[key] = value
        self.ttls[key] = ttl_s
        return True

    async def get(self, key: str) -> str | None:
        if self.cache_down:
            return None
        return self.values.get(key)

    async def store(self, key: str, value: str) -> None:
        self.values[key] = value

    async def load(self, key: str) -> str | None:
        return self.values.get(key)

    async def remove(self, *keys: str) -> int:
        return sum(1 for key in keys if self.values.pop(key, None) is not None)

    async def zadd(self, key: str, member: str, score: float, *, only_existing: bool = False) -> int:
        zset = self.zsets.setdefault(key, {})
        if only_existing and member not in zset:
            return 0
        changed = zset.get(member) != score
        zset[member] = score
        return int(changed)

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    async def pop_to(self, source: str, target: str, score: float, *, unless_key: str) -> str | None:
        if unless_key in self.values:
            return None
        items = self._sorted(source)
        if not items:
            return None
        member = items[0][0]
        del self.zsets[source][member]
        self.zsets.setdefault(target, {})[member] = score
        return member

    async def move_member(
        self, record_key, record, member, target, score, *, sources=(), require_source=False
    ) -> tuple[bool, bool]:
        removed = [self.zsets.get(key, {}).pop(member, None) is not None for key in sources]
        if require_source and not any(removed):
            return False, False
        self.values[record_key] = record
        self.zsets.setdefault(target, {})[member] = score
        return True, bool(removed and removed[0])

    async def zscore(self, key: str, member: str) -> float | None:
        return self.zsets.get(key, {}).get(member)

    async def zrem(self, key: str, member: str) -> int:
        return int(self.zsets.get(key, {}).pop(member, None) is not None)

    async def zrangebyscore(self, key, min_score, max_score, limit=None) -> list[str]:
        members = [m for m, s in self._sorted(key) if min_score <= s <= max_score]
        return members[:limit] if limit is not None else members

    async def zrange(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        members = [m for m, _ in self._sorted(key)]
        return members[start:] if end == -1 else members[start : end + 1]

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))


class FakeDataStore:
    """In-memory DataStore honouring the (repository, address) uniqueness rule."""

    def __init__(self):
        self.repositories: dict[str, Repository] = {}
        self.emails: dict[tuple[str, str], EmailEntry] = {}
        self.users: dict[str, PlatformUser] = {}
        self.pending_uploads: list[PendingUpload] = []
        self.snapshots: list = []
        self.queued_uploads: dict[str, PendingUpload] = {}
        self.processed_uploads: list[str] = []
        self.insert_calls = 0
        self._insert_lock = asyncio.Lock()

    def add_repository(self, **fields) -> Repository:
        fields.setdefault("owner_id", "owner-1")
        fields.setdefault("created_at", START)
        repository = Repository(**fields)
        self.repositories[repository.id] = repository
        return repository

    def add_user(self, user_id: str, email: str, uploads: list[str] | None = None, **fields):
        user = PlatformUser(
            id=user_id,
            email=email,
            csv_uploads=[
                CsvUpload(id=f"{user_id}-upload-{i}", data=data)
                for i, data in enumerate(uploads or [])
            ],
            **fields,
        )
        self.users[user_id] = user
        return user

    async def get_repository(self, repository_id):
        await asyncio.sleep(0)
        repository = self.repositories.get(repository_id)
        return copy.deepcopy(repository) if repository else None

    async def list_repositories_for_owner(self, owner_id):
        return [copy.deepcopy(r) for r in self.repositories.values() if r.owner_id == owner_id]

    async def existing_addresses(self, repository_id, addresses):
        return {a for a in addresses if (repository_id, a) in self.emails}

    async def insert_emails(self, repository_id, entries):
        self.insert_calls += 1
        outcome = InsertOutcome()
        # stands in for the repository row lock
        async with self._insert_lock:
            repository = self.repositories.get(repository_id)
            max_emails = repository.limits.max_emails if repository else None
            held = sum(1 for repo_id, _ in self.emails if repo_id == repository_id)
            for entry in entries:
                await asyncio.sleep(0)
                if max_emails is not None and held >= max_emails:
                    outcome.over_limit.append(entry.address)
                    continue
                key = (entry.repository_id, entry.address)
                if key in self.emails:
                    continue
                self.emails[key] = entry
                outcome.inserted.append(entry.address)
                held += 1
        return outcome

    async def set_verification_status(self, repository_id, address, status):
        entry = self.emails.get((repository_id, address))
        if entry is None:
            return False
        entry.verification_status = status
        return True

    async def list_active_emails(self, repository_id):
        return [
            e
            for (repo_id, _), e in self.emails.items()
            if repo_id == repository_id and e.verification_status == "active"
        ]

    async def delete_invalid_emails(self, older_than):
        doomed = [
            key
            for key, e in self.emails.items()
            if e.verification_status == "invalid" and e.added_at < older_than
        ]
        for key in doomed:
            del self.emails[key]
        return len(doomed)

    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def find_users_by_email(self, addresses):
        wanted = set(addresses)
        return [u for u in self.users.values() if u.email in wanted]

    async def list_digest_recipients(self, frequency):
        return [u for u in self.users.values() if u.digest_frequency == frequency]

    async def record_growth(self, repository_id, count_added, recorded_at):
        repository = self.repositories.get(repository_id)
        if repository is None:
            return None
        repository.email_count += count_added
        repository.growth_history.append(
            GrowthEntry(date=recorded_at, count_added=count_added, total=repository.email_count)
        )
        return copy.deepcopy(repository)

    async def update_growth_rate(self, repository_id, growth_rate):
        self.repositories[repository_id].growth_rate = growth_rate

    async def save_network_snapshot(self, snapshot):
        self.snapshots.append(snapshot)

    async def claim_pending_uploads(self, limit):
        claimed, self.pending_uploads = self.pending_uploads[:limit], self.pending_uploads[limit:]
        self.queued_uploads.update((upload.upload_id, upload) for upload in claimed)
        return claimed

    async def release_uploads(self, upload_ids):
        for upload_id in upload_ids:
            upload = self.queued_uploads.pop(upload_id, None)
            if upload is not None:
                self.pending_uploads.append(upload)

    async def mark_upload_processed(self, upload_id):
        self.queued_uploads.pop(upload_id, None)
        self.processed_uploads.append(upload_id)


class FakeReputationService:
    def __init__(self, scores: dict[str, float] | None = None, default: float = 0.0):
        self.scores = scores or {}
        self.default = default
        self.calls: list[str] = []

    async def check(self, domain: str) -> float:
        self.calls.append(domain)
        return self.scores.get(domain, self.default)


class FakeVerifier:
    def __init__(self, invalid: set[str] | None = None, error: Exception | None = None):
        self.invalid = invalid or set()
        self.error = error
        self.calls: list[str] = []

    async def verify(self, address: str) -> bool:
        self.calls.append(address)
        if self.error:
            raise self.error
        return address not in self.invalid


class RecordingSender:
    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, str, dict]] = []
        self.error = error

    async def send(self, owner_id: str, template: str, data: dict) -> None:
        if self.error:
            raise self.error
        self.sent.append((owner_id, template, data))


@pytest.fixture
def test_settings():
    return Settings(environment="test", JOB_LOCK_TIMEOUT_MS=30_000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def data_store():
    return FakeDataStore()


@pytest.fixture
def reputation_service():
    return FakeReputationService()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def services(test_settings, fake_redis, data_store, reputation_service, verifier, sender, clock):
    return build_services(
        test_settings,
        redis_client=fake_redis,
        data_store=data_store,
        reputation_service=reputation_service,
        verifier=verifier,
        sender=sender,
        clock=clock,
    )
