import pytest

from snowball_worker.jobs.errors import ValidationError
from snowball_worker.jobs.models import (
    CLEANUP_QUEUE,
    EMAIL_PROCESSING_QUEUE,
    SNOWBALL_QUEUE,
    BackoffPolicy,
    JobOptions,
)
from snowball_worker.jobs.payloads import PROCESS_CSV, VERIFY_EMAIL
from snowball_worker.jobs.queue import QueueService
from snowball_worker.services.infrastructure.redis_client import RedisOperationError


def _csv_payload(depth=0, repository_id="repo-1"):
    return {
        "repositoryId": repository_id,
        "csvPayload": "email\na@example.com\n",
        "userId": "user-1",
        "depth": depth,
    }


@pytest.fixture
def queue(fake_redis, test_settings, clock):
    return QueueService(fake_redis, app_settings=test_settings, clock=clock)


@pytest.mark.asyncio
async def test_enqueue_then_claim_round_trip(queue):
    job_id = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())

    job = await queue.claim(SNOWBALL_QUEUE)

    assert job.id == job_id
    assert job.status == "active"
    assert job.attempts == 1
    assert job.payload["repositoryId"] == "repo-1"
    assert await queue.claim(SNOWBALL_QUEUE) is None


@pytest.mark.asyncio
async def test_enqueue_uses_default_options_for_type(queue):
    job_id = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.get_job(SNOWBALL_QUEUE, job_id)

    assert job.max_attempts == 3
    assert job.backoff.type == "exponential"
    assert job.backoff.delay_ms == 3000


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_payload(queue):
    with pytest.raises(ValidationError):
        await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, {"repositoryId": "repo-1"})


@pytest.mark.asyncio
async def test_enqueue_rejects_depth_beyond_cap(queue):
    with pytest.raises(ValidationError):
        await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload(depth=4))


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_queue(queue):
    with pytest.raises(ValueError):
        await queue.enqueue("nope", PROCESS_CSV, _csv_payload())


@pytest.mark.asyncio
async def test_higher_priority_claimed_first(queue, clock):
    low = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload(), JobOptions(priority=0))
    clock.advance(1)
    high = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload(), JobOptions(priority=2))

    assert (await queue.claim(SNOWBALL_QUEUE)).id == high
    assert (await queue.claim(SNOWBALL_QUEUE)).id == low


@pytest.mark.asyncio
async def test_equal_priority_is_fifo(queue, clock):
    first = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    clock.advance(1)
    second = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())

    assert (await queue.claim(SNOWBALL_QUEUE)).id == first
    assert (await queue.claim(SNOWBALL_QUEUE)).id == second


@pytest.mark.asyncio
async def test_delayed_job_not_claimable_until_due(queue, clock):
    job_id = await queue.enqueue(
        EMAIL_PROCESSING_QUEUE,
        VERIFY_EMAIL,
        {"email": "a@example.com", "repositoryId": "repo-1"},
        JobOptions(delay_ms=5000),
    )

    assert await queue.claim(EMAIL_PROCESSING_QUEUE) is None

    clock.advance(5)
    job = await queue.claim(EMAIL_PROCESSING_QUEUE)
    assert job.id == job_id


@pytest.mark.asyncio
async def test_failure_schedules_exponential_retry(queue, clock, fake_redis):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE)

    status = await queue.fail(job, RuntimeError("db hiccup"))

    assert status == "delayed"
    ready_at = fake_redis.zsets["shadownews:queue:snowball-distribution:delayed"][job.id]
    assert ready_at == queue.now_ms() + 3000

    clock.advance(3)
    retried = await queue.claim(SNOWBALL_QUEUE)
    assert retried.id == job.id
    assert retried.attempts == 2

    await queue.fail(retried, RuntimeError("db hiccup"))
    ready_at = fake_redis.zsets["shadownews:queue:snowball-distribution:delayed"][job.id]
    assert ready_at == queue.now_ms() + 6000


@pytest.mark.asyncio
async def test_job_failing_every_attempt_ends_failed(queue, clock):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())

    statuses = []
    for _ in range(3):
        clock.advance(60)
        job = await queue.claim(SNOWBALL_QUEUE)
        statuses.append(await queue.fail(job, RuntimeError("still down")))

    assert statuses == ["delayed", "delayed", "failed"]
    clock.advance(600)
    assert await queue.claim(SNOWBALL_QUEUE) is None

    dead = await queue.get_job(SNOWBALL_QUEUE, job.id)
    assert dead.status == "failed"
    assert dead.last_error == "still down"
    assert (await queue.stats(SNOWBALL_QUEUE)).failed == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_skips_backoff(queue):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE)

    status = await queue.fail(job, ValidationError("bad csv"), retryable=False)

    assert status == "failed"
    assert job.attempts == 1


def test_fixed_backoff_delay():
    policy = BackoffPolicy(type="fixed", delay_ms=5000)
    assert [policy.delay_for(n) for n in range(3)] == [5000, 5000, 5000]


@pytest.mark.asyncio
async def test_complete_records_result(queue):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE)

    await queue.complete(job, {"added": 1})

    stored = await queue.get_job(SNOWBALL_QUEUE, job.id)
    assert stored.status == "completed"
    assert stored.result == {"added": 1}
    stats = await queue.stats(SNOWBALL_QUEUE)
    assert stats.active == 0
    assert stats.completed == 1


@pytest.mark.asyncio
async def test_expired_lock_is_requeued_as_stalled(queue, clock):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE, lock_ms=1000)

    assert await queue.recover_stalled(SNOWBALL_QUEUE) == []

    clock.advance(2)
    assert await queue.recover_stalled(SNOWBALL_QUEUE) == [job.id]
    assert (await queue.get_job(SNOWBALL_QUEUE, job.id)).status == "stalled"

    again = await queue.claim(SNOWBALL_QUEUE)
    assert again.id == job.id
    assert again.attempts == 2


@pytest.mark.asyncio
async def test_stalled_job_without_attempts_left_fails(queue, clock):
    await queue.enqueue(CLEANUP_QUEUE, "cleanup", {})
    job = await queue.claim(CLEANUP_QUEUE, lock_ms=1000)

    clock.advance(2)
    await queue.recover_stalled(CLEANUP_QUEUE)

    dead = await queue.get_job(CLEANUP_QUEUE, job.id)
    assert dead.status == "failed"
    assert "stalled" in dead.last_error


@pytest.mark.asyncio
async def test_renew_lock_keeps_job_from_stalling(queue, clock):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE, lock_ms=1000)

    clock.advance(0.8)
    assert await queue.renew_lock(job, 1000) is True
    clock.advance(0.8)

    assert await queue.recover_stalled(SNOWBALL_QUEUE) == []


@pytest.mark.asyncio
async def test_complete_after_lost_lock_does_not_rerun(queue, clock):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE, lock_ms=1000)
    clock.advance(2)
    await queue.recover_stalled(SNOWBALL_QUEUE)

    await queue.complete(job, {"added": 0})

    assert await queue.claim(SNOWBALL_QUEUE) is None


@pytest.mark.asyncio
async def test_clean_removes_finished_jobs_past_grace(queue, clock):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    done = await queue.claim(SNOWBALL_QUEUE)
    await queue.complete(done, {})
    dead = await queue.claim(SNOWBALL_QUEUE)
    await queue.fail(dead, ValidationError("bad"), retryable=False)

    assert await queue.clean(SNOWBALL_QUEUE, "failed", grace_ms=60_000) == 0

    clock.advance(61)
    assert await queue.clean(SNOWBALL_QUEUE, "failed", grace_ms=60_000) == 1
    assert await queue.get_job(SNOWBALL_QUEUE, dead.id) is None
    assert await queue.get_job(SNOWBALL_QUEUE, done.id) is not None

    assert await queue.clean(SNOWBALL_QUEUE, "completed", grace_ms=60_000) == 1
    assert await queue.get_job(SNOWBALL_QUEUE, done.id) is None


@pytest.mark.asyncio
async def test_clean_only_takes_finished_statuses(queue):
    with pytest.raises(ValueError):
        await queue.clean(SNOWBALL_QUEUE, "waiting", grace_ms=0)


@pytest.mark.asyncio
async def test_retry_failed_gives_fresh_attempts(queue):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE)
    await queue.fail(job, ValidationError("bad"), retryable=False)

    revived = await queue.retry_failed(SNOWBALL_QUEUE, job.id)

    assert revived.status == "waiting"
    assert revived.attempts == 0
    assert [j.id for j in await queue.list_jobs(SNOWBALL_QUEUE, "waiting")] == [job.id]
    assert await queue.retry_failed(SNOWBALL_QUEUE, job.id) is None


@pytest.mark.asyncio
async def test_record_write_failure_during_claim_leaves_job_recoverable(
    queue, clock, fake_redis, monkeypatch
):
    job_id = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    real_store = fake_redis.store
    failures = []

    async def flaky_store(key, value):
        if not failures:
            failures.append(key)
            raise RedisOperationError("connection reset")
        await real_store(key, value)

    monkeypatch.setattr(fake_redis, "store", flaky_store)

    with pytest.raises(RedisOperationError):
        await queue.claim(SNOWBALL_QUEUE)

    assert (await queue.stats(SNOWBALL_QUEUE)).active == 1

    clock.advance(3600)
    assert await queue.recover_stalled(SNOWBALL_QUEUE) == [job_id]
    job = await queue.claim(SNOWBALL_QUEUE)
    assert job.id == job_id
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_failed_transition_write_keeps_job_active(queue, clock, fake_redis, monkeypatch):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE, lock_ms=1000)

    async def broken_move(*args, **kwargs):
        raise RedisOperationError("connection reset")

    monkeypatch.setattr(fake_redis, "move_member", broken_move)
    with pytest.raises(RedisOperationError):
        await queue.fail(job, RuntimeError("db hiccup"))
    monkeypatch.undo()

    stats = await queue.stats(SNOWBALL_QUEUE)
    assert (stats.active, stats.delayed, stats.failed) == (1, 0, 0)

    clock.advance(2)
    assert await queue.recover_stalled(SNOWBALL_QUEUE) == [job.id]
    assert (await queue.claim(SNOWBALL_QUEUE)).id == job.id


@pytest.mark.asyncio
async def test_stalled_job_already_completed_is_left_alone(queue, clock):
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    job = await queue.claim(SNOWBALL_QUEUE, lock_ms=1000)
    clock.advance(2)
    await queue.complete(job, {})

    assert await queue.recover_stalled(SNOWBALL_QUEUE) == []
    assert (await queue.get_job(SNOWBALL_QUEUE, job.id)).status == "completed"


@pytest.mark.asyncio
async def test_paused_queue_hands_out_nothing(queue):
    job_id = await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())
    await queue.pause(SNOWBALL_QUEUE)

    assert await queue.claim(SNOWBALL_QUEUE) is None
    stats = await queue.stats(SNOWBALL_QUEUE)
    assert stats.is_paused is True
    assert (stats.waiting, stats.paused) == (0, 1)

    await queue.resume(SNOWBALL_QUEUE)

    assert (await queue.claim(SNOWBALL_QUEUE)).id == job_id
    assert (await queue.stats(SNOWBALL_QUEUE)).is_paused is False


@pytest.mark.asyncio
async def test_pause_is_per_queue(queue):
    await queue.pause(CLEANUP_QUEUE)
    await queue.enqueue(SNOWBALL_QUEUE, PROCESS_CSV, _csv_payload())

    assert await queue.claim(SNOWBALL_QUEUE) is not None
    assert await queue.is_paused(SNOWBALL_QUEUE) is False


@pytest.mark.asyncio
async def test_pause_rejects_unknown_queue(queue):
    with pytest.raises(ValueError):
        await queue.pause("nope")
