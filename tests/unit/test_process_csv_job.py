import asyncio

import pytest

from snowball_worker.features.snowball.jobs import enqueue_csv_processing
from snowball_worker.jobs.models import EMAIL_PROCESSING_QUEUE, SNOWBALL_QUEUE
from snowball_worker.jobs.payloads import PROCESS_CSV

EXAMPLE_CSV = "email,name,source\na@trusted.org,Alice,verified_user\nbad-email,Bob,\n"


@pytest.fixture
def repository(data_store):
    return data_store.add_repository(id="repo-1", name="Climate", trusted_domains=["trusted.org"])


async def _process(services, csv_payload, *, depth=0, user_id="user-1"):
    job_id = await enqueue_csv_processing(services.queue, "repo-1", csv_payload, user_id, depth=depth)
    await services.dispatcher.drain(SNOWBALL_QUEUE)
    return await services.queue.get_job(SNOWBALL_QUEUE, job_id)


def _assert_counts_balance(result):
    assert result["processed"] == result["added"] + result["skipped"] + result["rejected"]


@pytest.mark.asyncio
async def test_trusted_verified_row_is_added_and_malformed_row_skipped(services, repository, data_store):
    job = await _process(services, EXAMPLE_CSV)

    assert job.status == "completed"
    result = job.result
    assert (result["processed"], result["added"], result["skipped"], result["rejected"]) == (2, 1, 1, 0)
    assert result["reasons"] == {"malformed": 1}
    assert result["verificationJobs"] == 1

    entry = data_store.emails[("repo-1", "a@trusted.org")]
    assert entry.quality_score == 0.7
    assert entry.source == "verified_user"
    assert entry.name == "Alice"
    assert entry.verification_status == "pending"
    assert entry.snowball_depth == 0
    assert entry.added_by == "user-1"


@pytest.mark.asyncio
async def test_resubmitting_same_list_adds_nothing(services, repository, data_store):
    await _process(services, EXAMPLE_CSV)

    job = await _process(services, EXAMPLE_CSV)

    result = job.result
    assert result["added"] == 0
    assert result["skipped"] == 2
    assert result["reasons"] == {"malformed": 1, "existing": 1}
    assert len(data_store.emails) == 1
    assert data_store.repositories["repo-1"].email_count == 1


@pytest.mark.asyncio
async def test_every_row_lands_in_exactly_one_bucket(services, data_store):
    data_store.add_repository(id="repo-1", trusted_domains=["trusted.org"], blocked_domains=["blocked.io"])
    csv_payload = (
        "email,source\n"
        "a@trusted.org,verified_user\n"
        "b@trusted.org,\n"
        "noreply@trusted.org,verified_user\n"
        "a@trusted.org,verified_user\n"
        "x@blocked.io,verified_user\n"
    )

    result = (await _process(services, csv_payload)).result

    assert result["processed"] == 5
    assert result["added"] == 1
    assert result["rejected"] == 1
    assert result["reasons"] == {
        "spam": 1,
        "duplicate": 1,
        "blocked_domain": 1,
        "low_quality": 1,
    }
    _assert_counts_balance(result)


@pytest.mark.asyncio
async def test_missing_repository_fails_without_retry(services, data_store):
    job = await _process(services, EXAMPLE_CSV)

    assert job.status == "failed"
    assert job.attempts == 1
    assert "not found" in job.last_error
    assert data_store.insert_calls == 0


@pytest.mark.asyncio
async def test_csv_without_email_column_fails_without_retry(services, repository):
    job = await _process(services, "name\nAlice\n")

    assert job.status == "failed"
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_reputation_outage_is_retried(services, repository, reputation_service, data_store):
    async def unavailable(domain):
        raise ConnectionError("reputation service down")

    reputation_service.check = unavailable

    job = await _process(services, "email\nz@elsewhere.com\n")

    assert job.status == "delayed"
    assert job.attempts == 1
    assert data_store.emails == {}


@pytest.mark.asyncio
async def test_capacity_limit_skips_overflow(services, data_store):
    data_store.add_repository(
        id="repo-1", trusted_domains=["trusted.org"], email_count=4, limits={"max_emails": 5}
    )
    csv_payload = "email,source\na@trusted.org,verified_user\nb@trusted.org,verified_user\n"

    result = (await _process(services, csv_payload)).result

    assert result["added"] == 1
    assert result["reasons"] == {"limit_reached": 1}
    assert ("repo-1", "a@trusted.org") in data_store.emails
    _assert_counts_balance(result)


@pytest.mark.asyncio
async def test_concurrent_jobs_cannot_overshoot_capacity(services, data_store):
    data_store.add_repository(id="repo-1", trusted_domains=["trusted.org"], limits={"max_emails": 2})
    first_list = "email,source\na@trusted.org,verified_user\nb@trusted.org,verified_user\n"
    second_list = "email,source\nc@trusted.org,verified_user\nd@trusted.org,verified_user\n"
    first = await enqueue_csv_processing(services.queue, "repo-1", first_list, "user-1")
    second = await enqueue_csv_processing(services.queue, "repo-1", second_list, "user-2")

    # Both jobs read the repository before either inserts.
    await asyncio.gather(
        services.dispatcher.run_once(SNOWBALL_QUEUE),
        services.dispatcher.run_once(SNOWBALL_QUEUE),
    )

    results = [
        (await services.queue.get_job(SNOWBALL_QUEUE, job_id)).result for job_id in (first, second)
    ]
    assert len(data_store.emails) == 2
    assert sum(r["added"] for r in results) == 2
    assert sum(r["reasons"].get("limit_reached", 0) for r in results) == 2
    for result in results:
        _assert_counts_balance(result)
    assert data_store.repositories["repo-1"].email_count == 2


@pytest.mark.asyncio
async def test_concurrent_insert_counts_as_existing(services, repository, data_store, monkeypatch):
    await _process(services, "email,source\na@trusted.org,verified_user\n")

    # Another worker admitted the address between the lookup and the insert.
    async def stale_lookup(repository_id, addresses):
        return set()

    monkeypatch.setattr(data_store, "existing_addresses", stale_lookup)

    result = (await _process(services, "email,source\na@trusted.org,verified_user\n")).result

    assert result["added"] == 0
    assert result["reasons"] == {"existing": 1}
    assert result["verificationJobs"] == 0
    _assert_counts_balance(result)


@pytest.mark.asyncio
async def test_growth_notification_and_network_analysis(services, repository, data_store, sender):
    data_store.add_user("owner-1", "owner@example.com", notify_snowball_updates=True)

    result = (await _process(services, EXAMPLE_CSV)).result

    assert result["notified"] is True
    owner_id, template, data = sender.sent[0]
    assert (owner_id, template) == ("owner-1", "snowball-update")
    assert data["added"] == 1
    assert data["total"] == 1

    stored = data_store.repositories["repo-1"]
    assert stored.email_count == 1
    assert stored.growth_history[-1].count_added == 1
    # analyze-network ran in the same drain
    assert len(data_store.snapshots) == 1


@pytest.mark.asyncio
async def test_admitted_platform_user_lists_snowball_to_next_depth(services, repository, data_store, clock):
    data_store.add_user(
        "user-2",
        "a@trusted.org",
        uploads=["email,source\nc@trusted.org,verified_user\n"],
    )

    result = (await _process(services, EXAMPLE_CSV)).result
    assert result["childJobs"] == 1

    child = (await services.queue.list_jobs(SNOWBALL_QUEUE, "delayed"))[0]
    assert child.type == PROCESS_CSV
    assert child.payload["depth"] == 1
    assert child.payload["userId"] == "user-2"
    assert child.priority == services.settings.SNOWBALL_MAX_DEPTH - 1

    clock.advance(services.settings.SNOWBALL_DEPTH_DELAY_MS / 1000)
    await services.dispatcher.drain(SNOWBALL_QUEUE)

    entry = data_store.emails[("repo-1", "c@trusted.org")]
    assert entry.snowball_depth == 1
    assert entry.added_by == "user-2"


@pytest.mark.asyncio
async def test_no_children_beyond_max_depth(services, repository, data_store):
    data_store.add_user("user-2", "a@trusted.org", uploads=["email\nc@trusted.org\n"])
    max_depth = services.settings.SNOWBALL_MAX_DEPTH

    result = (await _process(services, EXAMPLE_CSV, depth=max_depth)).result

    assert result["added"] == 1
    assert result["childJobs"] == 0
    assert await services.queue.list_jobs(SNOWBALL_QUEUE, "delayed") == []


@pytest.mark.asyncio
async def test_opted_out_user_is_not_snowballed(services, repository, data_store):
    data_store.add_user(
        "user-2",
        "a@trusted.org",
        uploads=["email\nc@trusted.org\n"],
        metadata={"allowSnowball": False},
    )

    result = (await _process(services, EXAMPLE_CSV)).result

    assert result["added"] == 1
    assert result["childJobs"] == 0


@pytest.mark.asyncio
async def test_admitted_addresses_get_verified(services, repository, data_store, verifier, clock):
    await _process(services, "email,source\na@trusted.org,verified_user\nb@trusted.org,verified_user\n")
    verifier.invalid.add("b@trusted.org")

    clock.advance(services.settings.VERIFICATION_JITTER_MS / 1000)
    assert await services.dispatcher.drain(EMAIL_PROCESSING_QUEUE) == 2

    assert data_store.emails[("repo-1", "a@trusted.org")].verification_status == "active"
    assert data_store.emails[("repo-1", "b@trusted.org")].verification_status == "invalid"
