"""
Tests for the job store.

Every operation runs against a real (SQLite) table so the conditional
updates and the partial unique index on dedupe_key are exercised.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from studyflow.core.errors import JobNotFoundError, JobStateError, PayloadValidationError
from studyflow.core.retry import RetryPolicy
from studyflow.db.base import utcnow
from studyflow.models import Job
from studyflow.services.queue.job_store import (
    ORPHAN_MESSAGE,
    ORPHAN_REASON,
    STALE_LEASE_MESSAGE,
    STALE_LEASE_REASON,
    JobStore,
)
from studyflow.services.units import get_unit

WORKER = "worker-1:100:abcd"


def extract_payload(name: str = "notes.pdf") -> dict:
    return {
        "source_file_id": 1,
        "file_path": f"units/1/{name}",
        "file_name": name,
        "file_type": "pdf",
        "content_hash": f"hash-{name}",
    }


async def unit_status(session_factory, unit_id: int) -> tuple[str, str]:
    async with session_factory() as session:
        unit = await get_unit(session, unit_id)
        return unit.status, unit.error_message


@pytest.mark.asyncio
class TestEnqueue:

    async def test_creates_pending_job(self, job_store, unit):
        result = await job_store.enqueue("embed", unit.id, {}, dedupe_key=f"unit:{unit.id}:embed")

        assert result.created
        assert result.job.status == "pending"
        assert result.job.attempt_count == 0
        assert result.job.max_attempts == 3
        assert result.job.payload == {"job_type": "embed"}

    async def test_deduplicates_active_jobs(self, job_store, unit):
        key = f"unit:{unit.id}:embed"
        first = await job_store.enqueue("embed", unit.id, dedupe_key=key)
        second = await job_store.enqueue("embed", unit.id, dedupe_key=key)

        assert not second.created
        assert second.job.id == first.job.id
        assert len(await job_store.list_for_unit(unit.id)) == 1

    async def test_completed_job_counts_only_when_asked(self, job_store, unit):
        key = f"unit:{unit.id}:aggregate"
        first = await job_store.enqueue("aggregate", unit.id, dedupe_key=key)
        await job_store.claim(WORKER)
        await job_store.complete(first.job.id)

        gated = await job_store.enqueue("aggregate", unit.id, dedupe_key=key, include_completed=True)
        assert not gated.created
        assert gated.job.id == first.job.id

        fresh = await job_store.enqueue("aggregate", unit.id, dedupe_key=key)
        assert fresh.created

    async def test_payload_is_validated(self, job_store, unit):
        with pytest.raises(PayloadValidationError):
            await job_store.enqueue("analyze", unit.id, {"segment_key": "lecture-1"})

    async def test_max_attempts_override(self, job_store, unit):
        result = await job_store.enqueue("embed", unit.id, max_attempts=7)
        assert result.job.max_attempts == 7


def analyze_item(unit_id: int, key: str) -> tuple[dict, str]:
    payload = {"segment_key": key, "title": key.title(), "start_section": 0, "end_section": 3}
    return payload, f"unit:{unit_id}:analyze:{key}"


@pytest.mark.asyncio
class TestEnqueueMany:

    async def test_inserts_every_sibling(self, job_store, unit):
        items = [analyze_item(unit.id, key) for key in ("lecture-1", "lecture-2", "lecture-3")]

        results = await job_store.enqueue_many("analyze", unit.id, items)

        assert [r.created for r in results] == [True, True, True]
        jobs = await job_store.list_for_unit(unit.id)
        assert [j.dedupe_key for j in jobs] == [key for _, key in items]

    async def test_existing_siblings_are_reported(self, job_store, unit):
        payload, key = analyze_item(unit.id, "lecture-1")
        first = await job_store.enqueue("analyze", unit.id, payload, dedupe_key=key)

        results = await job_store.enqueue_many(
            "analyze",
            unit.id,
            [analyze_item(unit.id, "lecture-1"), analyze_item(unit.id, "lecture-2")],
        )

        assert [r.created for r in results] == [False, True]
        assert results[0].job.id == first.job.id
        assert len(await job_store.list_for_unit(unit.id)) == 2

    async def test_invalid_payload_inserts_nothing(self, job_store, unit):
        items = [analyze_item(unit.id, "lecture-1"), ({"segment_key": "lecture-2"}, f"unit:{unit.id}:analyze:lecture-2")]

        with pytest.raises(PayloadValidationError):
            await job_store.enqueue_many("analyze", unit.id, items)

        assert await job_store.list_for_unit(unit.id) == []

    async def test_concurrent_fan_outs_create_each_sibling_once(self, job_store, unit):
        items = [analyze_item(unit.id, key) for key in ("lecture-1", "lecture-2")]

        batches = await asyncio.gather(
            *(job_store.enqueue_many("analyze", unit.id, items, include_completed=True) for _ in range(4))
        )

        assert sum(r.created for batch in batches for r in batch) == 2
        assert len(await job_store.list_for_unit(unit.id)) == 2


@pytest.mark.asyncio
class TestCountCompleted:

    async def test_counts_distinct_completed_keys(self, job_store, unit):
        for key in ("lecture-1", "lecture-2"):
            payload, dedupe = analyze_item(unit.id, key)
            created = await job_store.enqueue("analyze", unit.id, payload, dedupe_key=dedupe)
            await job_store.claim(WORKER)
            await job_store.complete(created.job.id)
        await job_store.enqueue("analyze", unit.id, *analyze_item(unit.id, "lecture-3"))

        assert await job_store.count_completed(unit.id, "analyze") == 2
        assert await job_store.count_completed(
            unit.id, "analyze", dedupe_keys=[f"unit:{unit.id}:analyze:lecture-1", f"unit:{unit.id}:analyze:lecture-3"]
        ) == 1
        assert await job_store.count_completed(unit.id, "quiz") == 0



@pytest.mark.asyncio
class TestClaim:

    async def test_empty_queue(self, job_store):
        assert await job_store.claim(WORKER) is None

    async def test_oldest_first(self, job_store, unit):
        first = await job_store.enqueue("extract", unit.id, extract_payload("a.pdf"))
        await job_store.enqueue("extract", unit.id, extract_payload("b.pdf"))

        job = await job_store.claim(WORKER)

        assert job.id == first.job.id
        assert job.status == "processing"
        assert job.locked_by == WORKER
        assert job.locked_at is not None

    async def test_claimed_job_is_not_claimed_twice(self, job_store, unit):
        await job_store.enqueue("embed", unit.id)

        assert await job_store.claim("worker-a") is not None
        assert await job_store.claim("worker-b") is None

    async def test_concurrent_claimers_never_share_a_job(self, job_store, unit):
        created = [await job_store.enqueue("extract", unit.id, extract_payload(f"{i}.pdf")) for i in range(3)]

        claimed = await asyncio.gather(*(job_store.claim(f"worker-{n}:1:abcd") for n in range(6)))

        jobs = [job for job in claimed if job is not None]
        assert len(jobs) == 3
        assert sorted(job.id for job in jobs) == sorted(c.job.id for c in created)
        assert len({job.locked_by for job in jobs}) == 3
        assert await job_store.claim(WORKER) is None

    async def test_backoff_blocks_claim(self, session_factory, unit):
        store = JobStore(
            session_factory,
            retry_policy=RetryPolicy(base_delay=60.0, jitter=0.0),
            max_attempts=3,
        )
        created = await store.enqueue("embed", unit.id)
        await store.claim(WORKER)
        failed = await store.fail(created.job.id, "503 from provider", retryable=True)

        assert failed.status == "pending"
        assert failed.next_retry_at is not None
        assert await store.claim(WORKER) is None

    async def test_concurrency_ceiling(self, session_factory, unit):
        store = JobStore(session_factory, concurrency_limits={"embedding": 1})
        await store.enqueue("embed", unit.id)
        await store.enqueue("embed", unit.id)
        extract = await store.enqueue("extract", unit.id, extract_payload())

        assert (await store.claim(WORKER)).job_type == "embed"
        # second embed waits for the ceiling; the extract job is claimable
        assert (await store.claim(WORKER)).id == extract.job.id
        assert await store.claim(WORKER) is None


@pytest.mark.asyncio
class TestCompleteAndFail:

    async def test_complete(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        await job_store.claim(WORKER)

        assert await job_store.complete(created.job.id, {"newly_embedded": 3}, worker_id=WORKER)

        job = await job_store.get(created.job.id)
        assert job.status == "completed"
        assert job.locked_by is None
        assert job.result == {"newly_embedded": 3}
        assert job.completed_at is not None

    async def test_complete_is_conditional(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        await job_store.claim(WORKER)

        assert not await job_store.complete(created.job.id, worker_id="someone-else")
        assert await job_store.complete(created.job.id)
        assert not await job_store.complete(created.job.id)

    async def test_retryable_failure_goes_back_to_pending(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        await job_store.claim(WORKER)

        job = await job_store.fail(created.job.id, "rate limited", retryable=True)

        assert job.status == "pending"
        assert job.attempt_count == 1
        assert job.error_message == "rate limited"
        assert job.locked_by is None
        assert (await unit_status(job_store.session_factory, unit.id))[0] != "failed"

    async def test_permanent_failure_fails_unit(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        await job_store.claim(WORKER)

        job = await job_store.fail(created.job.id, "400 bad request", retryable=False)

        assert job.status == "failed"
        status, error = await unit_status(job_store.session_factory, unit.id)
        assert status == "failed"
        assert "400 bad request" in error

    async def test_exhausted_retries_are_dead(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id, max_attempts=1)
        await job_store.claim(WORKER)

        job = await job_store.fail(created.job.id, "timeout", retryable=True)

        assert job.status == "dead"
        assert job.attempt_count == 1

    async def test_fail_ignores_non_processing_job(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)

        job = await job_store.fail(created.job.id, "late failure")

        assert job.status == "pending"
        assert job.attempt_count == 0

    async def test_unknown_job(self, job_store):
        with pytest.raises(JobNotFoundError):
            await job_store.fail(9999, "nope")
        with pytest.raises(JobNotFoundError):
            await job_store.get(9999)


@pytest.mark.asyncio
class TestRecovery:

    async def test_stale_lease_is_reset(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        await job_store.claim(WORKER)

        report = await job_store.recover_stale(now=utcnow() + timedelta(seconds=120))

        assert report.reset == [created.job.id]
        job = await job_store.get(created.job.id)
        assert job.status == "pending"
        assert job.locked_by is None
        assert job.attempt_count == 1
        assert job.error_message == STALE_LEASE_REASON

    async def test_fresh_lease_is_kept(self, job_store, unit):
        await job_store.enqueue("embed", unit.id)
        await job_store.claim(WORKER)

        report = await job_store.recover_stale()

        assert report.total == 0

    async def test_stale_lease_without_budget_is_dead(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id, max_attempts=1)
        later = utcnow() + timedelta(seconds=120)

        await job_store.claim(WORKER)
        await job_store.recover_stale(now=later)
        await job_store.claim(WORKER)
        report = await job_store.recover_stale(now=later + timedelta(seconds=120))

        assert report.dead == [created.job.id]
        job = await job_store.get(created.job.id)
        assert job.status == "dead"
        assert job.error_message == STALE_LEASE_MESSAGE
        assert (await unit_status(job_store.session_factory, unit.id))[0] == "failed"

    async def test_orphan_is_reset(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        async with job_store.session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.id == created.job.id)
                .values(status="processing", locked_by=None, updated_at=utcnow() - timedelta(minutes=10))
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        report = await job_store.recover_stale()

        assert report.reset == [created.job.id]
        job = await job_store.get(created.job.id)
        assert job.status == "pending"
        assert job.error_message == ORPHAN_REASON

    async def test_orphan_without_budget_is_dead(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        async with job_store.session_factory() as session:
            await session.execute(
                update(Job)
                .where(Job.id == created.job.id)
                .values(
                    status="processing",
                    locked_by=None,
                    attempt_count=3,
                    updated_at=utcnow() - timedelta(minutes=10),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        report = await job_store.recover_stale()

        assert report.dead == [created.job.id]
        assert (await job_store.get(created.job.id)).error_message == ORPHAN_MESSAGE


@pytest.mark.asyncio
class TestOperatorActions:

    async def _failed_job(self, store: JobStore, unit_id: int, key: str = None) -> int:
        created = await store.enqueue("embed", unit_id, dedupe_key=key)
        await store.claim(WORKER)
        await store.fail(created.job.id, "boom", retryable=False)
        return created.job.id

    async def test_reset_failed_job(self, job_store, unit):
        job_id = await self._failed_job(job_store, unit.id)

        job = await job_store.reset_job(job_id)

        assert job.status == "pending"
        assert job.attempt_count == 0
        assert job.error_message is None
        status, error = await unit_status(job_store.session_factory, unit.id)
        assert status == "processing"
        assert error is None

    async def test_reset_rejects_active_job(self, job_store, unit):
        created = await job_store.enqueue("embed", unit.id)
        with pytest.raises(JobStateError):
            await job_store.reset_job(created.job.id)

    async def test_reset_conflicts_with_active_duplicate(self, job_store, unit):
        key = f"unit:{unit.id}:embed"
        job_id = await self._failed_job(job_store, unit.id, key)
        await job_store.enqueue("embed", unit.id, dedupe_key=key)

        with pytest.raises(JobStateError):
            await job_store.reset_job(job_id)

    async def test_retry_failed_jobs(self, job_store, unit):
        first = await self._failed_job(job_store, unit.id)
        second = await self._failed_job(job_store, unit.id)

        assert await job_store.retry_failed_jobs(unit.id) == [first, second]
        assert await job_store.count_active(unit.id, "embed") == 2
        assert await job_store.count_active(unit.id, "embed", exclude_job_id=first) == 1

    async def test_stats(self, job_store, unit):
        await job_store.enqueue("embed", unit.id)
        await job_store.enqueue("extract", unit.id, extract_payload())
        await job_store.claim(WORKER)

        stats = await job_store.stats()

        assert stats["by_status"]["pending"] == 1
        assert stats["by_status"]["processing"] == 1
        assert stats["by_status"]["dead"] == 0
        assert stats["active_by_type"] == {"embed": 1, "extract": 1}
        assert stats["oldest_pending_at"] is not None
