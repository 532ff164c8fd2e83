"""
Tests for the dispatcher: claim → handler → complete/fail → gate.
"""

from unittest.mock import AsyncMock, patch

import fitz
import pytest

from studyflow.core.errors import JobNotFoundError, PermanentExternalError
from studyflow.models import DocumentSection, Job, OutputKind
from studyflow.services.pipeline.dispatcher import make_worker_id, run_claimed_job, run_queue_tick
from studyflow.services.pipeline.gates import dedupe_key
from studyflow.services.pipeline.outputs import save_output
from studyflow.services.units import get_unit

from conftest import FakeEmbeddingProvider

WORKER = "worker-1:1:dispatch"

LECTURE_TEXT = "\n".join(
    f"Line {i}: during prophase the chromatin condenses into chromosomes." for i in range(12)
)


def make_pdf(text: str) -> bytes:
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((36, 36), text, fontsize=8)
    data = doc.tobytes()
    doc.close()
    return data


async def add_pdf_section(session_factory, unit_id: int, content: str = "Mitosis has four phases.") -> int:
    async with session_factory() as session:
        section = DocumentSection(
            content_unit_id=unit_id,
            source_type="pdf",
            source_file_id=f"units/{unit_id}/notes.pdf",
            chunk_index=0,
            content=content,
            section_metadata={},
        )
        session.add(section)
        await session.commit()
        return section.id


async def unit_row(session_factory, unit_id: int):
    async with session_factory() as session:
        return await get_unit(session, unit_id)


class TestWorkerId:

    def test_explicit_parts(self):
        assert make_worker_id("host-a", 42, "task") == "host-a:42:task"

    def test_defaults_are_filled(self):
        host, pid, task = make_worker_id().split(":")
        assert host and pid.isdigit() and len(task) == 12


@pytest.mark.asyncio
class TestRunClaimedJob:

    async def test_success_completes_and_opens_gate(self, pipeline_ctx, session_factory, unit):
        await add_pdf_section(session_factory, unit.id)
        store = pipeline_ctx.job_store
        await store.enqueue("embed", unit.id, dedupe_key=dedupe_key(unit.id, "embed"))
        job = await store.claim(WORKER)

        summary = await run_claimed_job(pipeline_ctx, job)

        assert summary["outcome"] == "completed"
        assert (await store.get(job.id)).status == "completed"
        jobs = await store.list_for_unit(unit.id)
        assert [j.job_type for j in jobs] == ["embed", "segment"]
        row = await unit_row(session_factory, unit.id)
        assert row.status == "embedded"
        assert row.pipeline_stage == "embedding"

    async def test_invalid_payload_fails_permanently(self, pipeline_ctx, session_factory, unit):
        async with session_factory() as session:
            session.add(
                Job(
                    content_unit_id=unit.id,
                    job_type="analyze",
                    status="pending",
                    payload={"segment_key": "lecture-1"},
                    attempt_count=0,
                    max_attempts=5,
                )
            )
            await session.commit()
        job = await pipeline_ctx.job_store.claim(WORKER)

        summary = await run_claimed_job(pipeline_ctx, job)

        assert summary["outcome"] == "failed"
        assert "Invalid analyze payload" in summary["error"]
        assert (await unit_row(session_factory, unit.id)).status == "failed"

    async def test_transient_error_is_retried(self, pipeline_ctx, session_factory, unit):
        await add_pdf_section(session_factory, unit.id)
        pipeline_ctx.embedding_provider = FakeEmbeddingProvider(fail=True)
        store = pipeline_ctx.job_store
        await store.enqueue("embed", unit.id)
        job = await store.claim(WORKER)

        summary = await run_claimed_job(pipeline_ctx, job)

        assert summary["outcome"] == "pending"
        assert summary["error_kind"] == "transient_external"
        stored = await store.get(job.id)
        assert stored.attempt_count == 1
        assert stored.next_retry_at is not None

    async def test_raised_permanent_error_fails_job(self, pipeline_ctx, session_factory, completion, unit):
        async with session_factory() as session:
            await save_output(session, unit.id, OutputKind.ANALYSIS, "lecture-1", {"summary": "x" * 1200})
            await session.commit()
        completion.json_answers.append(PermanentExternalError("400 invalid request"))
        store = pipeline_ctx.job_store
        await store.enqueue("quiz", unit.id, {"segment_key": "lecture-1", "title": "Mitosis"})
        job = await store.claim(WORKER)

        summary = await run_claimed_job(pipeline_ctx, job)

        assert summary["outcome"] == "failed"
        assert summary["error_kind"] == "permanent_external"
        assert (await unit_row(session_factory, unit.id)).status == "failed"

    async def test_vision_fallback_then_text_layer(self, pipeline_ctx, storage, completion, unit):
        storage.objects["units/1/notes.pdf"] = make_pdf(LECTURE_TEXT)
        completion.pdf_answers.append("too short")
        store = pipeline_ctx.job_store
        key = dedupe_key(unit.id, "extract", "hash-notes")
        await store.enqueue(
            "extract",
            unit.id,
            {
                "source_file_id": 1,
                "file_path": "units/1/notes.pdf",
                "file_name": "notes.pdf",
                "file_type": "pdf",
                "content_hash": "hash-notes",
            },
            dedupe_key=key,
        )

        first = await run_claimed_job(pipeline_ctx, await store.claim(WORKER))

        assert first["outcome"] == "fallback"
        fallback = await store.get(first["fallback_job_id"])
        assert fallback.dedupe_key == f"{key}:fallback"
        assert fallback.payload["method"] == "text_layer"

        second = await run_claimed_job(pipeline_ctx, await store.claim(WORKER))

        assert second["outcome"] == "completed"
        assert (await store.get(fallback.id)).result["method"] == "text_layer"
        assert [j.job_type for j in await store.list_for_unit(unit.id)] == ["extract", "extract", "embed"]

    async def test_purged_unit_reports_missing(self, pipeline_ctx, session_factory, unit):
        await add_pdf_section(session_factory, unit.id)
        store = pipeline_ctx.job_store
        await store.enqueue("embed", unit.id)
        job = await store.claim(WORKER)

        with patch.object(store, "complete", AsyncMock(side_effect=JobNotFoundError("gone"))):
            summary = await run_claimed_job(pipeline_ctx, job)

        assert summary["outcome"] == "missing"

    async def test_lost_lease(self, pipeline_ctx, session_factory, unit):
        await add_pdf_section(session_factory, unit.id)
        store = pipeline_ctx.job_store
        await store.enqueue("embed", unit.id)
        job = await store.claim(WORKER)
        job.locked_by = "another-worker"

        summary = await run_claimed_job(pipeline_ctx, job)

        assert summary["outcome"] == "lease_lost"
        assert [j.job_type for j in await store.list_for_unit(unit.id)] == ["embed"]


@pytest.mark.asyncio
class TestRunQueueTick:

    async def test_idle(self, pipeline_ctx):
        tick = await run_queue_tick(pipeline_ctx, WORKER, batch_size=1)
        assert tick["claimed"] == 0
        assert tick["results"] == []

    async def test_runs_claimed_job(self, pipeline_ctx, unit):
        await pipeline_ctx.job_store.enqueue("aggregate", unit.id)

        tick = await run_queue_tick(pipeline_ctx, WORKER, batch_size=1)

        assert tick["claimed"] == 1
        assert tick["results"][0]["outcome"] == "failed"
        assert tick["results"][0]["error"] == "No segments stored for aggregation"

    async def test_crashed_run_keeps_lease(self, pipeline_ctx, unit):
        created = await pipeline_ctx.job_store.enqueue("embed", unit.id)

        with patch(
            "studyflow.services.pipeline.dispatcher.run_claimed_job",
            AsyncMock(side_effect=RuntimeError("database went away")),
        ):
            tick = await run_queue_tick(pipeline_ctx, WORKER, batch_size=1)

        assert tick["results"][0]["outcome"] == "crashed"
        job = await pipeline_ctx.job_store.get(created.job.id)
        assert job.status == "processing"
        assert job.locked_by == WORKER
