"""
Tests for file ingestion.
"""

import pytest

from studyflow.core.errors import ContentUnitNotFoundError, JobStateError
from studyflow.schemas.units import IngestFile
from studyflow.services.pipeline.ingest import compute_content_hash, infer_file_type, ingest_files
from studyflow.services.units import get_unit, mark_unit_failed

WORKER = "worker-1:1:ingest"


class TestInferFileType:

    @pytest.mark.parametrize(
        "path,declared,expected",
        [
            ("units/1/Chapter-3.PDF", None, "pdf"),
            ("units/1/lecture.m4a", None, "audio"),
            ("units/1/board.jpeg", None, "image"),
            ("units/1/notes.bin", "document", "pdf"),
            ("units/1/recording", " Audio ", "audio"),
            ("units/1/slides.pptx", None, None),
            ("units/1/slides.pptx", "spreadsheet", None),
        ],
    )
    def test_inference(self, path, declared, expected):
        assert infer_file_type(path, declared) == expected


class TestContentHash:

    def test_stable_and_scoped(self):
        first = compute_content_hash(1, "units/1/a.pdf", "pdf")
        assert first == compute_content_hash(1, "units/1/a.pdf", "pdf")
        assert first != compute_content_hash(2, "units/1/a.pdf", "pdf")
        assert len(first) == 64


@pytest.mark.asyncio
class TestIngestFiles:

    async def test_queues_one_extract_per_file(self, job_store, session_factory, unit):
        response = await ingest_files(
            job_store,
            unit.id,
            [
                IngestFile(file_path="/units/1/notes.pdf?token=abc"),
                IngestFile(file_path="units/1/lecture.mp3"),
                IngestFile(file_path="units/1/slides.pptx"),
            ],
        )

        assert response.queued == 2
        assert [f.status for f in response.files] == ["queued", "queued", "failed"]
        assert response.files[0].file_path == "units/1/notes.pdf"
        assert "Unsupported file type" in response.files[2].error

        jobs = await job_store.list_for_unit(unit.id)
        assert [j.payload["method"] for j in jobs] == ["vision", "transcription"]
        assert jobs[0].dedupe_key == f"unit:{unit.id}:extract:{jobs[0].payload['content_hash']}"

        async with session_factory() as session:
            row = await get_unit(session, unit.id)
        assert row.status == "processing"
        assert row.pipeline_stage == "queued"

    async def test_repeat_upload_is_duplicate(self, job_store, unit):
        files = [IngestFile(file_path="units/1/notes.pdf", content_hash="abc123")]
        await ingest_files(job_store, unit.id, files)

        again = await ingest_files(job_store, unit.id, files)

        assert again.queued == 0
        assert again.files[0].status == "duplicate"
        assert len(await job_store.list_for_unit(unit.id)) == 1

    async def test_duplicates_after_extraction_advance_pipeline(self, job_store, unit):
        files = [IngestFile(file_path="units/1/notes.pdf")]
        first = await ingest_files(job_store, unit.id, files)
        await job_store.claim(WORKER)
        await job_store.complete(first.files[0].job_id)

        await ingest_files(job_store, unit.id, files)

        assert [j.job_type for j in await job_store.list_for_unit(unit.id)] == ["extract", "embed"]

    async def test_new_file_past_extraction_is_rejected(self, job_store, unit):
        await ingest_files(job_store, unit.id, [IngestFile(file_path="units/1/notes.pdf")])
        await job_store.claim(WORKER)
        embed = await job_store.enqueue("embed", unit.id)

        with pytest.raises(JobStateError):
            await ingest_files(job_store, unit.id, [IngestFile(file_path="units/1/late.pdf")])

        jobs = await job_store.list_for_unit(unit.id)
        assert [j.id for j in jobs if j.job_type == "embed"] == [embed.job.id]
        assert len(jobs) == 2

    async def test_repeat_upload_past_extraction_is_still_duplicate(self, job_store, unit):
        files = [IngestFile(file_path="units/1/notes.pdf")]
        await ingest_files(job_store, unit.id, files)
        await job_store.enqueue("embed", unit.id)

        again = await ingest_files(job_store, unit.id, files)

        assert again.files[0].status == "duplicate"

    async def test_force_reextract_accepts_new_file_past_extraction(self, job_store, unit):
        await ingest_files(job_store, unit.id, [IngestFile(file_path="units/1/notes.pdf")])
        await job_store.enqueue("embed", unit.id)

        response = await ingest_files(
            job_store, unit.id, [IngestFile(file_path="units/1/late.pdf")], force_reextract=True
        )

        assert response.queued == 1
        assert [j.job_type for j in await job_store.list_for_unit(unit.id)] == ["extract"]

    async def test_force_reextract_purges_first(self, job_store, unit):
        files = [IngestFile(file_path="units/1/notes.pdf")]
        await ingest_files(job_store, unit.id, files)

        response = await ingest_files(job_store, unit.id, files, force_reextract=True)

        assert response.files[0].status == "queued"
        assert len(await job_store.list_for_unit(unit.id)) == 1

    async def test_revives_failed_unit(self, job_store, session_factory, unit):
        async with session_factory() as session:
            await mark_unit_failed(session, unit.id, "extract failed")
            await session.commit()

        await ingest_files(job_store, unit.id, [IngestFile(file_path="units/1/more.pdf")])

        async with session_factory() as session:
            row = await get_unit(session, unit.id)
        assert row.status == "processing"
        assert row.error_message is None

    async def test_unknown_unit(self, job_store):
        with pytest.raises(ContentUnitNotFoundError):
            await ingest_files(job_store, 9999, [IngestFile(file_path="units/1/notes.pdf")])
