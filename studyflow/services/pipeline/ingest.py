"""
Ingestion: register uploaded files of a unit and enqueue their extraction.

Each file becomes a ``source_files`` row and one ``extract`` job. The
content hash makes re-uploads of the same file a reported duplicate and
keys the extract job's dedupe key, so a retried request never queues the
same extraction twice.

Once the unit has moved past extraction (any later stage queued, running or
done) new files are refused: their extraction would never reach the
already-built embeddings and segments. ``force_reextract`` purges the unit
and starts over instead.
"""

import hashlib
import posixpath
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studyflow.core.logging import get_logger
from studyflow.core.errors import JobStateError
from studyflow.models import (
    ACTIVE_STATUSES,
    ContentUnitStatus,
    Job,
    JobStatus,
    JobType,
    PipelineStage,
    SourceFile,
    SourceType,
)
from studyflow.schemas.jobs import ExtractPayload
from studyflow.schemas.units import IngestFile, IngestFileResult, IngestResponse
from studyflow.services.clients.storage import normalize_storage_path
from studyflow.services.clients.transcription import SUPPORTED_AUDIO_EXTENSIONS
from studyflow.services.pipeline.gates import dedupe_key, evaluate_gate
from studyflow.services.queue.job_store import JobStore
from studyflow.services.units import get_unit, purge_content_unit, set_unit_state

logger = get_logger(__name__)

PDF_EXTENSIONS = (".pdf",)
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")
TYPE_ALIASES = {"document": SourceType.PDF.value}


def infer_file_type(path: str, declared: Optional[str] = None) -> Optional[str]:
    """pdf / audio / image from the declared type or the extension; None if unsupported."""
    if declared:
        declared = declared.strip().lower()
        declared = TYPE_ALIASES.get(declared, declared)
        if declared in {t.value for t in SourceType}:
            return declared

    extension = posixpath.splitext(path.lower())[1]
    if extension in PDF_EXTENSIONS:
        return SourceType.PDF.value
    if extension in SUPPORTED_AUDIO_EXTENSIONS:
        return SourceType.AUDIO.value
    if extension in IMAGE_EXTENSIONS:
        return SourceType.IMAGE.value
    return None


def compute_content_hash(content_unit_id: int, path: str, file_type: str) -> str:
    return hashlib.sha256(f"{content_unit_id}:{path}:{file_type}".encode("utf-8")).hexdigest()


async def past_extraction(session: AsyncSession, content_unit_id: int) -> bool:
    """True when any job after extract is pending, processing or completed."""
    count = await session.scalar(
        select(func.count(Job.id)).where(
            Job.content_unit_id == content_unit_id,
            Job.job_type != JobType.EXTRACT.value,
            Job.status.in_((*ACTIVE_STATUSES, JobStatus.COMPLETED.value)),
        )
    )
    return bool(count)


async def ingest_files(
    store: JobStore,
    content_unit_id: int,
    files: Sequence[IngestFile],
    force_reextract: bool = False,
) -> IngestResponse:
    """
    Register ``files`` for a unit and enqueue one extract job per new file.

    Per-file problems (unsupported type, duplicate) are reported in the
    result instead of failing the whole request.

    Raises:
        ContentUnitNotFoundError: unknown unit
        JobStateError: a new file for a unit past extraction, without
            ``force_reextract``
    """
    session_factory = store.session_factory

    async with session_factory() as session:
        await get_unit(session, content_unit_id)
        if force_reextract:
            await purge_content_unit(session, content_unit_id)
            locked = False
        else:
            locked = await past_extraction(session, content_unit_id)

    results: list[IngestFileResult] = []
    for file in files:
        path = normalize_storage_path(file.file_path)
        file_type = infer_file_type(path, file.file_type)
        if not path or file_type is None:
            results.append(
                IngestFileResult(
                    file_path=file.file_path,
                    status="failed",
                    error="Empty file path" if not path else f"Unsupported file type: {file.file_type or path}",
                )
            )
            continue

        content_hash = file.content_hash or compute_content_hash(content_unit_id, path, file_type)
        file_name = file.file_name or posixpath.basename(path)

        async with session_factory() as session:
            existing = await session.scalar(
                select(SourceFile.id).where(
                    SourceFile.content_unit_id == content_unit_id,
                    SourceFile.content_hash == content_hash,
                )
            )
            if existing is not None:
                results.append(
                    IngestFileResult(file_path=path, status="duplicate", file_type=file_type, source_file_id=existing)
                )
                continue

            if locked:
                logger.warning("ingest_rejected_past_extraction", content_unit_id=content_unit_id, file_path=path)
                raise JobStateError(
                    f"Content unit {content_unit_id} is past extraction; resend with force_reextract to start over"
                )

            source = SourceFile(
                content_unit_id=content_unit_id,
                file_path=path,
                file_name=file_name,
                file_type=file_type,
                content_hash=content_hash,
            )
            session.add(source)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                results.append(IngestFileResult(file_path=path, status="duplicate", file_type=file_type))
                continue

        enqueued = await store.enqueue(
            JobType.EXTRACT.value,
            content_unit_id,
            ExtractPayload(
                source_file_id=source.id,
                file_path=path,
                file_name=file_name,
                file_type=file_type,
                content_hash=content_hash,
                method="transcription" if file_type == SourceType.AUDIO.value else "vision",
            ),
            dedupe_key=dedupe_key(content_unit_id, JobType.EXTRACT.value, content_hash),
        )
        results.append(
            IngestFileResult(
                file_path=path,
                status="queued" if enqueued.created else "already_queued",
                file_type=file_type,
                source_file_id=source.id,
                job_id=enqueued.job.id,
            )
        )

    queued = sum(1 for r in results if r.status == "queued")

    if queued:
        async with session_factory() as session:
            await set_unit_state(
                session,
                content_unit_id,
                status=ContentUnitStatus.PROCESSING,
                stage=PipelineStage.QUEUED,
                allow_from_failed=True,
                error_message=None,
            )
            await session.commit()
    elif any(r.status == "duplicate" for r in results):
        # Everything was already extracted: make sure the pipeline moves on
        if not await store.count_active(content_unit_id, JobType.EXTRACT.value):
            await evaluate_gate(store, content_unit_id, JobType.EXTRACT.value)

    logger.info(
        "files_ingested",
        content_unit_id=content_unit_id,
        files=len(results),
        queued=queued,
        duplicates=sum(1 for r in results if r.status == "duplicate"),
        failed=sum(1 for r in results if r.status == "failed"),
        force_reextract=force_reextract,
    )
    return IngestResponse(content_unit_id=content_unit_id, queued=queued, files=results)
