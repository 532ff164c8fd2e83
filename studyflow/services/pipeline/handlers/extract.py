"""
Extract stage: source file → normalized text → linked sections.

    pdf   vision (Claude document) ──too short / rejected──▶ text_layer (PyMuPDF)
    image vision (Claude image)
    audio transcription (Whisper)

Re-running an extraction replaces the sections previously stored for the
same file, so a retried or fallback job never duplicates content.
"""

from typing import Any

from sqlalchemy import delete, update

from studyflow.core.errors import ErrorKind, classify_exception
from studyflow.db.base import utcnow
from studyflow.models import DocumentSection, Job, JobType, PipelineStage, SourceFile, SourceType
from studyflow.schemas.jobs import ExtractPayload
from studyflow.services.clients.storage import normalize_storage_path
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.handlers.base import StageHandler
from studyflow.services.pipeline.results import Error, NeedsFallback, StageResult, Success
from studyflow.services.processors.chunker import ContentChunker, TextChunk, link_chunks, normalize_text
from studyflow.services.processors.pdf_text import extract_pdf_text_async


class ExtractHandler(StageHandler):
    job_type = JobType.EXTRACT.value
    stage = PipelineStage.EXTRACTING_TEXT

    async def run(self, ctx: PipelineContext, job: Job, payload: ExtractPayload) -> StageResult:
        data = await ctx.download(payload.file_path)

        if payload.file_type == SourceType.AUDIO.value:
            method = "transcription"
            raw = await ctx.require_transcriber().transcribe(data, payload.file_name)
        elif payload.file_type == SourceType.IMAGE.value:
            method = "vision"
            raw = await ctx.require_completion().extract_text_from_image(data, payload.file_name)
        elif payload.method == "text_layer":
            method = "text_layer"
            raw = await extract_pdf_text_async(data)
        else:
            method = "vision"
            try:
                raw = await ctx.require_completion().extract_text_from_pdf(data)
            except Exception as e:
                if classify_exception(e) is ErrorKind.TRANSIENT_EXTERNAL:
                    raise
                self.logger.warning("pdf_vision_rejected", job_id=job.id, file=payload.file_name, error=str(e))
                return self._text_layer_fallback(payload, f"vision extraction failed: {e}")

        text = normalize_text(raw or "")
        min_chars = ctx.settings.EXTRACTION_MIN_CHARS

        if payload.file_type == SourceType.IMAGE.value:
            if len(text) < ctx.settings.IMAGE_MIN_CHARS:
                # Photos without readable text are not an error
                self.logger.info("image_no_text", job_id=job.id, file=payload.file_name, chars=len(text))
                text = ""
        elif len(text) < min_chars:
            if payload.file_type == SourceType.PDF.value and method == "vision":
                return self._text_layer_fallback(payload, f"vision extraction returned {len(text)} characters")
            return Error(
                ErrorKind.CONTENT_QUALITY,
                f"{method} extraction of {payload.file_name} returned {len(text)} characters (minimum {min_chars})",
            )

        chunks = ContentChunker().chunk_text(text, normalize=False) if text else []
        section_ids = await self._store_sections(ctx, job.content_unit_id, payload, chunks, method)

        self.logger.info(
            "extraction_finished",
            job_id=job.id,
            content_unit_id=job.content_unit_id,
            file=payload.file_name,
            method=method,
            chars=len(text),
            sections=len(section_ids),
        )
        return Success({"method": method, "chars": len(text), "sections": len(section_ids)})

    @staticmethod
    def _text_layer_fallback(payload: ExtractPayload, reason: str) -> NeedsFallback:
        return NeedsFallback(
            reason=reason,
            job_type=JobType.EXTRACT.value,
            payload=payload.model_copy(update={"method": "text_layer"}),
        )

    @staticmethod
    async def _store_sections(
        ctx: PipelineContext,
        content_unit_id: int,
        payload: ExtractPayload,
        chunks: list[TextChunk],
        method: str,
    ) -> list[int]:
        """Replace the file's sections with ``chunks`` and link them. Commits."""
        source_path = normalize_storage_path(payload.file_path)

        async with ctx.session_factory() as session:
            await session.execute(
                delete(DocumentSection)
                .where(
                    DocumentSection.content_unit_id == content_unit_id,
                    DocumentSection.source_file_id == source_path,
                )
                .execution_options(synchronize_session=False)
            )

            sections = []
            for chunk in chunks:
                metadata: dict[str, Any] = {
                    **chunk.metadata,
                    "content_hash": payload.content_hash,
                    "extraction_method": method,
                }
                sections.append(
                    DocumentSection(
                        content_unit_id=content_unit_id,
                        source_type=payload.file_type,
                        source_file_id=source_path,
                        chunk_index=chunk.index,
                        content=chunk.content,
                        section_metadata=metadata,
                    )
                )
            session.add_all(sections)
            await session.flush()

            for section, link in zip(sections, link_chunks([s.id for s in sections])):
                section.prev_id = link.prev_id
                section.next_id = link.next_id

            await session.execute(
                update(SourceFile)
                .where(SourceFile.id == payload.source_file_id)
                .values(extraction_method=method, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return [s.id for s in sections]
