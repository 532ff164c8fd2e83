"""
Analyze stage: one lecture's summary and focus points.

Large lectures are summarized in overlapping paragraph batches; the batch
summaries are reconciled by the summary merger. When the unit carries
enough narration, the focus matcher marks which passages the narrator
emphasized and the summary prompt receives them as extra context.
"""

from typing import Any, Optional

from sqlalchemy import func, select

from studyflow.core.errors import ErrorKind, classify_exception
from studyflow.models import DocumentSection, Job, JobType, OutputKind, PipelineStage, SourceType
from studyflow.schemas.jobs import AnalyzePayload
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.handlers.base import StageHandler
from studyflow.services.pipeline.outputs import load_study_sections, save_output, sections_text
from studyflow.services.pipeline.results import StageResult, Success
from studyflow.services.processors.chunker import batch_paragraphs, filter_noise_paragraphs, split_paragraphs
from studyflow.services.processors.focus import FocusResult
from studyflow.services.processors.summary_merge import merge_summaries

FOCUS_POINT_COUNT = 8
FOCUS_PASSAGE_CHARS = 800

SUMMARY_SYSTEM_PROMPT = (
    "You write study summaries. Keep the language of the material. Use '## ' "
    "headings for each topic and one fact per line below it. Do not invent content."
)

SUMMARY_PROMPT = """Summarize part {part} of {parts} of the lecture "{title}".
Keep every definition, rule, formula and example; drop repetition.
{focus}
Material:
{text}"""

FOCUS_PROMPT = """The narrator of the lecture "{title}" emphasized the passages below.
Write {count} focus points a student must master, as JSON:
{{"focus_points": [{{"title": "...", "details": "..."}}]}}

Emphasized passages:
{passages}

Narrator excerpts:
{excerpts}"""


def build_focus_context(focus: Optional[FocusResult]) -> str:
    if focus is None or (not focus.sections and not focus.image_context):
        return ""
    parts = []
    if focus.sections:
        passages = "\n".join(f"- {s.content[:FOCUS_PASSAGE_CHARS]}" for s in focus.sections)
        parts.append(f"\nThe narrator emphasized these passages; give them extra detail:\n{passages}\n")
    if focus.audio_excerpts:
        excerpts = "\n".join(f"- {e['content']}" for e in focus.audio_excerpts)
        parts.append(f"Narrator excerpts:\n{excerpts}\n")
    if focus.image_context:
        parts.append(f"Text from photographed notes:\n{focus.image_context}\n")
    return "".join(parts)


def restrict_focus(focus: FocusResult, section_ids: set[int]) -> FocusResult:
    """Keep the focused passages that belong to this lecture."""
    sections = [s for s in focus.sections if s.id in section_ids]
    audio_ids = {audio_id for s in sections for audio_id in s.matched_audio_ids}
    return FocusResult(
        sections=sections,
        audio_excerpts=[e for e in focus.audio_excerpts if e["id"] in audio_ids] if sections else [],
        image_context=focus.image_context,
        stats=focus.stats,
    )


def normalize_focus_points(answer: Any, focus: FocusResult) -> list[dict[str, Any]]:
    points = answer
    if isinstance(answer, dict):
        points = answer.get("focus_points") or answer.get("focusPoints")
    evidence = {
        "pdf_section_ids": [s.id for s in focus.sections],
        "audio_section_ids": sorted({a for s in focus.sections for a in s.matched_audio_ids}),
    }
    normalized = []
    for point in points if isinstance(points, list) else []:
        if isinstance(point, str):
            point = {"title": point, "details": ""}
        if not isinstance(point, dict) or not point.get("title"):
            continue
        normalized.append(
            {
                "title": str(point["title"]).strip(),
                "details": str(point.get("details") or "").strip(),
                "evidence": evidence,
            }
        )
    return normalized


class AnalyzeHandler(StageHandler):
    job_type = JobType.ANALYZE.value
    stage = PipelineStage.GENERATING_SUMMARY

    async def run(self, ctx: PipelineContext, job: Job, payload: AnalyzePayload) -> StageResult:
        unit_id = job.content_unit_id

        async with ctx.session_factory() as session:
            sections = await load_study_sections(session, unit_id)
            audio_chars = await session.scalar(
                select(func.coalesce(func.sum(func.length(DocumentSection.content)), 0)).where(
                    DocumentSection.content_unit_id == unit_id,
                    DocumentSection.source_type == SourceType.AUDIO.value,
                )
            ) or 0

        lecture = sections[payload.start_section:payload.end_section + 1]
        text = sections_text(lecture)

        paragraphs = filter_noise_paragraphs(split_paragraphs(text))
        batches = batch_paragraphs(paragraphs)
        if not batches and text.strip():
            batches = [text]

        focus: Optional[FocusResult] = None
        if audio_chars > ctx.settings.FOCUS_MIN_AUDIO_CHARS:
            focus = restrict_focus(await ctx.focus_matcher().match(unit_id), {s.id for s in lecture})

        completion = ctx.require_completion()
        focus_context = build_focus_context(focus)
        summaries = []
        for number, batch in enumerate(batches, start=1):
            summaries.append(
                await completion.complete_text(
                    SUMMARY_PROMPT.format(
                        part=number,
                        parts=len(batches),
                        title=payload.title,
                        focus=focus_context,
                        text=batch,
                    ),
                    system=SUMMARY_SYSTEM_PROMPT,
                )
            )

        merged = merge_summaries(summaries, source_chars=len(text))
        focus_points = await self._focus_points(ctx, job, payload, focus)

        data = {
            "title": payload.title,
            "summary": merged.text,
            "focus_points": focus_points,
            "warnings": merged.warnings,
            "dropped_sections": merged.dropped_sections,
            "focus_stats": focus.stats.to_dict() if focus else None,
            "source_chars": len(text),
            "batches": len(batches),
        }
        async with ctx.session_factory() as session:
            await save_output(session, unit_id, OutputKind.ANALYSIS, payload.segment_key, data)
            await session.commit()

        self.logger.info(
            "analysis_finished",
            job_id=job.id,
            content_unit_id=unit_id,
            segment=payload.segment_key,
            batches=len(batches),
            summary_chars=len(data["summary"]),
            focus_points=len(focus_points),
            warnings=len(merged.warnings),
        )
        return Success({"segment_key": payload.segment_key, "summary_chars": len(data["summary"])})

    async def _focus_points(
        self,
        ctx: PipelineContext,
        job: Job,
        payload: AnalyzePayload,
        focus: Optional[FocusResult],
    ) -> list[dict[str, Any]]:
        if focus is None or not focus.sections:
            return []
        prompt = FOCUS_PROMPT.format(
            title=payload.title,
            count=FOCUS_POINT_COUNT,
            passages="\n".join(f"- {s.content[:FOCUS_PASSAGE_CHARS]}" for s in focus.sections),
            excerpts="\n".join(f"- {e['content']}" for e in focus.audio_excerpts) or "-",
        )
        try:
            answer = await ctx.require_completion().complete_json(prompt, system=SUMMARY_SYSTEM_PROMPT)
        except Exception as e:
            if classify_exception(e) is ErrorKind.TRANSIENT_EXTERNAL:
                raise
            self.logger.warning("focus_points_failed", job_id=job.id, error=str(e))
            return []
        return normalize_focus_points(answer, focus)
