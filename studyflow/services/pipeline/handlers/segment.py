"""
Segment stage: split the unit into lectures (sub-topics).

The model sees the opening text of every section, prefixed with its index,
and answers with the index where each lecture starts:

    {"lectures": [{"title": "Cell structure", "start_section": 0},
                  {"title": "Mitosis", "start_section": 7}]}

Lectures become contiguous, non-overlapping section ranges covering the
whole unit. One analyze job (and later one quiz job) runs per segment.
"""

from typing import Any, Optional, Sequence

from studyflow.core.errors import ErrorKind, classify_exception
from studyflow.models import DocumentSection, Job, JobType, OutputKind, PipelineStage
from studyflow.schemas.jobs import SegmentPayload
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.handlers.base import StageHandler
from studyflow.services.pipeline.outputs import load_study_sections, save_output
from studyflow.services.pipeline.results import Error, StageResult, Success
from studyflow.services.units import get_unit

# Below this much text the unit is one lecture; no model call
MIN_SEGMENTABLE_CHARS = 4000
MAX_SEGMENTS = 50
SECTION_PREVIEW_CHARS = 600

SEGMENT_SYSTEM_PROMPT = (
    "You organize study material into lectures. Answer with JSON only, no prose."
)

SEGMENT_PROMPT = """The study material below is split into numbered sections ([index] text).
Identify where each lecture, chapter or major topic starts.

Rules:
- Cover the material from the first section to the last, in order.
- Use the title as written in the material when there is one.
- Do not treat a table of contents or preface as a lecture.
- start_section is the index of the section where the lecture begins.

Answer with JSON in exactly this shape:
{{"lectures": [{{"title": "...", "start_section": 0}}]}}

Material:
{context}"""


def build_segment_context(sections: Sequence[DocumentSection], max_chars: int) -> str:
    """``[i] text`` lines for the model, cut at ``max_chars`` in total."""
    lines: list[str] = []
    used = 0
    for index, section in enumerate(sections):
        line = f"[{index}] {section.content[:SECTION_PREVIEW_CHARS]}"
        if used + len(line) > max_chars and lines:
            break
        lines.append(line)
        used += len(line) + 1
    return "\n".join(lines)


def _as_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def build_segments(lectures: Any, section_count: int, default_title: str) -> list[dict[str, Any]]:
    """
    Turn the model's lecture starts into contiguous section ranges.

    Entries without a title or a usable start index are ignored, starts are
    clamped into range and de-duplicated, and the first lecture always
    starts at section 0. Falls back to one segment over everything.
    """
    if section_count <= 0:
        return []

    starts: dict[int, str] = {}
    for entry in lectures if isinstance(lectures, list) else []:
        if not isinstance(entry, dict):
            continue
        title = str(entry.get("title") or "").strip()
        start = _as_index(entry.get("start_section"))
        if not title or start is None:
            continue
        start = min(max(start, 0), section_count - 1)
        starts.setdefault(start, title)

    ordered = sorted(starts.items())[:MAX_SEGMENTS]
    if not ordered:
        ordered = [(0, default_title)]
    elif ordered[0][0] != 0:
        ordered[0] = (0, ordered[0][1])

    segments = []
    for number, (start, title) in enumerate(ordered):
        end = ordered[number + 1][0] - 1 if number + 1 < len(ordered) else section_count - 1
        segments.append(
            {
                "key": f"lecture-{number + 1}",
                "title": title,
                "start_section": start,
                "end_section": end,
            }
        )
    return segments


class SegmentHandler(StageHandler):
    job_type = JobType.SEGMENT.value
    stage = PipelineStage.SEGMENTING_CONTENT

    async def run(self, ctx: PipelineContext, job: Job, payload: SegmentPayload) -> StageResult:
        async with ctx.session_factory() as session:
            unit = await get_unit(session, job.content_unit_id)
            sections = await load_study_sections(session, job.content_unit_id)

        if not sections:
            return Error(ErrorKind.CONTENT_QUALITY, "No extracted text to segment")

        total_chars = sum(len(s.content) for s in sections)
        lectures: Any = None
        method = "single"

        if total_chars >= MIN_SEGMENTABLE_CHARS and len(sections) > 1:
            context = build_segment_context(sections, ctx.settings.SEGMENT_CONTEXT_CHARS)
            try:
                answer = await ctx.require_completion().complete_json(
                    SEGMENT_PROMPT.format(context=context),
                    system=SEGMENT_SYSTEM_PROMPT,
                )
            except Exception as e:
                if classify_exception(e) is ErrorKind.TRANSIENT_EXTERNAL:
                    raise
                self.logger.warning("segmentation_failed_single_segment", job_id=job.id, error=str(e))
            else:
                lectures = answer.get("lectures") if isinstance(answer, dict) else answer
                method = "ai"

        segments = build_segments(lectures, len(sections), unit.title)
        if method == "ai" and len(segments) == 1 and segments[0]["title"] == unit.title:
            method = "single"

        async with ctx.session_factory() as session:
            await save_output(
                session,
                job.content_unit_id,
                OutputKind.SEGMENTS,
                "all",
                {"segments": segments, "method": method, "section_count": len(sections)},
            )
            await session.commit()

        self.logger.info(
            "segmentation_finished",
            job_id=job.id,
            content_unit_id=job.content_unit_id,
            segments=len(segments),
            method=method,
        )
        return Success({"segments": len(segments), "method": method})
