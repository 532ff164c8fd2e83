"""
Aggregate stage: assemble the study pack and complete the unit.
"""

from typing import Any

from studyflow.core.errors import ErrorKind
from studyflow.models import ContentUnitStatus, Job, JobType, OutputKind, PipelineStage
from studyflow.schemas.jobs import AggregatePayload
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.handlers.base import StageHandler
from studyflow.services.pipeline.outputs import load_outputs, load_segments
from studyflow.services.pipeline.results import Error, StageResult, Success
from studyflow.services.units import get_unit, set_unit_state

OVERVIEW_LINES_PER_LECTURE = 3


def build_overview(lectures: list[dict[str, Any]]) -> str:
    """First lines of every lecture summary under its title."""
    blocks = []
    for lecture in lectures:
        lines = [
            line.strip()
            for line in lecture["summary"].splitlines()
            if line.strip() and not line.startswith("#") and line.strip() != "---"
        ]
        body = "\n".join(lines[:OVERVIEW_LINES_PER_LECTURE])
        blocks.append(f"## {lecture['title']}\n{body}" if body else f"## {lecture['title']}")
    return "\n\n".join(blocks)


def build_result(
    segments: list[dict[str, Any]],
    analyses: dict[str, dict[str, Any]],
    quizzes: dict[str, dict[str, Any]],
) -> dict[str, Any]:
    lectures = []
    for segment in segments:
        analysis = analyses.get(segment["key"], {})
        quiz = quizzes.get(segment["key"], {})
        lectures.append(
            {
                "key": segment["key"],
                "title": segment["title"],
                "summary": analysis.get("summary", ""),
                "focusPoints": analysis.get("focus_points", []),
                "quizzes": quiz.get("quizzes", []),
                "essayQuestions": quiz.get("essay_questions", []),
                "warnings": analysis.get("warnings", []),
            }
        )
    return {"lectures": lectures, "overview": build_overview(lectures)}


class AggregateHandler(StageHandler):
    job_type = JobType.AGGREGATE.value
    stage = PipelineStage.AGGREGATING

    async def run(self, ctx: PipelineContext, job: Job, payload: AggregatePayload) -> StageResult:
        unit_id = job.content_unit_id

        async with ctx.session_factory() as session:
            segments = await load_segments(session, unit_id)
            if not segments:
                return Error(ErrorKind.PERMANENT_EXTERNAL, "No segments stored for aggregation")

            analyses = await load_outputs(session, unit_id, OutputKind.ANALYSIS)
            quizzes = await load_outputs(session, unit_id, OutputKind.QUIZ)
            result = build_result(segments, analyses, quizzes)

            updated = await set_unit_state(
                session,
                unit_id,
                status=ContentUnitStatus.COMPLETED,
                stage=PipelineStage.COMPLETED,
                result=result,
                error_message=None,
            )
            await session.commit()
            if not updated:
                unit = await get_unit(session, unit_id)
                self.logger.warning("aggregate_unit_not_updated", content_unit_id=unit_id, status=unit.status)

        self.logger.info(
            "unit_aggregated",
            job_id=job.id,
            content_unit_id=unit_id,
            lectures=len(result["lectures"]),
            missing_analyses=sum(1 for s in segments if s["key"] not in analyses),
        )
        return Success({"lectures": len(result["lectures"]), "unit_updated": updated})
