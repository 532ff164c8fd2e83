"""
Readiness gates.

The pipeline per content unit is a DAG:

    extract ×N ──▶ embed ──▶ segment ──▶ analyze ×M ──▶ quiz ×M ──▶ aggregate

When a stage-K job completes, the gate counts the unit's other stage-K jobs
that are still pending/processing. Only when none remain is stage K+1
enqueued. Several siblings completing at the same moment may all see zero;
the dedupe key (and ``include_completed``) turns every enqueue after the
first into a no-op, so each downstream job is created exactly once.

Per-segment stages (analyze, quiz) are inserted as one transaction, and
their own gate additionally waits until every segment has a completed job,
so a fan-out is never observed half-built.

The completing job's status must be committed before the gate runs,
otherwise two last siblings could each count the other as active. A worker
cut off between the two leaves the unit with no active job;
``resume_stalled_units`` (run by the recovery sweep) re-evaluates the gate
of the furthest completed stage for such units.
"""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import aliased

from studyflow.core.logging import get_logger
from studyflow.models import ACTIVE_STATUSES, ContentUnit, ContentUnitStatus, Job, JobStatus, JobType
from studyflow.schemas.jobs import (
    AggregatePayload,
    AnalyzePayload,
    EmbedPayload,
    QuizPayload,
    SegmentPayload,
)
from studyflow.services.pipeline.outputs import load_segments
from studyflow.services.queue.job_store import EnqueueResult, JobStore
from studyflow.services.units import is_unit_failed

logger = get_logger(__name__)

STAGE_ORDER = [
    JobType.EXTRACT.value,
    JobType.EMBED.value,
    JobType.SEGMENT.value,
    JobType.ANALYZE.value,
    JobType.QUIZ.value,
    JobType.AGGREGATE.value,
]
NEXT_STAGE = dict(zip(STAGE_ORDER, STAGE_ORDER[1:]))
PER_SEGMENT_STAGES = (JobType.ANALYZE.value, JobType.QUIZ.value)


def dedupe_key(content_unit_id: int, job_type: str, key: Optional[str] = None) -> str:
    """unit:{id}:{job_type}[:{key}]"""
    base = f"unit:{content_unit_id}:{job_type}"
    return f"{base}:{key}" if key else base


def _segment_payload(job_type: str, segment: dict[str, Any]) -> AnalyzePayload | QuizPayload:
    if job_type == JobType.ANALYZE.value:
        return AnalyzePayload(
            segment_key=segment["key"],
            title=segment["title"],
            start_section=segment["start_section"],
            end_section=segment["end_section"],
        )
    return QuizPayload(segment_key=segment["key"], title=segment["title"])


async def evaluate_gate(
    store: JobStore,
    content_unit_id: int,
    completed_type: str,
    completed_job_id: Optional[int] = None,
) -> list[EnqueueResult]:
    """
    Enqueue the next stage if no sibling of ``completed_type`` is active.

    Returns the enqueue results (created or deduplicated); empty when the
    gate is still closed, the unit has failed, or there is no next stage.
    """
    next_type = NEXT_STAGE.get(completed_type)
    if next_type is None:
        return []

    async with store.session_factory() as session:
        if await is_unit_failed(session, content_unit_id):
            logger.info("gate_skipped_unit_failed", content_unit_id=content_unit_id, stage=completed_type)
            return []

    remaining = await store.count_active(content_unit_id, completed_type, exclude_job_id=completed_job_id)
    if remaining:
        logger.debug("gate_waiting", content_unit_id=content_unit_id, stage=completed_type, remaining=remaining)
        return []

    segments: list[dict[str, Any]] = []
    if completed_type in PER_SEGMENT_STAGES or next_type in PER_SEGMENT_STAGES:
        async with store.session_factory() as session:
            segments = await load_segments(session, content_unit_id)
        if not segments:
            logger.warning("gate_no_segments", content_unit_id=content_unit_id, stage=completed_type)
            return []

    if completed_type in PER_SEGMENT_STAGES:
        expected = [dedupe_key(content_unit_id, completed_type, s["key"]) for s in segments]
        done = await store.count_completed(content_unit_id, completed_type, dedupe_keys=expected)
        if done < len(expected):
            logger.debug(
                "gate_waiting_for_segments",
                content_unit_id=content_unit_id,
                stage=completed_type,
                completed=done,
                expected=len(expected),
            )
            return []

    if next_type in PER_SEGMENT_STAGES:
        results = await store.enqueue_many(
            next_type,
            content_unit_id,
            [
                (_segment_payload(next_type, segment), dedupe_key(content_unit_id, next_type, segment["key"]))
                for segment in segments
            ],
            include_completed=True,
        )
    else:
        payload = {
            JobType.EMBED.value: EmbedPayload(),
            JobType.SEGMENT.value: SegmentPayload(),
            JobType.AGGREGATE.value: AggregatePayload(),
        }[next_type]
        results = [
            await store.enqueue(
                next_type,
                content_unit_id,
                payload,
                dedupe_key=dedupe_key(content_unit_id, next_type),
                include_completed=True,
            )
        ]

    created = sum(1 for r in results if r.created)
    logger.info(
        "gate_opened",
        content_unit_id=content_unit_id,
        completed_stage=completed_type,
        next_stage=next_type,
        enqueued=created,
        deduplicated=len(results) - created,
    )
    return results


async def resume_stalled_units(store: JobStore) -> dict[int, int]:
    """
    Re-run the gate of units that stopped between two stages.

    A unit is stalled when it is still in progress (processing/embedded),
    has no pending or processing job, and has completed jobs. Its furthest
    completed stage is gated again; dedupe keys make this a no-op for units
    that already advanced.

    Returns:
        {content_unit_id: jobs created} for units that moved on
    """
    active_job = aliased(Job)
    has_active = (
        select(active_job.id)
        .where(active_job.content_unit_id == ContentUnit.id, active_job.status.in_(ACTIVE_STATUSES))
        .exists()
    )

    async with store.session_factory() as session:
        rows = (
            await session.execute(
                select(ContentUnit.id, Job.job_type)
                .join(Job, Job.content_unit_id == ContentUnit.id)
                .where(
                    ContentUnit.status.in_(
                        (ContentUnitStatus.PROCESSING.value, ContentUnitStatus.EMBEDDED.value)
                    ),
                    Job.status == JobStatus.COMPLETED.value,
                    ~has_active,
                )
                .distinct()
            )
        ).all()

    furthest: dict[int, str] = {}
    for content_unit_id, job_type in rows:
        current = furthest.get(content_unit_id)
        if current is None or STAGE_ORDER.index(job_type) > STAGE_ORDER.index(current):
            furthest[content_unit_id] = job_type

    resumed: dict[int, int] = {}
    for content_unit_id, stage in furthest.items():
        results = await evaluate_gate(store, content_unit_id, stage)
        created = sum(1 for r in results if r.created)
        if created:
            resumed[content_unit_id] = created
            logger.warning("stalled_unit_resumed", content_unit_id=content_unit_id, stage=stage, enqueued=created)
    return resumed
