"""
Scheduler boundary: claim → run handler → complete/fail → gate.

    claimed job
        │ parse payload (bad payload: permanent failure)
        │ mark unit stage
        ▼
    handler.run() ─────────────┬─ Success       → complete → readiness gate
        (exceptions are        ├─ NeedsFallback → enqueue fallback → complete
         classified here)      └─ Error         → fail (retry with backoff
                                                  only when transient)

A fallback job is enqueued before the original job completes so the
extract gate never sees a moment with no active extract job.
"""

import asyncio
import os
import socket
import time
import uuid
from typing import Any, Optional

from studyflow.core.errors import (
    JobNotFoundError,
    PayloadValidationError,
    classify_exception,
)
from studyflow.core.logging import get_logger
from studyflow.models import Job
from studyflow.schemas.jobs import parse_payload
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.gates import evaluate_gate
from studyflow.services.pipeline.handlers import get_handler
from studyflow.services.pipeline.results import Error, NeedsFallback, StageResult, Success
from studyflow.services.units import set_unit_state

logger = get_logger(__name__)


def make_worker_id(
    hostname: Optional[str] = None,
    pid: Optional[int] = None,
    task_id: Optional[str] = None,
) -> str:
    """``host:pid:task`` identity written to ``locked_by``."""
    return f"{hostname or socket.gethostname()}:{pid or os.getpid()}:{task_id or uuid.uuid4().hex[:12]}"


async def _run_handler(ctx: PipelineContext, job: Job, payload: Any) -> StageResult:
    handler = get_handler(job.job_type)

    async with ctx.session_factory() as session:
        await set_unit_state(session, job.content_unit_id, stage=handler.stage)
        await session.commit()

    try:
        return await handler.run(ctx, job, payload)
    except Exception as e:
        kind = classify_exception(e)
        logger.error(
            "stage_handler_raised",
            job_id=job.id,
            job_type=job.job_type,
            error_kind=kind.value,
            error=str(e),
            exc_info=True,
        )
        return Error(kind, str(e) or type(e).__name__)


async def run_claimed_job(ctx: PipelineContext, job: Job) -> dict[str, Any]:
    """
    Run one claimed job to a recorded outcome.

    Returns a summary dict ``{"job_id", "job_type", "outcome", ...}``.
    """
    log = logger.bind(job_id=job.id, job_type=job.job_type, content_unit_id=job.content_unit_id)
    summary: dict[str, Any] = {"job_id": job.id, "job_type": job.job_type}
    store = ctx.job_store
    started = time.monotonic()

    try:
        payload = parse_payload(job.job_type, job.payload)
        get_handler(job.job_type)
    except PayloadValidationError as e:
        log.error("job_payload_invalid", error=str(e))
        failed = await store.fail(job.id, str(e), retryable=False)
        return {**summary, "outcome": failed.status, "error": str(e)}

    result = await _run_handler(ctx, job, payload)
    summary["duration_seconds"] = round(time.monotonic() - started, 2)

    try:
        if isinstance(result, Success):
            if not await store.complete(job.id, result.result, worker_id=job.locked_by):
                return {**summary, "outcome": "lease_lost"}
            await store.retry_policy.call(
                evaluate_gate, store, job.content_unit_id, job.job_type, completed_job_id=job.id
            )
            return {**summary, "outcome": "completed"}

        if isinstance(result, NeedsFallback):
            dedupe_key = f"{job.dedupe_key}:{result.dedupe_suffix}" if job.dedupe_key else None
            fallback = await store.enqueue(
                result.job_type,
                job.content_unit_id,
                result.payload,
                dedupe_key=dedupe_key,
            )
            log.info("job_fallback_enqueued", reason=result.reason, fallback_job_id=fallback.job.id)
            completed = await store.complete(
                job.id,
                {"fallback": result.reason, "fallback_job_id": fallback.job.id},
                worker_id=job.locked_by,
            )
            return {
                **summary,
                "outcome": "fallback" if completed else "lease_lost",
                "fallback_job_id": fallback.job.id,
            }

        failed = await store.fail(job.id, result.message, retryable=result.retryable)
        return {**summary, "outcome": failed.status, "error": result.message, "error_kind": result.kind.value}

    except JobNotFoundError:
        # Unit purged while the job was running
        log.warning("job_vanished")
        return {**summary, "outcome": "missing"}


async def run_queue_tick(
    ctx: PipelineContext,
    worker_id: str,
    batch_size: Optional[int] = None,
) -> dict[str, Any]:
    """
    Claim up to ``batch_size`` jobs and run them concurrently.

    Jobs whose run raises (database trouble, not handler errors) keep their
    lease and are picked up by the recovery sweep.
    """
    batch_size = batch_size or ctx.settings.QUEUE_BATCH_SIZE

    jobs: list[Job] = []
    for _ in range(batch_size):
        job = await ctx.job_store.claim(worker_id)
        if job is None:
            break
        jobs.append(job)

    if not jobs:
        logger.debug("queue_tick_idle", worker_id=worker_id)
        return {"worker_id": worker_id, "claimed": 0, "results": []}

    outcomes = await asyncio.gather(*(run_claimed_job(ctx, job) for job in jobs), return_exceptions=True)

    results = []
    for job, outcome in zip(jobs, outcomes):
        if isinstance(outcome, BaseException):
            logger.error("job_run_crashed", job_id=job.id, job_type=job.job_type, error=str(outcome))
            results.append({"job_id": job.id, "job_type": job.job_type, "outcome": "crashed", "error": str(outcome)})
        else:
            results.append(outcome)

    logger.info("queue_tick_finished", worker_id=worker_id, claimed=len(jobs))
    return {"worker_id": worker_id, "claimed": len(jobs), "results": results}
