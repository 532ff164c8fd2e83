"""
Celery tasks driving the content pipeline.

This module contains the periodic tasks that move work through the job
store:
- process_queue: claim a batch of jobs and run their stage handlers
- recover_stale_jobs: reclaim jobs whose worker died or lost its lease,
  then restart units that stopped between two stages
- get_queue_stats: queue depth per status/type for monitoring

Scheduling state lives in ``pipeline_jobs``; Celery only provides the
clock and the worker processes. Each task builds its own PipelineContext
(fresh engine, clients) and disposes of it before returning.
"""

import asyncio
import concurrent.futures
import socket
from typing import Any, Optional

from celery import Task

from studyflow.core.logging import get_logger
from studyflow.services.pipeline.context import build_pipeline_context
from studyflow.services.pipeline.dispatcher import make_worker_id, run_queue_tick
from studyflow.services.pipeline.gates import resume_stalled_units
from studyflow.workers.celery_app import celery_app

logger = get_logger(__name__)


# ========================================
# Async Helper
# ========================================

def run_async(coro):
    """
    Run async coroutine, handling both event loop and no event loop scenarios.

    - Production (Celery worker with no event loop): asyncio.run()
    - Tests (pytest with a running event loop): run in a separate thread
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as executor:
        return executor.submit(asyncio.run, coro).result()


# ========================================
# Base Task Class
# ========================================

class PipelineTask(Task):
    """
    Base task class for infrastructure failures (broker, database).

    Stage failures never reach this layer: they are recorded on the job
    row by the dispatcher and retried through ``next_retry_at``.
    """

    autoretry_for = (Exception,)
    retry_kwargs = {'max_retries': 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True


# ========================================
# Tasks
# ========================================

@celery_app.task(
    base=PipelineTask,
    name='pipeline.process_queue',
    bind=True,
)
def process_queue(self, batch_size: Optional[int] = None) -> dict:
    """
    Claim up to ``batch_size`` jobs and run them concurrently.

    Scheduled every QUEUE_POLL_INTERVAL_SECONDS via Celery Beat. Several
    workers may run this at once; claims are exclusive per job.

    Returns:
        {'worker_id': str, 'claimed': int, 'results': [...]}
    """
    worker_id = make_worker_id(hostname=socket.gethostname(), task_id=self.request.id)

    async def _tick() -> dict[str, Any]:
        async with build_pipeline_context() as ctx:
            return await run_queue_tick(ctx, worker_id, batch_size=batch_size)

    return run_async(_tick())


@celery_app.task(
    base=PipelineTask,
    name='pipeline.recover_stale_jobs',
    bind=True,
)
def recover_stale_jobs(self) -> dict:
    """
    Reset or dead-letter jobs whose lease expired, then re-run the gate of
    units left with no active job between two stages.

    Returns:
        {'reset': [job ids], 'dead': [job ids], 'resumed': [unit ids]}
    """
    async def _recover() -> dict[str, Any]:
        async with build_pipeline_context() as ctx:
            report = await ctx.job_store.recover_stale()
            resumed = await resume_stalled_units(ctx.job_store)
        return {'reset': report.reset, 'dead': report.dead, 'resumed': sorted(resumed)}

    return run_async(_recover())


@celery_app.task(
    name='pipeline.get_queue_stats',
    bind=True,
)
def get_queue_stats(self) -> dict:
    """Job counts per status and active jobs per type."""
    async def _stats() -> dict[str, Any]:
        async with build_pipeline_context() as ctx:
            stats = await ctx.job_store.stats()
        logger.info("queue_stats", **stats)
        return stats

    return run_async(_stats())
