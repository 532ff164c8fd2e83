"""
Celery tasks for background processing.
"""

from studyflow.tasks.pipeline_tasks import (
    get_queue_stats,
    process_queue,
    recover_stale_jobs,
)

__all__ = [
    "process_queue",
    "recover_stale_jobs",
    "get_queue_stats",
]
