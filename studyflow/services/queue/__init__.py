"""Durable job queue (pipeline_jobs) with lease-based claiming."""

from studyflow.services.queue.job_store import (
    ORPHAN_MESSAGE,
    STALE_LEASE_MESSAGE,
    EnqueueResult,
    JobStore,
    RecoveryReport,
)

__all__ = [
    "JobStore",
    "EnqueueResult",
    "RecoveryReport",
    "STALE_LEASE_MESSAGE",
    "ORPHAN_MESSAGE",
]
