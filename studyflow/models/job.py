"""
Job Store Model

``pipeline_jobs`` is the only source of truth for scheduling state. Workers
never coordinate in memory; they claim rows with conditional updates.

Job lifecycle:
--------------
    pending ──claim──▶ processing ──complete──▶ completed
       ▲                   │
       └──fail (retry)─────┤
                           ├──fail (permanent)──▶ failed
                           └──fail (exhausted)──▶ dead

Terminal jobs (completed, failed, dead) are never revived by the scheduler;
only an operator reset moves them back to pending.

Invariants:
-----------
- At most one non-terminal job per ``dedupe_key`` (partial unique index).
- ``processing`` implies ``locked_by`` is set; a processing row without a
  lock whose ``updated_at`` is older than the lease is an orphan.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from studyflow.db.base import BaseModel, JSONType, String20, String255


class JobStatus(str, enum.Enum):
    """Scheduling state of a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.DEAD.value)


class JobType(str, enum.Enum):
    """Pipeline stages. Each has its own payload schema (see schemas.jobs)."""

    EXTRACT = "extract"
    EMBED = "embed"
    SEGMENT = "segment"
    ANALYZE = "analyze"
    QUIZ = "quiz"
    AGGREGATE = "aggregate"


# Concurrency category per job type; ceilings live in settings.concurrency_limits
JOB_CATEGORIES: dict[str, str] = {
    JobType.EXTRACT.value: "extract",
    JobType.EMBED.value: "embedding",
    JobType.SEGMENT.value: "analysis",
    JobType.ANALYZE.value: "analysis",
    JobType.QUIZ.value: "quiz",
    JobType.AGGREGATE.value: "aggregate",
}


class Job(BaseModel):
    """
    A unit of pipeline work for one content unit.

    payload (JSON) is validated against the schema for ``job_type`` when the
    job is claimed, for example an extract job:

        {"job_type": "extract", "source_file_id": 3, "file_path": "u/1/notes.pdf",
         "file_type": "pdf", "content_hash": "...", "method": "vision"}
    """

    __tablename__ = "pipeline_jobs"

    content_unit_id: Mapped[int] = mapped_column(
        ForeignKey("content_units.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    job_type: Mapped[str] = mapped_column(
        String20,
        nullable=False,
        comment="extract, embed, segment, analyze, quiz, aggregate"
    )

    status: Mapped[str] = mapped_column(
        String20,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending, processing, completed, failed, dead"
    )

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )

    attempt_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Failed attempts so far"
    )

    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=5,
    )

    locked_by: Mapped[Optional[str]] = mapped_column(
        String255,
        nullable=True,
        comment="Worker identity holding the lease"
    )

    locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Lease start; stale after JOB_LEASE_SECONDS"
    )

    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Not claimable before this time"
    )

    dedupe_key: Mapped[Optional[str]] = mapped_column(
        String255,
        nullable=True,
        comment="Unique among pending/processing jobs"
    )

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        # Claim scan: oldest pending job whose backoff has elapsed
        Index("ix_pipeline_jobs_claim", "status", "next_retry_at", "created_at"),
        # Readiness gates count siblings by unit and type
        Index("ix_pipeline_jobs_unit_type_status", "content_unit_id", "job_type", "status"),
        Index(
            "uq_pipeline_jobs_active_dedupe_key",
            "dedupe_key",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing') AND dedupe_key IS NOT NULL"),
            sqlite_where=text("status IN ('pending', 'processing') AND dedupe_key IS NOT NULL"),
        ),
    )

    @property
    def category(self) -> str:
        return JOB_CATEGORIES.get(self.job_type, self.job_type)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"Job(id={self.id}, type={self.job_type}, status={self.status}, unit={self.content_unit_id})"
