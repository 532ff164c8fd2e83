"""
Database Models

Import models from here so every table is registered on ``Base.metadata``
(Alembic autogenerate and ``create_all`` depend on it):

    from studyflow.models import ContentUnit, DocumentSection, Job
"""

from studyflow.models.content import (
    ContentUnit,
    ContentUnitStatus,
    DocumentSection,
    OutputKind,
    PipelineStage,
    SourceFile,
    SourceType,
    StageOutput,
)
from studyflow.models.job import (
    ACTIVE_STATUSES,
    JOB_CATEGORIES,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    JobType,
)

__all__ = [
    # Content models
    "ContentUnit",
    "SourceFile",
    "DocumentSection",
    "StageOutput",
    # Job store
    "Job",
    # Enums
    "ContentUnitStatus",
    "PipelineStage",
    "SourceType",
    "OutputKind",
    "JobStatus",
    "JobType",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "JOB_CATEGORIES",
]
