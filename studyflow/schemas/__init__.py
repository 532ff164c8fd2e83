"""
Pydantic schemas for request/response validation and job payloads.

Import all schemas here for easy access.
"""

from studyflow.schemas.jobs import (
    AggregatePayload,
    AnalyzePayload,
    EmbedPayload,
    ExtractPayload,
    JobPayload,
    JobRead,
    QuizPayload,
    SegmentPayload,
    parse_payload,
)
from studyflow.schemas.units import (
    IngestFile,
    IngestFileResult,
    IngestRequest,
    IngestResponse,
    PurgeResponse,
    RetryResponse,
    SearchHit,
    SearchResponse,
    UnitCreate,
    UnitJobsResponse,
    UnitRead,
)

__all__ = [
    # Job payloads
    "JobPayload",
    "ExtractPayload",
    "EmbedPayload",
    "SegmentPayload",
    "AnalyzePayload",
    "QuizPayload",
    "AggregatePayload",
    "parse_payload",
    "JobRead",
    # Units
    "UnitCreate",
    "UnitRead",
    "UnitJobsResponse",
    "IngestFile",
    "IngestRequest",
    "IngestFileResult",
    "IngestResponse",
    "RetryResponse",
    "PurgeResponse",
    "SearchHit",
    "SearchResponse",
]
