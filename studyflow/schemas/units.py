"""
Pydantic schemas for content unit endpoints.

These schemas define the request/response structures for creating units,
ingesting source files and reading pipeline status.
"""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from studyflow.schemas.jobs import JobRead


# ========================================
# Request Schemas
# ========================================

class UnitCreate(BaseModel):
    """Request schema for creating a content unit."""

    title: str = Field(
        ...,
        description="Display title of the study item",
        min_length=1,
        max_length=255,
        examples=["Biology - Cell Division"]
    )

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be empty")
        return v


class IngestFile(BaseModel):
    """One uploaded file, already stored in object storage."""

    file_path: str = Field(
        ...,
        description="Object storage path of the uploaded file",
        min_length=1,
        max_length=1000,
        examples=["units/12/chapter-3.pdf"]
    )

    file_name: Optional[str] = Field(
        None,
        description="Original file name (defaults to the last path segment)",
        max_length=255,
    )

    file_type: Optional[str] = Field(
        None,
        description="pdf, document, audio or image; inferred from the extension when omitted",
        examples=["pdf", "audio"]
    )

    content_hash: Optional[str] = Field(
        None,
        description="Hash of the file contents, used to detect duplicate uploads",
        max_length=64,
    )


class IngestRequest(BaseModel):
    """Request schema for registering source files of a unit."""

    files: List[IngestFile] = Field(..., min_length=1)

    force_reextract: bool = Field(
        False,
        description="Purge all derived state of the unit before ingesting"
    )


# ========================================
# Response Schemas
# ========================================

IngestStatus = Literal["queued", "already_queued", "duplicate", "failed"]


class IngestFileResult(BaseModel):
    """Outcome for one file of an ingest request."""

    file_path: str
    status: IngestStatus
    file_type: Optional[str] = None
    source_file_id: Optional[int] = None
    job_id: Optional[int] = None
    error: Optional[str] = None


class IngestResponse(BaseModel):
    content_unit_id: int
    queued: int
    files: List[IngestFileResult]


class UnitRead(BaseModel):
    """Content unit as exposed by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    status: str
    pipeline_stage: Optional[str] = None
    error_message: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class UnitJobsResponse(BaseModel):
    """Unit status together with every job of its pipeline."""

    unit: UnitRead
    jobs: List[JobRead]
    counts: dict[str, int] = Field(default_factory=dict, description="Jobs per status")


class RetryResponse(BaseModel):
    content_unit_id: int
    reset_job_ids: List[int]


class PurgeResponse(BaseModel):
    content_unit_id: int
    deleted: dict[str, int]


class SearchHit(BaseModel):
    """One section returned by hybrid search."""

    section_id: int
    content: str
    source_type: str
    chunk_index: int
    final_score: float = Field(..., description="Reciprocal rank fusion score")
    semantic_rank: Optional[int] = None
    keyword_rank: Optional[int] = None
    semantic_score: float = 0.0
    keyword_score: float = 0.0


class SearchResponse(BaseModel):
    content_unit_id: int
    query: str
    count: int
    results: List[SearchHit]
