"""
Job payload schemas.

The ``payload`` column is a tagged union keyed by ``job_type``. Payloads are
built through these models when enqueuing and validated again when a job is
claimed, so a handler always receives the variant for its own stage.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from studyflow.core.errors import PayloadValidationError


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ExtractPayload(_Payload):
    job_type: Literal["extract"] = "extract"
    source_file_id: int
    file_path: str
    file_name: str
    file_type: Literal["pdf", "audio", "image"]
    content_hash: str
    method: Literal["vision", "text_layer", "transcription"] = "vision"


class EmbedPayload(_Payload):
    job_type: Literal["embed"] = "embed"


class SegmentPayload(_Payload):
    job_type: Literal["segment"] = "segment"


class AnalyzePayload(_Payload):
    job_type: Literal["analyze"] = "analyze"
    segment_key: str
    title: str
    start_section: int = Field(ge=0)
    end_section: int = Field(ge=0)


class QuizPayload(_Payload):
    job_type: Literal["quiz"] = "quiz"
    segment_key: str
    title: str


class AggregatePayload(_Payload):
    job_type: Literal["aggregate"] = "aggregate"


JobPayload = Annotated[
    Union[
        ExtractPayload,
        EmbedPayload,
        SegmentPayload,
        AnalyzePayload,
        QuizPayload,
        AggregatePayload,
    ],
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_payload(job_type: str, payload: Optional[dict[str, Any]]) -> JobPayload:
    """
    Validate a stored payload against the schema for ``job_type``.

    Raises:
        PayloadValidationError: unknown job type, mismatched tag or bad fields
    """
    data = dict(payload or {})
    tag = data.setdefault("job_type", job_type)
    if tag != job_type:
        raise PayloadValidationError(f"Payload tagged {tag!r} on a {job_type!r} job")
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise PayloadValidationError(f"Invalid {job_type} payload: {e.errors()}") from e


# ================================
# API schemas
# ================================

class JobRead(BaseModel):
    """Job status as exposed by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    content_unit_id: int
    job_type: str
    status: str
    attempt_count: int
    max_attempts: int
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
