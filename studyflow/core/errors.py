"""
Exception hierarchy and failure classification for the pipeline.

    StudyFlowError
    +-- TransientExternalError   (rate limit / 5xx: retried with backoff)
    +-- PermanentExternalError   (other 4xx, malformed output: fail now)
    +-- ContentQualityError      (extraction too weak: try a fallback stage)
    +-- JobExhaustedError        (attempt_count >= max_attempts)
    +-- PayloadValidationError   (job payload does not match its job_type)
    +-- ConfigurationError       (missing API keys, bad settings)
    +-- JobNotFoundError / JobStateError / ContentUnitNotFoundError

Stage handlers and external clients raise these (or let library errors
escape); the dispatcher calls ``classify_exception`` at the scheduler
boundary to decide between backoff-retry, fallback and terminal failure.
"""

import enum
import json
from typing import Optional

import anthropic
import httpx
import openai
from pydantic import ValidationError


class ErrorKind(str, enum.Enum):
    """How a failed unit of work should be treated."""

    TRANSIENT_EXTERNAL = "transient_external"
    PERMANENT_EXTERNAL = "permanent_external"
    CONTENT_QUALITY = "content_quality"
    EXHAUSTED = "exhausted"


class StudyFlowError(Exception):
    """Base exception for all pipeline errors."""

    kind: ErrorKind = ErrorKind.PERMANENT_EXTERNAL

    def __init__(self, message: str = "An unexpected error occurred", provider_name: Optional[str] = None):
        self.message = message
        self.provider_name = provider_name
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider_name:
            return f"[{self.provider_name}] {self.message}"
        return self.message


class TransientExternalError(StudyFlowError):
    """External service temporarily unavailable (429, 5xx, timeouts)."""

    kind = ErrorKind.TRANSIENT_EXTERNAL


class PermanentExternalError(StudyFlowError):
    """External service rejected the request or returned unusable output."""

    kind = ErrorKind.PERMANENT_EXTERNAL


class ContentQualityError(StudyFlowError):
    """Extracted content is below the usable threshold."""

    kind = ErrorKind.CONTENT_QUALITY


class JobExhaustedError(StudyFlowError):
    """A job ran out of attempts."""

    kind = ErrorKind.EXHAUSTED


class PayloadValidationError(StudyFlowError):
    """Job payload failed schema validation at claim time."""

    kind = ErrorKind.PERMANENT_EXTERNAL


class ConfigurationError(StudyFlowError):
    """Required configuration is missing or invalid."""

    kind = ErrorKind.PERMANENT_EXTERNAL


class JobNotFoundError(StudyFlowError):
    """Job id does not exist."""


class JobStateError(StudyFlowError):
    """Operation not allowed in the job's current status."""


class ContentUnitNotFoundError(StudyFlowError):
    """Content unit id does not exist."""


def classify_status_code(status_code: int) -> ErrorKind:
    """Map an HTTP status code onto the retry taxonomy."""
    if status_code == 429 or status_code >= 500:
        return ErrorKind.TRANSIENT_EXTERNAL
    return ErrorKind.PERMANENT_EXTERNAL


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Classify an exception raised while running a stage.

    Unknown exceptions are treated as transient: the job's attempt budget
    bounds how often they are retried before the job goes dead.
    """
    if isinstance(exc, StudyFlowError):
        return exc.kind

    # HTTP status errors from the SDKs and plain httpx calls
    if isinstance(exc, (anthropic.APIStatusError, openai.APIStatusError)):
        return classify_status_code(exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status_code(exc.response.status_code)

    # Network level failures never reached the service
    if isinstance(exc, (anthropic.APIConnectionError, openai.APIConnectionError)):
        return ErrorKind.TRANSIENT_EXTERNAL
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSIENT_EXTERNAL

    # Malformed model output
    if isinstance(exc, (json.JSONDecodeError, ValidationError)):
        return ErrorKind.PERMANENT_EXTERNAL

    return ErrorKind.TRANSIENT_EXTERNAL


def is_transient(exc: BaseException) -> bool:
    """Retry predicate used by the shared retry policy."""
    return classify_exception(exc) is ErrorKind.TRANSIENT_EXTERNAL
