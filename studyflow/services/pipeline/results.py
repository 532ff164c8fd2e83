"""
Stage handler results.

Handlers return one of three values instead of signalling through
exceptions:

- ``Success(result)``            the job completes; ``result`` is stored on it
- ``NeedsFallback(reason, ...)`` the job completes and an alternate job
                                 (e.g. text-layer extraction) is enqueued
- ``Error(kind, message)``       retried or failed according to ``kind``

Exceptions that still escape a handler are classified by the dispatcher
and turned into an ``Error``.
"""

from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel

from studyflow.core.errors import ErrorKind


@dataclass(frozen=True)
class Success:
    result: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NeedsFallback:
    reason: str
    job_type: str
    payload: BaseModel
    dedupe_suffix: str = "fallback"


@dataclass(frozen=True)
class Error:
    kind: ErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT_EXTERNAL


StageResult = Union[Success, NeedsFallback, Error]
