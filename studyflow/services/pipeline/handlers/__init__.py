"""
Stage handlers, one per job type.
"""

from studyflow.core.errors import PayloadValidationError
from studyflow.services.pipeline.handlers.aggregate import AggregateHandler
from studyflow.services.pipeline.handlers.analyze import AnalyzeHandler
from studyflow.services.pipeline.handlers.base import StageHandler
from studyflow.services.pipeline.handlers.embed import EmbedHandler
from studyflow.services.pipeline.handlers.extract import ExtractHandler
from studyflow.services.pipeline.handlers.quiz import QuizHandler
from studyflow.services.pipeline.handlers.segment import SegmentHandler

HANDLERS: dict[str, type[StageHandler]] = {
    handler.job_type: handler
    for handler in (
        ExtractHandler,
        EmbedHandler,
        SegmentHandler,
        AnalyzeHandler,
        QuizHandler,
        AggregateHandler,
    )
}


def get_handler(job_type: str) -> StageHandler:
    """
    Raises:
        PayloadValidationError: no handler for ``job_type``
    """
    try:
        return HANDLERS[job_type]()
    except KeyError:
        raise PayloadValidationError(f"No handler for job type {job_type!r}") from None


__all__ = [
    "StageHandler",
    "HANDLERS",
    "get_handler",
    "ExtractHandler",
    "EmbedHandler",
    "SegmentHandler",
    "AnalyzeHandler",
    "QuizHandler",
    "AggregateHandler",
]
