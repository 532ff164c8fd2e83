"""
Base class for stage handlers.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from studyflow.core.logging import get_logger
from studyflow.models import Job, PipelineStage
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.results import StageResult


class StageHandler(ABC):
    """
    One pipeline stage.

    Subclasses set ``job_type`` and ``stage`` (the unit's stage marker while
    the job runs) and implement ``run``. A handler receives its validated
    payload, does its work through ``ctx`` and returns a ``StageResult``.
    Writes must be safe to repeat: a job may be run again after a crash or
    an expired lease.
    """

    job_type: ClassVar[str]
    stage: ClassVar[PipelineStage]

    def __init__(self) -> None:
        self.logger = get_logger(f"{__name__}.{self.job_type}")

    @abstractmethod
    async def run(self, ctx: PipelineContext, job: Job, payload: Any) -> StageResult:
        raise NotImplementedError
