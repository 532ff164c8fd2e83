"""
Embed stage: fill every missing section embedding of the unit.
"""

from studyflow.core.errors import ErrorKind
from studyflow.models import ContentUnitStatus, Job, JobType, PipelineStage
from studyflow.schemas.jobs import EmbedPayload
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.pipeline.handlers.base import StageHandler
from studyflow.services.pipeline.results import Error, StageResult, Success
from studyflow.services.units import set_unit_state


class EmbedHandler(StageHandler):
    """
    Runs the embedding generator. Failed batches leave their sections
    NULL; the job then reports a transient error and the retry picks up
    only what is still missing.
    """

    job_type = JobType.EMBED.value
    stage = PipelineStage.EMBEDDING

    async def run(self, ctx: PipelineContext, job: Job, payload: EmbedPayload) -> StageResult:
        outcome = await ctx.embedding_generator().run(job.content_unit_id)

        if not outcome.complete:
            return Error(
                ErrorKind.TRANSIENT_EXTERNAL,
                f"{outcome.remaining} of {outcome.total_sections} sections still have no embedding",
            )

        async with ctx.session_factory() as session:
            await set_unit_state(session, job.content_unit_id, status=ContentUnitStatus.EMBEDDED)
            await session.commit()

        return Success(outcome.to_dict())
