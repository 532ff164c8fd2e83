"""
Content unit state helpers.

Status transitions of a content unit are written with conditional updates
so a unit that has failed is never silently moved forward by a late
stage; only operator actions (retry, purge) take it out of ``failed``.
"""

from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studyflow.core.errors import ContentUnitNotFoundError
from studyflow.core.logging import get_logger
from studyflow.db.base import utcnow
from studyflow.models import (
    ContentUnit,
    ContentUnitStatus,
    DocumentSection,
    Job,
    PipelineStage,
    SourceFile,
    StageOutput,
)

logger = get_logger(__name__)


async def create_unit(session: AsyncSession, title: str) -> ContentUnit:
    unit = ContentUnit(title=title, status=ContentUnitStatus.PENDING.value)
    session.add(unit)
    await session.commit()
    logger.info("content_unit_created", content_unit_id=unit.id)
    return unit


async def get_unit(session: AsyncSession, content_unit_id: int) -> ContentUnit:
    """Raises ContentUnitNotFoundError for unknown ids."""
    unit = await session.get(ContentUnit, content_unit_id, populate_existing=True)
    if unit is None:
        raise ContentUnitNotFoundError(f"Content unit {content_unit_id} not found")
    return unit


async def set_unit_state(
    session: AsyncSession,
    content_unit_id: int,
    status: Optional[ContentUnitStatus] = None,
    stage: Optional[PipelineStage] = None,
    allow_from_failed: bool = False,
    **values: Any,
) -> bool:
    """
    Update status / stage marker of a unit.

    Returns False (and changes nothing) when the unit is failed and
    ``allow_from_failed`` is not set. Does not commit.
    """
    changes: dict[str, Any] = dict(values)
    if status is not None:
        changes["status"] = status.value
    if stage is not None:
        changes["pipeline_stage"] = stage.value
    changes["updated_at"] = utcnow()

    stmt = update(ContentUnit).where(ContentUnit.id == content_unit_id)
    if not allow_from_failed:
        stmt = stmt.where(ContentUnit.status != ContentUnitStatus.FAILED.value)
    result = await session.execute(stmt.values(**changes).execution_options(synchronize_session=False))
    return result.rowcount == 1


async def mark_unit_failed(session: AsyncSession, content_unit_id: int, error_message: str) -> None:
    """Record a terminal failure on the unit. Does not commit."""
    await set_unit_state(
        session,
        content_unit_id,
        status=ContentUnitStatus.FAILED,
        stage=PipelineStage.FAILED,
        allow_from_failed=True,
        error_message=error_message,
    )
    logger.warning("content_unit_failed", content_unit_id=content_unit_id, error=error_message)


async def is_unit_failed(session: AsyncSession, content_unit_id: int) -> bool:
    status = await session.scalar(select(ContentUnit.status).where(ContentUnit.id == content_unit_id))
    return status == ContentUnitStatus.FAILED.value


async def purge_content_unit(session: AsyncSession, content_unit_id: int) -> dict[str, int]:
    """
    Delete every piece of derived state of a unit and reset it to pending.

    Jobs, source files, sections and stage outputs are removed; the unit row
    itself is kept. Commits.
    """
    await get_unit(session, content_unit_id)

    counts = {}
    for name, model in (
        ("jobs", Job),
        ("stage_outputs", StageOutput),
        ("sections", DocumentSection),
        ("source_files", SourceFile),
    ):
        result = await session.execute(
            delete(model).where(model.content_unit_id == content_unit_id)
            .execution_options(synchronize_session=False)
        )
        counts[name] = result.rowcount

    await session.execute(
        update(ContentUnit)
        .where(ContentUnit.id == content_unit_id)
        .values(
            status=ContentUnitStatus.PENDING.value,
            pipeline_stage=None,
            error_message=None,
            result=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    logger.info("content_unit_purged", content_unit_id=content_unit_id, **counts)
    return counts
