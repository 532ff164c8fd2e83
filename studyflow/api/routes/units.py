"""
Content unit API endpoints.

This module provides REST API endpoints for creating study items, attaching
uploaded source files, and following their pipeline: job status, retry of
failed jobs, purge of derived state and hybrid search over the extracted
sections.
"""

from collections import Counter
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from studyflow.core.config import settings
from studyflow.core.errors import ContentUnitNotFoundError, JobStateError
from studyflow.core.logging import get_logger
from studyflow.db.deps import DBSession, JobStoreDep, RetrieverDep
from studyflow.schemas.jobs import JobRead
from studyflow.schemas.units import (
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
from studyflow.services.pipeline.ingest import ingest_files
from studyflow.services.units import create_unit, get_unit, purge_content_unit

logger = get_logger(__name__)

router = APIRouter(prefix="/units", tags=["Units"])


def _not_found(exc: ContentUnitNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ========================================
# Units
# ========================================

@router.post(
    "",
    response_model=UnitRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a content unit",
    description="Create an empty study item that source files can be attached to",
)
async def create_content_unit(body: UnitCreate, db: DBSession):
    unit = await create_unit(db, body.title)
    await db.commit()
    await db.refresh(unit)
    return UnitRead.model_validate(unit)


@router.get(
    "/{content_unit_id}",
    response_model=UnitRead,
    summary="Get a content unit",
    description="Status, current pipeline stage and, once completed, the study result",
    responses={
        404: {"description": "Content unit not found"},
    }
)
async def read_content_unit(content_unit_id: int, db: DBSession):
    try:
        unit = await get_unit(db, content_unit_id)
    except ContentUnitNotFoundError as e:
        raise _not_found(e)
    return UnitRead.model_validate(unit)


# ========================================
# Ingestion
# ========================================

@router.post(
    "/{content_unit_id}/files",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Attach source files",
    description=(
        "Register uploaded files (PDF, audio, image) and queue their extraction. "
        "Files already registered for the unit are reported as duplicates. "
        "New files for a unit past extraction need force_reextract."
    ),
    responses={
        404: {"description": "Content unit not found"},
        409: {"description": "Unit is past extraction and force_reextract was not set"},
    }
)
async def ingest_unit_files(content_unit_id: int, body: IngestRequest, store: JobStoreDep):
    try:
        return await ingest_files(store, content_unit_id, body.files, force_reextract=body.force_reextract)
    except ContentUnitNotFoundError as e:
        raise _not_found(e)
    except JobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


# ========================================
# Pipeline Jobs
# ========================================

@router.get(
    "/{content_unit_id}/jobs",
    response_model=UnitJobsResponse,
    summary="List pipeline jobs",
    description="Every job of the unit's pipeline in creation order, with counts per status",
    responses={
        404: {"description": "Content unit not found"},
    }
)
async def list_unit_jobs(content_unit_id: int, db: DBSession, store: JobStoreDep):
    try:
        unit = await get_unit(db, content_unit_id)
    except ContentUnitNotFoundError as e:
        raise _not_found(e)

    jobs = await store.list_for_unit(content_unit_id)
    return UnitJobsResponse(
        unit=UnitRead.model_validate(unit),
        jobs=[JobRead.model_validate(job) for job in jobs],
        counts=dict(Counter(job.status for job in jobs)),
    )


@router.post(
    "/{content_unit_id}/retry",
    response_model=RetryResponse,
    summary="Retry failed jobs",
    description="Reset every failed or dead job of the unit to pending with a fresh attempt budget",
    responses={
        404: {"description": "Content unit not found"},
    }
)
async def retry_unit_jobs(content_unit_id: int, db: DBSession, store: JobStoreDep):
    try:
        await get_unit(db, content_unit_id)
    except ContentUnitNotFoundError as e:
        raise _not_found(e)

    reset = await store.retry_failed_jobs(content_unit_id)
    return RetryResponse(content_unit_id=content_unit_id, reset_job_ids=reset)


@router.delete(
    "/{content_unit_id}/derived",
    response_model=PurgeResponse,
    summary="Purge derived state",
    description="Delete jobs, source files, sections and stage outputs; the unit returns to pending",
    responses={
        404: {"description": "Content unit not found"},
    }
)
async def purge_unit(content_unit_id: int, db: DBSession):
    try:
        deleted = await purge_content_unit(db, content_unit_id)
    except ContentUnitNotFoundError as e:
        raise _not_found(e)
    return PurgeResponse(content_unit_id=content_unit_id, deleted=deleted)


# ========================================
# Search
# ========================================

@router.get(
    "/{content_unit_id}/search",
    response_model=SearchResponse,
    summary="Search a unit's sections",
    description=(
        "Hybrid search: the query is embedded and matched by cosine similarity, "
        "matched again by full-text rank, and both rankings are fused with "
        "reciprocal rank fusion"
    ),
    responses={
        404: {"description": "Content unit not found"},
    }
)
async def search_unit(
    content_unit_id: int,
    db: DBSession,
    retriever: RetrieverDep,
    q: Annotated[str, Query(min_length=1, max_length=500, description="Search text")],
    limit: Annotated[int, Query(ge=1, le=settings.SEARCH_MAX_LIMIT)] = settings.SEARCH_DEFAULT_LIMIT,
):
    query = q.strip()
    if not query:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Search text cannot be empty")

    try:
        await get_unit(db, content_unit_id)
    except ContentUnitNotFoundError as e:
        raise _not_found(e)

    results = await retriever.search(content_unit_id, query, limit)
    return SearchResponse(
        content_unit_id=content_unit_id,
        query=query,
        count=len(results),
        results=[SearchHit(**result.to_dict()) for result in results],
    )
