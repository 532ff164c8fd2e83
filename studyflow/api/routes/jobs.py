"""
Pipeline job API endpoints.
"""

from fastapi import APIRouter, HTTPException, status

from studyflow.core.errors import JobNotFoundError, JobStateError
from studyflow.db.deps import JobStoreDep
from studyflow.schemas.jobs import JobRead

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.get(
    "/{job_id}",
    response_model=JobRead,
    summary="Get a job",
    responses={
        404: {"description": "Job not found"},
    }
)
async def read_job(job_id: int, store: JobStoreDep):
    try:
        job = await store.get(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobRead.model_validate(job)


@router.post(
    "/{job_id}/retry",
    response_model=JobRead,
    summary="Retry a failed job",
    description="Move a failed or dead job back to pending with a fresh attempt budget",
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job is not failed/dead, or an equivalent job is already active"},
    }
)
async def retry_job(job_id: int, store: JobStoreDep):
    try:
        job = await store.reset_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except JobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return JobRead.model_validate(job)
