import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, status

from queryoffload.api.deps import offload_dep
from queryoffload.core import schemas
from queryoffload.core.exceptions import (
    NotInitializedError,
    QueryOffloadError,
    QueueFullError,
    ValidationError,
)
from queryoffload.core.offload.notifications import JobCompleted, JobEvent

router = APIRouter(prefix="/jobs", tags=["Jobs"])

logger = logging.getLogger(__name__)


def _event_response(event: JobEvent) -> schemas.JobWaitResponse:
    if isinstance(event, JobCompleted):
        return schemas.JobWaitResponse(
            job_id=event.job_id,
            status=schemas.WaitOutcome.COMPLETED,
            table_name=event.table_name,
        )
    return schemas.JobWaitResponse(
        job_id=event.job_id, status=schemas.WaitOutcome.FAILED, error=event.message
    )


@router.post(
    "", response_model=schemas.QueryJobResponse, status_code=status.HTTP_202_ACCEPTED
)
async def create_query_job(payload: schemas.QueryJobCreate, offload: offload_dep):
    """
    Admit a read-only query. The result table is created asynchronously;
    poll GET /jobs/{job_id} or long-poll GET /jobs/{job_id}/wait.
    """
    try:
        job_id = await offload.create_query_job(payload.query, payload.params)
    except ValidationError as error:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, error.to_dict())
    except (QueueFullError, NotInitializedError) as error:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, error.to_dict())
    except QueryOffloadError as error:
        logger.error(f"Failed to admit query: {error}")
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, error.to_dict())

    return schemas.QueryJobResponse(job_id=job_id)


@router.get("/{job_id}", response_model=schemas.JobStatusResponse)
async def get_job_status(job_id: str, offload: offload_dep):
    try:
        job_status = await offload.get_job_status(job_id)
    except QueryOffloadError as error:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, error.to_dict())

    if job_status.status == schemas.JobState.UNKNOWN.value:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Job not found")
    return job_status


@router.get("/{job_id}/table", response_model=schemas.JobTableResponse)
async def get_job_table(job_id: str, offload: offload_dep):
    try:
        table_name = await offload.get_table_name_for_job(job_id)
    except QueryOffloadError as error:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, error.to_dict())

    if table_name is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "No result table for this job")
    return schemas.JobTableResponse(job_id=job_id, table_name=table_name)


@router.get("/{job_id}/wait", response_model=schemas.JobWaitResponse)
async def wait_for_job(
    job_id: str,
    offload: offload_dep,
    timeout: float = Query(default=30.0, ge=0, le=300),
):
    """
    Long-poll for the job's terminal event.

    Interest is registered before persisted state is read, so a job finishing
    in between is not missed; a job that finished earlier is answered from
    its metadata row or retained queue entry.
    """
    future = offload.watch(job_id)
    try:
        try:
            current = await offload.get_job_status(job_id)
        except QueryOffloadError as error:
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, error.to_dict())

        if current.status == schemas.JobState.COMPLETED.value:
            return schemas.JobWaitResponse(
                job_id=job_id,
                status=schemas.WaitOutcome.COMPLETED,
                table_name=current.table_name,
            )
        if current.status == schemas.JobState.FAILED.value:
            return schemas.JobWaitResponse(
                job_id=job_id, status=schemas.WaitOutcome.FAILED, error=current.error
            )
        if current.status == schemas.JobState.UNKNOWN.value and not future.done():
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Job not found")

        try:
            event = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            return schemas.JobWaitResponse(
                job_id=job_id, status=schemas.WaitOutcome.PENDING
            )
        return _event_response(event)
    finally:
        offload.unwatch(job_id, future)
