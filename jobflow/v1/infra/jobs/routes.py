"""
Queue administration API endpoints.

Provides monitoring and recovery endpoints for the built-in queue.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.settings import Settings, SettingsDep
from jobflow.infra.database import get_session
from jobflow.v1.core.exceptions import create_success_response
from jobflow.v1.infra.jobs.models import JobStatus
from jobflow.v1.infra.jobs.schemas import QueuedJobListResponse, QueuedJobResponse
from jobflow.v1.infra.jobs.service import QueueService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    job_name: str | None = Query(default=None, description="Filter by job name"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List queued jobs with filtering and pagination."""

    jobs, total = await QueueService(settings).list_jobs(
        session, status=status, job_name=job_name, limit=limit, offset=offset
    )

    response_data = QueuedJobListResponse(
        jobs=[QueuedJobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get queue statistics."""

    stats = await QueueService(settings).get_stats(session)
    return create_success_response(data=stats.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = await QueueService(settings).get_job_by_id(session, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return create_success_response(
        data=QueuedJobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Retry a failed or dead-lettered job."""

    success = await QueueService(settings).retry_job(session, job_id)
    if not success:
        raise HTTPException(
            status_code=404, detail="Job not found or not eligible for retry"
        )

    logger.info("Job retried via API", extra={"job_id": str(job_id)})

    return create_success_response(data={"success": True, "job_id": str(job_id)})


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Cancel a job that has not started yet."""

    success = await QueueService(settings).cancel_job(session, job_id)
    if not success:
        raise HTTPException(
            status_code=404, detail="Job not found or not eligible for cancellation"
        )

    logger.info("Job canceled via API", extra={"job_id": str(job_id)})

    return create_success_response(data={"success": True, "job_id": str(job_id)})
