"""
Run administration API endpoints.

Read access to execution records and staged jobs, plus the out-of-band
maintenance operations: purge of finished runs, forced unlock and the
staged job sweep.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.settings import Settings, SettingsDep
from jobflow.infra.database import Database, get_database, get_session
from jobflow.v1.core.exceptions import create_success_response
from jobflow.v1.runs.outbox import Outbox
from jobflow.v1.runs.schemas import (
    PurgeRequest,
    PurgeResponse,
    RunListResponse,
    RunStatus,
    StagedJobResponse,
    StagedListResponse,
    SweepRequest,
    SweepResponse,
)
from jobflow.v1.runs.service import RunService, to_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/runs", tags=["runs"])
staged_router = APIRouter(prefix="/staged", tags=["staged"])


@router.get("", response_model=dict)
async def list_runs(
    job_name: str | None = Query(default=None, description="Filter by job name"),
    status: RunStatus | None = Query(default=None, description="Filter by status"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List execution records with filtering and pagination."""

    records, total = await RunService(settings).list_runs(
        session, job_name=job_name, status=status, limit=limit, offset=offset
    )

    response_data = RunListResponse(
        runs=[to_response(record) for record in records],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_run_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get run statistics."""

    stats = await RunService(settings).get_stats(session)
    return create_success_response(data=stats.model_dump())


@router.post("/purge", response_model=dict)
async def purge_runs(
    request: PurgeRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Delete finished runs that did not fail."""

    deleted_count = await RunService(settings).purge_finished(
        session, older_than_days=request.older_than_days, job_name=request.job_name
    )

    return create_success_response(
        data=PurgeResponse(deleted_count=deleted_count).model_dump(),
        message=f"Purged {deleted_count} finished runs",
    )


@router.get("/{run_id}", response_model=dict)
async def get_run(
    run_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific run by ID."""

    record = await RunService(settings).get_run(session, run_id)
    return create_success_response(data=to_response(record).model_dump(mode="json"))


@router.post("/{run_id}/unlock", response_model=dict)
async def unlock_run(
    run_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Clear the lock of a run whose worker is known to be gone."""

    unlocked = await RunService(settings).unlock(session, run_id)
    if not unlocked:
        raise HTTPException(status_code=409, detail="Run is not locked")

    logger.warning("Run unlocked via API", extra={"run_id": str(run_id)})

    return create_success_response(data={"success": True, "run_id": str(run_id)})


@staged_router.get("", response_model=dict)
async def list_staged_jobs(
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List staged jobs still waiting to be enqueued."""

    staged_jobs, total = await RunService(settings).list_staged(
        session, limit=limit, offset=offset
    )

    response_data = StagedListResponse(
        staged_jobs=[StagedJobResponse.model_validate(row) for row in staged_jobs],
        total=total,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@staged_router.post("/sweep", response_model=dict)
async def sweep_staged_jobs(
    request: SweepRequest,
    database: Database = Depends(get_database),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Re-enqueue staged jobs whose dispatch never completed."""

    enqueued, failed = await Outbox(settings).sweep(
        database.SessionLocal, older_than_s=request.older_than_s
    )

    logger.info(
        "Staged jobs swept via API", extra={"enqueued": enqueued, "failed": failed}
    )

    return create_success_response(
        data=SweepResponse(enqueued=enqueued, failed=failed).model_dump()
    )
