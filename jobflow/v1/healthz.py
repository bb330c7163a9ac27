from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.logging import get_logger
from jobflow.config.settings import Settings, SettingsDep
from jobflow.infra.database import get_session
from jobflow.v1.core.exceptions import create_success_response
from jobflow.v1.infra.jobs.models import JobStatus, QueuedJob
from jobflow.v1.runs.models import ExecutionRecord, StagedJob, as_utc

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker health status."""

    active_workers: int
    last_heartbeat_age_seconds: int | None = None
    stuck_jobs_count: int = 0
    queue_depth: int = 0


class EngineHealth(BaseModel):
    """Workflow engine backlog."""

    locked_runs: int = 0
    stale_locks: int = 0
    staged_jobs: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database, worker and engine status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    worker_health = None
    engine_health = None
    if db_health.connected:
        try:
            worker_health = await _check_worker_health(session, settings)
            engine_health = await _check_engine_health(session, settings)
        except Exception:
            # Detail query failures do not fail overall health
            logger.warning("Health detail query failed", exc_info=True)

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
        "engine": engine_health.model_dump() if engine_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Check job worker health and queue status."""
    now = datetime.now(UTC)
    heartbeat_cutoff = now - timedelta(minutes=5)

    active_workers_result = await session.execute(
        select(func.count(func.distinct(QueuedJob.locked_by))).where(
            QueuedJob.status == JobStatus.RUNNING.value,
            QueuedJob.heartbeat_at > heartbeat_cutoff,
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_heartbeat_result = await session.execute(
        select(func.max(QueuedJob.heartbeat_at)).where(
            QueuedJob.status == JobStatus.RUNNING.value,
            QueuedJob.heartbeat_at.is_not(None),
        )
    )
    last_heartbeat = last_heartbeat_result.scalar()

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        if isinstance(last_heartbeat, str):
            # SQLite returns aggregate timestamps as text
            last_heartbeat = datetime.fromisoformat(last_heartbeat)
        age_seconds = (now - as_utc(last_heartbeat)).total_seconds()
        last_heartbeat_age_seconds = int(age_seconds)

    stuck_cutoff = now - timedelta(seconds=settings.job_visibility_timeout_s)
    stuck_jobs_result = await session.execute(
        select(func.count(QueuedJob.id)).where(
            QueuedJob.status == JobStatus.RUNNING.value,
            QueuedJob.heartbeat_at < stuck_cutoff,
        )
    )
    stuck_jobs_count = stuck_jobs_result.scalar() or 0

    queue_depth_result = await session.execute(
        select(func.count(QueuedJob.id)).where(
            QueuedJob.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    return WorkerHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        stuck_jobs_count=stuck_jobs_count,
        queue_depth=queue_depth,
    )


async def _check_engine_health(
    session: AsyncSession, settings: Settings
) -> EngineHealth:
    """Count held and abandoned run locks and undispatched staged jobs."""
    stale_cutoff = datetime.now(UTC) - timedelta(seconds=settings.lock_stale_after_s)

    locked_runs = (
        await session.execute(
            select(func.count(ExecutionRecord.id)).where(
                ExecutionRecord.locked_at.is_not(None)
            )
        )
    ).scalar() or 0
    stale_locks = (
        await session.execute(
            select(func.count(ExecutionRecord.id)).where(
                ExecutionRecord.locked_at < stale_cutoff
            )
        )
    ).scalar() or 0
    staged_jobs = (await session.execute(select(func.count(StagedJob.id)))).scalar() or 0

    return EngineHealth(
        locked_runs=locked_runs, stale_locks=stale_locks, staged_jobs=staged_jobs
    )
