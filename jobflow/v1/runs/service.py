"""
Run service: listing, statistics, purge and operator recovery for execution records.
"""

from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.logging import get_logger
from jobflow.config.settings import Settings
from jobflow.v1.core.exceptions import NotFoundError
from jobflow.v1.core.serializer import FINISHED, load_args, load_value
from jobflow.v1.runs.locks import LockManager
from jobflow.v1.runs.models import ExecutionRecord, StagedJob, utcnow
from jobflow.v1.runs.schemas import (
    ExecutionRecordResponse,
    RunStatsResponse,
    RunStatus,
)

logger = get_logger(__name__)


def status_filter(status: RunStatus) -> Any:
    """SQL condition matching ``ExecutionRecord.status``."""
    not_staged = ExecutionRecord.staged.is_(False)
    clean = ExecutionRecord.error.is_(None)
    if status is RunStatus.STAGED:
        return ExecutionRecord.staged.is_(True)
    if status is RunStatus.FAILED:
        return and_(not_staged, ExecutionRecord.error.is_not(None))
    if status is RunStatus.SUCCEEDED:
        return and_(not_staged, clean, ExecutionRecord.recovery_point == FINISHED)
    if status is RunStatus.RUNNING:
        return and_(
            not_staged,
            clean,
            ExecutionRecord.recovery_point != FINISHED,
            ExecutionRecord.awaiting_step.is_(None),
            ExecutionRecord.locked_at.is_not(None),
        )
    return and_(
        not_staged,
        clean,
        ExecutionRecord.recovery_point != FINISHED,
        or_(
            ExecutionRecord.awaiting_step.is_not(None),
            ExecutionRecord.locked_at.is_(None),
        ),
    )


def to_response(record: ExecutionRecord) -> ExecutionRecordResponse:
    args, kwargs = load_args(record.job_args)
    return ExecutionRecordResponse(
        id=record.id,
        idempotency_key=record.idempotency_key,
        job_name=record.job_name,
        job_args={"args": args, "kwargs": kwargs},
        status=record.status,
        recovery_point=record.recovery_point,
        workflow=record.workflow,
        context=load_value(record.context or {}),
        error=record.error,
        awaiting_step=record.awaiting_step,
        locked_at=record.locked_at,
        locked_by=record.locked_by,
        last_run_at=record.last_run_at,
        staged=record.staged,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class RunService:
    """Service for inspecting and maintaining execution records."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.locks = LockManager(settings)

    async def list_runs(
        self,
        session: AsyncSession,
        job_name: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]:
        """List runs, most recently active first, with the unpaginated total."""
        base_query = select(ExecutionRecord)
        if job_name:
            base_query = base_query.where(ExecutionRecord.job_name == job_name)
        if status:
            base_query = base_query.where(status_filter(status))

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        result = await session.execute(
            base_query.order_by(desc(ExecutionRecord.updated_at)).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_run(self, session: AsyncSession, run_id: UUID) -> ExecutionRecord:
        record = await session.get(ExecutionRecord, run_id)
        if record is None:
            raise NotFoundError(f"Run {run_id} not found", {"run_id": str(run_id)})
        return record

    async def get_stats(self, session: AsyncSession) -> RunStatsResponse:
        total_runs = (
            await session.execute(select(func.count(ExecutionRecord.id)))
        ).scalar() or 0

        by_status: dict[str, int] = {}
        for status in RunStatus:
            count = (
                await session.execute(
                    select(func.count(ExecutionRecord.id)).where(status_filter(status))
                )
            ).scalar() or 0
            by_status[status.value] = count

        job_result = await session.execute(
            select(ExecutionRecord.job_name, func.count(ExecutionRecord.id)).group_by(
                ExecutionRecord.job_name
            )
        )
        by_job = dict(job_result.all())

        locked = (
            await session.execute(
                select(func.count(ExecutionRecord.id)).where(
                    ExecutionRecord.locked_at.is_not(None)
                )
            )
        ).scalar() or 0

        stale_locks = (
            await session.execute(
                select(func.count(ExecutionRecord.id)).where(
                    ExecutionRecord.locked_at < self.locks.stale_cutoff()
                )
            )
        ).scalar() or 0

        staged_jobs = (await session.execute(select(func.count(StagedJob.id)))).scalar() or 0

        return RunStatsResponse(
            total_runs=total_runs,
            by_status=by_status,
            by_job=by_job,
            locked=locked,
            stale_locks=stale_locks,
            staged_jobs=staged_jobs,
        )

    async def purge_finished(
        self,
        session: AsyncSession,
        older_than_days: int | None = None,
        job_name: str | None = None,
    ) -> int:
        """Delete finished, error-free runs. Anything else is kept."""
        conditions = [
            ExecutionRecord.recovery_point == FINISHED,
            ExecutionRecord.error.is_(None),
            ExecutionRecord.locked_at.is_(None),
        ]
        if older_than_days is not None:
            cutoff = utcnow() - timedelta(days=older_than_days)
            conditions.append(ExecutionRecord.last_run_at < cutoff)
        if job_name:
            conditions.append(ExecutionRecord.job_name == job_name)

        result = await session.execute(
            delete(ExecutionRecord)
            .where(and_(*conditions))
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        deleted_count = result.rowcount
        logger.info(
            "Purged finished runs",
            deleted_count=deleted_count,
            older_than_days=older_than_days,
            job_name=job_name,
        )
        return deleted_count

    async def unlock(self, session: AsyncSession, run_id: UUID) -> bool:
        await self.get_run(session, run_id)
        return await self.locks.force_unlock(session, run_id)

    async def list_staged(
        self, session: AsyncSession, limit: int = 50, offset: int = 0
    ) -> tuple[list[StagedJob], int]:
        total = (await session.execute(select(func.count(StagedJob.id)))).scalar() or 0
        result = await session.execute(
            select(StagedJob).order_by(StagedJob.created_at).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total
