"""
Transactional outbox for follow-up jobs.

A ``StagedJob`` row is written in the caller's transaction. The session keeps
a list of the rows it staged; SQLAlchemy's ``after_commit`` hook promotes
them to "committed" and ``after_rollback`` throws them away, so nothing is
ever enqueued for a transaction that did not commit. ``dispatch`` then hands
committed rows to their adapter and deletes them. Rows whose enqueue failed
stay in the table for ``sweep``.
"""

from collections import defaultdict
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import delete, event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from jobflow.config.logging import get_logger
from jobflow.config.settings import Settings
from jobflow.v1.core.registries import adapter_registry, job_registry
from jobflow.v1.core.serializer import (
    RecoveryPoint,
    dump_args,
    dump_marker,
    dump_value,
    load_args,
    load_value,
)
from jobflow.v1.runs.models import ExecutionRecord, StagedJob, utcnow
from jobflow.v1.runs.schemas import JobReference

if TYPE_CHECKING:
    from jobflow.v1.runs.jobs import IdempotentJob

logger = get_logger(__name__)

PENDING_KEY = "jobflow.outbox.pending"
COMMITTED_KEY = "jobflow.outbox.committed"


@event.listens_for(Session, "after_commit")
def _promote_staged_jobs(session: Session) -> None:
    pending = session.info.pop(PENDING_KEY, None)
    if pending:
        session.info.setdefault(COMMITTED_KEY, []).extend(pending)


@event.listens_for(Session, "after_rollback")
def _discard_staged_jobs(session: Session) -> None:
    session.info.pop(PENDING_KEY, None)


def awaited_job_id(run_id: UUID, step_name: str, index: int) -> str:
    """Deterministic id so re-staging an await step never duplicates work."""
    return f"{run_id}:{step_name}:{index}"


class Outbox:
    """Stage jobs inside a transaction and enqueue them after it commits."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def adapter_for(self, job_cls: "type[IdempotentJob]") -> str:
        adapter = job_cls.adapter or self.settings.default_adapter.value
        # Unknown adapters fail while the caller's transaction is still open
        adapter_registry.get(adapter)
        return adapter

    async def stage(
        self,
        session: AsyncSession,
        job: "type[IdempotentJob] | str",
        *args: Any,
        **kwargs: Any,
    ) -> StagedJob:
        """Stage one job; it is enqueued only if ``session`` commits."""
        job_cls = job_registry.get(job) if isinstance(job, str) else job
        return await self._stage_row(
            session,
            job_cls,
            list(args),
            kwargs,
            adapter=self.adapter_for(job_cls),
            job_id=str(uuid4()),
        )

    async def stage_awaited(
        self,
        session: AsyncSession,
        awaiting_job: "IdempotentJob",
        run_id: UUID,
        step_name: str,
        references: list[JobReference],
    ) -> list[StagedJob]:
        """Stage the fan-out jobs of an await step as one batch."""
        adapter = self.adapter_for(type(awaiting_job))
        staged = []
        for index, reference in enumerate(references):
            staged.append(
                await self._stage_row(
                    session,
                    job_registry.get(reference.job_name),
                    load_value(reference.args),
                    load_value(reference.kwargs),
                    adapter=adapter,
                    job_id=awaited_job_id(run_id, step_name, index),
                    awaited_by_run_id=run_id,
                    awaited_step=step_name,
                )
            )
        return staged

    async def _stage_row(
        self,
        session: AsyncSession,
        job_cls: "type[IdempotentJob]",
        args: list[Any],
        kwargs: dict[str, Any],
        *,
        adapter: str,
        job_id: str,
        awaited_by_run_id: UUID | None = None,
        awaited_step: str | None = None,
    ) -> StagedJob:
        job_args = dump_args(args, kwargs)
        row = StagedJob(
            id=uuid4(),
            adapter=adapter,
            job_name=job_cls.job_name,
            job_args=job_args,
            job_id=job_id,
            awaited_by_run_id=awaited_by_run_id,
            awaited_step=awaited_step,
            created_at=utcnow(),
        )
        session.add(row)
        await self._prestage_record(session, job_cls.job_name, job_id, job_args)
        await session.flush()

        session.info.setdefault(PENDING_KEY, []).append(self._entry(row))

        logger.debug(
            "Job staged",
            staged_job_id=str(row.id),
            job_name=row.job_name,
            job_id=job_id,
            adapter=adapter,
        )
        return row

    async def _prestage_record(
        self, session: AsyncSession, job_name: str, job_id: str, job_args: str
    ) -> None:
        """Create the downstream run up front, keyed on the staged job id."""
        existing = await session.execute(
            select(ExecutionRecord.id).where(
                ExecutionRecord.idempotency_key == job_id,
                ExecutionRecord.job_name == job_name,
                ExecutionRecord.job_args == job_args,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return

        record = ExecutionRecord(
            idempotency_key=job_id,
            job_name=job_name,
            job_args=job_args,
            context={},
            staged=True,
        )
        record.validate()
        session.add(record)

    @staticmethod
    def _entry(row: StagedJob) -> dict[str, Any]:
        args, kwargs = load_args(row.job_args)
        return {
            "id": row.id,
            "adapter": row.adapter,
            "job_name": row.job_name,
            "args": args,
            "kwargs": kwargs,
            "job_id": row.job_id,
            "awaited_by_run_id": row.awaited_by_run_id,
            "awaited_step": row.awaited_step,
        }

    async def dispatch(self, session: AsyncSession) -> int:
        """Enqueue everything ``session`` staged in committed transactions."""
        entries = session.info.pop(COMMITTED_KEY, [])
        if not entries:
            return 0

        enqueued, _ = await self._enqueue(entries)
        await self._delete(session, enqueued)
        return len(enqueued)

    async def sweep(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        older_than_s: int | None = None,
    ) -> tuple[int, int]:
        """
        Re-enqueue staged rows that outlived a dispatch.

        Returns ``(enqueued, failed)``. Downstream runs are keyed on the staged
        job id, so re-enqueueing a row that had in fact been delivered replays.
        """
        if older_than_s is None:
            older_than_s = self.settings.staged_sweep_after_s
        cutoff = utcnow() - timedelta(seconds=older_than_s)

        async with session_factory() as session:
            result = await session.execute(
                select(StagedJob)
                .where(StagedJob.created_at <= cutoff)
                .order_by(StagedJob.created_at)
            )
            entries = [self._entry(row) for row in result.scalars().all()]
            await session.commit()

            if not entries:
                return 0, 0

            enqueued, failed = await self._enqueue(entries)
            await self._delete(session, enqueued)

        logger.info(
            "Swept staged jobs",
            enqueued=len(enqueued),
            failed=failed,
            older_than_s=older_than_s,
        )
        return len(enqueued), failed

    async def _enqueue(self, entries: list[dict[str, Any]]) -> tuple[list[UUID], int]:
        singles: list[dict[str, Any]] = []
        batches: dict[tuple[UUID, str], list[dict[str, Any]]] = defaultdict(list)
        for entry in entries:
            if entry["awaited_by_run_id"] is None:
                singles.append(entry)
            else:
                batches[(entry["awaited_by_run_id"], entry["awaited_step"])].append(
                    entry
                )

        enqueued: list[UUID] = []
        failed = 0

        for entry in singles:
            try:
                adapter = adapter_registry.get(entry["adapter"])
                await adapter.enqueue(
                    entry["job_name"],
                    dump_value(entry["args"]),
                    dump_value(entry["kwargs"]),
                    entry["job_id"],
                )
            except Exception:
                failed += 1
                logger.error(
                    "Failed to enqueue staged job, leaving it for the sweep",
                    staged_job_id=str(entry["id"]),
                    job_name=entry["job_name"],
                    exc_info=True,
                )
                continue
            enqueued.append(entry["id"])

        for (run_id, step_name), group in batches.items():
            jobs = [
                {
                    "job_name": entry["job_name"],
                    "args": dump_value(entry["args"]),
                    "kwargs": dump_value(entry["kwargs"]),
                    "job_id": entry["job_id"],
                }
                for entry in group
            ]
            callback = {
                "run_id": str(run_id),
                "recovery_point": dump_marker(RecoveryPoint(step_name)),
            }
            try:
                adapter = adapter_registry.get(group[0]["adapter"])
                await adapter.enqueue_batch(jobs, callback)
            except Exception:
                failed += len(group)
                logger.error(
                    "Failed to enqueue awaited jobs, leaving them for the sweep",
                    run_id=str(run_id),
                    step=step_name,
                    job_count=len(group),
                    exc_info=True,
                )
                continue
            enqueued.extend(entry["id"] for entry in group)

        return enqueued, failed

    async def _delete(self, session: AsyncSession, staged_ids: list[UUID]) -> None:
        if not staged_ids:
            return
        try:
            await session.execute(delete(StagedJob).where(StagedJob.id.in_(staged_ids)))
            await session.commit()
        except Exception:
            await session.rollback()
            logger.error(
                "Failed to delete dispatched staged jobs, the sweep will replay them",
                count=len(staged_ids),
                exc_info=True,
            )
