"""
Queue service for enqueueing and managing jobs.
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.settings import Settings
from jobflow.v1.adapters.callbacks import STEP_DONE_JOB
from jobflow.v1.infra.jobs.models import JobBatch, JobStatus, QueuedJob
from jobflow.v1.infra.jobs.schemas import (
    BatchEnqueueResponse,
    JobEnqueueResponse,
    QueuedJobCreate,
    QueueStatsResponse,
)
from jobflow.v1.runs.schemas import RunStatus

logger = logging.getLogger(__name__)

# Callback jobs jump the queue
CALLBACK_PRIORITY = 1


class QueueService:
    """Service for managing queued jobs."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def enqueue(
        self, session: AsyncSession, job_create: QueuedJobCreate
    ) -> JobEnqueueResponse:
        """
        Enqueue a new job with deduplication support.

        Args:
            session: Database session
            job_create: Job creation parameters

        Returns:
            Job enqueue response with job_id and deduplication info
        """
        if job_create.dedupe_key:
            existing_job = await self._find_existing_job(session, job_create.dedupe_key)
            if existing_job:
                logger.info(
                    "Job deduplicated",
                    extra={
                        "job_id": str(existing_job.id),
                        "dedupe_key": job_create.dedupe_key,
                        "job_name": job_create.job_name,
                    },
                )
                return JobEnqueueResponse(
                    job_id=existing_job.id,
                    status=existing_job.status,
                    deduplicated=True,
                )

        job = self._new_job(job_create)

        try:
            session.add(job)
            await session.commit()
        except IntegrityError:
            await session.rollback()
            # Race condition - another process enqueued the same job
            if job_create.dedupe_key:
                existing_job = await self._find_existing_job(
                    session, job_create.dedupe_key
                )
                if existing_job:
                    return JobEnqueueResponse(
                        job_id=existing_job.id,
                        status=existing_job.status,
                        deduplicated=True,
                    )
            raise

        logger.info(
            "Job enqueued",
            extra={
                "job_id": str(job.id),
                "job_name": job.job_name,
                "priority": job.priority,
                "dedupe_key": job_create.dedupe_key,
            },
        )

        return JobEnqueueResponse(job_id=job.id, status=job.status)

    async def enqueue_batch(
        self,
        session: AsyncSession,
        jobs: list[QueuedJobCreate],
        callback: dict[str, Any],
        callback_key: str,
    ) -> BatchEnqueueResponse:
        """
        Enqueue the jobs awaited by one step and record the batch.

        Jobs already on the queue (same dedupe key) join the batch unless
        their run already finished successfully. An existing batch for
        ``callback_key`` means the step was dispatched before and nothing is
        enqueued again.
        """
        existing = await session.execute(
            select(JobBatch).where(JobBatch.callback_key == callback_key)
        )
        batch = existing.scalar_one_or_none()
        if batch is not None:
            logger.info(
                "Batch deduplicated",
                extra={"batch_id": str(batch.id), "callback_key": callback_key},
            )
            return BatchEnqueueResponse(
                batch_id=batch.id, enqueued=0, pending=batch.pending, deduplicated=True
            )

        batch = JobBatch(
            id=uuid.uuid4(), callback_key=callback_key, callback=callback, total=len(jobs)
        )
        session.add(batch)

        enqueued = 0
        pending = 0
        for job_create in jobs:
            job = None
            if job_create.dedupe_key:
                job = await self._find_existing_job(session, job_create.dedupe_key)

            if job is None:
                job = self._new_job(job_create)
                job.batch_id = batch.id
                session.add(job)
                enqueued += 1
                pending += 1
            elif self._run_succeeded(job):
                job.batch_counted_at = datetime.now(UTC)
            else:
                job.batch_id = batch.id
                job.batch_counted_at = None
                pending += 1

        batch.pending = pending
        if pending == 0:
            batch.completed_at = datetime.now(UTC)
            session.add(self._callback_job(batch))

        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise

        logger.info(
            "Batch enqueued",
            extra={
                "batch_id": str(batch.id),
                "callback_key": callback_key,
                "enqueued": enqueued,
                "pending": pending,
            },
        )

        return BatchEnqueueResponse(batch_id=batch.id, enqueued=enqueued, pending=pending)

    async def complete_run_member(
        self, session: AsyncSession, idempotency_key: str
    ) -> bool:
        """
        Count the batch member whose run finished successfully, without committing.

        Members are found by dedupe key, which is the idempotency key of the
        run they started. A member already counted is left alone, so replays
        and duplicate callbacks never drain a batch twice.
        """
        result = await session.execute(
            select(QueuedJob.id, QueuedJob.batch_id).where(
                and_(
                    QueuedJob.dedupe_key == idempotency_key,
                    QueuedJob.batch_id.is_not(None),
                    QueuedJob.batch_counted_at.is_(None),
                )
            )
        )
        member = result.first()
        if member is None:
            return False

        counted = await session.execute(
            update(QueuedJob)
            .where(and_(QueuedJob.id == member.id, QueuedJob.batch_counted_at.is_(None)))
            .values(batch_counted_at=datetime.now(UTC))
        )
        if counted.rowcount != 1:
            return False
        return await self.complete_batch_member(session, member.batch_id)

    async def complete_batch_member(self, session: AsyncSession, batch_id: UUID) -> bool:
        """
        Count one finished member against its batch, without committing.

        Returns True when this call drained the batch and queued its callback.
        """
        now = datetime.now(UTC)
        await session.execute(
            update(JobBatch)
            .where(and_(JobBatch.id == batch_id, JobBatch.pending > 0))
            .values(pending=JobBatch.pending - 1, updated_at=now)
        )

        drained = await session.execute(
            update(JobBatch)
            .where(
                and_(
                    JobBatch.id == batch_id,
                    JobBatch.pending == 0,
                    JobBatch.completed_at.is_(None),
                )
            )
            .values(completed_at=now, updated_at=now)
        )
        if drained.rowcount != 1:
            return False

        batch = await session.get(JobBatch, batch_id)
        session.add(self._callback_job(batch))

        logger.info(
            "Batch drained, callback queued",
            extra={"batch_id": str(batch_id), "callback_key": batch.callback_key},
        )
        return True

    @staticmethod
    def _run_succeeded(job: QueuedJob) -> bool:
        """The job finished and so did the run it started (not just its first await)."""
        if job.status != JobStatus.SUCCEEDED.value:
            return False
        run_status = (job.result or {}).get("status", RunStatus.SUCCEEDED.value)
        return run_status == RunStatus.SUCCEEDED.value

    def _new_job(self, job_create: QueuedJobCreate) -> QueuedJob:
        now = datetime.now(UTC)
        return QueuedJob(
            id=uuid.uuid4(),
            job_name=job_create.job_name,
            payload=job_create.payload,
            status=JobStatus.QUEUED.value,
            priority=job_create.priority,
            run_at=job_create.run_at or now,
            attempts=0,
            dedupe_key=job_create.dedupe_key,
            created_at=now,
            updated_at=now,
        )

    def _callback_job(self, batch: JobBatch) -> QueuedJob:
        return self._new_job(
            QueuedJobCreate(
                job_name=STEP_DONE_JOB,
                payload={"callback": batch.callback},
                priority=CALLBACK_PRIORITY,
                dedupe_key=f"{STEP_DONE_JOB}:{batch.callback_key}",
            )
        )

    async def _find_existing_job(
        self, session: AsyncSession, dedupe_key: str
    ) -> QueuedJob | None:
        """Find the job already holding ``dedupe_key``, whatever its status."""
        result = await session.execute(
            select(QueuedJob).where(QueuedJob.dedupe_key == dedupe_key).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_job_by_id(self, session: AsyncSession, job_id: UUID) -> QueuedJob | None:
        result = await session.execute(select(QueuedJob).where(QueuedJob.id == job_id))
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        status: list[JobStatus] | None = None,
        job_name: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[QueuedJob], int]:
        """List jobs, newest first, with the unpaginated total."""
        base_query = select(QueuedJob)

        if status:
            base_query = base_query.where(QueuedJob.status.in_([s.value for s in status]))
        if job_name:
            base_query = base_query.where(QueuedJob.job_name == job_name)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        jobs_result = await session.execute(
            base_query.order_by(desc(QueuedJob.created_at)).offset(offset).limit(limit)
        )
        return list(jobs_result.scalars().all()), total

    async def get_stats(self, session: AsyncSession) -> QueueStatsResponse:
        """Get queue statistics."""
        total_jobs = (await session.execute(select(func.count(QueuedJob.id)))).scalar() or 0

        status_result = await session.execute(
            select(QueuedJob.status, func.count(QueuedJob.id)).group_by(QueuedJob.status)
        )
        by_status = dict(status_result.all())

        name_result = await session.execute(
            select(QueuedJob.job_name, func.count(QueuedJob.id)).group_by(
                QueuedJob.job_name
            )
        )
        by_job = dict(name_result.all())

        # Queue depth (queued + running)
        queue_depth = by_status.get(JobStatus.QUEUED.value, 0) + by_status.get(
            JobStatus.RUNNING.value, 0
        )

        one_hour_ago = datetime.now(UTC) - timedelta(hours=1)
        failed_last_hour = (
            await session.execute(
                select(func.count(QueuedJob.id)).where(
                    and_(
                        QueuedJob.status.in_(
                            [JobStatus.FAILED.value, JobStatus.DEADLETTER.value]
                        ),
                        QueuedJob.updated_at >= one_hour_ago,
                    )
                )
            )
        ).scalar() or 0

        open_batches = (
            await session.execute(
                select(func.count(JobBatch.id)).where(JobBatch.completed_at.is_(None))
            )
        ).scalar() or 0

        return QueueStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_job=by_job,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
            open_batches=open_batches,
        )

    async def retry_job(self, session: AsyncSession, job_id: UUID) -> bool:
        """Put a failed or dead-lettered job back on the queue with fresh attempts."""
        now = datetime.now(UTC)
        result = await session.execute(
            update(QueuedJob)
            .where(
                and_(
                    QueuedJob.id == job_id,
                    QueuedJob.status.in_(
                        [JobStatus.FAILED.value, JobStatus.DEADLETTER.value]
                    ),
                )
            )
            .values(
                status=JobStatus.QUEUED.value,
                attempts=0,
                locked_at=None,
                locked_by=None,
                heartbeat_at=None,
                run_at=now,
                updated_at=now,
            )
        )
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Job retried", extra={"job_id": str(job_id)})

        return success

    async def cancel_job(self, session: AsyncSession, job_id: UUID) -> bool:
        """Cancel a job that has not started yet."""
        result = await session.execute(
            update(QueuedJob)
            .where(
                and_(
                    QueuedJob.id == job_id,
                    QueuedJob.status == JobStatus.QUEUED.value,
                )
            )
            .values(status=JobStatus.CANCELED.value, updated_at=datetime.now(UTC))
        )
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Job canceled", extra={"job_id": str(job_id)})

        return success

    async def cleanup_old_jobs(self, session: AsyncSession) -> int:
        """Clean up old completed jobs and drained batches based on retention policy."""
        retention_days = self.settings.job_cleanup_after_days
        cutoff_datetime = datetime.now(UTC) - timedelta(days=retention_days)

        result = await session.execute(
            delete(QueuedJob).where(
                and_(
                    QueuedJob.status.in_(
                        [
                            JobStatus.SUCCEEDED.value,
                            JobStatus.DEADLETTER.value,
                            JobStatus.CANCELED.value,
                        ]
                    ),
                    QueuedJob.updated_at < cutoff_datetime,
                )
            ).execution_options(synchronize_session=False)
        )
        deleted_count = result.rowcount

        await session.execute(
            delete(JobBatch).where(
                and_(
                    JobBatch.completed_at.is_not(None),
                    JobBatch.completed_at < cutoff_datetime,
                )
            ).execution_options(synchronize_session=False)
        )
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                extra={
                    "deleted_count": deleted_count,
                    "retention_days": retention_days,
                },
            )

        return deleted_count
