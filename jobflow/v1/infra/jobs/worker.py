"""
Database-backed job worker with heartbeats and retry semantics.
"""

import asyncio
import importlib
import logging
import os
import random
import socket
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.settings import Settings
from jobflow.infra.database import Database
from jobflow.v1.adapters.callbacks import STEP_DONE_JOB, step_done
from jobflow.v1.adapters.registry_init import register_adapters
from jobflow.v1.core.exceptions import (
    JobflowConcurrencyError,
    JobflowConfigurationError,
    JobflowConsistencyError,
)
from jobflow.v1.core.registries import job_registry
from jobflow.v1.core.serializer import load_value
from jobflow.v1.infra.jobs.models import JobStatus, QueuedJob
from jobflow.v1.infra.jobs.service import QueueService
from jobflow.v1.runs.schemas import Invocation, RunOutcome, RunStatus

logger = logging.getLogger(__name__)

# Errors a retry cannot fix
FATAL_ERRORS = (JobflowConfigurationError, JobflowConsistencyError)


class JobWorker:
    """
    Database-backed job worker.

    Features:
    - SELECT FOR UPDATE SKIP LOCKED for claiming jobs
    - Heartbeats and visibility timeout for stuck job recovery
    - Exponential backoff with jitter for retries
    - Immediate dead-lettering of configuration and consistency errors
    - Batch bookkeeping and the await callback job
    """

    def __init__(self, settings: Settings, database: Database):
        self.settings = settings
        self.database = database
        self.service = QueueService(settings)
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self.active_jobs: set[UUID] = set()
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the job worker main loop."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        logger.info(
            "Starting job worker",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.settings.job_concurrency,
                "poll_interval_ms": self.settings.job_poll_interval_ms,
                "registered_jobs": job_registry.list(),
            },
        )

        try:
            await asyncio.gather(
                self._worker_loop(),
                self._heartbeat_loop(),
                self._stuck_job_recovery_loop(),
            )
        except Exception:
            logger.exception("Worker crashed", extra={"worker_id": self.worker_id})
            raise
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Stopping job worker", extra={"worker_id": self.worker_id})
        self.running = False

        # Wait for active jobs to complete (with timeout)
        timeout_seconds = 30
        waited = 0
        while self.active_jobs and waited < timeout_seconds:
            await asyncio.sleep(1)
            waited += 1

        if self.active_jobs:
            logger.warning(
                "Worker stopped with active jobs",
                extra={
                    "worker_id": self.worker_id,
                    "active_jobs": len(self.active_jobs),
                },
            )

    async def run_once(self) -> int:
        """Claim one round of jobs and process them to completion. Returns the count."""
        async with self.database.SessionLocal() as session:
            jobs = await self._claim_jobs(session)
        for job in jobs:
            await self._process_job(job)
        return len(jobs)

    async def _worker_loop(self) -> None:
        """Main worker loop that claims and processes jobs."""
        while self.running:
            try:
                if len(self.active_jobs) < self.settings.job_concurrency:
                    async with self.database.SessionLocal() as session:
                        jobs_to_process = await self._claim_jobs(session)

                    # Let them run in the background
                    for job in jobs_to_process:
                        task = asyncio.create_task(self._process_job(job))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)

                await asyncio.sleep(self.settings.job_poll_interval_ms / 1000)

            except Exception:
                logger.exception(
                    "Error in worker loop", extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(5)  # Back off on errors

    async def _claim_jobs(self, session: AsyncSession) -> list[QueuedJob]:
        """
        Claim available jobs using SELECT FOR UPDATE SKIP LOCKED.

        Returns list of claimed jobs ready for processing.
        """
        available_slots = max(0, self.settings.job_concurrency - len(self.active_jobs))
        if available_slots == 0:
            return []

        now = datetime.now(UTC)

        claim_query = (
            select(QueuedJob)
            .where(
                and_(
                    QueuedJob.status == JobStatus.QUEUED.value,
                    QueuedJob.run_at <= now,
                )
            )
            .order_by(QueuedJob.priority, QueuedJob.run_at)
            .limit(available_slots)
            .with_for_update(skip_locked=True)
        )

        result = await session.execute(claim_query)
        jobs_to_claim = list(result.scalars().all())

        if not jobs_to_claim:
            await session.commit()
            return []

        job_ids = [job.id for job in jobs_to_claim]
        await session.execute(
            update(QueuedJob)
            .where(QueuedJob.id.in_(job_ids))
            .values(
                status=JobStatus.RUNNING.value,
                locked_at=now,
                locked_by=self.worker_id,
                heartbeat_at=now,
                attempts=QueuedJob.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        for job in jobs_to_claim:
            job.attempts += 1

        self.active_jobs.update(job_ids)

        logger.info(
            "Claimed jobs",
            extra={
                "worker_id": self.worker_id,
                "job_count": len(jobs_to_claim),
                "job_ids": [str(job.id) for job in jobs_to_claim],
            },
        )

        return jobs_to_claim

    async def _perform(self, job: QueuedJob) -> RunOutcome:
        if job.job_name == STEP_DONE_JOB:
            return await step_done(self.database, self.settings, job.payload["callback"])

        job_cls = job_registry.get(job.job_name)
        invocation = Invocation(
            job_name=job.job_name,
            args=load_value(job.payload.get("args", [])),
            kwargs=load_value(job.payload.get("kwargs", {})),
            job_id=job.payload.get("job_id"),
        )
        return await job_cls(self.database, self.settings).perform_invocation(invocation)

    async def _process_job(self, job: QueuedJob) -> None:
        """Process a single job with error handling and result storage."""
        job_extra = {"job_id": str(job.id), "job_name": job.job_name}

        try:
            logger.info("Processing job started", extra=job_extra)

            outcome = await self._perform(job)

            async with self.database.SessionLocal() as session:
                # An awaiting run counts once its own callback finishes it
                if outcome.status is RunStatus.SUCCEEDED:
                    await self.service.complete_run_member(
                        session, outcome.idempotency_key
                    )
                await self._mark_job_completed(
                    session,
                    job.id,
                    JobStatus.SUCCEEDED,
                    result={
                        "run_id": str(outcome.run_id),
                        "status": outcome.status.value,
                        "recovery_point": outcome.recovery_point,
                        "replayed": outcome.replayed,
                    },
                )

            logger.info(
                "Processing job completed successfully",
                extra={**job_extra, "run_status": outcome.status.value},
            )

        except asyncio.CancelledError:
            logger.info("Job processing cancelled", extra=job_extra)
            async with self.database.SessionLocal() as session:
                await self._schedule_retry(
                    session, job.id, datetime.now(UTC), "Worker cancelled", "CANCELLED"
                )
            raise

        except FATAL_ERRORS as e:
            logger.error(
                "Job moved to deadletter queue",
                extra={**job_extra, "error": str(e), "error_type": type(e).__name__},
            )
            async with self.database.SessionLocal() as session:
                await self._mark_job_completed(
                    session,
                    job.id,
                    JobStatus.DEADLETTER,
                    error=str(e),
                    error_code=type(e).__name__,
                )

        except Exception as e:
            logger.exception("Job processing failed", extra={**job_extra, "error": str(e)})
            error_code = (
                "CONCURRENCY_CONFLICT"
                if isinstance(e, JobflowConcurrencyError)
                else "PROCESSING_ERROR"
            )

            if job.can_retry(self.settings.job_max_attempts):
                next_run_at = self._calculate_retry_time(job.attempts)
                async with self.database.SessionLocal() as session:
                    await self._schedule_retry(
                        session, job.id, next_run_at, str(e), error_code
                    )
                logger.info(
                    "Job scheduled for retry",
                    extra={**job_extra, "next_run_at": next_run_at.isoformat()},
                )
            else:
                async with self.database.SessionLocal() as session:
                    await self._mark_job_completed(
                        session,
                        job.id,
                        JobStatus.DEADLETTER,
                        error=str(e),
                        error_code=error_code,
                    )
                logger.error("Job moved to deadletter queue", extra=job_extra)

        finally:
            self.active_jobs.discard(job.id)

    async def _mark_job_completed(
        self,
        session: AsyncSession,
        job_id: UUID,
        status: JobStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        """Mark job as completed with the given status and result."""
        update_values: dict[str, Any] = {
            "status": status.value,
            "locked_at": None,
            "locked_by": None,
            "heartbeat_at": None,
            "updated_at": datetime.now(UTC),
        }

        if result is not None:
            update_values["result"] = result

        if error is not None:
            update_values["last_error"] = error
            update_values["error_code"] = error_code or "PROCESSING_ERROR"

        await session.execute(
            update(QueuedJob).where(QueuedJob.id == job_id).values(**update_values)
        )
        await session.commit()

    async def _schedule_retry(
        self,
        session: AsyncSession,
        job_id: UUID,
        run_at: datetime,
        error: str,
        error_code: str,
    ) -> None:
        """Schedule job for retry."""
        await session.execute(
            update(QueuedJob)
            .where(QueuedJob.id == job_id)
            .values(
                status=JobStatus.QUEUED.value,
                run_at=run_at,
                locked_at=None,
                locked_by=None,
                heartbeat_at=None,
                last_error=error,
                error_code=error_code,
                updated_at=datetime.now(UTC),
            )
        )
        await session.commit()

    def _calculate_retry_time(self, attempt: int) -> datetime:
        """Calculate next retry time with exponential backoff and jitter."""
        base_delay = self.settings.job_backoff_base_ms / 1000
        max_delay = self.settings.job_max_backoff_s

        # Exponential backoff: base * 2^(attempt - 1)
        delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))

        # Add jitter (±25% random variation)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        final_delay = max(1, delay + jitter)

        return datetime.now(UTC) + timedelta(seconds=final_delay)

    async def _heartbeat_loop(self) -> None:
        """Update heartbeats for active jobs."""
        while self.running:
            try:
                if self.active_jobs:
                    async with self.database.SessionLocal() as session:
                        await session.execute(
                            update(QueuedJob)
                            .where(
                                and_(
                                    QueuedJob.id.in_(self.active_jobs),
                                    QueuedJob.locked_by == self.worker_id,
                                )
                            )
                            .values(heartbeat_at=datetime.now(UTC))
                        )
                        await session.commit()

                await asyncio.sleep(30)

            except Exception:
                logger.exception(
                    "Error updating heartbeats", extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(60)

    async def recover_stuck_jobs(self) -> int:
        """Requeue running jobs whose worker stopped heartbeating."""
        timeout_seconds = self.settings.job_visibility_timeout_s
        cutoff_datetime = datetime.now(UTC) - timedelta(seconds=timeout_seconds)

        async with self.database.SessionLocal() as session:
            result = await session.execute(
                update(QueuedJob)
                .where(
                    and_(
                        QueuedJob.status == JobStatus.RUNNING.value,
                        QueuedJob.heartbeat_at < cutoff_datetime,
                    )
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    locked_at=None,
                    locked_by=None,
                    heartbeat_at=None,
                    error_code="WORKER_TIMEOUT",
                    last_error=f"Job timeout after {timeout_seconds}s",
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        recovered = result.rowcount
        if recovered:
            logger.warning(
                "Recovered stuck jobs",
                extra={
                    "stuck_job_count": recovered,
                    "timeout_seconds": timeout_seconds,
                },
            )
        return recovered

    async def _stuck_job_recovery_loop(self) -> None:
        """Recover jobs that are stuck due to worker crashes."""
        while self.running:
            try:
                await self.recover_stuck_jobs()
                await asyncio.sleep(300)

            except Exception:
                logger.exception("Error in stuck job recovery")
                await asyncio.sleep(300)


def import_job_modules(modules: list[str]) -> None:
    """Import the modules that define jobs so they register themselves."""
    for module in modules:
        importlib.import_module(module)
        logger.info("Imported job module", extra={"job_module": module})


async def run_worker(settings: Settings, modules: list[str] | None = None) -> None:
    """Run a worker until cancelled."""
    import_job_modules([*settings.job_modules, *(modules or [])])

    database = Database(settings)
    register_adapters(database, settings)
    worker = JobWorker(settings, database)
    try:
        await worker.start()
    finally:
        await worker.stop()
        await database.close()
