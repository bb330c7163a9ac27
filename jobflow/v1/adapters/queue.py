"""
Adapter for the built-in database-backed queue.
"""

from typing import Any

from jobflow.config.settings import Settings
from jobflow.infra.database import Database
from jobflow.v1.adapters.callbacks import callback_key
from jobflow.v1.infra.jobs.schemas import QueuedJobCreate
from jobflow.v1.infra.jobs.service import QueueService


class QueueAdapter:
    """Stores jobs in ``jobflow_queue_jobs`` for a ``JobWorker`` to pick up."""

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.service = QueueService(settings)

    @staticmethod
    def _job_create(
        job_name: str, args: list[Any], kwargs: dict[str, Any], job_id: str
    ) -> QueuedJobCreate:
        return QueuedJobCreate(
            job_name=job_name,
            payload={"args": args, "kwargs": kwargs, "job_id": job_id},
            dedupe_key=job_id,
        )

    async def enqueue(
        self,
        job_name: str,
        args: list[Any],
        kwargs: dict[str, Any],
        job_id: str,
    ) -> None:
        async with self.database.SessionLocal() as session:
            await self.service.enqueue(
                session, self._job_create(job_name, args, kwargs, job_id)
            )

    async def enqueue_batch(
        self, jobs: list[dict[str, Any]], callback: dict[str, Any]
    ) -> None:
        async with self.database.SessionLocal() as session:
            await self.service.enqueue_batch(
                session,
                [
                    self._job_create(
                        job["job_name"], job["args"], job["kwargs"], job["job_id"]
                    )
                    for job in jobs
                ],
                callback=callback,
                callback_key=callback_key(callback),
            )
