"""
In-process adapter: runs staged jobs right after the staging transaction commits.

Intended for development and tests. An awaited batch runs its jobs one after
another and fires the callback only when every one of their runs finished
successfully; the first failure propagates so the outbox keeps the rows for
the sweep. A member whose run is still awaiting (its own fan-out went to
another adapter) holds the callback back the same way.
"""

import logging
from typing import Any

from jobflow.config.settings import Settings
from jobflow.infra.database import Database
from jobflow.v1.adapters.callbacks import callback_key, step_done
from jobflow.v1.core.exceptions import AwaitedJobsPending
from jobflow.v1.core.registries import job_registry
from jobflow.v1.core.serializer import load_value
from jobflow.v1.runs.schemas import Invocation, RunOutcome, RunStatus

logger = logging.getLogger(__name__)


class InlineAdapter:
    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings

    async def _perform(
        self,
        job_name: str,
        args: list[Any],
        kwargs: dict[str, Any],
        job_id: str,
    ) -> RunOutcome:
        job_cls = job_registry.get(job_name)
        outcome = await job_cls(self.database, self.settings).perform_invocation(
            Invocation(
                job_name=job_name,
                args=load_value(args),
                kwargs=load_value(kwargs),
                job_id=job_id,
            )
        )
        logger.debug(
            "Inline job performed",
            extra={
                "job_name": job_name,
                "job_id": job_id,
                "run_id": str(outcome.run_id),
                "status": outcome.status.value,
            },
        )
        return outcome

    async def enqueue(
        self,
        job_name: str,
        args: list[Any],
        kwargs: dict[str, Any],
        job_id: str,
    ) -> None:
        await self._perform(job_name, args, kwargs, job_id)

    async def enqueue_batch(
        self, jobs: list[dict[str, Any]], callback: dict[str, Any]
    ) -> None:
        unfinished = []
        for job in jobs:
            outcome = await self._perform(
                job["job_name"], job["args"], job["kwargs"], job["job_id"]
            )
            if outcome.status is not RunStatus.SUCCEEDED:
                unfinished.append(job["job_id"])

        if unfinished:
            raise AwaitedJobsPending(callback_key(callback), unfinished)

        await step_done(self.database, self.settings, callback)
