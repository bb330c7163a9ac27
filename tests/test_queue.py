"""Built-in queue: enqueue, batches, the worker and recovery."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from jobflow import RunStatus
from jobflow.v1.adapters.callbacks import STEP_DONE_JOB
from jobflow.v1.infra.jobs.models import JobBatch, JobStatus, QueuedJob
from jobflow.v1.infra.jobs.schemas import QueuedJobCreate
from jobflow.v1.infra.jobs.service import CALLBACK_PRIORITY, QueueService
from jobflow.v1.infra.jobs.worker import JobWorker
from jobflow.v1.runs.models import ExecutionRecord, StagedJob
from jobflow.v1.runs.outbox import awaited_job_id

from sample_jobs import FanOutJob, GrandparentJob, calls, failures, ledger

RECOVERY_POINT = {"v": 1, "kind": "recovery_point", "name": "s"}


@pytest.fixture
def service(queue_settings) -> QueueService:
    return QueueService(queue_settings)


@pytest.fixture
def worker(queue_settings, database) -> JobWorker:
    return JobWorker(queue_settings, database)


def three_step(order_id: int, job_id: str | None = None) -> QueuedJobCreate:
    job_id = job_id or f"order-{order_id}"
    return QueuedJobCreate(
        job_name="three_step",
        payload={"args": [order_id], "kwargs": {}, "job_id": job_id},
        dedupe_key=job_id,
    )


async def load_jobs(database, **filters) -> list[QueuedJob]:
    async with database.SessionLocal() as session:
        query = select(QueuedJob).order_by(QueuedJob.created_at)
        for name, value in filters.items():
            query = query.where(getattr(QueuedJob, name) == value)
        return list((await session.execute(query)).scalars().all())


class TestEnqueue:
    async def test_dedupe_key_returns_existing_job(self, db_session, service):
        first = await service.enqueue(db_session, three_step(1))
        second = await service.enqueue(db_session, three_step(1))

        assert first.deduplicated is False
        assert second.deduplicated is True
        assert second.job_id == first.job_id
        assert second.status == JobStatus.QUEUED

    async def test_dedupe_ignores_status(self, database, db_session, service, worker):
        first = await service.enqueue(db_session, three_step(1))
        await worker.run_once()

        async with database.SessionLocal() as session:
            again = await service.enqueue(session, three_step(1))

        assert again.deduplicated is True
        assert again.job_id == first.job_id
        assert again.status == JobStatus.SUCCEEDED

    async def test_batch_with_callback_key_is_enqueued_once(self, db_session, service):
        callback = {"run_id": "r", "recovery_point": RECOVERY_POINT}
        jobs = [three_step(1), three_step(2)]

        first = await service.enqueue_batch(db_session, jobs, callback, "r:s")
        second = await service.enqueue_batch(db_session, jobs, callback, "r:s")

        assert (first.enqueued, first.pending, first.deduplicated) == (2, 2, False)
        assert second.deduplicated is True
        assert second.batch_id == first.batch_id
        assert second.enqueued == 0

    async def test_run_member_is_counted_once(self, database, db_session, service):
        callback = {"run_id": "r", "recovery_point": RECOVERY_POINT}
        await service.enqueue_batch(db_session, [three_step(1)], callback, "r:s")

        assert await service.complete_run_member(db_session, "order-1") is True
        assert await service.complete_run_member(db_session, "order-1") is False
        assert await service.complete_run_member(db_session, "order-2") is False
        await db_session.commit()

        async with database.SessionLocal() as session:
            batch = (await session.execute(select(JobBatch))).scalar_one()
        assert batch.pending == 0
        assert len(await load_jobs(database, job_name=STEP_DONE_JOB)) == 1

    async def test_batch_of_finished_jobs_queues_callback_at_once(
        self, database, db_session, service, worker
    ):
        await service.enqueue(db_session, three_step(1))
        await worker.run_once()

        callback = {"run_id": "r", "recovery_point": RECOVERY_POINT}
        async with database.SessionLocal() as session:
            response = await service.enqueue_batch(
                session, [three_step(1)], callback, "r:s"
            )

        assert (response.enqueued, response.pending) == (0, 0)
        [callback_job] = await load_jobs(database, job_name=STEP_DONE_JOB)
        assert callback_job.priority == CALLBACK_PRIORITY
        assert callback_job.payload == {"callback": callback}
        assert callback_job.dedupe_key == f"{STEP_DONE_JOB}:r:s"


class TestWorker:
    async def test_runs_a_job_and_stores_the_outcome(
        self, database, db_session, service, worker
    ):
        await service.enqueue(db_session, three_step(4))

        assert await worker.run_once() == 1
        assert await worker.run_once() == 0

        [job] = await load_jobs(database)
        assert job.status == JobStatus.SUCCEEDED.value
        assert job.attempts == 1
        assert job.locked_by is None
        assert job.result["status"] == "succeeded"
        assert job.result["replayed"] is False
        assert calls == ["three_step.a", "three_step.b", "three_step.c"]

    async def test_fan_out_through_the_queue(self, database, worker):
        outcome = await FanOutJob(database).perform(2)
        assert outcome.status == RunStatus.AWAITING

        children = await load_jobs(database, job_name="child")
        assert sorted(job.dedupe_key for job in children) == [
            awaited_job_id(outcome.run_id, "prepare", 0),
            awaited_job_id(outcome.run_id, "prepare", 1),
        ]
        async with database.SessionLocal() as session:
            assert (await session.execute(select(StagedJob))).first() is None

        # Children, then the callback, then nothing
        assert await worker.run_once() == 2
        assert await worker.run_once() == 1
        assert await worker.run_once() == 0

        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, outcome.run_id)
            batch = (await session.execute(select(JobBatch))).scalar_one()
        assert record.succeeded
        assert batch.pending == 0
        assert batch.completed_at is not None
        assert calls == [
            "fan_out.prepare",
            "child.handle",
            "child.handle",
            "fan_out.finalize",
        ]
        assert await ledger(database) == [
            "child.handle:0",
            "child.handle:1",
            "fan_out.finalize",
            "fan_out.prepare",
        ]

    async def test_nested_fan_out_joins_after_the_inner_run_finishes(
        self, database, worker
    ):
        outcome = await GrandparentJob(database).perform(1)
        assert outcome.status == RunStatus.AWAITING

        # Inner parent, its child, its callback, then the outer callback
        assert [await worker.run_once() for _ in range(5)] == [1, 1, 1, 1, 0]

        [inner] = await load_jobs(database, job_name="fan_out")
        assert inner.result["status"] == "awaiting"
        assert inner.batch_counted_at is not None
        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, outcome.run_id)
            batches = (await session.execute(select(JobBatch))).scalars().all()
        assert record.succeeded
        assert [batch.pending for batch in batches] == [0, 0]
        assert calls == [
            "grandparent.start",
            "fan_out.prepare",
            "child.handle",
            "fan_out.finalize",
            "grandparent.done",
        ]

    async def test_awaiting_member_keeps_its_batch_open(self, database, worker):
        outcome = await GrandparentJob(database).perform(1)

        assert await worker.run_once() == 1

        async with database.SessionLocal() as session:
            batch = (
                await session.execute(
                    select(JobBatch).where(
                        JobBatch.callback_key == f"{outcome.run_id}:start"
                    )
                )
            ).scalar_one()
        assert batch.pending == 1
        assert batch.completed_at is None
        assert await load_jobs(database, job_name=STEP_DONE_JOB) == []

    async def test_redelivered_awaiting_parent_does_not_run_its_step_again(
        self, database, db_session, service, worker
    ):
        outcome = await FanOutJob(database).perform(1)
        parent_key = outcome.idempotency_key
        await service.enqueue(
            db_session,
            QueuedJobCreate(
                job_name="fan_out",
                payload={"args": [1], "kwargs": {}, "job_id": parent_key},
                dedupe_key=parent_key,
            ),
        )

        assert await worker.run_once() == 2

        [parent] = await load_jobs(database, job_name="fan_out")
        assert parent.result["status"] == "awaiting"
        assert parent.result["replayed"] is True
        assert calls.count("fan_out.prepare") == 1
        assert len(await load_jobs(database, job_name="child")) == 1

    async def test_failed_child_holds_the_callback_until_it_succeeds(
        self, database, worker, service
    ):
        failures.add("child:0")
        outcome = await FanOutJob(database).perform(1)

        await worker.run_once()
        [child] = await load_jobs(database, job_name="child")
        assert child.status == JobStatus.QUEUED.value
        assert child.error_code == "PROCESSING_ERROR"
        assert await load_jobs(database, job_name=STEP_DONE_JOB) == []

        failures.clear()
        async with database.SessionLocal() as session:
            child = await session.get(QueuedJob, child.id)
            child.run_at = datetime.now(UTC) - timedelta(seconds=1)
            await session.commit()

        assert await worker.run_once() == 1
        assert await worker.run_once() == 1

        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, outcome.run_id)
        assert record.succeeded

    async def test_unknown_job_is_dead_lettered(
        self, database, db_session, service, worker
    ):
        await service.enqueue(db_session, QueuedJobCreate(job_name="no_such_job"))

        await worker.run_once()

        [job] = await load_jobs(database)
        assert job.status == JobStatus.DEADLETTER.value
        assert job.error_code == "UnknownJob"

    async def test_step_error_is_retried_with_backoff(
        self, database, db_session, service, worker
    ):
        failures.add("b")
        await service.enqueue(db_session, three_step(5))

        await worker.run_once()

        [job] = await load_jobs(database)
        assert job.status == JobStatus.QUEUED.value
        assert job.attempts == 1
        assert job.error_code == "PROCESSING_ERROR"
        assert job.last_error == "boom at b"
        assert job.run_at.replace(tzinfo=UTC) > datetime.now(UTC)
        assert await worker.run_once() == 0

    async def test_error_is_dead_lettered_after_the_last_attempt(
        self, database, db_session, service, worker, monkeypatch, queue_settings
    ):
        monkeypatch.setattr(queue_settings, "job_max_attempts", 1)
        failures.add("b")
        await service.enqueue(db_session, three_step(5))

        await worker.run_once()

        [job] = await load_jobs(database)
        assert job.status == JobStatus.DEADLETTER.value
        assert job.error_code == "PROCESSING_ERROR"

    async def test_mismatched_arguments_are_dead_lettered(
        self, database, db_session, service, worker
    ):
        await service.enqueue(db_session, three_step(1, job_id="shared"))
        await worker.run_once()
        await service.enqueue(
            db_session,
            QueuedJobCreate(
                job_name="three_step",
                payload={"args": [2], "kwargs": {}, "job_id": "shared"},
            ),
        )

        await worker.run_once()

        dead = await load_jobs(database, status=JobStatus.DEADLETTER.value)
        assert [job.error_code for job in dead] == [
            "MismatchedIdempotencyKeyAndJobArguments"
        ]

    def test_backoff_grows_and_is_capped(self, worker, queue_settings):
        now = datetime.now(UTC)
        first = (worker._calculate_retry_time(1) - now).total_seconds()
        capped = (worker._calculate_retry_time(30) - now).total_seconds()

        base = queue_settings.job_backoff_base_ms / 1000
        assert base * 0.75 - 1 <= first <= base * 1.25 + 1
        assert capped <= queue_settings.job_max_backoff_s * 1.25 + 1


class TestMaintenance:
    async def add_job(self, database, **values) -> QueuedJob:
        now = datetime.now(UTC)
        fields = {"created_at": now, "updated_at": now, "run_at": now}
        fields.update(values)
        job = QueuedJob(
            job_name="three_step", payload={"args": [1], "kwargs": {}}, **fields
        )
        async with database.SessionLocal() as session:
            session.add(job)
            await session.commit()
        return job

    async def test_retry_dead_lettered_job(self, database, db_session, service):
        job = await self.add_job(
            database, status=JobStatus.DEADLETTER.value, attempts=5, error_code="X"
        )

        assert await service.retry_job(db_session, job.id) is True
        assert await service.retry_job(db_session, job.id) is False

        [stored] = await load_jobs(database)
        assert stored.status == JobStatus.QUEUED.value
        assert stored.attempts == 0

    async def test_cancel_only_queued_jobs(self, database, db_session, service):
        queued = await self.add_job(database, status=JobStatus.QUEUED.value)
        running = await self.add_job(database, status=JobStatus.RUNNING.value)

        assert await service.cancel_job(db_session, queued.id) is True
        assert await service.cancel_job(db_session, running.id) is False

    async def test_recover_stuck_jobs(self, database, worker, queue_settings):
        stale = datetime.now(UTC) - timedelta(
            seconds=queue_settings.job_visibility_timeout_s + 60
        )
        await self.add_job(
            database,
            status=JobStatus.RUNNING.value,
            heartbeat_at=stale,
            locked_by="gone",
        )
        await self.add_job(
            database,
            status=JobStatus.RUNNING.value,
            heartbeat_at=datetime.now(UTC),
            locked_by="alive",
        )

        assert await worker.recover_stuck_jobs() == 1

        recovered = await load_jobs(database, status=JobStatus.QUEUED.value)
        assert [job.error_code for job in recovered] == ["WORKER_TIMEOUT"]

    async def test_cleanup_old_jobs(self, database, db_session, service):
        old = datetime.now(UTC) - timedelta(days=30)
        await self.add_job(database, status=JobStatus.SUCCEEDED.value, updated_at=old)
        await self.add_job(database, status=JobStatus.FAILED.value, updated_at=old)
        await self.add_job(database, status=JobStatus.SUCCEEDED.value)

        assert await service.cleanup_old_jobs(db_session) == 1
        assert len(await load_jobs(database)) == 2

    async def test_stats(self, database, db_session, service):
        await self.add_job(database, status=JobStatus.QUEUED.value)
        await self.add_job(database, status=JobStatus.RUNNING.value)
        await self.add_job(database, status=JobStatus.DEADLETTER.value)

        stats = await service.get_stats(db_session)

        assert stats.total_jobs == 3
        assert stats.queue_depth == 2
        assert stats.failed_last_hour == 1
        assert stats.by_job == {"three_step": 3}
        assert stats.open_batches == 0
