"""Transactional outbox: staging, dispatch after commit, sweep and fan-out."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from jobflow import RunStatus, dispatch_staged
from jobflow.config.settings import AdapterKind
from jobflow.v1.core.exceptions import UnknownJobAdapter
from jobflow.v1.core.registries import adapter_registry
from jobflow.v1.runs.models import ExecutionRecord, StagedJob, utcnow
from jobflow.v1.runs.outbox import COMMITTED_KEY, PENDING_KEY, Outbox, awaited_job_id

from sample_jobs import (
    ChildJob,
    FanOutJob,
    FollowUpJob,
    GrandparentJob,
    StagingJob,
    calls,
    failures,
    ledger,
)


class RecordingAdapter:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.enqueued: list[tuple] = []
        self.batches: list[tuple] = []

    async def enqueue(self, job_name, args, kwargs, job_id):
        if self.fail:
            raise ConnectionError("queue unavailable")
        self.enqueued.append((job_name, args, kwargs, job_id))

    async def enqueue_batch(self, jobs, callback):
        if self.fail:
            raise ConnectionError("queue unavailable")
        self.batches.append((jobs, callback))


@pytest.fixture
def recorder(database):
    adapter = RecordingAdapter()
    adapter_registry.register("inline", adapter)
    return adapter


async def count(database, model) -> int:
    async with database.SessionLocal() as session:
        return (await session.execute(select(func.count(model.id)))).scalar()


class TestStaging:
    async def test_rolled_back_transaction_stages_nothing(self, database, recorder):
        async with database.SessionLocal() as session:
            await FollowUpJob.stage(session, 42)
            assert len(session.info[PENDING_KEY]) == 1
            await session.rollback()

            assert await dispatch_staged(session) == 0

        assert recorder.enqueued == []
        assert await count(database, StagedJob) == 0
        assert await count(database, ExecutionRecord) == 0

    async def test_committed_stage_is_dispatched_and_deleted(self, database, recorder):
        async with database.SessionLocal() as session:
            staged = await FollowUpJob.stage(session, 42)
            await session.commit()

            assert PENDING_KEY not in session.info
            assert len(session.info[COMMITTED_KEY]) == 1
            assert await dispatch_staged(session) == 1

        assert recorder.enqueued == [("follow_up", [42], {}, staged.job_id)]
        assert await count(database, StagedJob) == 0

    async def test_stage_precreates_a_staged_run(self, database, recorder):
        async with database.SessionLocal() as session:
            staged = await FollowUpJob.stage(session, 42)
            await session.commit()

        async with database.SessionLocal() as session:
            record = (await session.execute(select(ExecutionRecord))).scalar_one()

        assert record.staged is True
        assert record.status == RunStatus.STAGED
        assert record.idempotency_key == staged.job_id
        assert record.recovery_point is None
        assert record.workflow is None

    async def test_stage_honours_the_settings_it_is_given(
        self, database, settings, recorder
    ):
        queue = RecordingAdapter()
        adapter_registry.register("queue", queue)
        queue_settings = settings.model_copy(
            update={"default_adapter": AdapterKind.QUEUE}
        )

        async with database.SessionLocal() as session:
            staged = await FollowUpJob.stage(session, 42, settings=queue_settings)
            await session.commit()
            assert await dispatch_staged(session, settings=queue_settings) == 1

        assert staged.adapter == "queue"
        assert [entry[:3] for entry in queue.enqueued] == [("follow_up", [42], {})]
        assert recorder.enqueued == []

    async def test_unknown_adapter_fails_inside_the_transaction(
        self, database, monkeypatch
    ):
        monkeypatch.setattr(FollowUpJob, "adapter", "carrier-pigeon")

        async with database.SessionLocal() as session:
            with pytest.raises(UnknownJobAdapter):
                await FollowUpJob.stage(session, 1)
            await session.rollback()

        assert await count(database, StagedJob) == 0

    async def test_failed_enqueue_leaves_row_for_sweep(self, database, settings):
        failing = RecordingAdapter(fail=True)
        adapter_registry.register("inline", failing)

        async with database.SessionLocal() as session:
            await FollowUpJob.stage(session, 42)
            await session.commit()
            assert await dispatch_staged(session) == 0

        assert await count(database, StagedJob) == 1

        # Too young for the default threshold
        outbox = Outbox(settings)
        assert await outbox.sweep(database.SessionLocal) == (0, 0)

        working = RecordingAdapter()
        adapter_registry.register("inline", working)
        assert await outbox.sweep(database.SessionLocal, older_than_s=0) == (1, 0)
        assert [entry[0] for entry in working.enqueued] == ["follow_up"]
        assert await count(database, StagedJob) == 0

    async def test_sweep_reports_failures(self, database, settings):
        adapter_registry.register("inline", RecordingAdapter(fail=True))
        async with database.SessionLocal() as session:
            await FollowUpJob.stage(session, 1)
            await FollowUpJob.stage(session, 2)
            await session.commit()
            session.info.pop(COMMITTED_KEY)

        assert await Outbox(settings).sweep(database.SessionLocal, older_than_s=0) == (
            0,
            2,
        )
        assert await count(database, StagedJob) == 2


class TestStepStaging:
    async def test_step_stages_follow_up_job(self, database):
        outcome = await StagingJob(database).perform(9)

        assert outcome.succeeded
        assert await ledger(database) == ["follow_up.notify:9", "staging.place_order"]
        assert await count(database, StagedJob) == 0

        async with database.SessionLocal() as session:
            records = (
                await session.execute(
                    select(ExecutionRecord).where(ExecutionRecord.job_name == "follow_up")
                )
            ).scalars().all()
        assert len(records) == 1
        assert records[0].succeeded
        assert records[0].staged is False

    async def test_failing_step_enqueues_nothing(self, database, recorder):
        failures.add("place_order")

        with pytest.raises(RuntimeError):
            await StagingJob(database).perform(9)

        assert recorder.enqueued == []
        assert await count(database, StagedJob) == 0
        async with database.SessionLocal() as session:
            names = (
                await session.execute(select(ExecutionRecord.job_name))
            ).scalars().all()
        assert names == ["staging"]

    async def test_redelivered_staged_job_replays(self, database):
        async with database.SessionLocal() as session:
            staged = await FollowUpJob.stage(session, 3)
            await session.commit()
            await dispatch_staged(session)

        # The same delivery again, as after a crash between enqueue and delete
        await adapter_registry.get("inline").enqueue("follow_up", [3], {}, staged.job_id)

        assert calls == ["follow_up.notify"]


class TestAwaits:
    async def test_fan_out_runs_children_then_continues(self, database):
        outcome = await FanOutJob(database).perform(2)

        assert outcome.status == RunStatus.SUCCEEDED
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
        assert await count(database, StagedJob) == 0

        async with database.SessionLocal() as session:
            children = (
                await session.execute(
                    select(ExecutionRecord).where(ExecutionRecord.job_name == "child")
                )
            ).scalars().all()
        assert sorted(child.idempotency_key for child in children) == [
            awaited_job_id(outcome.run_id, "prepare", 0),
            awaited_job_id(outcome.run_id, "prepare", 1),
        ]
        assert all(child.succeeded for child in children)

    async def test_batch_carries_callback(self, database, recorder):
        outcome = await FanOutJob(database).perform(2)

        assert outcome.status == RunStatus.AWAITING
        assert outcome.recovery_point == "prepare"
        assert outcome.context == {"prepared": True}

        jobs, callback = recorder.batches[0]
        assert [job["job_id"] for job in jobs] == [
            awaited_job_id(outcome.run_id, "prepare", 0),
            awaited_job_id(outcome.run_id, "prepare", 1),
        ]
        assert callback == {
            "run_id": str(outcome.run_id),
            "recovery_point": {"v": 1, "kind": "recovery_point", "name": "prepare"},
        }

        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, outcome.run_id)
        assert record.locked_at is None
        assert record.awaiting_step == "prepare"

    async def test_repeated_perform_while_awaiting_runs_the_step_once(
        self, database, recorder
    ):
        first = await FanOutJob(database).perform(1)
        second = await FanOutJob(database).perform(1)

        assert first.status == second.status == RunStatus.AWAITING
        assert second.run_id == first.run_id
        assert second.replayed is True
        assert calls == ["fan_out.prepare"]
        assert await ledger(database) == ["fan_out.prepare"]
        assert len(recorder.batches) == 1

        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, first.run_id)
        assert record.awaiting_step == "prepare"
        assert record.locked_at is None

    async def test_nested_fan_out_runs_inline_in_order(self, database):
        outcome = await GrandparentJob(database).perform(1)

        assert outcome.status == RunStatus.SUCCEEDED
        assert calls == [
            "grandparent.start",
            "fan_out.prepare",
            "child.handle",
            "fan_out.finalize",
            "grandparent.done",
        ]
        assert await count(database, StagedJob) == 0

    async def test_awaiting_member_holds_the_inline_callback(
        self, database, settings, monkeypatch
    ):
        from jobflow.v1.adapters.callbacks import step_done

        # The inner fan-out hands its children to a queue that never runs them
        queue = RecordingAdapter()
        adapter_registry.register("queue", queue)
        monkeypatch.setattr(FanOutJob, "adapter", "queue")

        outcome = await GrandparentJob(database).perform(1)

        assert outcome.status == RunStatus.AWAITING
        assert calls == ["grandparent.start", "fan_out.prepare"]
        async with database.SessionLocal() as session:
            [kept] = (await session.execute(select(StagedJob))).scalars().all()
        assert kept.awaited_by_run_id == outcome.run_id
        assert kept.job_name == "fan_out"

        # The inner children finish, then the sweep redelivers the inner run
        _, callback = queue.batches[0]
        inner = await step_done(database, settings, callback)
        assert inner.status == RunStatus.SUCCEEDED

        enqueued, failed = await Outbox(settings).sweep(
            database.SessionLocal, older_than_s=0
        )

        assert (enqueued, failed) == (1, 0)
        assert calls[2:] == ["fan_out.finalize", "grandparent.done"]
        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, outcome.run_id)
        assert record.succeeded

    async def test_failed_child_leaves_parent_awaiting_until_sweep(
        self, database, settings
    ):
        failures.add("child:1")

        outcome = await FanOutJob(database).perform(2)

        assert outcome.status == RunStatus.AWAITING
        assert await count(database, StagedJob) == 2
        assert "fan_out.finalize" not in calls

        failures.clear()
        calls.clear()
        enqueued, failed = await Outbox(settings).sweep(
            database.SessionLocal, older_than_s=0
        )

        assert (enqueued, failed) == (2, 0)
        # Child 0 replays, child 1 resumes, then the parent continues
        assert calls == ["child.handle", "fan_out.finalize"]
        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, outcome.run_id)
        assert record.succeeded

    async def test_duplicate_callback_is_ignored(self, database, settings):
        from jobflow.v1.adapters.callbacks import step_done

        outcome = await FanOutJob(database).perform(1)
        calls.clear()

        callback = {
            "run_id": str(outcome.run_id),
            "recovery_point": {"v": 1, "kind": "recovery_point", "name": "prepare"},
        }
        again = await step_done(database, settings, callback)

        assert again.succeeded
        assert calls == []

    async def test_callback_for_an_earlier_step_is_a_no_op(self, database, settings):
        from jobflow.v1.adapters.callbacks import step_done

        recorder = RecordingAdapter()
        adapter_registry.register("inline", recorder)
        outcome = await FanOutJob(database).perform(1)

        # Pretend the run moved on without an error
        async with database.SessionLocal() as session:
            await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == outcome.run_id)
                .values(recovery_point="finalize", awaiting_step=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        result = await step_done(
            database,
            settings,
            {
                "run_id": str(outcome.run_id),
                "recovery_point": {"v": 1, "kind": "recovery_point", "name": "prepare"},
            },
        )

        assert result.status == RunStatus.AWAITING
        assert "fan_out.finalize" not in calls
        async with database.SessionLocal() as session:
            record = await session.get(ExecutionRecord, outcome.run_id)
        assert record.locked_at is None


async def test_sweep_picks_up_rows_older_than_threshold(database, settings, recorder):
    async with database.SessionLocal() as session:
        await ChildJob.stage(session, 1)
        await session.commit()
        session.info.pop(COMMITTED_KEY)
        await session.execute(
            update(StagedJob)
            .values(created_at=utcnow() - timedelta(minutes=10))
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    outbox = Outbox(settings)
    assert await outbox.sweep(database.SessionLocal, older_than_s=900) == (0, 0)
    assert await outbox.sweep(database.SessionLocal, older_than_s=300) == (1, 0)
    assert [entry[0] for entry in recorder.enqueued] == ["child"]
