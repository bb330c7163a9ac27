"""Administration API: runs, staged jobs and the queue."""

from uuid import UUID, uuid4

import pytest
from sqlalchemy import update

from jobflow.v1.infra.jobs.models import JobStatus, QueuedJob
from jobflow.v1.infra.jobs.schemas import QueuedJobCreate
from jobflow.v1.infra.jobs.service import QueueService
from jobflow.v1.runs.models import ExecutionRecord, utcnow

from sample_jobs import FanOutJob, FollowUpJob, ThreeStepJob, failures, ledger


async def perform_failing(database, order_id: int) -> None:
    failures.add("b")
    with pytest.raises(RuntimeError):
        await ThreeStepJob(database).perform(order_id)
    failures.discard("b")


async def lock_run(database, run_id) -> None:
    async with database.SessionLocal() as session:
        await session.execute(
            update(ExecutionRecord)
            .where(ExecutionRecord.id == run_id)
            .values(locked_at=utcnow(), locked_by="crashed-worker")
            .execution_options(synchronize_session=False)
        )
        await session.commit()


class TestRunEndpoints:
    async def test_list_runs(self, async_client, database):
        outcome = await ThreeStepJob(database).perform(1)

        response = await async_client.get("/v1/runs")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        data = body["data"]
        assert data["total"] == 1
        run = data["runs"][0]
        assert run["id"] == str(outcome.run_id)
        assert run["job_name"] == "three_step"
        assert run["status"] == "succeeded"
        assert run["recovery_point"] == "FINISHED"
        assert run["job_args"] == {"args": [1], "kwargs": {}}
        assert run["context"]["total"] == 10

    async def test_filter_by_status_and_job(self, async_client, database):
        await ThreeStepJob(database).perform(1)
        await perform_failing(database, 2)
        await FollowUpJob(database).perform(3)

        failed = (await async_client.get("/v1/runs", params={"status": "failed"})).json()
        by_job = (
            await async_client.get("/v1/runs", params={"job_name": "follow_up"})
        ).json()

        assert [run["job_args"]["args"] for run in failed["data"]["runs"]] == [[2]]
        assert failed["data"]["runs"][0]["error"]["message"] == "boom at b"
        assert by_job["data"]["total"] == 1

    async def test_run_waiting_on_awaited_jobs_is_listed_as_awaiting(
        self, async_client, database, queue_settings
    ):
        outcome = await FanOutJob(database).perform(1)
        await lock_run(database, outcome.run_id)

        awaiting = (
            await async_client.get("/v1/runs", params={"status": "awaiting"})
        ).json()
        running = (
            await async_client.get("/v1/runs", params={"status": "running"})
        ).json()

        [run] = [r for r in awaiting["data"]["runs"] if r["job_name"] == "fan_out"]
        assert run["awaiting_step"] == "prepare"
        assert running["data"]["total"] == 0

    async def test_pagination(self, async_client, database):
        for order_id in range(3):
            await ThreeStepJob(database).perform(order_id)

        response = await async_client.get("/v1/runs", params={"limit": 2, "offset": 2})

        data = response.json()["data"]
        assert data["total"] == 3
        assert len(data["runs"]) == 1
        assert (data["limit"], data["offset"]) == (2, 2)

    async def test_get_run(self, async_client, database):
        outcome = await ThreeStepJob(database).perform(1)

        response = await async_client.get(f"/v1/runs/{outcome.run_id}")

        assert response.status_code == 200
        assert list(response.json()["data"]["workflow"]) == ["a", "b", "c"]

    async def test_get_missing_run(self, async_client, database):
        response = await async_client.get(f"/v1/runs/{uuid4()}")

        assert response.status_code == 404
        body = response.json()
        assert body["ok"] is False
        assert "not found" in body["error"]["message"]

    async def test_stats(self, async_client, database):
        await ThreeStepJob(database).perform(1)
        await perform_failing(database, 2)

        response = await async_client.get("/v1/runs/stats/overview")

        stats = response.json()["data"]
        assert stats["total_runs"] == 2
        assert stats["by_status"]["succeeded"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["by_job"] == {"three_step": 2}
        assert stats["locked"] == 0

    async def test_purge_keeps_failed_runs(self, async_client, database):
        await ThreeStepJob(database).perform(1)
        await perform_failing(database, 2)

        response = await async_client.post("/v1/runs/purge", json={})

        assert response.json()["data"] == {"deleted_count": 1}
        remaining = (await async_client.get("/v1/runs")).json()["data"]
        assert [run["status"] for run in remaining["runs"]] == ["failed"]

    async def test_purge_respects_age(self, async_client, database):
        await ThreeStepJob(database).perform(1)

        response = await async_client.post(
            "/v1/runs/purge", json={"older_than_days": 1}
        )

        assert response.json()["data"] == {"deleted_count": 0}

    async def test_purged_key_runs_again(self, async_client, database):
        await ThreeStepJob(database).perform(1)
        await async_client.post("/v1/runs/purge", json={"job_name": "three_step"})

        outcome = await ThreeStepJob(database).perform(1)

        assert outcome.replayed is False
        assert await ledger(database) == [
            "three_step.a",
            "three_step.a",
            "three_step.b",
            "three_step.b",
            "three_step.c",
            "three_step.c",
        ]

    async def test_unlock(self, async_client, database):
        await perform_failing(database, 2)
        runs = (await async_client.get("/v1/runs")).json()["data"]["runs"]
        run_id = runs[0]["id"]

        not_locked = await async_client.post(f"/v1/runs/{run_id}/unlock")
        assert not_locked.status_code == 409

        await lock_run(database, UUID(run_id))

        response = await async_client.post(f"/v1/runs/{run_id}/unlock")

        assert response.status_code == 200
        assert response.json()["data"] == {"success": True, "run_id": run_id}
        run = (await async_client.get(f"/v1/runs/{run_id}")).json()["data"]
        assert run["locked_at"] is None

    async def test_unlock_missing_run(self, async_client, database):
        response = await async_client.post(f"/v1/runs/{uuid4()}/unlock")

        assert response.status_code == 404


class TestStagedEndpoints:
    async def stage_without_dispatch(self, database, order_id: int) -> None:
        async with database.SessionLocal() as session:
            await FollowUpJob.stage(session, order_id)
            await session.commit()

    async def test_list_staged(self, async_client, database):
        await self.stage_without_dispatch(database, 1)

        response = await async_client.get("/v1/staged")

        data = response.json()["data"]
        assert data["total"] == 1
        assert data["staged_jobs"][0]["job_name"] == "follow_up"
        assert data["staged_jobs"][0]["adapter"] == "inline"
        assert data["staged_jobs"][0]["awaited_by_run_id"] is None

    async def test_sweep(self, async_client, database):
        await self.stage_without_dispatch(database, 1)

        too_young = await async_client.post("/v1/staged/sweep", json={})
        swept = await async_client.post("/v1/staged/sweep", json={"older_than_s": 0})

        assert too_young.json()["data"] == {"enqueued": 0, "failed": 0}
        assert swept.json()["data"] == {"enqueued": 1, "failed": 0}
        assert await ledger(database) == ["follow_up.notify:1"]
        assert (await async_client.get("/v1/staged")).json()["data"]["total"] == 0


class TestJobEndpoints:
    async def enqueue(self, database, settings, job_name="three_step"):
        async with database.SessionLocal() as session:
            response = await QueueService(settings).enqueue(
                session,
                QueuedJobCreate(
                    job_name=job_name, payload={"args": [1], "kwargs": {}}
                ),
            )
        return response.job_id

    async def test_list_and_get_jobs(self, async_client, database, settings):
        job_id = await self.enqueue(database, settings)
        await self.enqueue(database, settings, job_name="follow_up")

        listed = (
            await async_client.get(
                "/v1/jobs", params={"status": ["queued"], "job_name": "three_step"}
            )
        ).json()["data"]
        single = (await async_client.get(f"/v1/jobs/{job_id}")).json()["data"]

        assert listed["total"] == 1
        assert listed["jobs"][0]["id"] == str(job_id)
        assert single["status"] == JobStatus.QUEUED.value
        assert single["payload"] == {"args": [1], "kwargs": {}}

    async def test_missing_job(self, async_client, database):
        response = await async_client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 404

    async def test_cancel_then_retry_is_rejected(self, async_client, database, settings):
        job_id = await self.enqueue(database, settings)

        canceled = await async_client.post(f"/v1/jobs/{job_id}/cancel")
        retried = await async_client.post(f"/v1/jobs/{job_id}/retry")
        canceled_again = await async_client.post(f"/v1/jobs/{job_id}/cancel")

        assert canceled.status_code == 200
        assert retried.status_code == 404
        assert canceled_again.status_code == 404

    async def test_retry_dead_lettered_job(self, async_client, database, settings):
        job_id = await self.enqueue(database, settings)
        async with database.SessionLocal() as session:
            await session.execute(
                update(QueuedJob)
                .where(QueuedJob.id == job_id)
                .values(status=JobStatus.DEADLETTER.value)
            )
            await session.commit()

        response = await async_client.post(f"/v1/jobs/{job_id}/retry")

        assert response.status_code == 200
        job = (await async_client.get(f"/v1/jobs/{job_id}")).json()["data"]
        assert job["status"] == "queued"
        assert job["attempts"] == 0

    async def test_stats(self, async_client, database, settings):
        await self.enqueue(database, settings)

        stats = (await async_client.get("/v1/jobs/stats/overview")).json()["data"]

        assert stats["total_jobs"] == 1
        assert stats["queue_depth"] == 1
