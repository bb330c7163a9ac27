from datetime import timedelta

import pytest

from jobflow.v1.core.exceptions import RecordValidationError
from jobflow.v1.core.serializer import FINISHED, OpaqueError, StoredError, dump
from jobflow.v1.runs.models import ExecutionRecord, as_utc, utcnow
from jobflow.v1.runs.schemas import RunStatus

WORKFLOW = {
    "a": {"does": "a", "awaits": [], "then": "b"},
    "b": {"does": "b", "awaits": [], "then": FINISHED},
}


def make_record(**overrides) -> ExecutionRecord:
    values = {
        "idempotency_key": "key-1",
        "job_name": "sync",
        "job_args": "{}",
        "recovery_point": "a",
        "workflow": WORKFLOW,
        "context": {},
        "last_run_at": utcnow(),
        "staged": False,
    }
    values.update(overrides)
    return ExecutionRecord(**values)


class TestValidation:
    def test_valid_record(self):
        make_record().validate()

    def test_reports_every_blank_field(self):
        record = make_record(
            idempotency_key="", job_name="", recovery_point=None, workflow=None,
            last_run_at=None,
        )

        with pytest.raises(RecordValidationError) as info:
            record.validate()

        assert set(info.value.errors) == {
            "idempotency_key",
            "job_name",
            "recovery_point",
            "workflow",
            "last_run_at",
        }
        assert info.value.details["errors"]["job_name"] == ["can't be blank"]

    def test_recovery_point_must_be_a_step(self):
        with pytest.raises(RecordValidationError) as info:
            make_record(recovery_point="ghost").validate()

        assert info.value.errors == {"recovery_point": ["is not a workflow step"]}

    def test_finished_is_always_a_valid_recovery_point(self):
        make_record(recovery_point=FINISHED).validate()

    def test_awaiting_step_must_be_the_recovery_point(self):
        make_record(awaiting_step="a").validate()

        with pytest.raises(RecordValidationError) as info:
            make_record(awaiting_step="b").validate()

        assert info.value.errors == {"awaiting_step": ["must be the recovery point"]}

    def test_staged_record_needs_no_workflow(self):
        make_record(
            staged=True, recovery_point=None, workflow=None, last_run_at=None
        ).validate()


class TestStatus:
    @pytest.mark.parametrize(
        ("overrides", "expected"),
        [
            ({"staged": True, "recovery_point": None, "workflow": None}, RunStatus.STAGED),
            ({"error": {"v": 1, "kind": "error"}}, RunStatus.FAILED),
            ({"recovery_point": FINISHED}, RunStatus.SUCCEEDED),
            ({"locked_at": utcnow()}, RunStatus.RUNNING),
            ({"awaiting_step": "a", "locked_at": utcnow()}, RunStatus.AWAITING),
            ({}, RunStatus.AWAITING),
        ],
    )
    def test_status(self, overrides, expected):
        assert make_record(**overrides).status == expected

    def test_finished_with_error_is_failed(self):
        record = make_record(recovery_point=FINISHED, error=dump(ValueError("x")))

        assert record.finished
        assert not record.succeeded
        assert record.status == RunStatus.FAILED


class TestLockAge:
    def test_unlocked_counts_as_stale(self):
        assert make_record().lock_is_stale(60)

    def test_naive_timestamps_are_utc(self):
        now = utcnow()
        naive = (now - timedelta(seconds=30)).replace(tzinfo=None)
        record = make_record(locked_at=naive)

        assert as_utc(naive).tzinfo is not None
        assert not record.lock_is_stale(60, now=now)
        assert record.lock_is_stale(10, now=now)


class TestStoredError:
    def test_decodes_error(self):
        record = make_record(error=dump(ValueError("bad input")))

        error = record.stored_error()
        assert isinstance(error, StoredError)
        assert error.message == "bad input"

    def test_marker_in_error_column_is_opaque(self):
        record = make_record(error={"v": 1, "kind": "finished"})

        assert isinstance(record.stored_error(), OpaqueError)

    def test_no_error(self):
        assert make_record().stored_error() is None
