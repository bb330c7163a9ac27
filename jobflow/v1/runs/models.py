"""
Persistent execution state for idempotent workflow runs.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, TIMESTAMP, Boolean, Index, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobflow.infra.database import Base
from jobflow.v1.core.exceptions import RecordValidationError
from jobflow.v1.core.serializer import FINISHED, OpaqueError, StoredError, load
from jobflow.v1.runs.schemas import RunStatus


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class ExecutionRecord(Base):
    """
    One logical job invocation.

    The row is the single source of truth for a run:
    - recovery_point names the next step to execute (or FINISHED)
    - workflow is the step graph snapshotted when the run was created
    - context is the execution state threaded through the steps
    - awaiting_step is set while the jobs of an await step are outstanding
    - locked_at/locked_by form the soft lock
    """

    __tablename__ = "jobflow_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    idempotency_key: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Deduplication identity"
    )
    job_name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Registered job name"
    )
    job_args: Mapped[str] = mapped_column(
        Text, nullable=False, default="", comment="Canonical JSON job arguments"
    )

    # Workflow state
    recovery_point: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Next step to run, or FINISHED"
    )
    workflow: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True, comment="Snapshotted step graph"
    )
    context: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Execution context values"
    )
    error: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True, comment="Last captured failure"
    )
    awaiting_step: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Await step whose jobs are still outstanding"
    )

    # Soft lock
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="When the run was locked"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Token of the worker holding the lock"
    )

    last_run_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Last execution attempt"
    )
    staged: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Pre-created by the outbox, workflow not started",
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index(
            "ix_jobflow_runs_key_job_args",
            "idempotency_key",
            "job_name",
            "job_args",
            unique=True,
        ),
        Index("ix_jobflow_runs_recovery_point", "recovery_point"),
    )

    @property
    def finished(self) -> bool:
        return self.recovery_point == FINISHED

    @property
    def failed(self) -> bool:
        return bool(self.error)

    @property
    def succeeded(self) -> bool:
        return self.finished and not self.failed

    @property
    def locked(self) -> bool:
        return self.locked_at is not None

    @property
    def status(self) -> RunStatus:
        if self.staged:
            return RunStatus.STAGED
        if self.failed:
            return RunStatus.FAILED
        if self.finished:
            return RunStatus.SUCCEEDED
        if self.awaiting_step:
            return RunStatus.AWAITING
        if self.locked:
            return RunStatus.RUNNING
        # Unfinished, unlocked and clean: waiting on awaited jobs or a retry
        return RunStatus.AWAITING

    def lock_is_stale(self, stale_after_s: int, now: datetime | None = None) -> bool:
        if self.locked_at is None:
            return True
        now = now or utcnow()
        return (now - as_utc(self.locked_at)).total_seconds() > stale_after_s

    def stored_error(self) -> StoredError | OpaqueError | None:
        decoded = load(self.error)
        if decoded is None or isinstance(decoded, (StoredError, OpaqueError)):
            return decoded
        return OpaqueError(self.error)

    def validate(self) -> None:
        """Raise ``RecordValidationError`` listing every invalid field."""
        errors: dict[str, list[str]] = {}

        if not self.idempotency_key:
            errors.setdefault("idempotency_key", []).append("can't be blank")
        if not self.job_name:
            errors.setdefault("job_name", []).append("can't be blank")

        if not self.staged:
            if self.last_run_at is None:
                errors.setdefault("last_run_at", []).append("can't be blank")
            if not self.recovery_point:
                errors.setdefault("recovery_point", []).append("can't be blank")
            if not self.workflow:
                errors.setdefault("workflow", []).append("can't be blank")

        if (
            self.recovery_point
            and self.workflow
            and self.recovery_point != FINISHED
            and self.recovery_point not in self.workflow
        ):
            errors.setdefault("recovery_point", []).append("is not a workflow step")
        if self.awaiting_step and self.awaiting_step != self.recovery_point:
            errors.setdefault("awaiting_step", []).append("must be the recovery point")

        if errors:
            raise RecordValidationError(errors)


class StagedJob(Base):
    """
    Outbox row: enqueue this job once the surrounding transaction commits.

    Rows are deleted after a successful enqueue. A row that survives means the
    enqueue failed (or never ran) and the sweep will pick it up.
    """

    __tablename__ = "jobflow_staged_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    adapter: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Adapter used to enqueue the job"
    )
    job_name: Mapped[str] = mapped_column(Text, nullable=False)
    job_args: Mapped[str] = mapped_column(
        Text, nullable=False, default="", comment="Canonical JSON job arguments"
    )
    job_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Explicit idempotency identifier for the job"
    )

    # Fan-out membership
    awaited_by_run_id: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Run waiting on this job"
    )
    awaited_step: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Step of the waiting run"
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_jobflow_staged_jobs_created_at", "created_at"),
        Index("ix_jobflow_staged_jobs_awaited_by", "awaited_by_run_id"),
    )
