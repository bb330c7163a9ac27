"""
Queue models: jobs waiting for a worker, and await batches.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobflow.infra.database import Base
from jobflow.v1.runs.models import as_utc, utcnow


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEADLETTER = "deadletter"
    CANCELED = "canceled"


class QueuedJob(Base):
    """
    One delivery of a job to the worker pool.

    Provides:
    - Worker coordination (locking, heartbeats)
    - Structured errors and retry bookkeeping
    - Deduplication on the staged job id
    - Batch membership for awaited jobs
    """

    __tablename__ = "jobflow_queue_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Registered job name"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Encoded args, kwargs and job_id",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|running|succeeded|failed|deadletter|canceled",
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Priority 1-10, lower is higher priority",
    )
    run_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
        comment="Earliest time to run job",
    )
    attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Number of attempts made"
    )

    # Worker coordination
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="When job was locked by worker"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID that locked the job"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Last worker heartbeat"
    )

    # Results
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True, comment="Run outcome summary"
    )
    error_code: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Structured error identifier"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )

    # Deduplication and batching
    dedupe_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Staged job id, one delivery per key"
    )
    batch_id: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Await batch this job belongs to"
    )
    batch_counted_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="When this job's run was counted against its batch",
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed', 'deadletter', 'canceled')",
            name="jobflow_queue_jobs_status_check",
        ),
        CheckConstraint(
            "priority BETWEEN 1 AND 10", name="jobflow_queue_jobs_priority_check"
        ),
        Index("ix_jobflow_queue_jobs_dedupe_key", "dedupe_key", unique=True),
        Index("ix_jobflow_queue_jobs_claim", "status", "priority", "run_at"),
        Index("ix_jobflow_queue_jobs_batch_id", "batch_id"),
    )

    def is_active(self) -> bool:
        """Check if job is in an active state (queued, running)."""
        return self.status in (JobStatus.QUEUED.value, JobStatus.RUNNING.value)

    def can_retry(self, max_attempts: int) -> bool:
        """Check if another attempt is allowed."""
        return self.attempts < max_attempts

    def is_stuck(self, visibility_timeout_s: int) -> bool:
        """Check if running job is stuck based on heartbeat timeout."""
        if self.status != JobStatus.RUNNING.value or not self.heartbeat_at:
            return False

        timeout_threshold = utcnow().timestamp() - visibility_timeout_s
        return as_utc(self.heartbeat_at).timestamp() < timeout_threshold


class JobBatch(Base):
    """
    The jobs awaited by one workflow step.

    ``pending`` counts members whose run has not finished successfully yet; a
    member that fans out itself stays pending until its own callback finishes
    it. When ``pending`` drops to zero the callback job is enqueued exactly once.
    """

    __tablename__ = "jobflow_queue_batches"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    callback_key: Mapped[str] = mapped_column(
        Text, nullable=False, comment="run_id:step of the awaiting workflow"
    )
    callback: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, comment="Payload handed to the callback job"
    )
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="When the callback was queued"
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_jobflow_queue_batches_callback_key", "callback_key", unique=True),
    )
