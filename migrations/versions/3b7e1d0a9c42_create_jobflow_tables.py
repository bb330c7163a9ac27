"""create jobflow run, outbox and queue tables

Revision ID: 3b7e1d0a9c42
Revises:
Create Date: 2026-10-18 09:12:31.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1d0a9c42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobflow_runs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "idempotency_key", sa.Text, nullable=False, comment="Deduplication identity"
        ),
        sa.Column("job_name", sa.Text, nullable=False, comment="Registered job name"),
        sa.Column(
            "job_args",
            sa.Text,
            nullable=False,
            server_default="",
            comment="Canonical JSON job arguments",
        ),
        sa.Column(
            "recovery_point",
            sa.Text,
            nullable=True,
            comment="Next step to run, or FINISHED",
        ),
        sa.Column("workflow", sa.JSON, nullable=True, comment="Snapshotted step graph"),
        sa.Column(
            "context", sa.JSON, nullable=False, comment="Execution context values"
        ),
        sa.Column("error", sa.JSON, nullable=True, comment="Last captured failure"),
        sa.Column(
            "awaiting_step",
            sa.Text,
            nullable=True,
            comment="Await step whose jobs are still outstanding",
        ),
        # Soft lock
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the run was locked",
        ),
        sa.Column(
            "locked_by",
            sa.Text,
            nullable=True,
            comment="Token of the worker holding the lock",
        ),
        sa.Column(
            "last_run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Last execution attempt",
        ),
        sa.Column(
            "staged",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
            comment="Pre-created by the outbox, workflow not started",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_jobflow_runs_key_job_args",
        "jobflow_runs",
        ["idempotency_key", "job_name", "job_args"],
        unique=True,
    )
    op.create_index(
        "ix_jobflow_runs_recovery_point", "jobflow_runs", ["recovery_point"]
    )

    # Outbox rows, deleted once enqueued
    op.create_table(
        "jobflow_staged_jobs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "adapter", sa.Text, nullable=False, comment="Adapter used to enqueue the job"
        ),
        sa.Column("job_name", sa.Text, nullable=False),
        sa.Column(
            "job_args",
            sa.Text,
            nullable=False,
            server_default="",
            comment="Canonical JSON job arguments",
        ),
        sa.Column(
            "job_id",
            sa.Text,
            nullable=False,
            comment="Explicit idempotency identifier for the job",
        ),
        sa.Column(
            "awaited_by_run_id", sa.Uuid, nullable=True, comment="Run waiting on this job"
        ),
        sa.Column(
            "awaited_step", sa.Text, nullable=True, comment="Step of the waiting run"
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_jobflow_staged_jobs_created_at", "jobflow_staged_jobs", ["created_at"]
    )
    op.create_index(
        "ix_jobflow_staged_jobs_awaited_by", "jobflow_staged_jobs", ["awaited_by_run_id"]
    )

    # Built-in queue
    op.create_table(
        "jobflow_queue_jobs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("job_name", sa.Text, nullable=False, comment="Registered job name"),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Encoded args, kwargs and job_id",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="Job status: queued|running|succeeded|failed|deadletter|canceled",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="5",
            comment="Priority 1-10, lower is higher priority",
        ),
        sa.Column(
            "run_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time to run job",
        ),
        sa.Column(
            "attempts",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="Number of attempts made",
        ),
        sa.Column("locked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("locked_by", sa.Text, nullable=True),
        sa.Column("heartbeat_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("result", sa.JSON, nullable=True, comment="Run outcome summary"),
        sa.Column("error_code", sa.Text, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column(
            "dedupe_key",
            sa.Text,
            nullable=True,
            comment="Staged job id, one delivery per key",
        ),
        sa.Column(
            "batch_id", sa.Uuid, nullable=True, comment="Await batch this job belongs to"
        ),
        sa.Column(
            "batch_counted_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When this job's run was counted against its batch",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed', 'deadletter', 'canceled')",
            name="jobflow_queue_jobs_status_check",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 1 AND 10", name="jobflow_queue_jobs_priority_check"
        ),
    )
    op.create_index(
        "ix_jobflow_queue_jobs_dedupe_key",
        "jobflow_queue_jobs",
        ["dedupe_key"],
        unique=True,
    )
    op.create_index(
        "ix_jobflow_queue_jobs_claim",
        "jobflow_queue_jobs",
        ["status", "priority", "run_at"],
    )
    op.create_index(
        "ix_jobflow_queue_jobs_batch_id", "jobflow_queue_jobs", ["batch_id"]
    )

    op.create_table(
        "jobflow_queue_batches",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "callback_key",
            sa.Text,
            nullable=False,
            comment="run_id:step of the awaiting workflow",
        ),
        sa.Column(
            "callback",
            sa.JSON,
            nullable=False,
            comment="Payload handed to the callback job",
        ),
        sa.Column("total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("pending", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "completed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the callback was queued",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_jobflow_queue_batches_callback_key",
        "jobflow_queue_batches",
        ["callback_key"],
        unique=True,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("jobflow_queue_batches")
    op.drop_table("jobflow_queue_jobs")
    op.drop_table("jobflow_staged_jobs")
    op.drop_table("jobflow_runs")
