"""
Pydantic schemas for workflow declarations, invocations and run responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobflow.v1.core.serializer import FINISHED, OpaqueError, StoredError


class JobReference(BaseModel):
    """A sub-job a step fans out to before the workflow continues."""

    job_name: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)


class StepDefinition(BaseModel):
    """One node of the snapshotted step graph."""

    does: str = Field(..., description="Registered step handler name")
    awaits: list[JobReference] = Field(default_factory=list)
    then: str = Field(default=FINISHED, description="Next recovery point")


class Invocation(BaseModel):
    """What the host queue hands to a job: identity plus arguments."""

    job_name: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)
    job_id: str | None = Field(default=None, description="Primary explicit id")
    jid: str | None = Field(default=None, description="Secondary explicit id")


class RunStatus(str, Enum):
    """Run status as reported by outcomes and the admin API."""

    STAGED = "staged"
    RUNNING = "running"
    AWAITING = "awaiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunOutcome(BaseModel):
    """Result of performing (or replaying) a run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: UUID
    idempotency_key: str
    status: RunStatus
    recovery_point: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    error: StoredError | OpaqueError | None = None
    replayed: bool = Field(
        default=False, description="True when no step ran because the run had finished"
    )

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == RunStatus.FAILED


class ExecutionRecordResponse(BaseModel):
    """Schema for run API responses."""

    id: UUID
    idempotency_key: str
    job_name: str
    job_args: dict[str, Any]
    status: RunStatus
    recovery_point: str | None = None
    workflow: dict[str, Any] | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    error: dict[str, Any] | None = None
    awaiting_step: str | None = None

    # Soft lock
    locked_at: datetime | None = None
    locked_by: str | None = None

    last_run_at: datetime | None = None
    staged: bool = False
    created_at: datetime
    updated_at: datetime


class RunListResponse(BaseModel):
    runs: list[ExecutionRecordResponse]
    total: int
    limit: int
    offset: int


class RunStatsResponse(BaseModel):
    """Schema for run statistics."""

    total_runs: int
    by_status: dict[str, int]
    by_job: dict[str, int]
    locked: int
    stale_locks: int
    staged_jobs: int


class PurgeRequest(BaseModel):
    older_than_days: int | None = Field(
        default=None, ge=0, description="Only purge runs last run before this age"
    )
    job_name: str | None = Field(default=None, description="Restrict to one job")


class PurgeResponse(BaseModel):
    deleted_count: int


class StagedJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    adapter: str
    job_name: str
    job_id: str
    awaited_by_run_id: UUID | None = None
    awaited_step: str | None = None
    created_at: datetime


class StagedListResponse(BaseModel):
    staged_jobs: list[StagedJobResponse]
    total: int


class SweepRequest(BaseModel):
    older_than_s: int | None = Field(
        default=None, ge=0, description="Override the minimum staged job age"
    )


class SweepResponse(BaseModel):
    enqueued: int
    failed: int
