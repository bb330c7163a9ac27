"""
Queue Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobflow.v1.infra.jobs.models import JobStatus


class QueuedJobCreate(BaseModel):
    """Schema for putting a job on the queue."""

    job_name: str = Field(..., description="Registered job name")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    priority: int = Field(
        default=5, ge=1, le=10, description="Priority (1=highest, 10=lowest)"
    )
    run_at: datetime | None = Field(
        default=None, description="Earliest time to run job"
    )
    dedupe_key: str | None = Field(default=None, description="Deduplication key")


class QueuedJobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_name: str
    payload: dict[str, Any]
    status: str
    priority: int
    run_at: datetime
    attempts: int

    # Worker coordination
    locked_at: datetime | None = None
    locked_by: str | None = None
    heartbeat_at: datetime | None = None

    # Results
    result: dict[str, Any] | None = None
    error_code: str | None = None
    last_error: str | None = None

    dedupe_key: str | None = None
    batch_id: UUID | None = None
    created_at: datetime
    updated_at: datetime


class QueuedJobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[QueuedJobResponse]
    total: int
    limit: int
    offset: int


class QueueStatsResponse(BaseModel):
    """Schema for queue statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_job: dict[str, int]
    queue_depth: int  # queued + running
    failed_last_hour: int
    open_batches: int


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: JobStatus
    deduplicated: bool = Field(
        default=False, description="Whether job was deduplicated"
    )


class BatchEnqueueResponse(BaseModel):
    batch_id: UUID
    enqueued: int
    pending: int
    deduplicated: bool = False
