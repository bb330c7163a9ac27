"""
Idempotent, resumable background jobs backed by a single relational row per run.
"""

from jobflow.v1.runs.jobs import IdempotentJob, dispatch_staged, step
from jobflow.v1.runs.schemas import Invocation, RunOutcome, RunStatus
from jobflow.v1.runs.steps import Halt, StepContext
from jobflow.v1.runs.workflow import WorkflowBuilder, awaited

__version__ = "0.1.0"

__all__ = [
    "Halt",
    "IdempotentJob",
    "Invocation",
    "RunOutcome",
    "RunStatus",
    "StepContext",
    "WorkflowBuilder",
    "awaited",
    "dispatch_staged",
    "step",
]
