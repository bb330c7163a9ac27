"""
The batch callback that resumes a run once its awaited jobs succeeded.
"""

from typing import Any
from uuid import UUID

from jobflow.config.settings import Settings
from jobflow.infra.database import Database
from jobflow.v1.core.exceptions import JobflowConfigurationError
from jobflow.v1.core.serializer import RecoveryPoint, load
from jobflow.v1.runs.schemas import RunOutcome
from jobflow.v1.runs.workflow import WorkflowRunner

# Queue job name of the callback
STEP_DONE_JOB = "jobflow.step_done"


def callback_key(callback: dict[str, Any]) -> str:
    """Identity of one await: the run plus the step that is waiting."""
    return f"{callback['run_id']}:{_awaited_step(callback)}"


def _awaited_step(callback: dict[str, Any]) -> str:
    marker = load(callback.get("recovery_point"))
    if not isinstance(marker, RecoveryPoint):
        raise JobflowConfigurationError(
            "Await callback does not name a recovery point", {"callback": callback}
        )
    return marker.name


async def step_done(
    database: Database, settings: Settings, callback: dict[str, Any]
) -> RunOutcome:
    """Continue the awaiting run past its await step."""
    runner = WorkflowRunner(database, settings)
    return await runner.resume_after_await(
        UUID(str(callback["run_id"])), _awaited_step(callback)
    )
