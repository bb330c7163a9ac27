"""
Step execution: one workflow step inside one storage transaction.

A step handler receives a ``StepContext`` and either returns ``None`` (carry
on to the step's ``then``) or ``Halt`` (finish early). Whatever it writes
through ``ctx.session`` commits together with the context and the recovery
point advance, or not at all.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobflow.config.logging import get_logger
from jobflow.v1.core.serializer import FINISHED, dump_value, load_value
from jobflow.v1.runs.locks import LockManager
from jobflow.v1.runs.models import StagedJob
from jobflow.v1.runs.outbox import Outbox
from jobflow.v1.runs.schemas import JobReference, StepDefinition

if TYPE_CHECKING:
    from jobflow.v1.runs.jobs import IdempotentJob

logger = get_logger(__name__)


# Step results


@dataclass(frozen=True)
class Continue:
    next_point: str


@dataclass(frozen=True)
class Halt:
    pass


@dataclass(frozen=True)
class Await:
    step: str
    jobs: tuple[JobReference, ...]


@dataclass(frozen=True)
class Fail:
    error: BaseException


StepResult = Continue | Halt | Await | Fail


class ExecutionContext:
    """
    Key/value state threaded through the steps of one run.

    Values must be encodable by the serializer; ``set`` rejects anything
    else immediately rather than at persistence time.
    """

    def __init__(self, values: dict[str, Any] | None = None):
        self._values: dict[str, Any] = dict(values or {})

    @classmethod
    def from_stored(cls, payload: dict[str, Any] | None) -> "ExecutionContext":
        return cls(load_value(payload or {}))

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        dump_value(value)
        self._values[key] = value

    def update(self, **values: Any) -> None:
        for key, value in values.items():
            self.set(key, value)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def as_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def dump(self) -> dict[str, Any]:
        return dump_value(self._values)


@dataclass
class RunState:
    """In-memory view of a locked run, kept in step with the stored row."""

    run_id: UUID
    idempotency_key: str
    job_name: str
    token: str
    workflow: dict[str, Any]
    recovery_point: str
    context: dict[str, Any] = field(default_factory=dict)
    args: list[Any] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.recovery_point == FINISHED


class StepContext:
    """What a step handler sees: its transaction, the context and the job input."""

    def __init__(
        self,
        session: AsyncSession,
        context: ExecutionContext,
        state: RunState,
        outbox: Outbox,
    ):
        self.session = session
        self.context = context
        self.run_id = state.run_id
        self.args = list(state.args)
        self.kwargs = dict(state.kwargs)
        self.halted = False
        self._outbox = outbox

    async def stage(
        self, job: "type[IdempotentJob] | str", *args: Any, **kwargs: Any
    ) -> StagedJob:
        """Stage a follow-up job in this step's transaction."""
        return await self._outbox.stage(self.session, job, *args, **kwargs)

    def halt(self) -> Halt:
        """Finish the workflow once this step commits."""
        self.halted = True
        return Halt()


class StepExecutor:
    """Run a single step and persist its effect on the run atomically."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        outbox: Outbox,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.outbox = outbox

    async def execute(
        self,
        job: "IdempotentJob",
        state: RunState,
        definition: StepDefinition,
    ) -> StepResult:
        step_name = state.recovery_point

        async with self.session_factory() as session:
            try:
                result = await self._run_in_transaction(
                    session, job, state, step_name, definition
                )
            except Exception as exc:
                await session.rollback()
                logger.warning(
                    "Step failed",
                    step=step_name,
                    handler=definition.does,
                    error=type(exc).__name__,
                )
                return Fail(exc)

            await self.outbox.dispatch(session)

        return result

    async def _run_in_transaction(
        self,
        session: AsyncSession,
        job: "IdempotentJob",
        state: RunState,
        step_name: str,
        definition: StepDefinition,
    ) -> StepResult:
        context = ExecutionContext(state.context)
        ctx = StepContext(session, context, state, self.outbox)

        handler = job.step_handler(definition.does)
        returned = await handler(ctx)

        if ctx.halted or isinstance(returned, Halt):
            result: StepResult = Halt()
            values = {"context": context.dump(), "recovery_point": FINISHED}
        elif definition.awaits:
            result = Await(step_name, tuple(definition.awaits))
            await self.outbox.stage_awaited(
                session, job, state.run_id, step_name, definition.awaits
            )
            # The lock is released in the same write; only the batch callback resumes
            values = {
                "context": context.dump(),
                "awaiting_step": step_name,
                "error": None,
                "locked_at": None,
                "locked_by": None,
            }
        else:
            result = Continue(definition.then)
            values = {"context": context.dump(), "recovery_point": definition.then}

        await self.locks.write(session, state.run_id, state.token, **values)
        await session.commit()

        state.context = context.as_dict()
        if isinstance(result, Halt):
            state.recovery_point = FINISHED
        elif isinstance(result, Continue):
            state.recovery_point = result.next_point

        logger.info(
            "Step completed",
            step=step_name,
            handler=definition.does,
            result=type(result).__name__,
        )
        return result
