"""
Workflow declaration and the state machine that drives a run.

A job declares its steps on a ``WorkflowBuilder``; the resulting mapping is
snapshotted onto the ``ExecutionRecord`` when the run is created, so changing
the job's code later never reshapes a run that is already in flight.
"""

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any, NoReturn
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.logging import get_logger, run_context
from jobflow.config.settings import Settings, get_settings
from jobflow.infra.database import Database
from jobflow.v1.core.exceptions import (
    JobflowConfigurationError,
    LockLost,
    MismatchedIdempotencyKeyAndJobArguments,
    MissingStepHandler,
    NoDefinedSteps,
    NotFoundError,
    UnknownRecoveryPoint,
)
from jobflow.v1.core.idempotency import IdempotencyKeyDeriver
from jobflow.v1.core.registries import job_registry
from jobflow.v1.core.serializer import (
    FINISHED,
    dump_args,
    dump_error,
    dump_value,
    load_args,
    load_value,
)
from jobflow.v1.runs.locks import LockManager
from jobflow.v1.runs.models import ExecutionRecord, utcnow
from jobflow.v1.runs.outbox import Outbox
from jobflow.v1.runs.schemas import (
    Invocation,
    JobReference,
    RunOutcome,
    RunStatus,
    StepDefinition,
)
from jobflow.v1.runs.steps import (
    Await,
    ExecutionContext,
    Fail,
    RunState,
    StepExecutor,
)

if TYPE_CHECKING:
    from jobflow.v1.runs.jobs import IdempotentJob

logger = get_logger(__name__)


def step_name_of(handler: Callable[..., Any] | str) -> str:
    """Resolve a handler reference (function, bound method or name) to its step name."""
    if isinstance(handler, str):
        return handler
    name = getattr(handler, "__jobflow_step__", None)
    if name is None:
        name = getattr(handler, "__name__", None)
    if name is None:
        raise JobflowConfigurationError(f"Cannot use {handler!r} as a workflow step")
    return name


def awaited(job: "type[IdempotentJob] | str", *args: Any, **kwargs: Any) -> JobReference:
    """Reference a sub-job for a step's ``awaits`` list."""
    job_name = job if isinstance(job, str) else job.job_name
    return JobReference(
        job_name=job_name, args=dump_value(list(args)), kwargs=dump_value(kwargs)
    )


class WorkflowBuilder:
    """
    Collects step declarations in order.

    ``then`` defaults to the next declared step; the last step defaults to
    ``FINISHED``.
    """

    def __init__(self, job_cls: "type[IdempotentJob]"):
        self.job_cls = job_cls
        self._steps: list[tuple[str, str, list[JobReference], str | None]] = []
        self._context = ExecutionContext()

    def step(
        self,
        handler: Callable[..., Any] | str,
        *,
        awaits: Iterable["JobReference | type[IdempotentJob]"] = (),
        then: Callable[..., Any] | str | None = None,
        name: str | None = None,
    ) -> "WorkflowBuilder":
        does = step_name_of(handler)
        if not self.job_cls.has_step_handler(does):
            raise MissingStepHandler(self.job_cls.job_name, does)

        step_name = name or does
        if step_name == FINISHED or step_name in self.step_names:
            raise JobflowConfigurationError(
                f"Step '{step_name}' is declared more than once",
                {"job_name": self.job_cls.job_name, "step": step_name},
            )

        references = [
            item if isinstance(item, JobReference) else awaited(item) for item in awaits
        ]
        self._steps.append(
            (step_name, does, references, None if then is None else step_name_of(then))
        )
        return self

    def provide(self, **values: Any) -> "WorkflowBuilder":
        """Seed the execution context of a new run."""
        self._context.update(**values)
        return self

    @property
    def step_names(self) -> list[str]:
        return [entry[0] for entry in self._steps]

    @property
    def first_step(self) -> str:
        if not self._steps:
            raise NoDefinedSteps(self.job_cls.job_name)
        return self._steps[0][0]

    @property
    def initial_context(self) -> dict[str, Any]:
        return self._context.dump()

    def build(self) -> dict[str, dict[str, Any]]:
        if not self._steps:
            raise NoDefinedSteps(self.job_cls.job_name)

        names = self.step_names
        workflow: dict[str, dict[str, Any]] = {}
        for index, (step_name, does, references, then) in enumerate(self._steps):
            if then is None:
                then = names[index + 1] if index + 1 < len(names) else FINISHED
            if then != FINISHED and then not in names:
                raise UnknownRecoveryPoint(then, names)
            workflow[step_name] = StepDefinition(
                does=does, awaits=references, then=then
            ).model_dump()
        return workflow


class WorkflowRunner:
    """Drive one run from its recovery point to ``FINISHED`` or a failure."""

    def __init__(self, database: Database, settings: Settings | None = None):
        self.database = database
        self.settings = settings or get_settings()
        self.session_factory = database.SessionLocal
        self.locks = LockManager(self.settings)
        self.outbox = Outbox(self.settings)
        self.executor = StepExecutor(self.session_factory, self.locks, self.outbox)

    def key_for(self, job: "IdempotentJob", invocation: Invocation) -> str:
        granularity = job.key_granularity or self.settings.key_granularity
        return IdempotencyKeyDeriver(granularity).value_for(invocation)

    async def run(self, job: "IdempotentJob", invocation: Invocation) -> RunOutcome:
        """
        Perform ``invocation``, or report its stored outcome when the run has
        finished or is waiting on the jobs of an await step. Only the batch
        callback moves an awaiting run on.

        Raises:
            NoDefinedSteps: the job declares no steps (nothing is persisted).
            MismatchedIdempotencyKeyAndJobArguments: the key was used with
                other arguments.
            LockedIdempotencyKey: another worker is running this invocation.
            Exception: whatever a step raised, after it was stored on the run.
        """
        flow = WorkflowBuilder(type(job))
        job.define_workflow(flow, *invocation.args, **invocation.kwargs)
        workflow = flow.build()

        key = self.key_for(job, invocation)
        job_args = dump_args(invocation.args, invocation.kwargs)
        record = await self._find_or_create(
            key, job.job_name, job_args, workflow, flow.first_step, flow.initial_context
        )

        with run_context(run_id=str(record.id), job_name=job.job_name):
            if record.finished or record.awaiting_step:
                return self._settled(record)

            token = self.locks.new_token()
            async with self.session_factory() as session:
                await self.locks.acquire(session, record, token)

            # Another worker may have moved the run on since it was read
            record = await self._load(record.id)
            if record.finished or record.awaiting_step:
                await self.locks.release(self.session_factory, record.id, token)
                return self._settled(await self._load(record.id))

            initial: dict[str, Any] = {}
            if record.staged:
                initial = {
                    "workflow": workflow,
                    "recovery_point": flow.first_step,
                    "context": flow.initial_context,
                    "staged": False,
                }
                async with self.session_factory() as session:
                    await self.locks.write(session, record.id, token, **initial)
                    await session.commit()

            state = self._state(record, token, **initial)
            return await self._drive(job, state)

    async def resume_after_await(self, run_id: UUID, step_name: str) -> RunOutcome:
        """
        Batch callback: every job awaited by ``step_name`` succeeded.

        Advances past the await step and carries on. A callback for a step
        the run has already left is ignored, unless the continuation failed
        last time, in which case it is retried from the stored recovery point.
        """
        record = await self._load(run_id)
        if record is None:
            raise NotFoundError(f"Run {run_id} not found", {"run_id": str(run_id)})

        job = job_registry.get(record.job_name)(self.database, self.settings)

        with run_context(run_id=str(record.id), job_name=record.job_name):
            if record.finished:
                return self._outcome(record, replayed=True)

            token = self.locks.new_token()
            async with self.session_factory() as session:
                await self.locks.acquire(session, record, token)
            record = await self._load(run_id)
            state = self._state(record, token)

            if record.awaiting_step == step_name:
                definition = state.workflow.get(step_name)
                if definition is None:
                    return await self._fail(
                        state, UnknownRecoveryPoint(step_name, list(state.workflow))
                    )
                then = StepDefinition.model_validate(definition).then
                async with self.session_factory() as session:
                    await self.locks.write(
                        session, run_id, token, recovery_point=then, awaiting_step=None
                    )
                    await session.commit()
                state.recovery_point = then
                logger.info("Awaited jobs succeeded", step=step_name, then=then)
            elif record.finished or not record.error:
                logger.info(
                    "Ignoring duplicate await callback",
                    step=step_name,
                    recovery_point=state.recovery_point,
                )
                await self.locks.release(self.session_factory, run_id, token)
                return await self._reload(run_id)

            return await self._drive(job, state)

    async def _drive(self, job: "IdempotentJob", state: RunState) -> RunOutcome:
        while not state.finished:
            definition = state.workflow.get(state.recovery_point)
            if definition is None:
                return await self._fail(
                    state,
                    UnknownRecoveryPoint(state.recovery_point, list(state.workflow)),
                )

            result = await self.executor.execute(
                job, state, StepDefinition.model_validate(definition)
            )
            if isinstance(result, Fail):
                return await self._fail(state, result.error)
            if isinstance(result, Await):
                logger.info(
                    "Run waiting on awaited jobs",
                    step=result.step,
                    job_count=len(result.jobs),
                )
                return await self._reload(state.run_id)

        released = await self.locks.release(
            self.session_factory, state.run_id, state.token, error=None
        )
        if not released:
            raise LockLost(state.run_id)

        logger.info("Run finished", idempotency_key=state.idempotency_key)
        return RunOutcome(
            run_id=state.run_id,
            idempotency_key=state.idempotency_key,
            status=RunStatus.SUCCEEDED,
            recovery_point=FINISHED,
            context=state.context,
        )

    async def _fail(self, state: RunState, error: BaseException) -> NoReturn:
        """Store ``error``, release the lock and re-raise ``error``."""
        logger.error(
            "Run failed",
            recovery_point=state.recovery_point,
            error=type(error).__name__,
            message=str(error),
        )
        await self.locks.release(
            self.session_factory, state.run_id, state.token, error=dump_error(error)
        )
        raise error

    async def _find_or_create(
        self,
        key: str,
        job_name: str,
        job_args: str,
        workflow: dict[str, Any],
        first_step: str,
        initial_context: dict[str, Any],
    ) -> ExecutionRecord:
        async with self.session_factory() as session:
            record = await self._find(session, key, job_name, job_args)
            if record is None:
                now = utcnow()
                record = ExecutionRecord(
                    idempotency_key=key,
                    job_name=job_name,
                    job_args=job_args,
                    recovery_point=first_step,
                    workflow=workflow,
                    context=initial_context,
                    last_run_at=now,
                    staged=False,
                    created_at=now,
                    updated_at=now,
                )
                record.validate()
                session.add(record)
                try:
                    await session.commit()
                    logger.info("Run created", run_id=str(record.id), job_name=job_name)
                except IntegrityError:
                    # Created concurrently by a duplicate delivery
                    await session.rollback()
                    record = await self._find(session, key, job_name, job_args)
                    if record is None:
                        raise
        return record

    @staticmethod
    async def _find(
        session: AsyncSession, key: str, job_name: str, job_args: str
    ) -> ExecutionRecord | None:
        result = await session.execute(
            select(ExecutionRecord)
            .where(
                ExecutionRecord.idempotency_key == key,
                ExecutionRecord.job_name == job_name,
            )
            .order_by(ExecutionRecord.created_at)
        )
        records = result.scalars().all()
        if not records:
            return None
        for record in records:
            if record.job_args == job_args:
                return record
        raise MismatchedIdempotencyKeyAndJobArguments(key, job_name)

    @staticmethod
    def _state(record: ExecutionRecord, token: str, **initial: Any) -> RunState:
        args, kwargs = load_args(record.job_args)
        return RunState(
            run_id=record.id,
            idempotency_key=record.idempotency_key,
            job_name=record.job_name,
            token=token,
            workflow=initial.get("workflow", record.workflow) or {},
            recovery_point=initial.get("recovery_point", record.recovery_point),
            context=load_value(initial.get("context", record.context) or {}),
            args=args,
            kwargs=kwargs,
        )

    async def _load(self, run_id: UUID) -> ExecutionRecord | None:
        async with self.session_factory() as session:
            return await session.get(ExecutionRecord, run_id)

    async def _reload(self, run_id: UUID) -> RunOutcome:
        return self._outcome(await self._load(run_id))

    def _settled(self, record: ExecutionRecord) -> RunOutcome:
        """Outcome of a run this invocation must not advance."""
        if record.finished:
            logger.info("Replaying finished run", idempotency_key=record.idempotency_key)
        else:
            logger.info("Run is waiting on awaited jobs", step=record.awaiting_step)
        return self._outcome(record, replayed=True)

    @staticmethod
    def _outcome(record: ExecutionRecord, replayed: bool = False) -> RunOutcome:
        return RunOutcome(
            run_id=record.id,
            idempotency_key=record.idempotency_key,
            status=record.status,
            recovery_point=record.recovery_point,
            context=load_value(record.context or {}),
            error=record.stored_error(),
            replayed=replayed,
        )
