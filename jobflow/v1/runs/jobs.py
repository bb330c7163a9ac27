"""
Base class for idempotent, resumable jobs.

Example::

    class RideCreate(IdempotentJob):
        job_name = "ride_create"

        def define_workflow(self, flow, user_id, ride_params):
            flow.step(self.create_ride_and_audit_record)
            flow.step(self.create_stripe_charge)
            flow.step(self.send_receipt)

        @step
        async def create_ride_and_audit_record(self, ctx):
            ride = Ride(**ctx.args[1])
            ctx.session.add(ride)
            await ctx.session.flush()
            ctx.context.set("ride_id", ride.id)
        ...

    await RideCreate().perform(user_id, {"origin": "a", "target": "b"})
"""

from collections.abc import Awaitable, Callable
from typing import Any, ClassVar

from sqlalchemy.ext.asyncio import AsyncSession

from jobflow.config.settings import KeyGranularity, Settings, get_settings
from jobflow.infra.database import Database, get_database
from jobflow.v1.core.exceptions import MissingStepHandler
from jobflow.v1.core.registries import job_registry
from jobflow.v1.runs.models import StagedJob
from jobflow.v1.runs.outbox import Outbox
from jobflow.v1.runs.schemas import Invocation, RunOutcome
from jobflow.v1.runs.steps import StepContext
from jobflow.v1.runs.workflow import WorkflowBuilder, WorkflowRunner

StepHandler = Callable[[StepContext], Awaitable[Any]]


def step(func: Callable[..., Any] | None = None, *, name: str | None = None):
    """Mark a coroutine method as a step handler, optionally under another name."""

    def decorate(handler: Callable[..., Any]) -> Callable[..., Any]:
        handler.__jobflow_step__ = name or handler.__name__
        return handler

    if func is not None:
        return decorate(func)
    return decorate


class IdempotentJob:
    """
    A job whose steps run at most once per idempotency key.

    Class attributes:
        job_name: registry name, defaults to the class name
        adapter: outbox adapter used when the job is staged; ``None`` means
            the configured default
        key_granularity: overrides the configured key granularity
    """

    job_name: ClassVar[str] = "IdempotentJob"
    adapter: ClassVar[str | None] = None
    key_granularity: ClassVar[KeyGranularity | None] = None

    _step_handlers: ClassVar[dict[str, str]] = {}

    def __init_subclass__(cls, register: bool = True, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        if "job_name" not in cls.__dict__:
            cls.job_name = cls.__name__

        handlers: dict[str, str] = {}
        for klass in reversed(cls.__mro__):
            for attribute, value in vars(klass).items():
                handler_name = getattr(value, "__jobflow_step__", None)
                if handler_name:
                    handlers[handler_name] = attribute
        cls._step_handlers = handlers

        if register:
            job_registry.register(cls.job_name, cls)

    def __init__(
        self, database: Database | None = None, settings: Settings | None = None
    ):
        self.settings = settings or get_settings()
        self.database = database or get_database(self.settings)

    def define_workflow(self, flow: WorkflowBuilder, *args: Any, **kwargs: Any) -> None:
        """Declare the steps of this job on ``flow``. Receives the job arguments."""

    @classmethod
    def has_step_handler(cls, name: str) -> bool:
        return name in cls._step_handlers

    def step_handler(self, name: str) -> StepHandler:
        attribute = self._step_handlers.get(name)
        if attribute is None:
            raise MissingStepHandler(self.job_name, name)
        return getattr(self, attribute)

    async def perform(self, *args: Any, **kwargs: Any) -> RunOutcome:
        """Run (or resume, or replay) this job for the given arguments."""
        return await self.perform_invocation(
            Invocation(job_name=self.job_name, args=list(args), kwargs=kwargs)
        )

    async def perform_invocation(self, invocation: Invocation) -> RunOutcome:
        """Host queue entry point; honours an explicit ``job_id`` or ``jid``."""
        runner = WorkflowRunner(self.database, self.settings)
        return await runner.run(self, invocation)

    @classmethod
    async def stage(
        cls,
        session: AsyncSession,
        *args: Any,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> StagedJob:
        """
        Stage this job in ``session``'s transaction.

        The job is enqueued once the transaction commits and
        ``dispatch_staged(session)`` runs; a rollback stages nothing.
        ``settings`` is reserved: it picks the default adapter and is never
        passed on to the job.
        """
        return await Outbox(settings or get_settings()).stage(
            session, cls, *args, **kwargs
        )


async def dispatch_staged(
    session: AsyncSession, settings: Settings | None = None
) -> int:
    """Enqueue the jobs ``session`` staged in transactions that have committed."""
    return await Outbox(settings or get_settings()).dispatch(session)
