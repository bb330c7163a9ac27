from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

from jobflow.v1.core.exceptions import UnknownJob, UnknownJobAdapter

if TYPE_CHECKING:
    from jobflow.v1.runs.jobs import IdempotentJob

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - idempotent job classes addressable by name
class JobRegistry(Registry["type[IdempotentJob]"]):
    """Registry of job classes, keyed by their ``job_name``."""

    def __init__(self):
        super().__init__("Job")

    def get(self, name: str) -> "type[IdempotentJob]":
        try:
            return super().get(name)
        except KeyError:
            raise UnknownJob(name) from None


# Adapter Registry - host queue integrations used by the outbox
class JobAdapter(Protocol):
    """Protocol for adapters that hand jobs to a host queue."""

    async def enqueue(
        self,
        job_name: str,
        args: list[Any],
        kwargs: dict[str, Any],
        job_id: str,
    ) -> None:
        """Enqueue a single job invocation carrying an explicit job id."""
        ...

    async def enqueue_batch(
        self,
        jobs: list[dict[str, Any]],
        callback: dict[str, Any],
    ) -> None:
        """
        Enqueue a group of jobs and arrange for ``callback`` once all succeed.

        Each entry in ``jobs`` has ``job_name``, ``args``, ``kwargs`` and
        ``job_id``. ``callback`` carries ``run_id`` and the serialized
        recovery point of the awaiting step.
        """
        ...


class AdapterRegistry(Registry[JobAdapter]):
    """Registry for job adapters (inline, queue)."""

    def __init__(self):
        super().__init__("Adapter")

    def get(self, name: str) -> JobAdapter:
        try:
            return super().get(name)
        except KeyError:
            raise UnknownJobAdapter(name) from None


# Global registry instances (singletons)
job_registry = JobRegistry()
adapter_registry = AdapterRegistry()
