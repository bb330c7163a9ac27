"""
Adapter registry initialization.

Registers the inline and queue adapters with the global adapter registry.
"""

import logging

from jobflow.config.settings import AdapterKind, Settings
from jobflow.infra.database import Database
from jobflow.v1.adapters.inline import InlineAdapter
from jobflow.v1.adapters.queue import QueueAdapter
from jobflow.v1.core.registries import adapter_registry

logger = logging.getLogger(__name__)


def register_adapters(database: Database, settings: Settings) -> None:
    """Register all job adapters against ``database``."""

    logger.info("Registering job adapters")

    adapter_registry.register(AdapterKind.INLINE.value, InlineAdapter(database, settings))
    adapter_registry.register(AdapterKind.QUEUE.value, QueueAdapter(database, settings))

    logger.info(
        "Job adapters registered",
        extra={"registered_adapters": adapter_registry.list()},
    )
