import logging
import sys
from typing import Any

import structlog

from .settings import Settings, settings as default_settings

# Chatty third-party loggers capped at WARNING unless DEBUG is requested
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "aiosqlite")


def setup_logging(settings: Settings | None = None) -> None:
    """Configure stdlib logging and structlog for the API, CLI and workers."""
    settings = settings or default_settings
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )
    callsite = structlog.processors.CallsiteParameterAdder(
        parameters=(
            [structlog.processors.CallsiteParameter.FUNC_NAME] if settings.debug else []
        )
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            callsite,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Replace the bound context with the current request's identifiers."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def run_context(**context: Any):
    """Bind workflow run identifiers to every log line inside the block."""
    return structlog.contextvars.bound_contextvars(**context)
