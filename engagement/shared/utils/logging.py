"""structlog setup shared by the library and the CLI.

Loggers are obtained per module with ``get_logger(__name__)`` and emit
event names with keyword context. The acting user of a service call is
bound through contextvars so every line logged during it carries it.
"""

import logging
import sys
from typing import TextIO

import structlog

ACTOR_KEYS = ("actor", "actor_role")


def _renderer(json_format: bool) -> list[structlog.types.Processor]:
    if json_format:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=False)]


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "engagement",
    stream: TextIO | None = None,
) -> None:
    """
    Configure structlog (and stdlib logging) for the process.

    Args:
        level: Minimum level name, e.g. "INFO"
        json_format: JSON lines if True, plain console lines otherwise
        service_name: Bound to every entry as ``service``
        stream: Output stream; the CLI passes stderr so stdout stays clean
    """
    stream = stream or sys.stdout
    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(format="%(message)s", stream=stream, level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *_renderer(json_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_actor_context(username: str, role: str | None = None) -> None:
    """Attach the acting user (and role) to subsequent log entries."""
    structlog.contextvars.unbind_contextvars(*ACTOR_KEYS)
    if role:
        structlog.contextvars.bind_contextvars(actor=username, actor_role=role)
    else:
        structlog.contextvars.bind_contextvars(actor=username)


def clear_actor_context() -> None:
    structlog.contextvars.unbind_contextvars(*ACTOR_KEYS)
