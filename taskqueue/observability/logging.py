"""
Structured logging setup using structlog.

Library modules log through the standard ``logging`` module with ``extra``
fields; this module routes those records through structlog's processors so
workers emit one JSON (or console) line per event.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from taskqueue.config import get_settings


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the current OpenTelemetry trace and span ids, when recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def build_processors() -> list[Any]:
    """Processors shared by structlog loggers and stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(allow=None),
    ]


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structured logging for the process.

    Args:
        level: Log level name; defaults to settings.
        log_format: ``json`` or ``console``; defaults to settings.
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format

    shared_processors = build_processors()

    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    # Reduce noise from third-party libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """Bind key-value pairs to every subsequent log line in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
