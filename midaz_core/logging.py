"""
Pipeline Logging
================
structlog setup for applications embedding the client, plus correlation id
binding. The client reads a bound ``correlation_id`` and forwards it as
``X-Request-Id``.

Usage:
    from midaz_core.logging import configure_logging, bind_correlation_id

    configure_logging(json_format=False)
    correlation_id = bind_correlation_id()
"""

import logging
import sys
import uuid
from typing import List, Optional, TextIO

import structlog


def configure_logging(
    level: int = logging.INFO,
    output: TextIO = sys.stderr,
    json_format: bool = True,
) -> None:
    """
    Configure structlog for the pipeline's log events.

    Args:
        level: Minimum level to emit
        output: Output stream
        json_format: JSON lines when True, coloured console output otherwise
    """
    processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=output.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=output, level=level)


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id (generated when omitted) to the current context."""
    correlation_id = correlation_id or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return correlation_id


def clear_correlation_id() -> None:
    structlog.contextvars.unbind_contextvars("correlation_id")
