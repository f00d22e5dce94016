"""structlog setup for mailweave.

Log lines go to stderr so the CLI's thread tables on stdout stay clean.
Every line emitted during a rethread run carries that run's
``rethread_cycle_id``.

Usage:
    from mailweave.core.logging import get_logger, rethread_cycle

    logger = get_logger(__name__)

    with rethread_cycle(str(uuid.uuid4())):
        logger.info("Manual groups applied", group_count=2, pinned_messages=1)
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, TextIO

import structlog

CYCLE_ID_KEY = "rethread_cycle_id"

_cycle_id: ContextVar[str | None] = ContextVar(CYCLE_ID_KEY, default=None)


@contextmanager
def rethread_cycle(cycle_id: str) -> Iterator[str]:
    """Tag log lines inside the block with ``cycle_id``.

    The previous value is restored on exit, so nested or failing runs
    never leak their id into later log lines.
    """
    token = _cycle_id.set(cycle_id)
    try:
        yield cycle_id
    finally:
        _cycle_id.reset(token)


def get_correlation_id() -> str | None:
    """Return the id of the rethread run in progress, if any."""
    return _cycle_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Processor that stamps the current rethread cycle id."""
    cycle_id = _cycle_id.get()
    if cycle_id is not None:
        event_dict[CYCLE_ID_KEY] = cycle_id
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call again: ``rethread --watch`` reconfigures from the loaded
    config after the CLI has set up its defaults.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines when True, colored console output otherwise
        stream: Destination, stderr by default
    """
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=stream is None and sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            add_correlation_id,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration must reach loggers that already emitted
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a logger named after the calling module (pass ``__name__``)."""
    return structlog.get_logger(name)
