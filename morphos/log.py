"""
Morphos - morphos/log.py
Structured logging setup (structlog).
=====================================

Modules obtain a logger once at import time:

    logger = get_logger(__name__)
    logger.info("threshold_crossed", creature_id="c1", threshold="major_adaptation")

configure_logging() is called by entry points only (run.py). Library code
and tests never configure logging, so structlog.testing.capture_logs()
works against the default, uncached configuration.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, List

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from structlog.types import EventDict, WrappedLogger


def add_app_context(logger: "WrappedLogger", method_name: str, event_dict: "EventDict") -> "EventDict":
    event_dict["app"] = "morphos"
    return event_dict


def configure_logging(*, level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure structlog for console (development) or JSON (batch runs) output.
    Standard library logging is routed to stderr at the same level.
    """
    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_app_context,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_format:
        processors: List[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=numeric_level,
        stream=sys.stderr,
        force=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger bound to the given module name."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context (e.g. simulation tick) included in every subsequent record."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
