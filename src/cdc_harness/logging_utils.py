"""
Structured logging for the integration harness using structlog.

The harness runs inside a test process, so output goes to stdout through
stdlib logging where pytest can capture it per test. Set LOG_FORMAT=json to
get one JSON object per record instead of the console renderer.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars
from structlog.typing import Processor


def add_harness_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add the compose project the records belong to.

    Several harness runs can share one Docker host; the project name is what
    tells their logs apart.
    """
    event_dict.setdefault("compose.project", os.getenv("COMPOSE_PROJECT_NAME", "default"))
    return event_dict


def configure_harness_logging(log_level: str = "INFO", log_format: str | None = None) -> None:
    """
    Configure structlog for the harness.

    Args:
        log_level: Logging level for the harness loggers (defaults to "INFO")
        log_format: "json" or "console"; defaults to the LOG_FORMAT env var,
            falling back to console output
    """
    if log_format is None:
        log_format = os.getenv("LOG_FORMAT", "console")
    use_json = log_format.lower() == "json"

    shared: list[Processor] = [
        merge_contextvars,
        add_harness_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            ],
        ),
    ]

    if use_json:
        processors = [
            *shared,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared,
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    logging.basicConfig(
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_harness_logger(name: str | None = None) -> Any:
    """
    Create a harness logger with optional name binding.

    Args:
        name: Optional logger name (e.g., "cluster", "readiness", "collector")

    Returns:
        A structlog BoundLogger instance
    """
    logger = structlog.get_logger()

    if name:
        logger = logger.bind(logger_name=name)

    return logger


def bind_cycle_context(cycle: int, without: set[str]) -> None:
    """Tag every record emitted during one start cycle, keeping other bound context."""
    bind_contextvars(start_cycle=cycle, started_without=sorted(without))
