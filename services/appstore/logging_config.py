"""
Centralized logging configuration for the appstore controllers.

Configures structlog for JSON output in production and console in development.
Reconcile passes bind the controller name and object key into the context,
so every event emitted while reconciling an object carries them.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from structlog.types import EventDict, Processor

APP_NAME = "appstore-controller"

_QUIET_LOGGERS = (
    "kubernetes",
    "urllib3",
    "httpx",
    "httpcore",
    "asyncio",
    "botocore",
    "aiobotocore",
    "aiosqlite",
    "sqlalchemy.engine",
)


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("app", APP_NAME)
    return event_dict


def reorder_keys(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Put level, timestamp and event first, then the reconcile context."""
    head: EventDict = {}
    for key in ("level", "timestamp", "event", "controller", "key"):
        if key in event_dict:
            head[key] = event_dict.pop(key)
    head.update(event_dict)
    return head


def utc_timestamper(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO8601 UTC timestamp with millisecond precision."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return event_dict


def configure_logging(json_logs: bool = True, log_level: str = "INFO") -> None:
    """Configure structlog and the stdlib root logger for the whole process."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        utc_timestamper,
        structlog.processors.StackInfoRenderer(),
        add_app_context,
    ]

    renderer: list[Processor]
    if json_logs:
        renderer = [reorder_keys, structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderer],
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def reconcile_context(controller: str, key: str) -> Iterator[None]:
    """Bind controller and key to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(controller=controller, key=key):
        yield


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
