"""
structlog setup for the operator process.

Production renders one JSON object per line; development renders coloured
console output. Each reconcile pass binds the resource it works on through
``reconcile_context`` so every event logged beneath it carries ``kind``,
``namespace`` and ``name``.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import structlog
from structlog.types import EventDict, Processor

from oradb_operator.config.settings import settings

# Library loggers and the level they are capped at
LIBRARY_LOG_LEVELS: Dict[str, int] = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "kubernetes_asyncio": logging.WARNING,
    "oci": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "urllib3": logging.WARNING,
}

RESOURCE_CONTEXT_KEYS = ("kind", "namespace", "name")


def add_operator_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("operator", settings.app_name)
    event_dict.setdefault("version", settings.app_version)
    event_dict.setdefault("environment", settings.environment)
    return event_dict


def add_severity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mirror ``level`` as an upper-case ``severity`` for log collectors."""
    level = event_dict.get("level")
    if level:
        event_dict["severity"] = level.upper()
    return event_dict


def _renderer() -> Processor:
    if settings.is_production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def configure_logging() -> None:
    """Configure structlog and the stdlib root logger. Call once at start-up."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_operator_context,
        add_severity,
        structlog.processors.format_exc_info,
        _renderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )
    for name, level in LIBRARY_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(level)


@contextmanager
def reconcile_context(kind: str, namespace: str, name: str) -> Iterator[None]:
    """Bind the resource being reconciled for the duration of a pass."""
    structlog.contextvars.bind_contextvars(kind=kind, namespace=namespace, name=name)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*RESOURCE_CONTEXT_KEYS)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)
