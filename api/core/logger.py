"""Centralized logging configuration using structlog.

Every module logs through stdlib ``logging.getLogger(__name__)`` with a dotted
event name and ``extra=`` fields; structlog renders those records:
- JSON lines when LOG_FORMAT=json (production)
- Colored console output otherwise

Work on a single certificate runs inside ``certificate_context`` so that
renderer, stamp, and storage logs emitted deep in the call stack carry the
certificate kind and target without threading them through every call.

Usage:
    logger = logging.getLogger(__name__)
    with certificate_context("transaction", transaction_id):
        logger.info("certificate.rendered", extra={"backend": "vector"})
"""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.contextvars import (
    bind_contextvars,
    bound_contextvars,
    clear_contextvars,
)
from structlog.types import Processor

__all__ = [
    "bind_contextvars",
    "certificate_context",
    "clear_contextvars",
    "configure_logging",
    "get_logger",
]

# Chatty per-request or per-browser-event loggers
_QUIET_LOGGERS = {
    "asyncio": logging.WARNING,
    "httpcore": logging.WARNING,
    "httpx": logging.WARNING,
    "playwright": logging.WARNING,
    "PIL": logging.INFO,
}


def _get_log_level() -> int:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def _renderer() -> Processor:
    if os.environ.get("LOG_FORMAT", "").lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stdout.isatty(), exception_formatter=structlog.dev.plain_traceback
    )


def configure_logging() -> None:
    """Route stdlib and structlog output through one stdout handler.

    Safe to call more than once; the root handlers are replaced each time.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(_get_log_level())

    for name, level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


@contextmanager
def certificate_context(kind: str, target: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with the certificate."""
    with bound_contextvars(certificate_kind=kind, certificate_target=target):
        yield


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.stdlib.get_logger(name)
