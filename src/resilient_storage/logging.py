"""Structured logging for storage components.

Components accept any ``LoggerLike`` and emit dotted event names with keyword
fields through the ``log_*`` helpers. Structlog loggers receive the fields
as key/value pairs; stdlib loggers receive them as ``extra``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Literal, Protocol, TextIO

import structlog

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
_LOG_LEVEL_NAMES: tuple[LogLevel, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_StdlibLogger = logging.Logger | logging.LoggerAdapter[logging.Logger]


class StructuredLogger(Protocol):
    """Logger surface used by storage components."""

    def info(self, event: str, **kwargs: object) -> None: ...

    def warning(self, event: str, **kwargs: object) -> None: ...

    def error(self, event: str, **kwargs: object) -> None: ...

    def exception(self, event: str, **kwargs: object) -> None: ...


LoggerLike = StructuredLogger | _StdlibLogger


def get_log_level_value(level: str) -> int:
    """Map a level name such as ``" warning "`` to its stdlib constant."""
    normalized = level.strip().upper()
    if normalized not in _LOG_LEVEL_NAMES:
        raise ValueError(f"log_level must be one of: {', '.join(sorted(_LOG_LEVEL_NAMES))}")
    return logging.getLevelNamesMapping()[normalized]


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.stdlib.get_logger(name)


@contextmanager
def storage_log_context(**fields: object) -> Iterator[None]:
    """Bind ``fields`` to every structlog event emitted inside the block.

    ``None`` values are dropped so optional context does not clutter events.
    """
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def _log(
    logger: LoggerLike,
    level: Literal["info", "warning", "error", "exception"],
    event: str,
    **fields: object,
) -> None:
    emit = getattr(logger, level)
    if isinstance(logger, logging.Logger | logging.LoggerAdapter):
        emit(event, extra=fields)
    else:
        emit(event, **fields)


def log_info(logger: LoggerLike, event: str, **fields: object) -> None:
    _log(logger, "info", event, **fields)


def log_warning(logger: LoggerLike, event: str, **fields: object) -> None:
    _log(logger, "warning", event, **fields)


def log_error(logger: LoggerLike, event: str, **fields: object) -> None:
    _log(logger, "error", event, **fields)


def log_exception(logger: LoggerLike, event: str, **fields: object) -> None:
    _log(logger, "exception", event, **fields)


def _renderer_for(stream: TextIO) -> structlog.types.Processor:
    if stream.isatty():
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_structlog(
    *, log_level: str, stream: TextIO | None = None
) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib logging through one stream handler.

    Events render as JSON unless ``stream`` (default ``sys.stderr``) is a
    TTY. Calling this again replaces the previous handler.
    """
    target = sys.stderr if stream is None else stream
    add_timestamp = structlog.processors.TimeStamper(fmt="iso", utc=True)
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        add_timestamp,
    ]

    handler = logging.StreamHandler(target)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer_for(target),
            ],
        )
    )
    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=get_log_level_value(log_level),
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger("resilient_storage")
