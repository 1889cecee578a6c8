"""
Logging configuration and utilities for Task Mesh.

Every component logs through structlog. Components that mix in
``LoggerMixin`` get a logger already bound to their identity in the mesh
(the orchestrator's service id, an agent's app id), and ``task_context``
binds a task id for everything logged inside it.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import structlog


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure structured logging for Task Mesh.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit one JSON object per line instead of console output
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    processors.append(structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        structlog.BoundLogger: Configured logger instance
    """
    return structlog.get_logger(name)


@contextmanager
def task_context(task_id: str, **context: Any) -> Iterator[None]:
    """Bind ``task_id`` (and extra fields) to every log line emitted inside."""
    with structlog.contextvars.bound_contextvars(task_id=task_id, **context):
        yield


class LoggerMixin:
    """
    Gives a component a logger bound to its identity in the mesh.

    Override ``log_context`` to add fields such as ``app_id``; they are bound
    once, the first time ``logger`` is used.
    """

    def log_context(self) -> Dict[str, Any]:
        return {}

    @property
    def logger(self) -> structlog.BoundLogger:
        if getattr(self, "_logger", None) is None:
            cls = self.__class__
            self._logger = get_logger(f"{cls.__module__}.{cls.__name__}").bind(**self.log_context())
        return self._logger

    def log_operation_error(self, operation: str, error: Exception, **context: Any) -> None:
        """Log a failed operation that the caller recovers from."""
        self.logger.error(
            "Operation failed",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            **context,
        )
