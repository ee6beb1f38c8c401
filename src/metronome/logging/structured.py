"""Structured logging implementation for Metronome.

Every event carries keyword context. Task-local context set with
:meth:`StructuredLogger.context` ties each line of a monitoring cycle
back to the cycle, target and database that produced it.

Classes:
    StructuredLogger: Main structured logging interface
    LogContext: Task-local context shared by all loggers

Example:
    >>> logger = StructuredLogger("metronome.collector")
    >>> with logger.context(target="prod-sql-01", cycle_id="c-42"):
    ...     logger.info("Snapshot collected", missing_sections=0)
    ...     logger.warning("Section collection failed", section="waits")
"""

import contextvars
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

import structlog

from ..core.exceptions import MetronomeException


_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "metronome_log_context", default={}
)


class LogContext:
    """Task-local context merged into every event.

    Values live in a :class:`contextvars.ContextVar`, so each asyncio task
    sees the context of the code that created it and never the context of
    a sibling task.
    """

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def get(self, key: str, default: Any = None) -> Any:
        return _log_context.get().get(key, default)

    def get_all(self) -> Dict[str, Any]:
        return dict(_log_context.get())

    def clear(self) -> None:
        _log_context.set({})

    def update(self, context: Dict[str, Any]) -> None:
        _log_context.set({**_log_context.get(), **context})


class StructuredLogger:
    """Structured logger with bound values and task-local context.

    Bound values, task-local context and the call's keyword arguments are
    merged, in that order, into each event before it reaches structlog.

    Attributes:
        name: Logger name

    Example:
        >>> logger = StructuredLogger("metronome.scheduler")
        >>> logger.info("Cycle completed", issue_count=3, duration_ms=812.4)
    """

    def __init__(
        self,
        name: str,
        *,
        level: str = "INFO",
        bound: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize structured logger.

        Args:
            name: Logger name (typically module name)
            level: Initial log level
            bound: Values included in every event from this logger
        """
        self.name = name
        self._bound: Dict[str, Any] = dict(bound or {})
        self._context = LogContext()
        self._logger = structlog.get_logger(name)
        self._stdlib_logger = logging.getLogger(name)
        self._stdlib_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    def _prepare_event_dict(self, **kwargs: Any) -> Dict[str, Any]:
        return {**self._bound, **self._context.get_all(), **kwargs}

    @contextmanager
    def context(self, **context_data: Any) -> Generator[None, None, None]:
        """Add context to every event logged inside the block, by any logger.

        Example:
            >>> with logger.context(database="Sales"):
            ...     logger.info("Metadata collected")
        """
        token = _log_context.set({**_log_context.get(), **context_data})
        try:
            yield
        finally:
            _log_context.reset(token)

    def bind(self, **context_data: Any) -> "StructuredLogger":
        """Return a logger that adds ``context_data`` to every event."""
        return StructuredLogger(
            self.name,
            level=self.get_level(),
            bound={**self._bound, **context_data},
        )

    def set_level(self, level: str) -> None:
        """Set logging level.

        Raises:
            MetronomeException: If the level name is unknown
        """
        log_level = getattr(logging, str(level).upper(), None)
        if not isinstance(log_level, int):
            raise MetronomeException(
                f"Unknown log level: {level}",
                code="UNKNOWN_LOG_LEVEL",
            )

        self._stdlib_logger.setLevel(log_level)

    def get_level(self) -> str:
        return logging.getLevelName(self._stdlib_logger.getEffectiveLevel())

    def get_context(self) -> Dict[str, Any]:
        """Bound values merged with the current task context."""
        return {**self._bound, **self._context.get_all()}

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(message, **self._prepare_event_dict(**kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(message, **self._prepare_event_dict(**kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(message, **self._prepare_event_dict(**kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(message, **self._prepare_event_dict(**kwargs))

    def critical(self, message: str, **kwargs: Any) -> None:
        self._logger.critical(message, **self._prepare_event_dict(**kwargs))

    def __repr__(self) -> str:
        return f"StructuredLogger(name={self.name!r}, level={self.get_level()!r})"
