"""Metronome structured logging framework.

structlog-backed structured logging and performance timing for the
monitoring engine.

Classes:
    StructuredLogger: Main structured logging interface
    PerformanceLogger: Operation timing and rolling statistics
    LoggerFactory: Logger creation and configuration

Example:
    >>> from metronome.logging import get_logger, get_performance_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Cycle started", target="prod-sql-01")
    >>>
    >>> perf_logger = get_performance_logger("metronome.collector")
    >>> with perf_logger.measure("collect_snapshot"):
    ...     pass
"""

from .factory import (
    LoggerConfig,
    LoggerFactory,
    configure_logging,
    get_factory,
    get_logger,
    get_performance_logger,
    redact_secrets,
)
from .performance import OperationStats, OperationTiming, PerformanceLogger, TimingContext
from .structured import LogContext, StructuredLogger

__all__ = [
    # Factory and configuration
    "LoggerConfig",
    "LoggerFactory",
    "configure_logging",
    "get_factory",
    "get_logger",
    "get_performance_logger",
    "redact_secrets",

    # Performance logging
    "PerformanceLogger",
    "OperationStats",
    "OperationTiming",
    "TimingContext",

    # Structured logging
    "LogContext",
    "StructuredLogger",
]
