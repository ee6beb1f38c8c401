"""Performance logging for Metronome operations.

Times collection steps, data-source calls and whole monitoring cycles,
and keeps bounded per-operation statistics so a service running for
months does not grow without limit.

Classes:
    OperationTiming: One completed measurement
    OperationStats: Rolling statistics for one operation
    TimingContext: Context manager timing one block
    PerformanceLogger: Main performance logging interface

Example:
    >>> perf_logger = PerformanceLogger("metronome.service")
    >>> with perf_logger.measure("monitoring_cycle", slow_after=300, target="prod-sql-01") as timer:
    ...     result = await service.run_cycle(config)
    >>> timer.duration_ms
    412.7
"""

import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Generator, Optional

from .structured import StructuredLogger
from ..core.utils import FormatUtils

# Durations kept per operation for percentile estimates
WINDOW_SIZE = 100


@dataclass(frozen=True)
class OperationTiming:
    """A completed measurement.

    Attributes:
        operation: Operation name
        duration: Duration in seconds
        success: Whether the block finished without raising
        error: Error text when it raised
    """
    operation: str
    duration: float
    success: bool = True
    error: Optional[str] = None

    @property
    def duration_ms(self) -> float:
        return self.duration * 1000


@dataclass
class OperationStats:
    """Rolling statistics for one operation.

    Totals cover every call; the percentile only covers the last
    ``WINDOW_SIZE`` durations.
    """
    operation: str
    total_calls: int = 0
    failed_calls: int = 0
    slow_calls: int = 0
    total_duration: float = 0.0
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    last_error: Optional[str] = None
    recent: Deque[float] = field(default_factory=lambda: deque(maxlen=WINDOW_SIZE), repr=False)

    def add(self, timing: OperationTiming, *, slow: bool = False) -> None:
        self.total_calls += 1
        if not timing.success:
            self.failed_calls += 1
            self.last_error = timing.error
        if slow:
            self.slow_calls += 1

        duration = timing.duration
        self.total_duration += duration
        self.recent.append(duration)
        if self.min_duration is None or duration < self.min_duration:
            self.min_duration = duration
        if self.max_duration is None or duration > self.max_duration:
            self.max_duration = duration

    @property
    def avg_duration(self) -> Optional[float]:
        return self.total_duration / self.total_calls if self.total_calls else None

    @property
    def p95_duration(self) -> Optional[float]:
        """95th percentile of the recent window, once it holds 20 samples."""
        if len(self.recent) < 20:
            return None
        ordered = sorted(self.recent)
        return ordered[int(len(ordered) * 0.95) - 1]

    @property
    def success_rate(self) -> float:
        """Success rate as a percentage (0-100)."""
        if self.total_calls == 0:
            return 0.0
        return (self.total_calls - self.failed_calls) / self.total_calls * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "slow_calls": self.slow_calls,
            "success_rate": self.success_rate,
            "avg_duration": self.avg_duration,
            "min_duration": self.min_duration,
            "max_duration": self.max_duration,
            "p95_duration": self.p95_duration,
            "last_error": self.last_error,
        }


class TimingContext:
    """Times one block and logs its outcome.

    Example:
        >>> with TimingContext("analyzer", logger, {"analyzer": "indexing"}) as timer:
        ...     issues = analyzer.analyze(context)
        >>> print(f"Analyzer took {timer.duration_ms:.2f}ms")
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[StructuredLogger] = None,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        slow_after: Optional[float] = None,
    ) -> None:
        self.operation = operation
        self.logger = logger
        self.metadata = metadata or {}
        self.slow_after = slow_after
        self.timing: Optional[OperationTiming] = None
        self._started: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        return self.timing.duration if self.timing else None

    @property
    def duration_ms(self) -> Optional[float]:
        return self.timing.duration_ms if self.timing else None

    @property
    def is_slow(self) -> bool:
        return (
            self.slow_after is not None
            and self.timing is not None
            and self.timing.duration > self.slow_after
        )

    def __enter__(self) -> "TimingContext":
        self._started = time.perf_counter()
        if self.logger:
            self.logger.debug("Operation started", operation=self.operation, **self.metadata)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._started is None:
            return

        error = str(exc_val) if exc_val else None
        self.timing = OperationTiming(
            operation=self.operation,
            duration=time.perf_counter() - self._started,
            success=exc_type is None,
            error=error,
        )
        if not self.logger:
            return

        duration_ms = round(self.timing.duration_ms, 2)
        if not self.timing.success:
            self.logger.warning(
                "Operation failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error=error,
                **self.metadata,
            )
        elif self.is_slow:
            self.logger.warning(
                "Operation exceeded its time budget",
                operation=self.operation,
                duration_ms=duration_ms,
                budget_seconds=self.slow_after,
                **self.metadata,
            )
        else:
            self.logger.debug(
                "Operation completed",
                operation=self.operation,
                duration_ms=duration_ms,
                **self.metadata,
            )


class PerformanceLogger:
    """Times operations and keeps per-operation statistics.

    Attributes:
        name: Logger name
        logger: Underlying structured logger

    Example:
        >>> perf_logger = PerformanceLogger("metronome.collector")
        >>> with perf_logger.measure("collect_snapshot", target="prod-sql-01"):
        ...     ...
        >>> perf_logger.get_stats("collect_snapshot").total_calls
        1
    """

    def __init__(
        self,
        name: str,
        *,
        auto_log: bool = True,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        """Initialize performance logger.

        Args:
            name: Logger name
            auto_log: Log each measurement; statistics are kept either way
            logger: Custom structured logger instance
        """
        self.name = name
        self.auto_log = auto_log
        self.logger = logger or StructuredLogger(f"perf.{name}")
        self._stats: Dict[str, OperationStats] = {}

    @contextmanager
    def measure(
        self, operation: str, *, slow_after: Optional[float] = None, **metadata: Any
    ) -> Generator[TimingContext, None, None]:
        """Time a block.

        Args:
            operation: Operation name
            slow_after: Seconds after which the block is logged as slow
            **metadata: Context added to the log events

        Yields:
            TimingContext for the block
        """
        timer = TimingContext(
            operation,
            self.logger if self.auto_log else None,
            metadata,
            slow_after=slow_after,
        )
        try:
            with timer:
                yield timer
        finally:
            if timer.timing is not None:
                self._stats_for(operation).add(timer.timing, slow=timer.is_slow)

    def record_timing(
        self,
        operation: str,
        duration: float,
        success: bool = True,
        error: Optional[str] = None,
        **metadata: Any,
    ) -> OperationTiming:
        """Record a measurement taken elsewhere, e.g. one retry attempt."""
        timing = OperationTiming(operation, duration, success, error)
        if self.auto_log:
            log = self.logger.debug if success else self.logger.warning
            log(
                f"Timing recorded: {operation}",
                operation=operation,
                duration_ms=round(timing.duration_ms, 2),
                error=error,
                **metadata,
            )
        self._stats_for(operation).add(timing)
        return timing

    def _stats_for(self, operation: str) -> OperationStats:
        if operation not in self._stats:
            self._stats[operation] = OperationStats(operation=operation)
        return self._stats[operation]

    def get_stats(self, operation: str) -> OperationStats:
        return self._stats.get(operation, OperationStats(operation=operation))

    def all_stats(self) -> Dict[str, OperationStats]:
        return dict(self._stats)

    def reset(self, operation: Optional[str] = None) -> None:
        if operation:
            self._stats.pop(operation, None)
        else:
            self._stats.clear()

    def log_summary(self) -> None:
        """Log one info event per measured operation."""
        for stats in self._stats.values():
            self.logger.info(
                "Performance summary",
                operation=stats.operation,
                total_calls=stats.total_calls,
                failed_calls=stats.failed_calls,
                slow_calls=stats.slow_calls,
                average=FormatUtils.format_duration(stats.avg_duration or 0.0),
                p95=FormatUtils.format_duration(stats.p95_duration) if stats.p95_duration else None,
            )

    def __repr__(self) -> str:
        return f"PerformanceLogger(name={self.name!r}, operations={len(self._stats)})"
