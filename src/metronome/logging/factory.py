"""Logger factory and configuration for Metronome.

Classes:
    LoggerFactory: Creates cached loggers and configures structlog
    LoggerConfig: Settings applied by the factory

Functions:
    redact_secrets: structlog processor masking secret-looking values
    configure_logging: Configure logging system globally
    get_logger: Convenience function for getting loggers
    get_performance_logger: Convenience function for performance loggers

Example:
    >>> from metronome.logging import get_logger, configure_logging
    >>> configure_logging(level="INFO", format="json", target="prod-sql-01")
    >>> logger = get_logger(__name__)
    >>> logger.info("Monitoring started")
"""

import logging
import logging.handlers
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from .performance import PerformanceLogger
from .structured import StructuredLogger
from ..core.exceptions import ValidationError

if TYPE_CHECKING:
    from ..config.models import LoggingConfig

SECRET_KEYS = frozenset({"password", "pwd", "api_key", "apikey", "secret", "token", "authorization"})

_INLINE_SECRET = re.compile(r"((?:password|pwd)\s*=\s*)('[^']*'|[^;\s]+)", re.IGNORECASE)

MASK = "***"


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask secret keys and inline ``password=`` values in string fields."""
    for key, value in event_dict.items():
        if key.lower() in SECRET_KEYS and value is not None:
            event_dict[key] = MASK
        elif isinstance(value, str) and "=" in value:
            event_dict[key] = _INLINE_SECRET.sub(rf"\g<1>{MASK}", value)
    return event_dict


@dataclass
class LoggerConfig:
    """Settings applied by :class:`LoggerFactory`.

    Attributes:
        level: Log level
        format: Log format (json, text)
        console_output: Enable console output
        file_path: Log file path, or None to disable file output
        max_file_size: Maximum file size before rotation
        backup_count: Number of rotated files to keep
        static_context: Fields added to every event, e.g. target and environment
    """
    level: str = "INFO"
    format: str = "json"
    console_output: bool = True
    file_path: Optional[str] = None
    max_file_size: int = 10485760  # 10MB
    backup_count: int = 5
    static_context: Dict[str, Any] = field(default_factory=dict)


class LoggerFactory:
    """Creates and configures Metronome loggers.

    Loggers are cached by name. structlog itself is only configured when
    one of the ``configure_*`` methods is called, so a host application or
    test suite that configured structlog first keeps its processors.

    Example:
        >>> factory = LoggerFactory()
        >>> factory.configure_from_config(app_config.logging, target=app_config.target.id)
        >>> logger = factory.get_logger("metronome.scheduler")
    """

    def __init__(self, config: Optional[LoggerConfig] = None) -> None:
        self.config = config or LoggerConfig()
        self.initialized = False
        self._loggers: Dict[str, StructuredLogger] = {}
        self._performance_loggers: Dict[str, PerformanceLogger] = {}

    def configure_from_config(self, logging_config: "LoggingConfig", **static_context: Any) -> None:
        """Configure from the ``logging`` section of the application config.

        Args:
            logging_config: Metronome logging configuration
            **static_context: Fields added to every event
        """
        self.config = LoggerConfig(
            level=logging_config.level,
            format=logging_config.format,
            console_output=logging_config.console_output,
            file_path=str(logging_config.file_path) if logging_config.file_path else None,
            max_file_size=logging_config.max_file_size,
            backup_count=logging_config.backup_count,
            static_context=static_context,
        )
        self._configure_logging_system()

    def configure_from_dict(self, config_dict: Dict[str, Any]) -> None:
        """Configure from a dictionary, ignoring unknown keys."""
        for key, value in config_dict.items():
            if hasattr(self.config, key):
                setattr(self.config, key, value)

        self._configure_logging_system()

    def _configure_logging_system(self) -> None:
        level_name = self.config.level.upper()
        if not isinstance(getattr(logging, level_name, None), int):
            raise ValidationError(f"Invalid log level: {self.config.level}")

        self.config.level = level_name
        self._configure_stdlib_logging(getattr(logging, level_name))
        self._configure_structlog()
        for logger in self._loggers.values():
            logger.set_level(level_name)
        self.initialized = True

    def _configure_stdlib_logging(self, level: int) -> None:
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        # structlog renders the final line
        formatter = logging.Formatter("%(message)s")
        handlers: List[logging.Handler] = []

        if self.config.console_output:
            handlers.append(logging.StreamHandler(sys.stdout))

        if self.config.file_path:
            file_path = Path(self.config.file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                logging.handlers.RotatingFileHandler(
                    filename=str(file_path),
                    maxBytes=self.config.max_file_size,
                    backupCount=self.config.backup_count,
                    encoding="utf-8",
                )
            )

        for handler in handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)
            root_logger.addHandler(handler)

    def _configure_structlog(self) -> None:
        static_context = dict(self.config.static_context)

        def add_static_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
            for key, value in static_context.items():
                event_dict.setdefault(key, value)
            return event_dict

        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_static_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
        ]

        if self.config.format.lower() == "json":
            processors.append(structlog.processors.JSONRenderer(default=str))
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, *, level: Optional[str] = None) -> StructuredLogger:
        """Get or create a structured logger.

        Args:
            name: Logger name (typically module name)
            level: Override default log level
        """
        cache_key = f"{name}_{level}"
        if cache_key not in self._loggers:
            self._loggers[cache_key] = StructuredLogger(name=name, level=level or self.config.level)
        return self._loggers[cache_key]

    def get_performance_logger(self, name: str, *, auto_log: bool = True) -> PerformanceLogger:
        """Get or create a performance logger writing to ``perf.<name>``."""
        cache_key = f"{name}_{auto_log}"
        if cache_key not in self._performance_loggers:
            self._performance_loggers[cache_key] = PerformanceLogger(
                name=name,
                auto_log=auto_log,
                logger=self.get_logger(f"perf.{name}"),
            )
        return self._performance_loggers[cache_key]

    def __repr__(self) -> str:
        return (
            f"LoggerFactory("
            f"level={self.config.level!r}, "
            f"format={self.config.format!r}, "
            f"initialized={self.initialized})"
        )


# Global logger factory instance
_global_factory = LoggerFactory()


def configure_logging(
    *,
    level: str = "INFO",
    format: str = "json",
    console_output: bool = True,
    file_path: Optional[str] = None,
    **static_context: Any,
) -> None:
    """Configure Metronome logging globally.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json, text)
        console_output: Enable console output
        file_path: Log file path, enables rotating file output
        **static_context: Fields added to every event

    Example:
        >>> configure_logging(level="DEBUG", format="text", target="prod-sql-01")
    """
    _global_factory.configure_from_dict({
        "level": level,
        "format": format,
        "console_output": console_output,
        "file_path": file_path,
        "static_context": static_context,
    })


def get_logger(name: str, *, level: Optional[str] = None) -> StructuredLogger:
    """Get or create a structured logger using the global factory.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Cycle completed", issue_count=3)
    """
    return _global_factory.get_logger(name, level=level)


def get_performance_logger(name: str, *, auto_log: bool = True) -> PerformanceLogger:
    """Get or create a performance logger using the global factory."""
    return _global_factory.get_performance_logger(name, auto_log=auto_log)


def get_factory() -> LoggerFactory:
    """Get the global logger factory instance."""
    return _global_factory
