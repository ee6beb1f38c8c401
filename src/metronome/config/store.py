"""Configuration stores for Metronome.

The engine reads its :class:`MonitoringConfig` through a config store once
per cycle, so edits made by an external settings surface take effect on
the next tick.

Classes:
    ConfigStore: Protocol for monitoring configuration stores
    InMemoryConfigStore: Store holding a config object in memory
    YamlConfigStore: Store backed by a YAML file

Functions:
    load_app_config: Load and validate a full AppConfig from YAML
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

import pydantic
import yaml

from .models import AppConfig, MonitoringConfig
from ..core.exceptions import ConfigurationError, ErrorCodes
from ..logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class ConfigStore(Protocol):
    """Source of the monitoring configuration."""

    async def get_monitoring_config(self) -> MonitoringConfig:
        """Return the current monitoring configuration."""
        ...

    async def save_monitoring_config(self, config: MonitoringConfig) -> None:
        """Persist a monitoring configuration."""
        ...


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            code=ErrorCodes.CONFIG_NOT_FOUND,
            context={"path": str(path)},
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in {path}",
            code=ErrorCodes.CONFIG_INVALID,
            context={"path": str(path)},
            cause=e,
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration root must be a mapping: {path}",
            code=ErrorCodes.CONFIG_INVALID,
            context={"path": str(path), "root_type": type(data).__name__},
        )
    return data


def _validation_error(exc: pydantic.ValidationError, source: str) -> ConfigurationError:
    errors = [
        {"location": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return ConfigurationError(
        f"Configuration validation failed for {source}",
        code=ErrorCodes.CONFIG_VALIDATION_FAILED,
        context={"source": source, "errors": errors},
        cause=exc,
    )


def load_app_config(path: Union[str, Path]) -> AppConfig:
    """Load and validate the full application configuration.

    Args:
        path: YAML file path

    Returns:
        Validated AppConfig

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = Path(path)
    data = _read_yaml(path)
    try:
        return AppConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise _validation_error(e, str(path)) from e


class InMemoryConfigStore:
    """Config store holding the monitoring configuration in memory.

    Example:
        >>> store = InMemoryConfigStore(MonitoringConfig(enabled=True))
        >>> (await store.get_monitoring_config()).enabled
        True
    """

    def __init__(self, config: Optional[MonitoringConfig] = None) -> None:
        self._config = config or MonitoringConfig()

    async def get_monitoring_config(self) -> MonitoringConfig:
        return self._config.model_copy(deep=True)

    async def save_monitoring_config(self, config: MonitoringConfig) -> None:
        self._config = config.model_copy(deep=True)


class YamlConfigStore:
    """Config store backed by a YAML file.

    The monitoring configuration is read from the ``monitoring`` key of
    the file; other top-level keys are preserved on save. The file is
    re-read on every call.

    Args:
        path: YAML file path
        section: Top-level key holding the monitoring configuration
    """

    def __init__(self, path: Union[str, Path], *, section: str = "monitoring") -> None:
        self.path = Path(path)
        self.section = section

    async def get_monitoring_config(self) -> MonitoringConfig:
        """Read and validate the monitoring section.

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        data = await asyncio.to_thread(_read_yaml, self.path)
        section = data.get(self.section) or {}
        try:
            return MonitoringConfig.model_validate(section)
        except pydantic.ValidationError as e:
            raise _validation_error(e, f"{self.path}:{self.section}") from e

    async def save_monitoring_config(self, config: MonitoringConfig) -> None:
        """Write the monitoring section, keeping the rest of the file."""
        await asyncio.to_thread(self._write, config)
        logger.info("Monitoring configuration saved", path=str(self.path))

    def _write(self, config: MonitoringConfig) -> None:
        data = _read_yaml(self.path) if self.path.exists() else {}
        data[self.section] = config.model_dump(mode="json")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
