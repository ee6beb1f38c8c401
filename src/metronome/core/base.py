"""Base classes for Metronome components.

Long-lived engine components (data sources, SQLite stores, the
monitoring service) own a configuration object, open their resources in
an async ``initialize`` and release them in ``cleanup``.

Classes:
    ComponentState: Lifecycle states
    BaseComponent: Configuration ownership and health reporting
    AsyncComponent: Lock-guarded async initialize and cleanup
    LifecycleComponent: AsyncComponent with tracked, restartable states

Example:
    >>> class SqliteIssueStore(AsyncComponent[StorageConfig]):
    ...     async def _async_initialize(self) -> None:
    ...         self._db = await aiosqlite.connect(self.config.sqlite_path)
"""

import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, ClassVar, Dict, Generic, List, Tuple, TypeVar

import structlog

from .exceptions import (
    ConfigurationError,
    ErrorCodes,
    MetronomeException,
    ValidationError,
)

# Configuration type
T = TypeVar("T")


class ComponentState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


# States from which initialize may be called
STARTABLE_STATES = frozenset({ComponentState.CREATED, ComponentState.STOPPED, ComponentState.FAILED})


class BaseComponent(Generic[T], ABC):
    """Base class for all Metronome components.

    Type Parameters:
        T: Type of configuration object this component accepts

    Attributes:
        component_name: Name used in logs and health reports
        version: Component version
    """

    component_name: ClassVar[str] = "BaseComponent"
    version: ClassVar[str] = "1.0.0"

    def __init__(self, config: T) -> None:
        """Initialize base component.

        Raises:
            ValidationError: If configuration is None
            ConfigurationError: If configuration fails validation
        """
        if config is None:
            raise ValidationError(
                "Configuration cannot be None",
                code="CONFIG_NULL",
                context={"component": self.component_name},
            )

        self._config: T = config
        self._initialized = False
        self._created_at = time.monotonic()
        self._logger = structlog.get_logger(f"metronome.component.{self.component_name}")

        if not self.validate_config():
            raise ConfigurationError(
                f"Invalid configuration for {self.component_name}",
                code=ErrorCodes.CONFIG_INVALID,
                context={"component": self.component_name},
            )

    @property
    def config(self) -> T:
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def uptime(self) -> float:
        """Seconds since the component was created."""
        return time.monotonic() - self._created_at

    def validate_config(self) -> bool:
        """Validate component configuration. Subclasses add their own checks."""
        return self._config is not None

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "component": self.component_name,
            "version": self.version,
            "initialized": self._initialized,
            "uptime_seconds": round(self.uptime, 3),
            "status": "healthy" if self._initialized else "not_initialized",
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.component_name!r}, initialized={self._initialized})"


class AsyncComponent(BaseComponent[T]):
    """Base class for components holding async resources.

    ``initialize`` and ``cleanup`` are serialized with locks and are
    idempotent: a second ``initialize`` on an initialized component is a
    no-op, as is ``cleanup`` on one that was never initialized.
    Usable as an async context manager.
    """

    def __init__(self, config: T) -> None:
        super().__init__(config)
        self._initialization_lock = asyncio.Lock()
        self._cleanup_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the component's resources.

        Raises:
            MetronomeException: If initialization fails; foreign errors are
                wrapped with code ``INIT_FAILED``
        """
        async with self._initialization_lock:
            if self._initialized:
                return

            try:
                await self._async_initialize()
            except MetronomeException as e:
                self._log_failure("Component initialization failed", e)
                raise
            except Exception as e:
                self._log_failure("Component initialization failed", e)
                raise MetronomeException(
                    f"Failed to initialize {self.component_name}",
                    code="INIT_FAILED",
                    context={"component": self.component_name},
                    cause=e,
                ) from e

            self._initialized = True
            self._logger.debug("Component initialized", component=self.component_name)

    async def cleanup(self) -> None:
        """Release the component's resources.

        Failures are logged, not raised, so they never mask the error that
        triggered shutdown.
        """
        async with self._cleanup_lock:
            if not self._initialized:
                return

            try:
                await self._async_cleanup()
            except Exception as e:
                self._log_failure("Component cleanup failed", e)
            finally:
                self._initialized = False
            self._logger.debug("Component cleaned up", component=self.component_name)

    def _log_failure(self, message: str, error: BaseException) -> None:
        self._logger.error(
            message,
            component=self.component_name,
            error=str(error),
            error_type=type(error).__name__,
        )

    @abstractmethod
    async def _async_initialize(self) -> None:
        """Open resources."""

    async def _async_cleanup(self) -> None:
        """Release resources."""

    async def __aenter__(self) -> "AsyncComponent[T]":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.cleanup()


class LifecycleComponent(AsyncComponent[T]):
    """AsyncComponent with tracked lifecycle states.

    States move ``created -> initializing -> running -> stopping -> stopped``.
    A failed initialization ends in ``failed``. Stopped and failed
    components can be initialized again.
    """

    def __init__(self, config: T) -> None:
        super().__init__(config)
        self._state = ComponentState.CREATED
        self._state_history: List[Tuple[ComponentState, float]] = [(self._state, time.time())]

    @property
    def state(self) -> ComponentState:
        return self._state

    @property
    def state_history(self) -> List[Tuple[ComponentState, float]]:
        """(state, unix timestamp) tuples, oldest first."""
        return list(self._state_history)

    def _set_state(self, new_state: ComponentState) -> None:
        self._state = new_state
        self._state_history.append((new_state, time.time()))
        self._logger.debug(
            "Component state changed",
            component=self.component_name,
            new_state=new_state.value,
        )

    async def initialize(self) -> None:
        """Initialize with state tracking.

        Raises:
            MetronomeException: With code ``INVALID_STATE`` unless the
                component is created, stopped or failed
        """
        if self._state not in STARTABLE_STATES:
            raise MetronomeException(
                f"Cannot initialize component in state: {self._state.value}",
                code=ErrorCodes.INVALID_STATE,
                context={"component": self.component_name, "current_state": self._state.value},
            )

        self._set_state(ComponentState.INITIALIZING)
        try:
            await super().initialize()
        except Exception:
            self._set_state(ComponentState.FAILED)
            raise
        self._set_state(ComponentState.RUNNING)

    async def cleanup(self) -> None:
        """Clean up with state tracking. No-op unless running."""
        if self._state != ComponentState.RUNNING:
            return

        self._set_state(ComponentState.STOPPING)
        await super().cleanup()
        self._set_state(ComponentState.STOPPED)

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        status["state"] = self._state.value
        status["state_history"] = [(state.value, at) for state, at in self._state_history[-5:]]
        return status
