"""Periodic cycle scheduler.

One asyncio task runs the monitoring loop. The first tick fires
immediately, later ticks every ``interval_seconds``. Ticks never overlap:
a cycle that overruns its interval defers the next tick. The monitoring
configuration is re-read at every tick.

Classes:
    SchedulerState: Scheduler lifecycle states
    Scheduler: Runs a cycle callable on an interval
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from ..config.models import MonitoringConfig
from ..config.store import ConfigStore
from ..core.exceptions import ErrorCodes, OperationCancelledError, SchedulerError
from ..core.utils import CancellationToken
from ..logging import get_logger

CycleCallable = Callable[[MonitoringConfig, CancellationToken], Awaitable[Any]]

DEFAULT_GRACE_PERIOD = 5.0


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Scheduler:
    """Runs ``cycle(config, token)`` on the configured interval.

    Args:
        config_store: Source of the monitoring configuration
        cycle: Coroutine function running one monitoring cycle
        name: Name used in log messages

    Example:
        >>> scheduler = Scheduler(InMemoryConfigStore(config), service.run_cycle)
        >>> await scheduler.start()
        True
        >>> await scheduler.stop()
    """

    def __init__(self, config_store: ConfigStore, cycle: CycleCallable, *, name: str = "monitoring") -> None:
        self.config_store = config_store
        self.name = name
        self._cycle = cycle
        self._state = SchedulerState.STOPPED
        self._state_history: List[Tuple[SchedulerState, float]] = []
        self._task: Optional["asyncio.Task[None]"] = None
        self._token: Optional[CancellationToken] = None
        self._lock = asyncio.Lock()
        self.cycle_count = 0
        self.failed_cycles = 0
        self.logger = get_logger(f"metronome.scheduler.{name}")

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def state_history(self) -> List[Tuple[SchedulerState, float]]:
        return list(self._state_history)

    @property
    def is_running(self) -> bool:
        """True while the loop task is alive."""
        return self._state == SchedulerState.RUNNING and self._task is not None and not self._task.done()

    def _set_state(self, state: SchedulerState) -> None:
        self._state = state
        self._state_history.append((state, asyncio.get_running_loop().time()))
        self.logger.debug("Scheduler state changed", state=state.value)

    async def start(self, cancellation_token: Optional[CancellationToken] = None) -> bool:
        """Start the loop.

        A second call while the loop is active is a no-op. When the
        configuration has monitoring disabled the scheduler stays stopped.

        Args:
            cancellation_token: Optional parent token; cancelling it stops the loop

        Returns:
            True if a new loop was started

        Raises:
            SchedulerError: If the configuration cannot be read
        """
        async with self._lock:
            if self._state == SchedulerState.RUNNING and not self.is_running:
                self.logger.warning("Scheduler loop had exited, restarting")
                self._mark_stopped()

            if self._state != SchedulerState.STOPPED:
                self.logger.info("Scheduler already running", state=self._state.value)
                return False

            self._set_state(SchedulerState.STARTING)
            try:
                config = await self.config_store.get_monitoring_config()
            except Exception as e:
                self.logger.error("Failed to read monitoring configuration", error=str(e))
                self._set_state(SchedulerState.STOPPED)
                raise SchedulerError(
                    "Scheduler could not read the monitoring configuration",
                    code=ErrorCodes.SCHEDULER_START_FAILED,
                    context={"scheduler": self.name},
                    cause=e,
                ) from e

            if not config.enabled:
                self.logger.info("Monitoring is disabled in configuration")
                self._set_state(SchedulerState.STOPPED)
                return False

            self._token = cancellation_token.create_child() if cancellation_token else CancellationToken()
            self._task = asyncio.create_task(self._run(config, self._token), name=f"scheduler-{self.name}")
            self._set_state(SchedulerState.RUNNING)
            self.logger.info("Scheduler started", interval_seconds=config.interval_seconds)
            return True

    async def stop(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        """Stop the loop.

        Sets the token, waits up to ``grace_period`` seconds for the
        running cycle to finish, then cancels the task. Always ends in
        ``STOPPED``.
        """
        async with self._lock:
            if self._state == SchedulerState.STOPPED:
                return

            self._set_state(SchedulerState.STOPPING)
            if self._token is not None:
                self._token.cancel()

            task = self._task
            if task is not None and not task.done():
                _, pending = await asyncio.wait({task}, timeout=grace_period)
                if pending:
                    self.logger.warning(
                        "Cycle did not finish within grace period, cancelling",
                        grace_period=grace_period,
                    )
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

            self._mark_stopped()
            self.logger.info("Scheduler stopped", cycle_count=self.cycle_count)

    def _mark_stopped(self) -> None:
        if self._token is not None:
            self._token.release()
        self._task = None
        self._token = None
        self._set_state(SchedulerState.STOPPED)

    async def _run(self, config: MonitoringConfig, token: CancellationToken) -> None:
        loop = asyncio.get_running_loop()
        try:
            while not token.is_cancelled:
                started = loop.time()
                if config.enabled:
                    await self._tick(config, token)
                else:
                    self.logger.debug("Monitoring disabled, skipping tick")

                config = await self._reload(config)
                elapsed = loop.time() - started
                await token.sleep(max(0.0, config.interval_seconds - elapsed))
        except OperationCancelledError:
            pass
        finally:
            self.logger.debug("Scheduler loop exited", cycle_count=self.cycle_count)
            # Exits not driven by stop(), e.g. a cancelled parent token
            if self._state == SchedulerState.RUNNING and self._task is asyncio.current_task():
                self._mark_stopped()
                self.logger.info("Scheduler stopped by cancellation", cycle_count=self.cycle_count)

    async def _tick(self, config: MonitoringConfig, token: CancellationToken) -> None:
        self.cycle_count += 1
        try:
            await self._cycle(config, token)
        except OperationCancelledError:
            raise
        except Exception as e:
            self.failed_cycles += 1
            self.logger.error(
                "Monitoring cycle failed",
                cycle=self.cycle_count,
                error=str(e),
                error_type=type(e).__name__,
                code=ErrorCodes.CYCLE_FAILED,
            )

    async def _reload(self, current: MonitoringConfig) -> MonitoringConfig:
        try:
            return await self.config_store.get_monitoring_config()
        except Exception as e:
            self.logger.error("Failed to reload monitoring configuration, keeping previous", error=str(e))
            return current
