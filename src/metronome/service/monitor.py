"""Monitoring service.

Ties the collector, analyzer pipeline, issue sink, alert dispatcher and
scheduler together for one monitored target.

A cycle runs these steps in order:

1. Collect a server snapshot.
2. Log the top waits.
3. Run the server-scope analyzers.
4. For each user database, collect metadata and run the database-scope
   analyzers. A failing database never affects the others.
5. Record the issues, one store call per analyzer batch.
6. Evaluate alert rules for every recorded issue.
7. Save the snapshot to the metrics store.
8. Purge metrics older than the retention window.

Classes:
    StepError: A failed cycle step
    CycleResult: Outcome of one cycle
    MonitoringService: Service facade (start, stop, snapshots, on-demand detection)

Functions:
    create_service: Build a service from an AppConfig
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..alerts.channels import LogChannel, build_channels
from ..alerts.dispatcher import AlertDispatcher
from ..analyzers.base import AnalysisContext
from ..analyzers.pipeline import AnalyzerBatch, AnalyzerPipeline, default_pipeline
from ..config.models import AppConfig, MonitoringConfig, TargetConfig
from ..config.store import ConfigStore, InMemoryConfigStore, YamlConfigStore
from ..core.base import STARTABLE_STATES, LifecycleComponent
from ..core.exceptions import OperationCancelledError
from ..core.types import IssueSeverity, IssueType, NotificationChannel
from ..core.utils import CancellationToken, utc_now
from ..database.base import DataSource
from ..database.executor import ResilientExecutor
from ..issues.sink import IssueSink
from ..issues.stores import (
    InMemoryIssueStore,
    InMemoryMetricsStore,
    IssueStore,
    MetricsStore,
    SqliteIssueStore,
    SqliteMetricsStore,
)
from ..logging import get_logger, get_performance_logger
from ..monitoring.collector import SnapshotCollector
from ..monitoring.models import Issue, Snapshot
from .scheduler import DEFAULT_GRACE_PERIOD, Scheduler

WATCHDOG_INTERVAL = 60.0

STARTUP_CONNECTIVITY_MESSAGE = (
    "Database connectivity check failed during service startup. Monitoring not started."
)
LOST_CONNECTIVITY_MESSAGE = "Database connectivity check failed during periodic check."
CONNECTIVITY_ACTION = "Check SQL Server instance, network connectivity, and credentials."


@dataclass(frozen=True)
class StepError:
    """A cycle step that failed."""
    step: str
    message: str
    database: Optional[str] = None
    analyzer: Optional[str] = None
    error_type: str = ""


@dataclass
class CycleResult:
    """Outcome of one monitoring cycle.

    Attributes:
        issues: Recorded issues in analyzer order
        dispatched: Whether an alert fired, keyed by issue id
        errors: Steps that failed
    """
    started_at: datetime
    finished_at: Optional[datetime] = None
    snapshot: Optional[Snapshot] = None
    issues: List[Issue] = field(default_factory=list)
    dispatched: Dict[str, bool] = field(default_factory=dict)
    errors: List[StepError] = field(default_factory=list)
    databases: List[str] = field(default_factory=list)
    batches: List[AnalyzerBatch] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def was_dispatched(self, issue: Issue) -> bool:
        return self.dispatched.get(issue.id, False)

    def add_error(
        self,
        step: str,
        error: BaseException,
        *,
        database: Optional[str] = None,
        analyzer: Optional[str] = None,
    ) -> None:
        self.errors.append(
            StepError(
                step=step,
                message=str(error),
                database=database,
                analyzer=analyzer,
                error_type=type(error).__name__,
            )
        )


class MonitoringService(LifecycleComponent[TargetConfig]):
    """Monitors one SQL Server target.

    Args:
        target: Monitored target
        executor: Resilient executor bound to the target's data source
        config_store: Source of the monitoring configuration
        issue_store: Destination of recorded issues
        dispatcher: Alert dispatcher; a log-only dispatcher when omitted
        metrics_store: Optional snapshot metrics store
        pipeline: Analyzer pipeline; all built-in analyzers when omitted
        watchdog_interval: Seconds between connectivity checks while running
        grace_period: Seconds ``stop`` waits for a running cycle
        resources: Objects with an async ``close`` released on cleanup

    Example:
        >>> service = create_service(load_app_config("metronome.yaml"))
        >>> if await service.start():
        ...     result = await service.detect_issues_now()
        ...     await service.stop()
    """

    component_name = "MonitoringService"
    version = "1.0.0"

    def __init__(
        self,
        target: TargetConfig,
        *,
        executor: ResilientExecutor,
        config_store: ConfigStore,
        issue_store: IssueStore,
        dispatcher: Optional[AlertDispatcher] = None,
        metrics_store: Optional[MetricsStore] = None,
        pipeline: Optional[AnalyzerPipeline] = None,
        watchdog_interval: float = WATCHDOG_INTERVAL,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        resources: Optional[List[Any]] = None,
    ) -> None:
        super().__init__(target)
        self.logger = get_logger(f"metronome.service.{target.id}")
        self.perf_logger = get_performance_logger("metronome.service")
        self.executor = executor
        self.config_store = config_store
        self.collector = SnapshotCollector(executor)
        self.pipeline = pipeline or default_pipeline()
        self.sink = IssueSink(issue_store)
        self.dispatcher = dispatcher or AlertDispatcher(
            {NotificationChannel.LOG: LogChannel()}, server_name=target.host
        )
        self.metrics_store = metrics_store
        self.scheduler = Scheduler(config_store, self.run_cycle, name=target.id)
        self.watchdog_interval = watchdog_interval
        self.grace_period = grace_period
        self._resources = list(resources or [])
        self._cycle_lock = asyncio.Lock()
        self._last_snapshot: Optional[Snapshot] = None
        self._last_result: Optional[CycleResult] = None
        self._watchdog_task: Optional["asyncio.Task[None]"] = None
        self._watchdog_token: Optional[CancellationToken] = None

    @property
    def target(self) -> TargetConfig:
        return self.config

    @property
    def is_monitoring(self) -> bool:
        return self.scheduler.is_running

    @property
    def last_snapshot(self) -> Optional[Snapshot]:
        return self._last_snapshot

    @property
    def last_result(self) -> Optional[CycleResult]:
        return self._last_result

    async def _async_initialize(self) -> None:
        self.logger.info("Monitoring service initialized", target=self.target.connection_string)

    async def _async_cleanup(self) -> None:
        for resource in self._resources:
            try:
                await resource.close()
            except Exception as e:
                self.logger.warning(
                    "Failed to release resource",
                    resource=type(resource).__name__,
                    error=str(e),
                )

    # Service facade

    async def start(self, cancellation_token: Optional[CancellationToken] = None) -> bool:
        """Check connectivity, then start periodic monitoring.

        Returns:
            True if the scheduler is running after the call
        """
        if self.scheduler.is_running:
            self.logger.info("Monitoring already running")
            return True

        if not await self.collector.check_connectivity(cancellation_token=cancellation_token):
            self.logger.error("Cannot establish database connection, monitoring not started")
            await self._report_connectivity(IssueSeverity.CRITICAL, STARTUP_CONNECTIVITY_MESSAGE)
            return False

        if self.state in STARTABLE_STATES:
            await self.initialize()

        if not await self.scheduler.start(cancellation_token):
            return False

        await self._stop_watchdog()
        self._watchdog_token = (
            cancellation_token.create_child() if cancellation_token else CancellationToken()
        )
        self._watchdog_task = asyncio.create_task(
            self._watchdog(self._watchdog_token), name=f"watchdog-{self.target.id}"
        )
        self.logger.info("Monitoring started")
        return True

    async def stop(self) -> None:
        """Stop the watchdog and the scheduler, then release resources."""
        await self._stop_watchdog()
        await self.scheduler.stop(self.grace_period)
        await self.cleanup()
        self.perf_logger.log_summary()
        self.logger.info("Monitoring stopped")

    async def _stop_watchdog(self) -> None:
        if self._watchdog_token is not None:
            self._watchdog_token.cancel()
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            await asyncio.gather(self._watchdog_task, return_exceptions=True)
        self._watchdog_task = None
        self._watchdog_token = None

    async def get_current_snapshot(
        self, cancellation_token: Optional[CancellationToken] = None
    ) -> Snapshot:
        """Collect a fresh performance snapshot."""
        config = await self.config_store.get_monitoring_config()
        snapshot = await self.collector.collect(self.target, config, cancellation_token=cancellation_token)
        self._last_snapshot = snapshot
        return snapshot

    async def detect_issues_now(
        self, cancellation_token: Optional[CancellationToken] = None
    ) -> CycleResult:
        """Run one cycle immediately and return its result, including failed steps."""
        config = await self.config_store.get_monitoring_config()
        return await self.run_cycle(config, cancellation_token)

    # Cycle

    async def run_cycle(
        self, config: MonitoringConfig, cancellation_token: Optional[CancellationToken] = None
    ) -> CycleResult:
        """Run one monitoring cycle with a snapshot of ``config``.

        Raises:
            OperationCancelledError: If the token is set; nothing is recorded
        """
        async with self._cycle_lock:
            token = cancellation_token
            result = CycleResult(started_at=utc_now())
            self.sink.begin_cycle()

            cycle_id = uuid.uuid4().hex[:12]
            with self.logger.context(cycle_id=cycle_id), self.perf_logger.measure(
                "monitoring_cycle", slow_after=config.interval_seconds, target=self.target.id
            ):
                snapshot = await self._collect_snapshot(config, token, result)
                if snapshot is not None:
                    self._log_top_waits(snapshot)

                context = AnalysisContext(
                    config=config,
                    snapshot=snapshot,
                    cancellation_token=token,
                    now=result.started_at,
                )
                if snapshot is not None:
                    self._analyze(context, result)

                await self._analyze_databases(config, context, result)

                if token is not None:
                    token.raise_if_cancelled("record")
                await self._record(result)
                await self._dispatch(config, result)
                await self._save_metrics(config, result)

            result.finished_at = utc_now()
            self._last_result = result
            self.logger.info(
                "Monitoring cycle completed",
                issue_count=len(result.issues),
                alert_count=sum(1 for fired in result.dispatched.values() if fired),
                database_count=len(result.databases),
                error_count=len(result.errors),
                duration_seconds=round(result.duration_seconds or 0.0, 3),
            )
            return result

    async def _collect_snapshot(
        self, config: MonitoringConfig, token: Optional[CancellationToken], result: CycleResult
    ) -> Optional[Snapshot]:
        try:
            snapshot = await self.collector.collect(self.target, config, cancellation_token=token)
        except OperationCancelledError:
            raise
        except Exception as e:
            self.logger.error("Snapshot collection failed", error=str(e), error_type=type(e).__name__)
            result.add_error("snapshot", e)
            return None
        self._last_snapshot = snapshot
        result.snapshot = snapshot
        return snapshot

    def _log_top_waits(self, snapshot: Snapshot, limit: int = 5) -> None:
        for wait in snapshot.top_waits(limit):
            self.logger.info(
                "Top wait",
                wait_type=wait.wait_type,
                category=wait.category,
                wait_time_ms=wait.wait_time_ms,
                waiting_tasks=wait.waiting_tasks_count,
            )

    def _analyze(self, context: AnalysisContext, result: CycleResult) -> None:
        for batch in self.pipeline.run(context):
            result.batches.append(batch)
            if batch.error is not None:
                result.errors.append(
                    StepError(
                        step="analyzer",
                        message=batch.error,
                        database=context.database_name,
                        analyzer=batch.analyzer,
                    )
                )

    async def _analyze_databases(
        self, config: MonitoringConfig, context: AnalysisContext, result: CycleResult
    ) -> None:
        token = context.cancellation_token
        try:
            databases = await self.collector.list_databases(
                config.excluded_databases, cancellation_token=token
            )
        except OperationCancelledError:
            raise
        except Exception as e:
            self.logger.error("Failed to list databases", error=str(e))
            result.add_error("list_databases", e)
            return

        sections = self.pipeline.required_sections(config)
        for database in databases:
            context.check_cancelled("database analysis")
            try:
                metadata = await self.collector.collect_database_metadata(
                    self.target,
                    database,
                    config,
                    sections=sections,
                    cancellation_token=token,
                )
                self._analyze(context.for_database(metadata), result)
            except OperationCancelledError:
                raise
            except Exception as e:
                self.logger.error(
                    "Database analysis failed",
                    database=database,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.add_error("database", e, database=database)
                continue
            result.databases.append(database)

    async def _record(self, result: CycleResult) -> None:
        for batch in result.batches:
            if not batch.issues:
                continue
            try:
                result.issues.extend(await self.sink.record(batch.issues))
            except Exception as e:
                self.logger.error(
                    "Failed to record issues",
                    analyzer=batch.analyzer,
                    issue_count=len(batch.issues),
                    error=str(e),
                )
                result.add_error("record", e, analyzer=batch.analyzer)
                result.issues.extend(self.sink.stamp(issue) for issue in batch.issues)

    async def _dispatch(self, config: MonitoringConfig, result: CycleResult) -> None:
        for issue in result.issues:
            try:
                fired = await self.dispatcher.evaluate(
                    issue, config.alerts, cooldown_seconds=config.alert_cooldown_seconds
                )
            except Exception as e:
                self.logger.error("Alert evaluation failed", issue_id=issue.id, error=str(e))
                result.add_error("alerts", e, database=issue.database_name)
                fired = False
            result.dispatched[issue.id] = fired

    async def _save_metrics(self, config: MonitoringConfig, result: CycleResult) -> None:
        if self.metrics_store is None:
            return
        try:
            if result.snapshot is not None:
                await self.metrics_store.save_snapshot(result.snapshot)
            if config.retention_days > 0:
                cutoff = result.started_at - timedelta(days=config.retention_days)
                await self.metrics_store.purge_older_than(cutoff)
        except Exception as e:
            self.logger.error("Failed to persist metrics", error=str(e))
            result.add_error("metrics", e)

    # Connectivity

    async def _watchdog(self, token: CancellationToken) -> None:
        try:
            while True:
                await token.sleep(self.watchdog_interval)
                if not await self.collector.check_connectivity(cancellation_token=token):
                    self.logger.warning("Database connectivity check failed during periodic check")
                    await self._report_connectivity(IssueSeverity.HIGH, LOST_CONNECTIVITY_MESSAGE)
        except OperationCancelledError:
            pass

    async def _report_connectivity(self, severity: IssueSeverity, message: str) -> Issue:
        issue = Issue(
            type=IssueType.CONNECTIVITY,
            severity=severity,
            message=message,
            recommended_action=CONNECTIVITY_ACTION,
            affected_object=self.target.host,
            metadata={"target": self.target.id},
        )
        recorded = issue
        try:
            recorded = (await self.sink.record([issue]))[0]
        except Exception as e:
            self.logger.error("Failed to record connectivity issue", error=str(e))
            recorded = self.sink.stamp(issue)

        try:
            config = await self.config_store.get_monitoring_config()
            await self.dispatcher.evaluate(
                recorded, config.alerts, cooldown_seconds=config.alert_cooldown_seconds
            )
        except Exception as e:
            self.logger.error("Failed to dispatch connectivity alert", error=str(e))
        return recorded


def create_service(
    app_config: AppConfig,
    *,
    config_path: Optional[Union[str, Path]] = None,
    data_source: Optional[DataSource] = None,
) -> MonitoringService:
    """Build a MonitoringService from the application configuration.

    Args:
        app_config: Validated application configuration
        config_path: YAML file to re-read the monitoring section from each
            cycle; the in-memory ``app_config.monitoring`` is used when omitted
        data_source: Data source override; a pyodbc-backed
            ``MssqlDataSource`` is created when omitted

    Returns:
        Unstarted MonitoringService
    """
    resources: List[Any] = []

    if data_source is None:
        from ..database.connectors.mssql import MssqlDataSource

        data_source = MssqlDataSource(app_config.target)
        resources.append(data_source)

    executor = ResilientExecutor(data_source, command_timeout=app_config.target.command_timeout)

    config_store: ConfigStore
    if config_path is not None:
        config_store = YamlConfigStore(config_path)
    else:
        config_store = InMemoryConfigStore(app_config.monitoring)

    storage = app_config.storage
    issue_store: IssueStore
    if storage.issue_store == "sqlite":
        sqlite_issues = SqliteIssueStore(storage)
        resources.append(sqlite_issues)
        issue_store = sqlite_issues
    else:
        issue_store = InMemoryIssueStore()

    metrics_store: MetricsStore
    if storage.metrics_store == "sqlite":
        sqlite_metrics = SqliteMetricsStore(storage)
        resources.append(sqlite_metrics)
        metrics_store = sqlite_metrics
    else:
        metrics_store = InMemoryMetricsStore()

    dispatcher = AlertDispatcher(
        build_channels(app_config.channels),
        server_name=app_config.target.host,
        cooldown_seconds=app_config.monitoring.alert_cooldown_seconds,
    )

    return MonitoringService(
        app_config.target,
        executor=executor,
        config_store=config_store,
        issue_store=issue_store,
        dispatcher=dispatcher,
        metrics_store=metrics_store,
        resources=resources,
    )
