"""Performance analyzer.

Server scope: CPU, page life expectancy, file I/O latency, blocking and
long-running queries from the snapshot. Database scope: heaps, large
unpartitioned tables and long open transactions.
"""

from typing import List

from ..core.types import AlertType, IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import Issue
from .base import AnalysisContext, Analyzer, AnalyzerScope, tiered_severity


class PerformanceAnalyzer(Analyzer):
    """Checks resource pressure and workload health.

    Each server check honours its ``monitor_*`` flag; a section missing
    from the snapshot is skipped rather than treated as healthy or zero.
    """

    name = "performance"
    description = "CPU, memory, I/O, blocking, long-running work and table layout"
    scopes = frozenset({AnalyzerScope.SERVER, AnalyzerScope.DATABASE})
    requires = ("tables", "long_transactions")

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        if context.scope is AnalyzerScope.SERVER:
            return self._analyze_server(context)
        return self._analyze_database(context)

    def _analyze_server(self, context: AnalysisContext) -> List[Issue]:
        snapshot = context.snapshot
        if snapshot is None:
            return []
        config = context.config
        thresholds = context.thresholds
        issues: List[Issue] = []

        if config.monitor_cpu and snapshot.cpu is not None:
            utilization = snapshot.cpu.utilization_percent
            if utilization > config.high_cpu_threshold_percent:
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        IssueSeverity.HIGH,
                        f"High CPU utilization: {utilization:,.1f}%",
                        "Investigate high CPU query patterns and consider optimizing queries or adding resources",
                        affected_object="CPU",
                        alert_type=AlertType.HIGH_CPU,
                        utilization_percent=utilization,
                    )
                )

        if config.monitor_memory and snapshot.memory is not None:
            ple = snapshot.memory.page_life_expectancy
            if ple < config.low_page_life_expectancy_threshold:
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        IssueSeverity.MEDIUM,
                        f"Low page life expectancy: {ple:,} seconds",
                        "Consider adding more memory to the SQL Server instance or optimizing queries with high memory usage",
                        affected_object="Memory",
                        alert_type=AlertType.LOW_MEMORY,
                        page_life_expectancy=ple,
                    )
                )

        if config.monitor_disk:
            for stat in self.iterate(context, snapshot.io):
                if max(stat.read_latency_ms, stat.write_latency_ms) <= thresholds.io_latency_ms:
                    continue
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        IssueSeverity.MEDIUM,
                        f"IO bottleneck detected for database '{stat.database_name}': "
                        f"Read latency = {stat.read_latency_ms:,.0f}ms, Write latency = {stat.write_latency_ms:,.0f}ms",
                        "Consider moving database files to faster storage or optimizing IO-intensive queries",
                        affected_object=stat.file_name,
                        alert_type=AlertType.IO_BOTTLENECK,
                        io_database=stat.database_name,
                    )
                )

        if config.monitor_blocking:
            for session in self.iterate(context, snapshot.blocking):
                severity = tiered_severity(
                    session.wait_seconds,
                    [
                        (thresholds.blocking_medium_seconds, IssueSeverity.MEDIUM),
                        (thresholds.blocking_high_seconds, IssueSeverity.HIGH),
                    ],
                )
                if severity is None:
                    continue
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        severity,
                        f"Blocking detected: Session {session.session_id} is blocked by session "
                        f"{session.blocking_session_id} for {session.wait_seconds:,.1f} seconds ({session.wait_type})",
                        "Investigate blocking chain and consider optimizing queries or resolving deadlocks",
                        affected_object=f"Session {session.session_id}",
                        alert_type=AlertType.BLOCKING,
                        blocking_database=session.database_name,
                    )
                )

        if config.monitor_queries:
            for query in self.iterate(context, snapshot.long_running):
                severity = tiered_severity(
                    query.elapsed_seconds,
                    [
                        (config.long_running_query_threshold_seconds, IssueSeverity.LOW),
                        (thresholds.long_running_medium_seconds, IssueSeverity.MEDIUM),
                        (thresholds.long_running_high_seconds, IssueSeverity.HIGH),
                    ],
                )
                if severity is None:
                    continue
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        severity,
                        f"Long-running query detected: Session {query.session_id} has been running for "
                        f"{query.elapsed_seconds:,.0f} seconds",
                        "Investigate and optimize the long-running query",
                        affected_object=f"Session {query.session_id}",
                        alert_type=AlertType.LONG_RUNNING_QUERY,
                        query_text=StringUtils.truncate_string(query.query_text or "", 500),
                    )
                )

        return issues

    def _analyze_database(self, context: AnalysisContext) -> List[Issue]:
        metadata = context.metadata
        thresholds = context.thresholds
        issues: List[Issue] = []

        for table in self.iterate(context, metadata.tables):
            if table.is_heap and table.row_count > thresholds.heap_min_rows:
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        IssueSeverity.MEDIUM,
                        f"Table '{table.display_name}' has {table.row_count:,} rows but no clustered index",
                        f"Add a clustered index to table '{table.display_name}' to improve query performance",
                        affected_object=table.display_name,
                    )
                )
            if table.row_count > thresholds.partition_min_rows and not table.is_partitioned:
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        IssueSeverity.MEDIUM,
                        f"Table '{table.display_name}' has {table.row_count:,} rows but is not partitioned",
                        f"Consider implementing table partitioning for large table '{table.display_name}' "
                        "to improve manageability and query performance",
                        affected_object=table.display_name,
                    )
                )

        if context.config.monitor_queries:
            for transaction in self.iterate(context, metadata.long_transactions):
                severity = tiered_severity(
                    transaction.duration_seconds,
                    [
                        (thresholds.long_transaction_seconds, IssueSeverity.LOW),
                        (thresholds.long_running_medium_seconds, IssueSeverity.MEDIUM),
                        (thresholds.long_running_high_seconds, IssueSeverity.HIGH),
                    ],
                )
                if severity is None:
                    continue
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        severity,
                        f"Long-running transaction detected: Session {transaction.session_id} has been in "
                        f"transaction for {transaction.duration_seconds:,.0f} seconds",
                        "Investigate and ensure transactions are properly committed or rolled back",
                        affected_object=f"Session {transaction.session_id}",
                        alert_type=AlertType.LONG_RUNNING_QUERY,
                    )
                )

        return issues
