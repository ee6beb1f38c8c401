"""Capacity analyzer: file space, log size and growth rate."""

from typing import Iterable, List, Optional

from ..core.types import IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import BackupRecord, BackupType, DatabaseMetadata, Issue
from .base import AnalysisContext, Analyzer, age_in_days


def monthly_growth_percent(history: Optional[Iterable[BackupRecord]]) -> Optional[float]:
    """Estimate monthly growth from full backup sizes.

    Returns None when fewer than two usable full backups exist or they
    span less than a day.
    """
    backups = sorted(
        (record for record in history or () if record.backup_type is BackupType.FULL and record.size_mb > 0),
        key=lambda record: record.finish_time,
    )
    if len(backups) < 2:
        return None
    span_days = age_in_days(backups[-1].finish_time, backups[0].finish_time)
    if span_days < 1:
        return None
    smallest = min(record.size_mb for record in backups)
    largest = max(record.size_mb for record in backups)
    return (largest - smallest) / smallest * 30.0 / span_days * 100.0


def _data_size(metadata: DatabaseMetadata) -> float:
    return sum(f.size_mb for f in metadata.data_files)


class CapacityAnalyzer(Analyzer):
    """Checks file fullness, log-to-data ratio and backup-derived growth."""

    name = "capacity"
    description = "File space, transaction log size and growth rate"
    requires = ("backup_history",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        metadata = context.metadata
        thresholds = context.thresholds
        database = StringUtils.quote_identifier(metadata.name)
        issues: List[Issue] = []

        for file in self.iterate(context, metadata.files):
            if file.used_percent is None or file.used_percent <= thresholds.file_used_percent:
                continue
            new_size = int(file.size_mb) + 1024
            issues.append(
                self.issue(
                    context,
                    IssueType.CAPACITY,
                    IssueSeverity.HIGH,
                    f"Database file '{file.logical_name}' is {file.used_percent:.1f}% full",
                    "Increase the file size or add a new file to the filegroup",
                    sql_script=(
                        f"ALTER DATABASE {database} MODIFY FILE "
                        f"(NAME = {StringUtils.quote_literal(file.logical_name)}, SIZE = {new_size}MB);"
                    ),
                    affected_object=file.logical_name,
                    used_percent=file.used_percent,
                )
            )

        data_size = _data_size(metadata)
        log_files = metadata.log_files
        log_size = sum(f.size_mb for f in log_files)
        if data_size > 0 and log_size > data_size * thresholds.log_to_data_ratio:
            ratio = log_size / data_size
            issues.append(
                self.issue(
                    context,
                    IssueType.CAPACITY,
                    IssueSeverity.MEDIUM,
                    f"Transaction log file(s) for database '{metadata.name}' are unusually large "
                    f"({log_size:,.0f} MB, {ratio:.0%} of data file size)",
                    "Check for long-running transactions, implement regular log backups, or shrink log file "
                    "after addressing root cause",
                    affected_object=", ".join(f.logical_name for f in log_files),
                    log_size_mb=log_size,
                    data_size_mb=data_size,
                )
            )

        growth = monthly_growth_percent(metadata.backup_history)
        if growth is not None and growth > thresholds.monthly_growth_percent:
            issues.append(
                self.issue(
                    context,
                    IssueType.CAPACITY,
                    IssueSeverity.MEDIUM,
                    f"Database '{metadata.name}' has a high growth rate (approximately {growth:,.0f}% per month)",
                    "Plan for additional capacity and investigate if the growth is expected",
                    affected_object=metadata.name,
                    monthly_growth_percent=round(growth, 1),
                )
            )

        return issues
