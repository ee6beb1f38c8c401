"""Configuration analyzer: database options and file growth settings."""

from typing import List

from ..core.types import IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import Issue
from .base import AnalysisContext, Analyzer

QUERY_STORE_OPTIONS = """(
    OPERATION_MODE = READ_WRITE,
    CLEANUP_POLICY = (STALE_QUERY_THRESHOLD_DAYS = 30),
    DATA_FLUSH_INTERVAL_SECONDS = 900,
    MAX_STORAGE_SIZE_MB = 1000,
    INTERVAL_LENGTH_MINUTES = 60
);"""


class ConfigurationAnalyzer(Analyzer):
    """Checks recovery model, compatibility level, file growth and Query Store."""

    name = "configuration"
    description = "Database options and file growth settings"

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        metadata = context.metadata
        thresholds = context.thresholds
        database = StringUtils.quote_identifier(metadata.name)
        issues: List[Issue] = []

        if metadata.recovery_model.upper() == "SIMPLE" and metadata.size_mb > thresholds.simple_recovery_max_size_mb:
            issues.append(
                self.issue(
                    context,
                    IssueType.CONFIGURATION,
                    IssueSeverity.MEDIUM,
                    f"Large database '{metadata.name}' ({metadata.size_mb:,.0f} MB) is using Simple recovery model",
                    "Consider using Full recovery model for large databases to enable point-in-time recovery",
                    sql_script=f"ALTER DATABASE {database} SET RECOVERY FULL;",
                    affected_object=metadata.name,
                )
            )

        if metadata.compatibility_level < thresholds.minimum_compatibility_level:
            issues.append(
                self.issue(
                    context,
                    IssueType.CONFIGURATION,
                    IssueSeverity.MEDIUM,
                    f"Database '{metadata.name}' is using outdated compatibility level {metadata.compatibility_level}",
                    "Consider upgrading the compatibility level to benefit from latest query optimizer improvements",
                    sql_script=(
                        f"ALTER DATABASE {database} SET COMPATIBILITY_LEVEL = "
                        f"{thresholds.recommended_compatibility_level};"
                    ),
                    affected_object=metadata.name,
                )
            )

        growth_mb = int(thresholds.minimum_growth_mb)
        for file in self.iterate(context, metadata.files):
            file_literal = StringUtils.quote_literal(file.logical_name)
            if file.growth_is_percent:
                issues.append(
                    self.issue(
                        context,
                        IssueType.CONFIGURATION,
                        IssueSeverity.MEDIUM,
                        f"Database file '{file.logical_name}' uses percentage auto-growth ({file.growth_value:g}%)",
                        "Use fixed-size auto-growth instead of percentage to avoid large, unpredictable growth steps",
                        sql_script=f"ALTER DATABASE {database} MODIFY FILE (NAME = {file_literal}, FILEGROWTH = {growth_mb}MB);",
                        affected_object=file.logical_name,
                    )
                )
            elif (
                0 < file.growth_value < thresholds.minimum_growth_mb
                and file.size_mb > thresholds.large_file_size_mb
            ):
                issues.append(
                    self.issue(
                        context,
                        IssueType.CONFIGURATION,
                        IssueSeverity.LOW,
                        f"Large database file '{file.logical_name}' ({file.size_mb:,.0f} MB) has small auto-growth "
                        f"setting ({file.growth_value:g} MB)",
                        "Increase auto-growth setting for large files to reduce frequency of growth events",
                        sql_script=f"ALTER DATABASE {database} MODIFY FILE (NAME = {file_literal}, FILEGROWTH = {growth_mb}MB);",
                        affected_object=file.logical_name,
                    )
                )

            if file.max_size_mb > 0 and file.size_mb > file.max_size_mb * thresholds.max_size_used_ratio:
                issues.append(
                    self.issue(
                        context,
                        IssueType.CONFIGURATION,
                        IssueSeverity.HIGH,
                        f"Database file '{file.logical_name}' is nearing its maximum size "
                        f"(Current: {file.size_mb:,.0f} MB, Max: {file.max_size_mb:,.0f} MB)",
                        "Increase the maximum file size or create additional filegroup",
                        sql_script=f"ALTER DATABASE {database} MODIFY FILE (NAME = {file_literal}, MAXSIZE = UNLIMITED);",
                        affected_object=file.logical_name,
                    )
                )

        if metadata.query_store_enabled is False:
            issues.append(
                self.issue(
                    context,
                    IssueType.CONFIGURATION,
                    IssueSeverity.LOW,
                    f"Query Store is not enabled for database '{metadata.name}'",
                    "Enable Query Store to track query performance metrics over time",
                    sql_script=(
                        f"ALTER DATABASE {database} SET QUERY_STORE = ON;\n"
                        f"ALTER DATABASE {database} SET QUERY_STORE {QUERY_STORE_OPTIONS}"
                    ),
                    affected_object=metadata.name,
                )
            )

        return issues
