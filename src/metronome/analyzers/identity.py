"""Identity column exhaustion analyzer."""

from typing import Dict, List, Optional

from ..core.types import AlertType, IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import IdentityColumnInfo, Issue
from .base import AnalysisContext, Analyzer, tiered_severity

TYPE_MAX: Dict[str, int] = {
    "tinyint": 255,
    "smallint": 32767,
    "int": 2147483647,
    "bigint": 9223372036854775807,
}


def percent_used(column: IdentityColumnInfo) -> Optional[float]:
    """Current value as a percentage of the data type's maximum.

    Returns None for unknown types and columns that have never issued a value.
    """
    maximum = TYPE_MAX.get(column.data_type.lower())
    if maximum is None or column.current_value is None:
        return None
    return column.current_value / maximum * 100.0


def reseed_script(column: IdentityColumnInfo) -> str:
    table = StringUtils.qualified_name(column.schema, column.table)
    return (
        "-- Schedule during a maintenance window\n"
        "DECLARE @CurrentMax BIGINT;\n"
        f"SELECT @CurrentMax = MAX({StringUtils.quote_identifier(column.column)}) FROM {table};\n"
        f"DBCC CHECKIDENT ({StringUtils.quote_literal(table)}, RESEED, @CurrentMax);"
    )


def widen_script(column: IdentityColumnInfo) -> str:
    table = StringUtils.qualified_name(column.schema, column.table)
    return (
        "-- Schedule during a maintenance window\n"
        f"ALTER TABLE {table}\n"
        f"ALTER COLUMN {StringUtils.quote_identifier(column.column)} SMALLINT;"
    )


class IdentityAnalyzer(Analyzer):
    """Flags identity columns approaching their type maximum."""

    name = "identity"
    description = "Identity column exhaustion"
    requires = ("identity_columns",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        thresholds = context.thresholds
        tiers = [
            (thresholds.identity_high_percent, IssueSeverity.HIGH),
            (thresholds.identity_critical_percent, IssueSeverity.CRITICAL),
        ]
        issues: List[Issue] = []

        for column in self.iterate(context, context.metadata.identity_columns):
            percent = percent_used(column)
            if percent is None:
                continue

            severity = tiered_severity(percent, tiers)
            if severity is not None:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SCHEMA,
                        severity,
                        f"Identity column '{column.display_name}' is at {percent:.1f}% capacity",
                        "Reseed the identity column or convert to a larger data type",
                        sql_script=reseed_script(column),
                        affected_object=column.display_name,
                        alert_type=AlertType.IDENTITY_COLUMN_EXHAUSTION,
                        percent_used=round(percent, 2),
                    )
                )

            if column.data_type.lower() == "tinyint" and percent > thresholds.identity_tinyint_percent:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SCHEMA,
                        IssueSeverity.MEDIUM,
                        f"Identity column '{column.display_name}' uses tinyint data type which may not be sufficient",
                        "Consider converting to a larger data type (smallint, int, or bigint)",
                        sql_script=widen_script(column),
                        affected_object=column.display_name,
                    )
                )

        return issues
