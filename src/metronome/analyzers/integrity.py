"""Integrity analyzer: DBCC CHECKDB recency and reported corruption."""

from typing import List

from ..core.types import IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import Issue
from .base import AnalysisContext, Analyzer, age_in_days


def checkdb_script(database: str) -> str:
    return f"DBCC CHECKDB ({StringUtils.quote_literal(database)}) WITH NO_INFOMSGS, ALL_ERRORMSGS;"


class IntegrityAnalyzer(Analyzer):
    """Escalates with the age of the last known good CHECKDB."""

    name = "integrity"
    description = "DBCC CHECKDB recency and corruption"
    requires = ("integrity",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        metadata = context.metadata
        integrity = metadata.integrity
        if integrity is None:
            return []

        thresholds = context.thresholds
        script = checkdb_script(metadata.name)

        if integrity.has_errors:
            return [
                self.issue(
                    context,
                    IssueType.INTEGRITY,
                    IssueSeverity.CRITICAL,
                    f"DBCC check detected corruption in database '{metadata.name}'",
                    "Restore from a backup or repair the database. Contact Microsoft Support for assistance.",
                    sql_script=script,
                    affected_object=metadata.name,
                    error_message=integrity.error_message,
                )
            ]

        if integrity.last_good_check is None:
            return [
                self.issue(
                    context,
                    IssueType.INTEGRITY,
                    IssueSeverity.HIGH,
                    f"Database '{metadata.name}' has never had a successful DBCC CHECKDB",
                    "Run DBCC CHECKDB to verify database integrity",
                    sql_script=script,
                    affected_object=metadata.name,
                )
            ]

        days = age_in_days(context.now, integrity.last_good_check)
        if days > thresholds.integrity_high_days:
            severity = IssueSeverity.HIGH
        elif days > thresholds.integrity_medium_days:
            severity = IssueSeverity.MEDIUM
        else:
            return []

        return [
            self.issue(
                context,
                IssueType.INTEGRITY,
                severity,
                f"Database '{metadata.name}' has not had a successful DBCC CHECKDB in {int(days)} days",
                "Run DBCC CHECKDB to verify database integrity",
                sql_script=script,
                affected_object=metadata.name,
                age_days=round(days, 1),
            )
        ]
