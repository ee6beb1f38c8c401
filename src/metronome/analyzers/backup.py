"""Backup analyzer: full and log backup recency and verification."""

from typing import List

from ..core.types import IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import BackupType, Issue
from .base import AnalysisContext, Analyzer, age_in_days, age_in_hours

VERIFY_SCRIPT = """-- Validate the most recent backup
DECLARE @BackupFile nvarchar(260);
SELECT TOP (1) @BackupFile = bmf.physical_device_name
FROM msdb.dbo.backupset AS bs
JOIN msdb.dbo.backupmediafamily AS bmf ON bs.media_set_id = bmf.media_set_id
WHERE bs.database_name = {literal}
ORDER BY bs.backup_finish_date DESC;
IF @BackupFile IS NOT NULL
    RESTORE VERIFYONLY FROM DISK = @BackupFile WITH CHECKSUM;"""


class BackupAnalyzer(Analyzer):
    """Checks backup recency against the recovery model."""

    name = "backup"
    description = "Full and log backup recency and verification"
    requires = ("backup_history",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        metadata = context.metadata
        thresholds = context.thresholds
        database = StringUtils.quote_identifier(metadata.name)
        full_script = (
            f"BACKUP DATABASE {database} TO DISK = {StringUtils.quote_literal(metadata.name + '_FULL.bak')} "
            "WITH COMPRESSION, CHECKSUM, STATS = 10;"
        )
        log_script = (
            f"BACKUP LOG {database} TO DISK = {StringUtils.quote_literal(metadata.name + '_LOG.trn')} "
            "WITH COMPRESSION, CHECKSUM, STATS = 10;"
        )
        issues: List[Issue] = []

        if metadata.last_full_backup is None:
            issues.append(
                self.issue(
                    context,
                    IssueType.BACKUP,
                    IssueSeverity.HIGH,
                    f"No full backups found for database '{metadata.name}'",
                    "Implement a regular full backup strategy",
                    sql_script=full_script,
                    affected_object=metadata.name,
                )
            )
        else:
            days = age_in_days(context.now, metadata.last_full_backup)
            if days > thresholds.full_backup_max_age_days:
                issues.append(
                    self.issue(
                        context,
                        IssueType.BACKUP,
                        IssueSeverity.MEDIUM,
                        f"Last full backup is {days:,.1f} days old for database '{metadata.name}'",
                        "Perform a full backup as soon as possible",
                        sql_script=full_script,
                        affected_object=metadata.name,
                        age_days=round(days, 1),
                    )
                )

        if metadata.is_full_recovery:
            if metadata.last_log_backup is None:
                issues.append(
                    self.issue(
                        context,
                        IssueType.BACKUP,
                        IssueSeverity.HIGH,
                        f"Database '{metadata.name}' is in full recovery model but no log backups were found",
                        "Implement regular transaction log backups to prevent log file growth and enable "
                        "point-in-time recovery",
                        sql_script=log_script,
                        affected_object=metadata.name,
                    )
                )
            else:
                hours = age_in_hours(context.now, metadata.last_log_backup)
                if hours > thresholds.log_backup_medium_hours:
                    severity = (
                        IssueSeverity.HIGH if hours > thresholds.log_backup_high_hours else IssueSeverity.MEDIUM
                    )
                    issues.append(
                        self.issue(
                            context,
                            IssueType.BACKUP,
                            severity,
                            f"Last log backup is {hours:,.1f} hours old for database '{metadata.name}'",
                            "Perform a transaction log backup as soon as possible",
                            sql_script=log_script,
                            affected_object=metadata.name,
                            age_hours=round(hours, 1),
                        )
                    )

        history = metadata.backup_history
        if history:
            full_backups = [record for record in history if record.backup_type is BackupType.FULL]
            if full_backups and not any(record.is_verified for record in full_backups):
                issues.append(
                    self.issue(
                        context,
                        IssueType.BACKUP,
                        IssueSeverity.LOW,
                        f"Backups for database '{metadata.name}' are not regularly validated",
                        "Implement regular backup validation with RESTORE VERIFYONLY",
                        sql_script=VERIFY_SCRIPT.format(literal=StringUtils.quote_literal(metadata.name)),
                        affected_object=metadata.name,
                    )
                )

        return issues
