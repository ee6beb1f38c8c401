"""Unit tests for the backup and integrity analyzers."""

from conftest import days_ago, hours_ago, make_context, make_metadata
from metronome.analyzers import BackupAnalyzer, IntegrityAnalyzer
from metronome.core.types import IssueSeverity, IssueType
from metronome.monitoring.models import BackupRecord, BackupType, IntegrityCheckInfo


def _backups(**overrides):
    values = {"last_full_backup": days_ago(1), "last_log_backup": hours_ago(1)}
    values.update(overrides)
    return make_metadata(**values)


class TestBackupAnalyzer:
    """Test backup recency rules."""

    def test_healthy(self):
        """Test recent full and log backups raise nothing."""
        assert BackupAnalyzer().analyze(make_context(_backups())) == []

    def test_no_full_backup(self):
        """Test a database never backed up is High with a backup script."""
        issues = BackupAnalyzer().analyze(make_context(_backups(last_full_backup=None)))

        assert len(issues) == 1
        assert issues[0].severity is IssueSeverity.HIGH
        assert issues[0].type is IssueType.BACKUP
        assert issues[0].sql_script.startswith("BACKUP DATABASE [Sales]")

    def test_stale_full_backup(self):
        """Test a full backup older than a week is Medium."""
        issues = BackupAnalyzer().analyze(make_context(_backups(last_full_backup=days_ago(8))))

        assert [i.severity for i in issues] == [IssueSeverity.MEDIUM]
        assert issues[0].metadata["age_days"] == 8.0

    def test_log_backup_30_hours(self):
        """Test a 30 hour old log backup yields exactly one Medium issue."""
        issues = BackupAnalyzer().analyze(make_context(_backups(last_log_backup=hours_ago(30))))

        assert len(issues) == 1
        assert issues[0].severity is IssueSeverity.MEDIUM
        assert "30.0 hours" in issues[0].message

    def test_log_backup_80_hours(self):
        """Test an 80 hour old log backup is High."""
        issues = BackupAnalyzer().analyze(make_context(_backups(last_log_backup=hours_ago(80))))

        assert [i.severity for i in issues] == [IssueSeverity.HIGH]

    def test_simple_recovery_ignores_log(self):
        """Test log backups are not required in simple recovery."""
        metadata = _backups(recovery_model="SIMPLE", last_log_backup=None)

        assert BackupAnalyzer().analyze(make_context(metadata)) == []

    def test_missing_log_backup_in_full_recovery(self):
        """Test full recovery without any log backup is High."""
        issues = BackupAnalyzer().analyze(make_context(_backups(last_log_backup=None)))

        assert [i.severity for i in issues] == [IssueSeverity.HIGH]
        assert issues[0].sql_script.startswith("BACKUP LOG [Sales]")

    def test_unverified_full_backups(self):
        """Test full backups without checksums are Low."""
        history = (
            BackupRecord(BackupType.FULL, days_ago(1), 900, is_verified=False),
            BackupRecord(BackupType.LOG, hours_ago(1), 10, is_verified=True),
        )

        issues = BackupAnalyzer().analyze(make_context(_backups(backup_history=history)))

        assert [i.severity for i in issues] == [IssueSeverity.LOW]
        assert "RESTORE VERIFYONLY" in issues[0].sql_script
        assert "N'Sales'" in issues[0].sql_script


class TestIntegrityAnalyzer:
    """Test CHECKDB recency rules."""

    def _run(self, integrity):
        return IntegrityAnalyzer().analyze(make_context(make_metadata(integrity=integrity)))

    def test_recent_check(self):
        """Test a check within a week raises nothing."""
        assert self._run(IntegrityCheckInfo(last_good_check=days_ago(2))) == []

    def test_medium_after_a_week(self):
        """Test a check older than seven days is Medium."""
        issues = self._run(IntegrityCheckInfo(last_good_check=days_ago(9)))

        assert [i.severity for i in issues] == [IssueSeverity.MEDIUM]
        assert "in 9 days" in issues[0].message

    def test_high_after_two_weeks(self):
        """Test a check older than fourteen days is High."""
        assert [i.severity for i in self._run(IntegrityCheckInfo(last_good_check=days_ago(20)))] == [
            IssueSeverity.HIGH
        ]

    def test_never_checked(self):
        """Test a database never checked is High."""
        issues = self._run(IntegrityCheckInfo(last_good_check=None))

        assert [i.severity for i in issues] == [IssueSeverity.HIGH]
        assert issues[0].sql_script.startswith("DBCC CHECKDB (N'Sales')")

    def test_corruption_is_critical(self):
        """Test reported corruption is Critical regardless of check age."""
        issues = self._run(
            IntegrityCheckInfo(last_good_check=days_ago(1), has_errors=True, error_message="2 suspect page(s)")
        )

        assert [i.severity for i in issues] == [IssueSeverity.CRITICAL]
        assert issues[0].metadata["error_message"] == "2 suspect page(s)"

    def test_missing_section(self):
        """Test no integrity data means no finding."""
        assert self._run(None) == []
