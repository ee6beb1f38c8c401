"""Unit tests for the identity exhaustion analyzer."""

import pytest

from conftest import make_context, make_metadata
from metronome.analyzers import IdentityAnalyzer, percent_used
from metronome.config import AnalyzerThresholds, MonitoringConfig
from metronome.core.types import AlertType, IssueSeverity, IssueType
from metronome.monitoring.models import IdentityColumnInfo

INT_MAX = 2147483647


def _column(current_value, data_type="int", table="Orders"):
    return IdentityColumnInfo("dbo", table, "OrderId", data_type, current_value)


def _analyze(*columns, config=None):
    return IdentityAnalyzer().analyze(make_context(make_metadata(identity_columns=columns), config=config))


class TestPercentUsed:
    """Test capacity calculation."""

    def test_known_types(self):
        """Test usage is relative to the type maximum."""
        assert percent_used(_column(255, "tinyint")) == pytest.approx(100.0)
        assert percent_used(_column(16384, "SMALLINT")) == pytest.approx(50.0, rel=1e-3)

    def test_unknown_or_unused(self):
        """Test decimal identities and unused columns are skipped."""
        assert percent_used(_column(10, "decimal")) is None
        assert percent_used(_column(None)) is None


class TestIdentityAnalyzer:
    """Test exhaustion tiers."""

    def test_below_threshold(self):
        """Test columns under 80% raise nothing."""
        assert _analyze(_column(INT_MAX // 2)) == []

    def test_high(self):
        """Test columns over 80% are High."""
        issues = _analyze(_column(int(INT_MAX * 0.85)))

        assert [i.severity for i in issues] == [IssueSeverity.HIGH]

    def test_critical_at_96_percent(self):
        """Test a 96% full int identity is Critical and carries the exhaustion alert type."""
        issues = _analyze(_column(int(INT_MAX * 0.96)))

        assert len(issues) == 1
        issue = issues[0]
        assert issue.severity is IssueSeverity.CRITICAL
        assert issue.type is IssueType.SCHEMA
        assert issue.alert_type is AlertType.IDENTITY_COLUMN_EXHAUSTION
        assert issue.affected_object == "dbo.Orders.OrderId"
        assert issue.database_name == "Sales"
        assert "96.0% capacity" in issue.message
        assert "DBCC CHECKIDENT (N'[dbo].[Orders]', RESEED, @CurrentMax);" in issue.sql_script

    def test_tinyint_warning(self):
        """Test a tinyint identity past half its range gets a widening suggestion."""
        issues = _analyze(_column(150, "tinyint"))

        assert [i.severity for i in issues] == [IssueSeverity.MEDIUM]
        assert "tinyint" in issues[0].message
        assert issues[0].sql_script.endswith("SMALLINT;")

    def test_tinyint_exhausted_reports_both(self):
        """Test a nearly full tinyint gets the tier issue and the widening suggestion."""
        issues = _analyze(_column(250, "tinyint"))

        assert [i.severity for i in issues] == [IssueSeverity.CRITICAL, IssueSeverity.MEDIUM]

    def test_custom_thresholds(self):
        """Test configured thresholds move the tiers."""
        config = MonitoringConfig(
            thresholds=AnalyzerThresholds(identity_high_percent=40, identity_critical_percent=60)
        )

        issues = _analyze(_column(INT_MAX // 2), config=config)

        assert [i.severity for i in issues] == [IssueSeverity.HIGH]
