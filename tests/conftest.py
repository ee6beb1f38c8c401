"""Pytest configuration and shared fixtures.

This module provides pytest configuration and shared fixtures for all tests
in the Metronome test suite.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import structlog

from metronome.analyzers import AnalysisContext
from metronome.config import (
    AlertRule,
    CredentialConfig,
    MonitoringConfig,
    Notification,
    TargetConfig,
)
from metronome.core.types import AlertType, IssueSeverity, IssueType, NotificationChannel
from metronome.monitoring.models import DatabaseMetadata, Issue, Snapshot

# Capture structlog output instead of printing it during tests
structlog.configure(
    processors=[structlog.testing.LogCapture()],
    logger_factory=structlog.testing.ReturnLoggerFactory(),
    cache_logger_on_first_use=False,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeDataSource:
    """In-memory DataSource routing statements by substring.

    ``responses`` maps a substring of the statement to its outcome: rows
    (or a scalar value), an exception instance to raise, or a callable
    taking ``(sql, params)``. The first matching key wins. Unmatched
    queries return no rows and unmatched scalars return None.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[tuple] = []
        self.closed = False

    def _outcome(self, sql: str, params: Any, default: Any) -> Any:
        self.calls.append((sql, params))
        for marker, outcome in self.responses.items():
            if marker in sql:
                if isinstance(outcome, BaseException):
                    raise outcome
                if callable(outcome):
                    return outcome(sql, params)
                return outcome
        return default

    def calls_matching(self, marker: str) -> List[tuple]:
        return [call for call in self.calls if marker in call[0]]

    async def query(self, sql, params=None, *, timeout=None):
        return self._outcome(sql, params, [])

    async def scalar(self, sql, params=None, *, timeout=None):
        return self._outcome(sql, params, None)

    async def execute(self, sql, params=None, *, timeout=None):
        return self._outcome(sql, params, 0)

    async def close(self) -> None:
        self.closed = True


def sequence(*outcomes: Any) -> Callable[[str, Any], Any]:
    """Response callable yielding ``outcomes`` in order, raising exceptions."""
    remaining = list(outcomes)

    def next_outcome(sql: str, params: Any) -> Any:
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return next_outcome


def make_metadata(name: str = "Sales", **overrides: Any) -> DatabaseMetadata:
    """DatabaseMetadata with every detail section present and empty."""
    values: Dict[str, Any] = {
        "name": name,
        "collected_at": NOW,
        "tables": (),
        "identity_columns": (),
        "backup_history": (),
        "agent_jobs": (),
        "long_transactions": (),
        "modules": (),
    }
    values.update(overrides)
    return DatabaseMetadata(**values)


def make_snapshot(**overrides: Any) -> Snapshot:
    values: Dict[str, Any] = {"target_id": "test_target", "collected_at": NOW}
    values.update(overrides)
    return Snapshot(**values)


def make_context(
    metadata: Optional[DatabaseMetadata] = None,
    snapshot: Optional[Snapshot] = None,
    config: Optional[MonitoringConfig] = None,
    token: Any = None,
) -> AnalysisContext:
    """Analysis context pinned to NOW."""
    return AnalysisContext(
        config=config or MonitoringConfig(),
        snapshot=snapshot,
        metadata=metadata,
        cancellation_token=token,
        now=NOW,
    )


def make_issue(
    issue_type: IssueType = IssueType.BACKUP,
    severity: IssueSeverity = IssueSeverity.HIGH,
    **overrides: Any,
) -> Issue:
    values: Dict[str, Any] = {
        "type": issue_type,
        "severity": severity,
        "message": "No full backups found for database 'Sales'",
        "recommended_action": "Schedule regular full backups",
        "database_name": "Sales",
        "affected_object": "Sales",
    }
    values.update(overrides)
    return Issue(**values)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide temporary directory for test files."""
    return tmp_path


@pytest.fixture
def target() -> TargetConfig:
    """Monitored target used across tests."""
    return TargetConfig(
        id="test_target",
        host="sql01.example.com",
        credentials=CredentialConfig(username="monitor", password="test_password"),
    )


@pytest.fixture
def monitoring_config() -> MonitoringConfig:
    """Enabled monitoring configuration with a short interval."""
    return MonitoringConfig(enabled=True, interval_seconds=60)


@pytest.fixture
def high_rule() -> AlertRule:
    """Enabled High-severity rule with log and webhook notifications."""
    return AlertRule(
        name="Identity exhaustion",
        alert_type=AlertType.IDENTITY_COLUMN_EXHAUSTION,
        minimum_severity=IssueSeverity.HIGH,
        notifications=[
            Notification(channel=NotificationChannel.LOG),
            Notification(channel=NotificationChannel.WEBHOOK, target="https://hooks.example.com/dba"),
        ],
    )


@pytest.fixture
def fake_source() -> FakeDataSource:
    """Data source that answers the connectivity check."""
    return FakeDataSource({"SELECT 1 AS ok": 1})


@pytest.fixture
def sample_config_data() -> dict:
    """Sample application configuration data for testing."""
    return {
        "app_name": "Metronome",
        "environment": "development",
        "target": {
            "id": "prod_sql_01",
            "host": "sql01.example.com",
            "credentials": {"username": "monitor", "password": "${METRONOME_TEST_PASSWORD:secret}"},
        },
        "monitoring": {
            "enabled": True,
            "interval_seconds": 120,
            "alerts": [
                {
                    "alert_type": "BackupFailure",
                    "minimum_severity": "High",
                    "notifications": [{"channel": "log"}],
                }
            ],
        },
        "logging": {"level": "debug", "format": "json"},
    }


@pytest.fixture
def config_file(temp_dir: Path, sample_config_data: dict) -> Path:
    """Create temporary configuration file."""
    import yaml

    config_path = temp_dir / "metronome.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump(sample_config_data, f)
    return config_path


def days_ago(days: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)


def hours_ago(hours: float, now: datetime = NOW) -> datetime:
    return now - timedelta(hours=hours)


# Pytest markers for different test categories
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (slower, real dependencies)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests that take > 1 second"
    )
    config.addinivalue_line(
        "markers", "database: marks tests requiring database connection"
    )


# Auto-mark tests based on their location
def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        try:
            test_path = Path(str(item.fspath)).relative_to(Path(str(config.rootdir)) / "tests")
        except ValueError:
            continue

        if test_path.parts[0] == "unit":
            item.add_marker(pytest.mark.unit)
        elif test_path.parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)
