"""Unit tests for the snapshot collector."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from conftest import FakeDataSource, make_context
from metronome.analyzers import BackupAnalyzer
from metronome.config import MonitoringConfig
from metronome.core.exceptions import CollectionError, OperationCancelledError, QueryError
from metronome.core.types import IssueSeverity
from metronome.core.utils import CancellationToken
from metronome.database.executor import ResilientExecutor
from metronome.monitoring.collector import SnapshotCollector
from metronome.monitoring.models import BackupType, FileType

CPU_ROW = {"utilization_percent": 42, "active_worker_threads": 30, "active_requests": 4}
MEMORY_ROW = {
    "total_server_memory_mb": 8192,
    "target_server_memory_mb": 16384,
    "buffer_pool_mb": 6000,
    "sql_cache_mb": 200,
    "plan_cache_mb": 512,
    "page_life_expectancy": 250,
}
WAIT_ROWS = [
    {"wait_type": "PAGEIOLATCH_SH", "wait_time_ms": 1200, "waiting_tasks_count": 8, "category": "IO"},
    {"wait_type": "LCK_M_X", "wait_time_ms": 5400, "waiting_tasks_count": 3, "category": "Lock"},
]

SERVER_RESPONSES = {
    "RING_BUFFER_SCHEDULER_MONITOR": [CPU_ROW],
    "Page life expectancy": [MEMORY_ROW],
    "dm_io_virtual_file_stats": [
        {"database_name": "Sales", "file_name": "Sales_log", "read_latency_ms": 4, "write_latency_ms": 35}
    ],
    "sys.dm_os_wait_stats": WAIT_ROWS,
    "r.blocking_session_id <> 0": [
        {"session_id": 61, "blocking_session_id": 55, "wait_time_ms": 15000, "database_name": "Sales"}
    ],
    "s.is_user_process = 1": [{"session_id": 70, "elapsed_seconds": 700.5, "database_name": "Sales"}],
}

INFO_ROW = {
    "name": "Sales",
    "recovery_model": "FULL",
    "compatibility_level": 140,
    "is_encrypted": 0,
    "state": "ONLINE",
    "query_store_enabled": None,
    "size_mb": 2048.0,
}

DATABASE_RESPONSES = {
    "d.compatibility_level": [INFO_ROW],
    "sys.database_files": [
        {"logical_name": "Sales", "type_desc": "ROWS", "size_mb": 1536, "max_size_mb": -1,
         "is_percent_growth": 0, "growth_value": 64, "used_percent": 80.0},
        {"logical_name": "Sales_log", "type_desc": "LOG", "size_mb": 512, "max_size_mb": 2048,
         "is_percent_growth": 1, "growth_value": 10, "used_percent": None},
    ],
    "MAX(CASE WHEN bs.type = 'D'": [
        {"last_full_backup": datetime(2024, 5, 31, 1, 0), "last_differential_backup": None,
         "last_log_backup": datetime(2024, 6, 1, 11, 0)}
    ],
    "AS finish_time": [
        {"backup_type": "D", "finish_time": datetime(2024, 5, 31, 1, 0), "size_mb": 900, "is_verified": 1},
        {"backup_type": "F", "finish_time": datetime(2024, 5, 31, 2, 0), "size_mb": 10, "is_verified": 0},
    ],
    "SUM(CASE WHEN p.index_id IN (0, 1)": [
        {"schema_name": "dbo", "table_name": "Orders", "row_count": 50000, "is_partitioned": 0}
    ],
    "c.is_identity": [
        {"schema_name": "dbo", "table_name": "Orders", "column_name": "OrderId", "data_type": "INT",
         "max_length": 4, "is_nullable": 0, "is_identity": 1},
    ],
    "dm_db_index_usage_stats": [
        {"schema_name": "dbo", "table_name": "Orders", "index_name": "PK_Orders", "index_type": "CLUSTERED",
         "is_primary_key": 1, "is_unique": 1, "key_columns": "OrderId", "included_columns": None,
         "user_seeks": 10},
    ],
    "dm_db_index_physical_stats": [
        {"schema_name": "dbo", "table_name": "Orders", "index_name": "PK_Orders",
         "fragmentation_percent": 45.5, "page_count": 5000}
    ],
    "sys.foreign_keys": [],
    "sys.identity_columns": [
        {"schema_name": "dbo", "table_name": "Orders", "column_name": "OrderId", "data_type": "int",
         "current_value": 1000, "seed": 1, "increment": 1}
    ],
    "DBCC DBINFO": [
        {"ParentObject": "DBINFO", "Object": "DBINFO", "Field": "dbi_dbccLastKnownGood",
         "Value": "2024-05-30 02:00:00.000"}
    ],
    "suspect_pages": 0,
}


def _collector(source: FakeDataSource) -> SnapshotCollector:
    return SnapshotCollector(ResilientExecutor(source, sleep=AsyncMock()))


class TestConnectivity:
    """Test the connectivity check and database listing."""

    @pytest.mark.asyncio
    async def test_connectivity_ok(self, fake_source):
        """Test SELECT 1 returning 1 reports connected."""
        assert await _collector(fake_source).check_connectivity()

    @pytest.mark.asyncio
    async def test_connectivity_failure_returns_false(self):
        """Test a failing connectivity check is logged and reported as False."""
        source = FakeDataSource({"SELECT 1 AS ok": QueryError("Login failed", number=18456)})

        with capture_logs() as logs:
            assert not await _collector(source).check_connectivity()

        assert any(entry["event"] == "Connectivity check failed" for entry in logs)

    @pytest.mark.asyncio
    async def test_list_databases_excludes_case_insensitively(self):
        """Test excluded names are skipped regardless of case."""
        source = FakeDataSource(
            {"d.is_read_only = 0": [{"name": "Sales"}, {"name": "ReportServer"}, {"name": "HR"}]}
        )

        names = await _collector(source).list_databases(["reportserver"])

        assert names == ["Sales", "HR"]


class TestSnapshotCollection:
    """Test server snapshot collection."""

    @pytest.mark.asyncio
    async def test_full_snapshot(self, target):
        """Test every section is parsed when all queries succeed."""
        snapshot = await _collector(FakeDataSource(SERVER_RESPONSES)).collect(target)

        assert not snapshot.is_partial
        assert snapshot.target_id == "test_target"
        assert snapshot.cpu.utilization_percent == 42.0
        assert snapshot.memory.memory_pressure
        assert snapshot.memory.page_life_expectancy == 250
        assert snapshot.io[0].write_latency_ms == 35.0
        assert snapshot.blocking[0].wait_seconds == 15.0
        assert snapshot.long_running[0].session_id == 70
        assert [w.wait_type for w in snapshot.top_waits(1)] == ["LCK_M_X"]

    @pytest.mark.asyncio
    async def test_failed_section_is_missing_not_zero(self, target):
        """Test a failing section is None and named in missing_sections."""
        responses = dict(SERVER_RESPONSES)
        responses["Page life expectancy"] = QueryError("VIEW SERVER STATE permission denied", number=300)

        with capture_logs() as logs:
            snapshot = await _collector(FakeDataSource(responses)).collect(target)

        assert snapshot.memory is None
        assert snapshot.missing_sections == ("memory",)
        assert snapshot.cpu is not None
        assert any(e["event"] == "Section collection failed" and e["section"] == "memory" for e in logs)

    @pytest.mark.asyncio
    async def test_empty_cpu_sample_is_missing(self, target):
        """Test an empty ring buffer reports cpu as missing."""
        responses = dict(SERVER_RESPONSES)
        responses["RING_BUFFER_SCHEDULER_MONITOR"] = []

        snapshot = await _collector(FakeDataSource(responses)).collect(target)

        assert snapshot.cpu is None
        assert "cpu" in snapshot.missing_sections

    @pytest.mark.asyncio
    async def test_disabled_sections_are_skipped(self, target):
        """Test disabled checks are not queried and not reported missing."""
        source = FakeDataSource(SERVER_RESPONSES)
        config = MonitoringConfig(monitor_cpu=False, monitor_blocking=False)

        snapshot = await _collector(source).collect(target, config)

        assert snapshot.cpu is None
        assert snapshot.blocking is None
        assert snapshot.missing_sections == ()
        assert source.calls_matching("RING_BUFFER_SCHEDULER_MONITOR") == []

    @pytest.mark.asyncio
    async def test_long_running_threshold_passed(self, target):
        """Test the long-running threshold is bound as a parameter."""
        source = FakeDataSource(SERVER_RESPONSES)

        await _collector(source).collect(target, MonitoringConfig(long_running_query_threshold_seconds=45))

        _, params = source.calls_matching("s.is_user_process = 1")[0]
        assert params == [45]

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, target):
        """Test a cancelled token aborts collection instead of marking sections missing."""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            await _collector(FakeDataSource(SERVER_RESPONSES)).collect(target, cancellation_token=token)


class TestDatabaseMetadata:
    """Test per-database metadata collection."""

    @pytest.mark.asyncio
    async def test_full_metadata(self, target):
        """Test settings, files, backups and details are parsed."""
        metadata = await _collector(FakeDataSource(DATABASE_RESPONSES)).collect_database_metadata(target, "Sales")

        assert metadata.name == "Sales"
        assert metadata.compatibility_level == 140
        assert metadata.query_store_enabled is None
        assert [f.file_type for f in metadata.files] == [FileType.DATA, FileType.LOG]
        assert metadata.log_files[0].growth_is_percent
        assert metadata.last_full_backup == datetime(2024, 5, 31, 1, 0, tzinfo=timezone.utc)
        assert metadata.last_differential_backup is None
        assert [r.backup_type for r in metadata.backup_history] == [BackupType.FULL]

        orders = metadata.tables[0]
        assert orders.display_name == "dbo.Orders"
        assert orders.has_primary_key and not orders.is_heap
        assert orders.indexes[0].fragmentation_percent == 45.5
        assert orders.indexes[0].page_count == 5000
        assert metadata.identity_columns[0].current_value == 1000
        assert metadata.integrity.last_good_check == datetime(2024, 5, 30, 2, 0, tzinfo=timezone.utc)
        assert not metadata.integrity.has_errors
        assert metadata.missing_sections == ()

    @pytest.mark.asyncio
    async def test_database_name_is_bracket_quoted(self, target):
        """Test the database name is substituted as a quoted identifier."""
        source = FakeDataSource(DATABASE_RESPONSES)

        await _collector(source).collect_database_metadata(target, "Sales]Dev", sections=())

        sql, _ = source.calls_matching("sys.database_files")[0]
        assert "EXEC [Sales]]Dev].sys.sp_executesql" in sql

    @pytest.mark.asyncio
    async def test_fragmentation_failure_keeps_tables(self, target):
        """Test tables survive a fragmentation failure with unknown fragmentation."""
        responses = dict(DATABASE_RESPONSES)
        responses["dm_db_index_physical_stats"] = QueryError("Lock request time out period exceeded", number=1222)

        metadata = await _collector(FakeDataSource(responses)).collect_database_metadata(target, "Sales")

        assert metadata.tables[0].indexes[0].fragmentation_percent is None
        assert metadata.missing_sections == ("fragmentation",)

    @pytest.mark.asyncio
    async def test_integrity_never_checked(self, target):
        """Test the 1900-01-01 sentinel means no known good check."""
        responses = dict(DATABASE_RESPONSES)
        responses["DBCC DBINFO"] = [{"Field": "dbi_dbccLastKnownGood", "Value": "1900-01-01 00:00:00.000"}]
        responses["suspect_pages"] = 2

        metadata = await _collector(FakeDataSource(responses)).collect_database_metadata(
            target, "Sales", sections=["integrity"]
        )

        assert metadata.integrity.last_good_check is None
        assert metadata.integrity.has_errors
        assert metadata.tables is None
        assert metadata.missing_sections == ()

    @pytest.mark.asyncio
    async def test_optional_section_failure(self, target):
        """Test a failed detail section is None and reported missing."""
        responses = dict(DATABASE_RESPONSES)
        responses["msdb.dbo.sysjobs"] = QueryError("SELECT permission denied on sysjobs", number=229)

        metadata = await _collector(FakeDataSource(responses)).collect_database_metadata(target, "Sales")

        assert metadata.agent_jobs is None
        assert "agent_jobs" in metadata.missing_sections
        assert metadata.identity_columns is not None

    @pytest.mark.asyncio
    async def test_unknown_database_raises(self, target):
        """Test missing database settings fail the whole call."""
        responses = dict(DATABASE_RESPONSES)
        responses["d.compatibility_level"] = []

        with pytest.raises(CollectionError):
            await _collector(FakeDataSource(responses)).collect_database_metadata(target, "Gone")

    @pytest.mark.asyncio
    async def test_required_query_failure_raises(self, target):
        """Test a failing file query is not swallowed."""
        responses = dict(DATABASE_RESPONSES)
        responses["sys.database_files"] = QueryError("Database 'Sales' cannot be opened", number=4060)

        with pytest.raises(QueryError):
            await _collector(FakeDataSource(responses)).collect_database_metadata(target, "Sales")


class TestServerTimeZone:
    """Test conversion of server-local times to UTC."""

    @pytest.mark.asyncio
    async def test_local_times_converted_with_server_offset(self, target):
        """Test naive msdb and DBCC times on a UTC+8 server are shifted back eight hours."""
        responses = {"TZOFFSET": 480, **DATABASE_RESPONSES}
        responses["MAX(CASE WHEN bs.type = 'D'"] = [
            {"last_full_backup": datetime(2024, 5, 31, 1, 0), "last_differential_backup": None,
             "last_log_backup": datetime(2024, 6, 1, 4, 0)}
        ]

        metadata = await _collector(FakeDataSource(responses)).collect_database_metadata(target, "Sales")

        assert metadata.last_log_backup == datetime(2024, 5, 31, 20, 0, tzinfo=timezone.utc)
        assert metadata.last_full_backup == datetime(2024, 5, 30, 17, 0, tzinfo=timezone.utc)
        assert metadata.backup_history[0].finish_time == datetime(2024, 5, 30, 17, 0, tzinfo=timezone.utc)
        assert metadata.integrity.last_good_check == datetime(2024, 5, 29, 18, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_log_backup_age_uses_real_elapsed_time(self, target):
        """Test a log backup 30 hours old on a UTC+8 server is reported as overdue."""
        responses = {"TZOFFSET": 480, **DATABASE_RESPONSES}
        responses["MAX(CASE WHEN bs.type = 'D'"] = [
            {"last_full_backup": datetime(2024, 5, 31, 20, 0), "last_differential_backup": None,
             "last_log_backup": datetime(2024, 5, 31, 14, 0)}
        ]

        metadata = await _collector(FakeDataSource(responses)).collect_database_metadata(
            target, "Sales", sections=["backup_history"]
        )
        issues = BackupAnalyzer().analyze(make_context(metadata))

        [issue] = issues
        assert issue.severity == IssueSeverity.MEDIUM
        assert "30.0 hours" in issue.message

    @pytest.mark.asyncio
    async def test_never_checked_sentinel_with_negative_offset(self, target):
        """Test the 1900-01-01 sentinel stays unknown on a server west of UTC."""
        responses = {"TZOFFSET": -300, **DATABASE_RESPONSES}
        responses["DBCC DBINFO"] = [{"Field": "dbi_dbccLastKnownGood", "Value": "1900-01-01 00:00:00.000"}]

        metadata = await _collector(FakeDataSource(responses)).collect_database_metadata(
            target, "Sales", sections=["integrity"]
        )

        assert metadata.integrity.last_good_check is None

    @pytest.mark.asyncio
    async def test_failed_offset_read_keeps_previous_value(self):
        """Test a failing offset query keeps the last known offset and logs a warning."""
        offsets = [480, QueryError("VIEW SERVER STATE permission denied", number=300)]

        def next_offset(sql, params):
            outcome = offsets.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        collector = _collector(FakeDataSource({"TZOFFSET": next_offset}))

        assert await collector.refresh_server_utc_offset() == timedelta(hours=8)
        with capture_logs() as logs:
            assert await collector.refresh_server_utc_offset() == timedelta(hours=8)

        assert any(entry["event"] == "Could not read server UTC offset" for entry in logs)

    @pytest.mark.asyncio
    async def test_unknown_offset_assumes_utc(self):
        """Test a server that returns no offset is treated as UTC."""
        with capture_logs() as logs:
            offset = await _collector(FakeDataSource()).refresh_server_utc_offset()

        assert offset == timedelta(0)
        assert any(entry["event"] == "Server UTC offset unknown, assuming server time is UTC" for entry in logs)

    @pytest.mark.asyncio
    async def test_snapshot_refreshes_offset(self, target):
        """Test each snapshot re-reads the offset so clock changes are picked up."""
        source = FakeDataSource({"TZOFFSET": 60, **SERVER_RESPONSES})
        collector = _collector(source)

        await collector.collect(target)
        source.responses["TZOFFSET"] = 120
        await collector.collect(target)

        assert len(source.calls_matching("TZOFFSET")) == 2
        assert collector.server_utc_offset == timedelta(hours=2)
