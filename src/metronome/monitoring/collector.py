"""Snapshot and metadata collection for Metronome.

The collector turns catalog and DMV rows into the immutable monitoring
models. Every section is collected independently: a failing section is
logged, left as ``None`` and named in ``missing_sections`` so a single
unavailable DMV never costs the whole cycle.

Example:
    >>> collector = SnapshotCollector(executor)
    >>> snapshot = await collector.collect(app_config.target, monitoring_config)
    >>> snapshot.missing_sections
    ()
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from ..config.models import MonitoringConfig, TargetConfig
from ..core.exceptions import CollectionError, ErrorCodes, OperationCancelledError
from ..core.utils import CancellationToken, StringUtils, utc_now
from ..database.base import Row
from ..database.executor import ResilientExecutor
from ..logging import get_logger, get_performance_logger
from . import queries
from .models import (
    AgentJob,
    BackupRecord,
    BackupType,
    BlockingSession,
    ColumnInfo,
    CpuMetrics,
    DatabaseFile,
    DatabaseMetadata,
    FileIoStat,
    FileType,
    ForeignKeyInfo,
    IdentityColumnInfo,
    IndexInfo,
    IntegrityCheckInfo,
    LongTransaction,
    MemoryMetrics,
    ModuleDefinition,
    PrincipalInfo,
    RunningQuery,
    SecurityInfo,
    SensitiveColumn,
    Snapshot,
    TableInfo,
    WaitStat,
)

T = TypeVar("T")

SERVER_SECTIONS = ("cpu", "memory", "io", "waits", "blocking", "long_running")

DETAIL_SECTIONS = (
    "tables",
    "identity_columns",
    "backup_history",
    "integrity",
    "agent_jobs",
    "long_transactions",
    "security",
    "modules",
)

# DBCC DBINFO reports this date when CHECKDB has never completed
_NEVER_CHECKED = datetime(1900, 1, 1)


def _float(value: Any, default: float = 0.0) -> float:
    return default if value is None else float(value)


def _int(value: Any, default: int = 0) -> int:
    return default if value is None else int(value)


def _bool(value: Any) -> bool:
    return bool(value) if value is not None else False


def _split(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in str(value).split(",") if part.strip())


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).strip())


def _to_utc(value: Optional[datetime], utc_offset: timedelta) -> Optional[datetime]:
    """Convert a server-local datetime to UTC. Aware values keep their own offset."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone(utc_offset))
    return value.astimezone(timezone.utc)


def _table_key(row: Row) -> Tuple[str, str]:
    return row["schema_name"], row["table_name"]


class SnapshotCollector:
    """Collects server snapshots and per-database metadata.

    Args:
        executor: Resilient executor bound to the monitored target
    """

    def __init__(self, executor: ResilientExecutor) -> None:
        self.executor = executor
        self.logger = get_logger("metronome.collector")
        self.perf_logger = get_performance_logger("metronome.collector")
        self.server_utc_offset: Optional[timedelta] = None

    async def refresh_server_utc_offset(self, token: Optional[CancellationToken] = None) -> timedelta:
        """Read the server's current offset from UTC.

        msdb history, index usage DMVs and DBCC report naive server-local
        times; they are converted to UTC with this offset. The offset is
        re-read every snapshot so daylight saving changes are picked up.
        When it cannot be read the previous value is kept, or UTC assumed.
        """
        try:
            minutes = await self.executor.scalar(queries.SERVER_UTC_OFFSET, cancellation_token=token)
        except OperationCancelledError:
            raise
        except Exception as e:
            self.logger.warning("Could not read server UTC offset", error=str(e), error_type=type(e).__name__)
            minutes = None

        if minutes is not None:
            self.server_utc_offset = timedelta(minutes=_int(minutes))
        elif self.server_utc_offset is None:
            self.logger.warning("Server UTC offset unknown, assuming server time is UTC")
            self.server_utc_offset = timedelta(0)
        return self.server_utc_offset

    def _server_time(self, value: Any) -> Optional[datetime]:
        return _to_utc(_parse_datetime(value), self.server_utc_offset or timedelta(0))

    async def _section(
        self,
        name: str,
        missing: List[str],
        loader: Callable[[], Awaitable[T]],
    ) -> Optional[T]:
        """Run one section loader, recording it as missing on failure."""
        try:
            return await loader()
        except OperationCancelledError:
            raise
        except Exception as e:
            self.logger.warning(
                "Section collection failed",
                section=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            missing.append(name)
            return None

    async def check_connectivity(
        self, *, cancellation_token: Optional[CancellationToken] = None
    ) -> bool:
        """Run ``SELECT 1`` and report whether the target answered."""
        try:
            value = await self.executor.scalar(
                queries.CONNECTIVITY_CHECK, cancellation_token=cancellation_token
            )
        except OperationCancelledError:
            raise
        except Exception as e:
            self.logger.error("Connectivity check failed", error=str(e))
            return False
        return value == 1

    async def list_databases(
        self,
        excluded: Iterable[str] = (),
        *,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> List[str]:
        """Return online, writable user databases minus ``excluded``.

        Exclusions are compared case-insensitively.
        """
        rows = await self.executor.query(
            queries.LIST_DATABASES, cancellation_token=cancellation_token
        )
        skip = {name.lower() for name in excluded}
        return [row["name"] for row in rows if row["name"].lower() not in skip]

    # Server snapshot

    async def collect(
        self,
        target: TargetConfig,
        config: Optional[MonitoringConfig] = None,
        *,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Snapshot:
        """Collect a performance snapshot of the target.

        Sections disabled by the ``monitor_*`` flags are skipped and left
        ``None`` without being reported missing.

        Args:
            target: Monitored target
            config: Monitoring configuration, defaults when omitted
            cancellation_token: Cycle token

        Returns:
            Snapshot with failed sections named in ``missing_sections``
        """
        config = config or MonitoringConfig()
        missing: List[str] = []
        token = cancellation_token

        with self.perf_logger.measure("collect_snapshot", target=target.id):
            await self.refresh_server_utc_offset(token)

            cpu = None
            if config.monitor_cpu:
                cpu = await self._section("cpu", missing, lambda: self._collect_cpu(token))

            memory = None
            if config.monitor_memory:
                memory = await self._section("memory", missing, lambda: self._collect_memory(token))

            io = None
            if config.monitor_disk:
                io = await self._section("io", missing, lambda: self._collect_io(token))

            waits = await self._section("waits", missing, lambda: self._collect_waits(token))

            blocking = None
            if config.monitor_blocking:
                blocking = await self._section("blocking", missing, lambda: self._collect_blocking(token))

            long_running = None
            if config.monitor_queries:
                long_running = await self._section(
                    "long_running",
                    missing,
                    lambda: self._collect_long_running(config.long_running_query_threshold_seconds, token),
                )

        snapshot = Snapshot(
            target_id=target.id,
            collected_at=utc_now(),
            cpu=cpu,
            memory=memory,
            io=io,
            waits=waits,
            blocking=blocking,
            long_running=long_running,
            missing_sections=tuple(missing),
        )
        if snapshot.is_partial:
            self.logger.warning(
                "Snapshot collected with missing sections",
                target=target.id,
                missing_sections=list(snapshot.missing_sections),
            )
        else:
            self.logger.debug("Snapshot collected", target=target.id)
        return snapshot

    async def _collect_cpu(self, token: Optional[CancellationToken]) -> CpuMetrics:
        rows = await self.executor.query(queries.CPU_METRICS, cancellation_token=token)
        if not rows or rows[0].get("utilization_percent") is None:
            raise CollectionError(
                "Scheduler monitor ring buffer returned no CPU sample",
                code=ErrorCodes.SNAPSHOT_COLLECTION_FAILED,
                context={"section": "cpu"},
            )
        row = rows[0]
        return CpuMetrics(
            utilization_percent=_float(row["utilization_percent"]),
            active_worker_threads=_int(row.get("active_worker_threads")),
            active_requests=_int(row.get("active_requests")),
        )

    async def _collect_memory(self, token: Optional[CancellationToken]) -> MemoryMetrics:
        rows = await self.executor.query(queries.MEMORY_METRICS, cancellation_token=token)
        if not rows or rows[0].get("total_server_memory_mb") is None:
            raise CollectionError(
                "Memory performance counters are unavailable",
                code=ErrorCodes.SNAPSHOT_COLLECTION_FAILED,
                context={"section": "memory"},
            )
        row = rows[0]
        return MemoryMetrics(
            total_server_memory_mb=_float(row["total_server_memory_mb"]),
            target_server_memory_mb=_float(row.get("target_server_memory_mb")),
            buffer_pool_mb=_float(row.get("buffer_pool_mb")),
            plan_cache_mb=_float(row.get("plan_cache_mb")),
            sql_cache_mb=_float(row.get("sql_cache_mb")),
            page_life_expectancy=_int(row.get("page_life_expectancy")),
        )

    async def _collect_io(self, token: Optional[CancellationToken]) -> Tuple[FileIoStat, ...]:
        rows = await self.executor.query(queries.FILE_IO_STATS, cancellation_token=token)
        return tuple(
            FileIoStat(
                database_name=row["database_name"],
                file_name=row["file_name"],
                read_latency_ms=_float(row.get("read_latency_ms")),
                write_latency_ms=_float(row.get("write_latency_ms")),
                read_bytes_per_sec=_float(row.get("read_bytes_per_sec")),
                write_bytes_per_sec=_float(row.get("write_bytes_per_sec")),
            )
            for row in rows
        )

    async def _collect_waits(self, token: Optional[CancellationToken]) -> Tuple[WaitStat, ...]:
        rows = await self.executor.query(queries.WAIT_STATS, cancellation_token=token)
        return tuple(
            WaitStat(
                wait_type=row["wait_type"],
                wait_time_ms=_float(row.get("wait_time_ms")),
                waiting_tasks_count=_int(row.get("waiting_tasks_count")),
                category=row.get("category") or "Other",
            )
            for row in rows
        )

    async def _collect_blocking(self, token: Optional[CancellationToken]) -> Tuple[BlockingSession, ...]:
        rows = await self.executor.query(queries.BLOCKING_SESSIONS, cancellation_token=token)
        return tuple(
            BlockingSession(
                session_id=_int(row["session_id"]),
                blocking_session_id=_int(row["blocking_session_id"]),
                wait_time_ms=_float(row.get("wait_time_ms")),
                wait_type=row.get("wait_type"),
                database_name=row.get("database_name"),
                query_text=row.get("query_text"),
            )
            for row in rows
        )

    async def _collect_long_running(
        self, threshold_seconds: float, token: Optional[CancellationToken]
    ) -> Tuple[RunningQuery, ...]:
        rows = await self.executor.query(
            queries.LONG_RUNNING_QUERIES, [threshold_seconds], cancellation_token=token
        )
        return tuple(
            RunningQuery(
                session_id=_int(row["session_id"]),
                elapsed_seconds=_float(row.get("elapsed_seconds")),
                database_name=row.get("database_name"),
                status=row.get("status"),
                command=row.get("command"),
                query_text=row.get("query_text"),
                login_name=row.get("login_name"),
            )
            for row in rows
        )

    # Database metadata

    async def collect_database_metadata(
        self,
        target: TargetConfig,
        database: str,
        config: Optional[MonitoringConfig] = None,
        *,
        sections: Optional[Iterable[str]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> DatabaseMetadata:
        """Collect metadata for one database.

        Database settings, files and last backup times are required; if
        they cannot be read the whole call fails. Detail sections are
        collected independently with the same partial semantics as
        :meth:`collect`.

        Args:
            target: Monitored target
            database: Database name
            config: Monitoring configuration, defaults when omitted
            sections: Detail sections to collect, or None for all
            cancellation_token: Cycle token

        Returns:
            DatabaseMetadata for ``database``

        Raises:
            CollectionError: If the database settings cannot be read
            DataSourceError: If a required query fails
        """
        config = config or MonitoringConfig()
        wanted = set(DETAIL_SECTIONS if sections is None else sections)
        token = cancellation_token
        missing: List[str] = []
        details: Dict[str, Any] = {}

        with self.perf_logger.measure("collect_database_metadata", database=database):
            if self.server_utc_offset is None:
                await self.refresh_server_utc_offset(token)
            info = await self._collect_database_info(database, token)
            files = await self._collect_files(database, token)
            backups = await self._collect_last_backups(database, token)

            loaders: Dict[str, Callable[[], Awaitable[Any]]] = {
                "tables": lambda: self._collect_tables(database, missing, token),
                "identity_columns": lambda: self._collect_identity_columns(database, token),
                "backup_history": lambda: self._collect_backup_history(
                    database, config.thresholds.growth_window_days, token
                ),
                "integrity": lambda: self._collect_integrity(
                    database, target.integrity_check_timeout, token
                ),
                "agent_jobs": lambda: self._collect_agent_jobs(database, token),
                "long_transactions": lambda: self._collect_long_transactions(
                    database, config.thresholds.long_transaction_seconds, token
                ),
                "security": lambda: self._collect_security(database, token),
                "modules": lambda: self._collect_modules(database, token),
            }
            for name in DETAIL_SECTIONS:
                if name in wanted:
                    details[name] = await self._section(name, missing, loaders[name])

        if missing:
            self.logger.warning(
                "Database metadata collected with missing sections",
                database=database,
                missing_sections=missing,
            )

        return DatabaseMetadata(
            name=database,
            collected_at=utc_now(),
            size_mb=_float(info.get("size_mb")),
            recovery_model=info.get("recovery_model") or "FULL",
            compatibility_level=_int(info.get("compatibility_level"), 150),
            is_encrypted=_bool(info.get("is_encrypted")),
            query_store_enabled=(
                None if info.get("query_store_enabled") is None else bool(info["query_store_enabled"])
            ),
            state=info.get("state") or "ONLINE",
            files=files,
            last_full_backup=self._server_time(backups.get("last_full_backup")),
            last_differential_backup=self._server_time(backups.get("last_differential_backup")),
            last_log_backup=self._server_time(backups.get("last_log_backup")),
            missing_sections=tuple(missing),
            **details,
        )

    async def _collect_database_info(self, database: str, token: Optional[CancellationToken]) -> Row:
        rows = await self.executor.query(queries.DATABASE_INFO, [database], cancellation_token=token)
        if not rows:
            raise CollectionError(
                f"Database '{database}' not found",
                code=ErrorCodes.METADATA_COLLECTION_FAILED,
                context={"database": database},
            )
        return rows[0]

    async def _collect_files(self, database: str, token: Optional[CancellationToken]) -> Tuple[DatabaseFile, ...]:
        rows = await self.executor.query(
            queries.for_database(queries.DATABASE_FILES, database), cancellation_token=token
        )
        return tuple(
            DatabaseFile(
                logical_name=row["logical_name"],
                file_type=FileType.LOG if str(row.get("type_desc", "")).upper() == "LOG" else FileType.DATA,
                size_mb=_float(row.get("size_mb")),
                max_size_mb=_float(row.get("max_size_mb"), -1),
                growth_is_percent=_bool(row.get("is_percent_growth")),
                growth_value=_float(row.get("growth_value")),
                used_percent=None if row.get("used_percent") is None else float(row["used_percent"]),
                physical_name=row.get("physical_name"),
            )
            for row in rows
        )

    async def _collect_last_backups(self, database: str, token: Optional[CancellationToken]) -> Row:
        rows = await self.executor.query(queries.LAST_BACKUPS, [database], cancellation_token=token)
        return rows[0] if rows else {}

    async def _collect_tables(
        self, database: str, missing: List[str], token: Optional[CancellationToken]
    ) -> Tuple[TableInfo, ...]:
        table_rows = await self.executor.query(
            queries.for_database(queries.TABLES, database), cancellation_token=token
        )
        column_rows = await self.executor.query(
            queries.for_database(queries.COLUMNS, database), cancellation_token=token
        )
        index_rows = await self.executor.query(
            queries.for_database(queries.INDEXES, database), [database], cancellation_token=token
        )
        fk_rows = await self.executor.query(
            queries.for_database(queries.FOREIGN_KEYS, database), cancellation_token=token
        )
        # Fragmentation is expensive and optional; tables remain usable without it
        fragmentation_rows = await self._section(
            "fragmentation",
            missing,
            lambda: self.executor.query(
                queries.for_database(queries.INDEX_FRAGMENTATION, database),
                [database],
                cancellation_token=token,
            ),
        )

        fragmentation: Dict[Tuple[str, str, str], Row] = {
            (row["schema_name"], row["table_name"], row["index_name"]): row
            for row in fragmentation_rows or []
        }

        columns: Dict[Tuple[str, str], List[ColumnInfo]] = {}
        for row in column_rows:
            columns.setdefault(_table_key(row), []).append(
                ColumnInfo(
                    name=row["column_name"],
                    data_type=str(row["data_type"]).lower(),
                    max_length=_int(row.get("max_length")),
                    is_nullable=_bool(row.get("is_nullable")),
                    is_identity=_bool(row.get("is_identity")),
                )
            )

        indexes: Dict[Tuple[str, str], List[IndexInfo]] = {}
        for row in index_rows:
            frag = fragmentation.get((row["schema_name"], row["table_name"], row["index_name"]))
            indexes.setdefault(_table_key(row), []).append(
                IndexInfo(
                    name=row["index_name"],
                    index_type=row.get("index_type") or "NONCLUSTERED",
                    is_primary_key=_bool(row.get("is_primary_key")),
                    is_unique=_bool(row.get("is_unique")),
                    key_columns=_split(row.get("key_columns")),
                    included_columns=_split(row.get("included_columns")),
                    user_seeks=_int(row.get("user_seeks")),
                    user_scans=_int(row.get("user_scans")),
                    user_lookups=_int(row.get("user_lookups")),
                    user_updates=_int(row.get("user_updates")),
                    last_user_seek=self._server_time(row.get("last_user_seek")),
                    last_user_scan=self._server_time(row.get("last_user_scan")),
                    last_user_lookup=self._server_time(row.get("last_user_lookup")),
                    fragmentation_percent=None if frag is None else _float(frag.get("fragmentation_percent")),
                    page_count=0 if frag is None else _int(frag.get("page_count")),
                )
            )

        foreign_keys: Dict[Tuple[str, str], List[ForeignKeyInfo]] = {}
        for row in fk_rows:
            foreign_keys.setdefault(_table_key(row), []).append(
                ForeignKeyInfo(
                    name=row["constraint_name"],
                    columns=_split(row.get("column_names")),
                    referenced_table=row.get("referenced_table") or "",
                    is_disabled=_bool(row.get("is_disabled")),
                    is_not_trusted=_bool(row.get("is_not_trusted")),
                )
            )

        return tuple(
            TableInfo(
                schema=row["schema_name"],
                name=row["table_name"],
                row_count=_int(row.get("row_count")),
                is_partitioned=_bool(row.get("is_partitioned")),
                columns=tuple(columns.get(_table_key(row), ())),
                indexes=tuple(indexes.get(_table_key(row), ())),
                foreign_keys=tuple(foreign_keys.get(_table_key(row), ())),
            )
            for row in table_rows
        )

    async def _collect_identity_columns(
        self, database: str, token: Optional[CancellationToken]
    ) -> Tuple[IdentityColumnInfo, ...]:
        rows = await self.executor.query(
            queries.for_database(queries.IDENTITY_COLUMNS, database), cancellation_token=token
        )
        return tuple(
            IdentityColumnInfo(
                schema=row["schema_name"],
                table=row["table_name"],
                column=row["column_name"],
                data_type=str(row["data_type"]).lower(),
                current_value=None if row.get("current_value") is None else int(row["current_value"]),
                seed=_int(row.get("seed"), 1),
                increment=_int(row.get("increment"), 1),
            )
            for row in rows
        )

    async def _collect_backup_history(
        self, database: str, window_days: int, token: Optional[CancellationToken]
    ) -> Tuple[BackupRecord, ...]:
        rows = await self.executor.query(
            queries.BACKUP_HISTORY, [database, window_days], cancellation_token=token
        )
        records = []
        for row in rows:
            try:
                backup_type = BackupType(str(row["backup_type"]).strip().upper())
            except ValueError:
                # File and partial backups are not tracked
                continue
            records.append(
                BackupRecord(
                    backup_type=backup_type,
                    finish_time=self._server_time(row["finish_time"]),
                    size_mb=_float(row.get("size_mb")),
                    is_verified=_bool(row.get("is_verified")),
                )
            )
        return tuple(records)

    async def _collect_integrity(
        self, database: str, timeout: float, token: Optional[CancellationToken]
    ) -> IntegrityCheckInfo:
        dbinfo = await self.executor.query(
            queries.INTEGRITY_LAST_KNOWN_GOOD.format(literal=StringUtils.quote_literal(database)),
            timeout=timeout,
            cancellation_token=token,
        )
        last_good: Optional[datetime] = None
        for row in dbinfo:
            if row.get("Field") == "dbi_dbccLastKnownGood":
                checked = _parse_datetime(row.get("Value"))
                if checked is not None and checked.replace(tzinfo=None) > _NEVER_CHECKED:
                    last_good = self._server_time(checked)
                break

        suspect_pages = await self.executor.scalar(
            queries.SUSPECT_PAGES, [database], timeout=timeout, cancellation_token=token
        )
        suspect_pages = _int(suspect_pages)
        return IntegrityCheckInfo(
            last_good_check=last_good,
            has_errors=suspect_pages > 0,
            error_message=f"{suspect_pages} suspect page(s) recorded in msdb" if suspect_pages else None,
        )

    async def _collect_agent_jobs(self, database: str, token: Optional[CancellationToken]) -> Tuple[AgentJob, ...]:
        rows = await self.executor.query(queries.AGENT_JOBS, [database], cancellation_token=token)
        return tuple(
            AgentJob(
                name=row["job_name"],
                enabled=_bool(row.get("enabled")),
                category=row.get("category") or "",
                last_run_date=self._server_time(row.get("last_run_date")),
                last_run_outcome=row.get("last_run_outcome") or "Unknown",
                last_failure_message=row.get("last_failure_message"),
            )
            for row in rows
        )

    async def _collect_long_transactions(
        self, database: str, threshold_seconds: float, token: Optional[CancellationToken]
    ) -> Tuple[LongTransaction, ...]:
        rows = await self.executor.query(
            queries.LONG_TRANSACTIONS, [database, threshold_seconds], cancellation_token=token
        )
        return tuple(
            LongTransaction(
                session_id=_int(row["session_id"]),
                duration_seconds=_float(row.get("duration_seconds")),
                transaction_name=row.get("transaction_name"),
                login_name=row.get("login_name"),
            )
            for row in rows
        )

    async def _collect_security(self, database: str, token: Optional[CancellationToken]) -> SecurityInfo:
        guest_rows = await self.executor.query(
            queries.for_database(queries.GUEST_PERMISSIONS, database), cancellation_token=token
        )
        power_rows = await self.executor.query(
            queries.for_database(queries.POWER_USERS, database), cancellation_token=token
        )
        sensitive_rows = await self.executor.query(
            queries.for_database(queries.SENSITIVE_COLUMNS, database), cancellation_token=token
        )
        return SecurityInfo(
            guest_permissions=tuple(row["permission_name"] for row in guest_rows),
            power_users=tuple(
                PrincipalInfo(name=row["principal_name"], role=row["role_name"]) for row in power_rows
            ),
            sensitive_columns=tuple(
                SensitiveColumn(
                    schema=row["schema_name"],
                    table=row["table_name"],
                    column=row["column_name"],
                    data_type=str(row.get("data_type", "")).lower(),
                    is_encrypted=_bool(row.get("is_encrypted")),
                )
                for row in sensitive_rows
            ),
        )

    async def _collect_modules(self, database: str, token: Optional[CancellationToken]) -> Tuple[ModuleDefinition, ...]:
        rows = await self.executor.query(
            queries.for_database(queries.MODULES, database), cancellation_token=token
        )
        return tuple(
            ModuleDefinition(
                schema=row["schema_name"],
                name=row["module_name"],
                type_desc=row.get("type_desc") or "",
                definition=row.get("definition") or "",
            )
            for row in rows
        )
