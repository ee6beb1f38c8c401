"""Domain models for Metronome monitoring.

Snapshots and database metadata are immutable point-in-time reads owned by
one monitoring cycle. A section that could not be collected is ``None``
and named in ``missing_sections``; it is never defaulted to zero so
analyzers can tell "no data" from "value is zero".

Classes:
    Snapshot: Server performance snapshot
    DatabaseMetadata: Per-database structural, backup and security metadata
    Issue: Typed, severity-ranked finding produced by an analyzer

Example:
    >>> issue = Issue(
    ...     type=IssueType.BACKUP,
    ...     severity=IssueSeverity.HIGH,
    ...     message="No full backups found for database 'Sales'",
    ...     recommended_action="Schedule regular full backups",
    ...     database_name="Sales",
    ... )
    >>> issue.resolve().is_resolved
    True
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..core.types import AlertType, IssueSeverity, IssueType
from ..core.utils import StringUtils, utc_now


@dataclass(frozen=True)
class CpuMetrics:
    """CPU counters."""
    utilization_percent: float
    active_worker_threads: int = 0
    active_requests: int = 0


@dataclass(frozen=True)
class MemoryMetrics:
    """Memory counters in MB, plus page life expectancy in seconds."""
    total_server_memory_mb: float
    target_server_memory_mb: float
    buffer_pool_mb: float = 0.0
    plan_cache_mb: float = 0.0
    sql_cache_mb: float = 0.0
    page_life_expectancy: int = 0

    @property
    def memory_pressure(self) -> bool:
        """True when SQL Server holds less memory than it targets."""
        return self.total_server_memory_mb < self.target_server_memory_mb


@dataclass(frozen=True)
class FileIoStat:
    """Per-file I/O latency and throughput."""
    database_name: str
    file_name: str
    read_latency_ms: float
    write_latency_ms: float
    read_bytes_per_sec: float = 0.0
    write_bytes_per_sec: float = 0.0


@dataclass(frozen=True)
class WaitStat:
    """Cumulative wait statistics for one wait type."""
    wait_type: str
    wait_time_ms: float
    waiting_tasks_count: int
    category: str = "Other"


@dataclass(frozen=True)
class BlockingSession:
    """A session blocked by another session."""
    session_id: int
    blocking_session_id: int
    wait_time_ms: float
    wait_type: Optional[str] = None
    database_name: Optional[str] = None
    query_text: Optional[str] = None

    @property
    def wait_seconds(self) -> float:
        return self.wait_time_ms / 1000.0


@dataclass(frozen=True)
class RunningQuery:
    """An executing request."""
    session_id: int
    elapsed_seconds: float
    database_name: Optional[str] = None
    status: Optional[str] = None
    command: Optional[str] = None
    query_text: Optional[str] = None
    login_name: Optional[str] = None


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time server performance read.

    Every section is either present or ``None``; ``missing_sections``
    names the sections that failed to collect.
    """
    target_id: str
    collected_at: datetime
    cpu: Optional[CpuMetrics] = None
    memory: Optional[MemoryMetrics] = None
    io: Optional[Tuple[FileIoStat, ...]] = None
    waits: Optional[Tuple[WaitStat, ...]] = None
    blocking: Optional[Tuple[BlockingSession, ...]] = None
    long_running: Optional[Tuple[RunningQuery, ...]] = None
    missing_sections: Tuple[str, ...] = ()

    @property
    def is_partial(self) -> bool:
        """True if any section failed to collect."""
        return bool(self.missing_sections)

    def top_waits(self, limit: int = 5) -> List[WaitStat]:
        """Return the waits with the highest cumulative wait time."""
        if not self.waits:
            return []
        return sorted(self.waits, key=lambda w: w.wait_time_ms, reverse=True)[:limit]


class FileType(str, Enum):
    DATA = "data"
    LOG = "log"


@dataclass(frozen=True)
class DatabaseFile:
    """A database file.

    ``max_size_mb`` is -1 for unlimited growth and 0 when growth is
    disabled. ``used_percent`` is ``None`` when space usage is unknown.
    """
    logical_name: str
    file_type: FileType
    size_mb: float
    max_size_mb: float = -1
    growth_is_percent: bool = False
    growth_value: float = 0
    used_percent: Optional[float] = None
    physical_name: Optional[str] = None


@dataclass(frozen=True)
class ColumnInfo:
    """Table column. ``max_length`` is -1 for (max) types."""
    name: str
    data_type: str
    max_length: int = 0
    is_nullable: bool = True
    is_identity: bool = False

    @property
    def is_max(self) -> bool:
        return self.max_length == -1


@dataclass(frozen=True)
class IndexInfo:
    """Index definition with usage statistics and fragmentation."""
    name: str
    index_type: str = "NONCLUSTERED"
    is_primary_key: bool = False
    is_unique: bool = False
    key_columns: Tuple[str, ...] = ()
    included_columns: Tuple[str, ...] = ()
    user_seeks: int = 0
    user_scans: int = 0
    user_lookups: int = 0
    user_updates: int = 0
    last_user_seek: Optional[datetime] = None
    last_user_scan: Optional[datetime] = None
    last_user_lookup: Optional[datetime] = None
    fragmentation_percent: Optional[float] = None
    page_count: int = 0

    @property
    def is_clustered(self) -> bool:
        return self.index_type.upper() == "CLUSTERED"

    @property
    def total_reads(self) -> int:
        return self.user_seeks + self.user_scans + self.user_lookups

    @property
    def last_used(self) -> Optional[datetime]:
        """Most recent seek, scan or lookup."""
        used = [d for d in (self.last_user_seek, self.last_user_scan, self.last_user_lookup) if d]
        return max(used) if used else None


@dataclass(frozen=True)
class ForeignKeyInfo:
    """Foreign key constraint."""
    name: str
    columns: Tuple[str, ...]
    referenced_table: str
    is_disabled: bool = False
    is_not_trusted: bool = False


@dataclass(frozen=True)
class TableInfo:
    """Table structure used by the schema, indexing and performance analyzers."""
    schema: str
    name: str
    row_count: int = 0
    is_partitioned: bool = False
    columns: Tuple[ColumnInfo, ...] = ()
    indexes: Tuple[IndexInfo, ...] = ()
    foreign_keys: Tuple[ForeignKeyInfo, ...] = ()

    @property
    def full_name(self) -> str:
        """Bracket-quoted two-part name."""
        return StringUtils.qualified_name(self.schema, self.name)

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def has_primary_key(self) -> bool:
        return any(index.is_primary_key for index in self.indexes)

    @property
    def is_heap(self) -> bool:
        return not any(index.is_clustered for index in self.indexes)


@dataclass(frozen=True)
class IdentityColumnInfo:
    """Identity column with its current value."""
    schema: str
    table: str
    column: str
    data_type: str
    current_value: Optional[int]
    seed: int = 1
    increment: int = 1

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.column}"


class BackupType(str, Enum):
    """msdb backup type codes."""
    FULL = "D"
    DIFFERENTIAL = "I"
    LOG = "L"


@dataclass(frozen=True)
class BackupRecord:
    """One backup set from msdb history."""
    backup_type: BackupType
    finish_time: datetime
    size_mb: float = 0.0
    is_verified: bool = False


@dataclass(frozen=True)
class IntegrityCheckInfo:
    """Last known good DBCC CHECKDB result."""
    last_good_check: Optional[datetime]
    has_errors: bool = False
    error_message: Optional[str] = None


@dataclass(frozen=True)
class AgentJob:
    """SQL Agent job targeting the database."""
    name: str
    enabled: bool
    category: str = ""
    last_run_date: Optional[datetime] = None
    last_run_outcome: str = "Unknown"
    last_failure_message: Optional[str] = None

    @property
    def last_run_failed(self) -> bool:
        return self.last_run_outcome.lower() == "failed"


@dataclass(frozen=True)
class LongTransaction:
    """An open transaction."""
    session_id: int
    duration_seconds: float
    transaction_name: Optional[str] = None
    login_name: Optional[str] = None


@dataclass(frozen=True)
class PrincipalInfo:
    """Database principal holding a powerful role."""
    name: str
    role: str


@dataclass(frozen=True)
class SensitiveColumn:
    """Column whose name suggests personal or secret data."""
    schema: str
    table: str
    column: str
    data_type: str
    is_encrypted: bool = False

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.column}"


@dataclass(frozen=True)
class SecurityInfo:
    """Security posture of a database."""
    guest_permissions: Tuple[str, ...] = ()
    power_users: Tuple[PrincipalInfo, ...] = ()
    sensitive_columns: Tuple[SensitiveColumn, ...] = ()

    @property
    def guest_has_access(self) -> bool:
        return bool(self.guest_permissions)


@dataclass(frozen=True)
class ModuleDefinition:
    """Stored procedure, function or trigger source text."""
    schema: str
    name: str
    type_desc: str
    definition: str

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class DatabaseMetadata:
    """Per-database metadata, refreshed each cycle.

    Detail sections (``tables`` onward) are ``None`` when they could not
    be collected and are then named in ``missing_sections``.
    """
    name: str
    collected_at: datetime
    size_mb: float = 0.0
    recovery_model: str = "FULL"
    compatibility_level: int = 150
    is_encrypted: bool = False
    query_store_enabled: Optional[bool] = None
    state: str = "ONLINE"
    files: Tuple[DatabaseFile, ...] = ()
    last_full_backup: Optional[datetime] = None
    last_differential_backup: Optional[datetime] = None
    last_log_backup: Optional[datetime] = None
    tables: Optional[Tuple[TableInfo, ...]] = None
    identity_columns: Optional[Tuple[IdentityColumnInfo, ...]] = None
    backup_history: Optional[Tuple[BackupRecord, ...]] = None
    integrity: Optional[IntegrityCheckInfo] = None
    agent_jobs: Optional[Tuple[AgentJob, ...]] = None
    long_transactions: Optional[Tuple[LongTransaction, ...]] = None
    security: Optional[SecurityInfo] = None
    modules: Optional[Tuple[ModuleDefinition, ...]] = None
    missing_sections: Tuple[str, ...] = ()

    @property
    def data_files(self) -> List[DatabaseFile]:
        return [f for f in self.files if f.file_type == FileType.DATA]

    @property
    def log_files(self) -> List[DatabaseFile]:
        return [f for f in self.files if f.file_type == FileType.LOG]

    @property
    def is_full_recovery(self) -> bool:
        return self.recovery_model.upper() in ("FULL", "BULK_LOGGED")


@dataclass(frozen=True)
class Issue:
    """Typed, severity-ranked finding.

    ``id`` and ``detection_time`` are assigned by the issue sink when an
    analyzer leaves them empty. ``alert_type`` optionally overrides the
    issue-type to alert-type mapping used by the dispatcher.
    """
    type: IssueType
    severity: IssueSeverity
    message: str
    recommended_action: str = ""
    sql_script: Optional[str] = None
    affected_object: Optional[str] = None
    database_name: Optional[str] = None
    id: str = ""
    detection_time: Optional[datetime] = None
    is_resolved: bool = False
    resolved_time: Optional[datetime] = None
    alert_type: Optional[AlertType] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def resolve(self, at: Optional[datetime] = None) -> "Issue":
        """Return a resolved copy of this issue."""
        return replace(self, is_resolved=True, resolved_time=at or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible primitives."""
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.label
        data["alert_type"] = self.alert_type.value if self.alert_type else None
        data["detection_time"] = self.detection_time.isoformat() if self.detection_time else None
        data["resolved_time"] = self.resolved_time.isoformat() if self.resolved_time else None
        return data
