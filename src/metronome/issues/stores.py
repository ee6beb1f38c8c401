"""Issue and metrics stores.

Stores are append-only within a cycle. The in-memory stores back tests
and short-lived runs; the SQLite stores persist through aiosqlite.

Classes:
    IssueStore: Protocol for issue persistence
    MetricsStore: Protocol for snapshot metrics persistence
    InMemoryIssueStore, InMemoryMetricsStore: Process-local stores
    SqliteIssueStore, SqliteMetricsStore: aiosqlite-backed stores
"""

import json
import sqlite3
from dataclasses import asdict
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import aiosqlite

from ..config.models import StorageConfig
from ..core.base import AsyncComponent
from ..core.exceptions import ErrorCodes, StoreError
from ..core.types import AlertType, IssueSeverity, IssueType
from ..core.utils import ensure_utc, utc_now
from ..logging import get_logger
from ..monitoring.models import Issue, Snapshot


@runtime_checkable
class IssueStore(Protocol):
    """Destination of recorded issues."""

    async def add(self, issue: Issue) -> None:
        ...

    async def add_many(self, issues: Sequence[Issue]) -> None:
        ...


@runtime_checkable
class MetricsStore(Protocol):
    """Destination of per-cycle snapshot metrics."""

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        ...

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete snapshots collected before ``cutoff``; return the count removed."""
        ...


def _matches(issue: Issue, database_name: Optional[str], include_resolved: bool) -> bool:
    if database_name is not None and issue.database_name != database_name:
        return False
    return include_resolved or not issue.is_resolved


class InMemoryIssueStore:
    """Issue store keeping issues in insertion order."""

    def __init__(self) -> None:
        self._issues: List[Issue] = []

    async def add(self, issue: Issue) -> None:
        self._issues.append(issue)

    async def add_many(self, issues: Sequence[Issue]) -> None:
        self._issues.extend(issues)

    async def list_issues(
        self, *, database_name: Optional[str] = None, include_resolved: bool = True
    ) -> List[Issue]:
        return [i for i in self._issues if _matches(i, database_name, include_resolved)]

    async def resolve(self, issue_id: str, at: Optional[datetime] = None) -> bool:
        """Mark an issue resolved; return False when the id is unknown."""
        for position, issue in enumerate(self._issues):
            if issue.id == issue_id:
                self._issues[position] = issue.resolve(at)
                return True
        return False

    @property
    def issues(self) -> List[Issue]:
        return list(self._issues)

    def __len__(self) -> int:
        return len(self._issues)


class InMemoryMetricsStore:
    """Metrics store keeping snapshots in memory."""

    def __init__(self) -> None:
        self._snapshots: List[Snapshot] = []

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        self._snapshots.append(snapshot)

    async def purge_older_than(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        kept = [s for s in self._snapshots if ensure_utc(s.collected_at) >= cutoff]
        removed = len(self._snapshots) - len(kept)
        self._snapshots = kept
        return removed

    @property
    def snapshots(self) -> List[Snapshot]:
        return list(self._snapshots)


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


class _SqliteStore(AsyncComponent[StorageConfig]):
    """Shared connection handling of the SQLite stores.

    The connection is opened on first use; ``initialize`` may also be
    called explicitly.
    """

    schema: ClassVar[str] = ""

    def __init__(self, config: StorageConfig) -> None:
        super().__init__(config)
        self.logger = get_logger(f"metronome.store.{self.component_name}")
        self._connection: Optional[aiosqlite.Connection] = None

    async def _async_initialize(self) -> None:
        try:
            self._connection = await aiosqlite.connect(str(self.config.sqlite_path), timeout=30)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.executescript(self.schema)
            await self._connection.commit()
        except sqlite3.Error as e:
            self._connection = None
            raise StoreError(
                f"Failed to open SQLite store: {e}",
                code=ErrorCodes.STORE_WRITE_FAILED,
                context={"path": str(self.config.sqlite_path)},
                cause=e,
            ) from e
        self.logger.info("SQLite store opened", path=str(self.config.sqlite_path))

    async def _async_cleanup(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self.logger.info("SQLite store closed")

    async def _connect(self) -> aiosqlite.Connection:
        await self.initialize()
        return self._connection

    async def _write(self, sql: str, rows: Sequence[Sequence[Any]]) -> int:
        connection = await self._connect()
        try:
            cursor = await connection.executemany(sql, rows)
            await connection.commit()
        except sqlite3.Error as e:
            self.logger.error("SQLite write failed", error=str(e), row_count=len(rows))
            raise StoreError(
                f"SQLite write failed: {e}",
                code=ErrorCodes.STORE_WRITE_FAILED,
                context={"path": str(self.config.sqlite_path)},
                cause=e,
            ) from e
        return cursor.rowcount

    async def close(self) -> None:
        await self.cleanup()


class SqliteIssueStore(_SqliteStore):
    """Issue store backed by a SQLite table."""

    component_name = "SqliteIssueStore"
    schema = """
    CREATE TABLE IF NOT EXISTS issues (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        severity INTEGER NOT NULL,
        message TEXT NOT NULL,
        recommended_action TEXT NOT NULL DEFAULT '',
        sql_script TEXT,
        affected_object TEXT,
        database_name TEXT,
        detection_time TEXT,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        resolved_time TEXT,
        alert_type TEXT,
        metadata TEXT NOT NULL DEFAULT '{}'
    );
    CREATE INDEX IF NOT EXISTS ix_issues_database ON issues (database_name, detection_time);
    """

    _INSERT = (
        "INSERT INTO issues (id, type, severity, message, recommended_action, sql_script, "
        "affected_object, database_name, detection_time, is_resolved, resolved_time, alert_type, metadata) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
    )

    @staticmethod
    def _row(issue: Issue) -> tuple:
        return (
            issue.id,
            issue.type.value,
            int(issue.severity),
            issue.message,
            issue.recommended_action,
            issue.sql_script,
            issue.affected_object,
            issue.database_name,
            _timestamp(issue.detection_time),
            int(issue.is_resolved),
            _timestamp(issue.resolved_time),
            issue.alert_type.value if issue.alert_type else None,
            json.dumps(issue.metadata, default=str),
        )

    @staticmethod
    def _issue(row: "sqlite3.Row") -> Issue:
        return Issue(
            id=row["id"],
            type=IssueType(row["type"]),
            severity=IssueSeverity(row["severity"]),
            message=row["message"],
            recommended_action=row["recommended_action"],
            sql_script=row["sql_script"],
            affected_object=row["affected_object"],
            database_name=row["database_name"],
            detection_time=_parse_timestamp(row["detection_time"]),
            is_resolved=bool(row["is_resolved"]),
            resolved_time=_parse_timestamp(row["resolved_time"]),
            alert_type=AlertType(row["alert_type"]) if row["alert_type"] else None,
            metadata=json.loads(row["metadata"]),
        )

    async def add(self, issue: Issue) -> None:
        await self.add_many([issue])

    async def add_many(self, issues: Sequence[Issue]) -> None:
        if not issues:
            return
        await self._write(self._INSERT, [self._row(issue) for issue in issues])

    async def list_issues(
        self, *, database_name: Optional[str] = None, include_resolved: bool = True
    ) -> List[Issue]:
        connection = await self._connect()
        clauses: List[str] = []
        params: List[Any] = []
        if database_name is not None:
            clauses.append("database_name = ?")
            params.append(database_name)
        if not include_resolved:
            clauses.append("is_resolved = 0")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        async with connection.execute(
            f"SELECT * FROM issues{where} ORDER BY detection_time, rowid", params
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._issue(row) for row in rows]

    async def resolve(self, issue_id: str, at: Optional[datetime] = None) -> bool:
        """Mark an issue resolved; return False when the id is unknown."""
        resolved_at = at or utc_now()
        updated = await self._write(
            "UPDATE issues SET is_resolved = 1, resolved_time = ? WHERE id = ?",
            [(_timestamp(resolved_at), issue_id)],
        )
        return updated > 0


class SqliteMetricsStore(_SqliteStore):
    """Snapshot metrics store backed by a SQLite table.

    Headline counters are stored as columns for querying; the full
    snapshot is kept as JSON.
    """

    component_name = "SqliteMetricsStore"
    schema = """
    CREATE TABLE IF NOT EXISTS snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        target_id TEXT NOT NULL,
        collected_at TEXT NOT NULL,
        cpu_percent REAL,
        total_memory_mb REAL,
        target_memory_mb REAL,
        page_life_expectancy INTEGER,
        blocked_sessions INTEGER,
        long_running_queries INTEGER,
        missing_sections TEXT NOT NULL DEFAULT '',
        payload TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS ix_snapshots_collected ON snapshots (collected_at);
    """

    @staticmethod
    def _row(snapshot: Snapshot) -> tuple:
        payload: Dict[str, Any] = asdict(snapshot)
        return (
            snapshot.target_id,
            _timestamp(snapshot.collected_at),
            snapshot.cpu.utilization_percent if snapshot.cpu else None,
            snapshot.memory.total_server_memory_mb if snapshot.memory else None,
            snapshot.memory.target_server_memory_mb if snapshot.memory else None,
            snapshot.memory.page_life_expectancy if snapshot.memory else None,
            len(snapshot.blocking) if snapshot.blocking is not None else None,
            len(snapshot.long_running) if snapshot.long_running is not None else None,
            ",".join(snapshot.missing_sections),
            json.dumps(payload, default=str),
        )

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        await self._write(
            "INSERT INTO snapshots (target_id, collected_at, cpu_percent, total_memory_mb, target_memory_mb, "
            "page_life_expectancy, blocked_sessions, long_running_queries, missing_sections, payload) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [self._row(snapshot)],
        )

    async def purge_older_than(self, cutoff: datetime) -> int:
        removed = await self._write("DELETE FROM snapshots WHERE collected_at < ?", [(_timestamp(cutoff),)])
        if removed:
            self.logger.info("Purged old snapshots", removed=removed, cutoff=_timestamp(cutoff))
        return removed

    async def count(self) -> int:
        connection = await self._connect()
        async with connection.execute("SELECT COUNT(*) FROM snapshots") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
