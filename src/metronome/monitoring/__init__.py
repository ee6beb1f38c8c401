"""Metronome monitoring models and collection.

Example:
    >>> from metronome.monitoring import SnapshotCollector
    >>> collector = SnapshotCollector(executor)
    >>> snapshot = await collector.collect(target)
"""

from .collector import DETAIL_SECTIONS, SERVER_SECTIONS, SnapshotCollector
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
    Issue,
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

__all__ = [
    "SnapshotCollector",
    "SERVER_SECTIONS",
    "DETAIL_SECTIONS",
    "AgentJob",
    "BackupRecord",
    "BackupType",
    "BlockingSession",
    "ColumnInfo",
    "CpuMetrics",
    "DatabaseFile",
    "DatabaseMetadata",
    "FileIoStat",
    "FileType",
    "ForeignKeyInfo",
    "IdentityColumnInfo",
    "IndexInfo",
    "IntegrityCheckInfo",
    "Issue",
    "LongTransaction",
    "MemoryMetrics",
    "ModuleDefinition",
    "PrincipalInfo",
    "RunningQuery",
    "SecurityInfo",
    "SensitiveColumn",
    "Snapshot",
    "TableInfo",
    "WaitStat",
]
