"""Data source contract for Metronome.

Every catalog and DMV query the engine issues goes through an object that
implements :class:`DataSource`. The engine never talks to a driver
directly: it wraps a data source in a
:class:`~metronome.database.executor.ResilientExecutor`.

Implementations must raise :class:`~metronome.core.exceptions.DataSourceError`
(or a subclass) carrying the native SQL Server error ``number`` so the
executor can classify failures as transient or permanent.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

Row = Dict[str, Any]
Params = Optional[Sequence[Any]]


@runtime_checkable
class DataSource(Protocol):
    """Async query interface over one monitored server."""

    async def query(
        self, sql: str, params: Params = None, *, timeout: Optional[float] = None
    ) -> List[Row]:
        """Run a statement and return its rows as dictionaries."""
        ...

    async def scalar(
        self, sql: str, params: Params = None, *, timeout: Optional[float] = None
    ) -> Any:
        """Run a statement and return the first column of the first row."""
        ...

    async def execute(
        self, sql: str, params: Params = None, *, timeout: Optional[float] = None
    ) -> int:
        """Run a statement that returns no rows; return the affected row count."""
        ...

    async def close(self) -> None:
        """Release the underlying connection."""
        ...
