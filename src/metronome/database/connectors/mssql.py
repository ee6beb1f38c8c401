"""SQL Server data source implementation for Metronome.

pyodbc is a blocking driver, so every call runs in a worker thread via
:func:`asyncio.to_thread`. Calls are serialized on one connection with an
asyncio lock. Driver errors are translated into
:class:`~metronome.core.exceptions.DataSourceError` carrying the native
error number parsed from the driver message.
"""

import asyncio
import math
import re
from typing import Any, Dict, List, Optional, Tuple

import pyodbc

from ...config.models import TargetConfig
from ...core import AsyncComponent
from ...core.exceptions import (
    DataSourceConnectionError,
    DataSourceError,
    ErrorCodes,
    QueryError,
)
from ...logging import get_logger, get_performance_logger
from ..base import Params, Row

_NATIVE_NUMBER = re.compile(r"\((-?\d+)\)\s*\(SQL\w+\)")
_TRAILING_NUMBER = re.compile(r"\((-?\d+)\)\s*$")

# Fallback when the message carries no native number
SQLSTATE_NUMBERS: Dict[str, int] = {
    "HYT00": -2,
    "HYT01": -2,
    "08S01": 11,
    "08001": 11,
    "40001": 1205,
}


def parse_pyodbc_error(exc: pyodbc.Error) -> Tuple[Optional[str], Optional[int], str]:
    """Extract (sqlstate, native number, message) from a pyodbc error."""
    sqlstate: Optional[str] = None
    message = str(exc)
    if len(exc.args) >= 2:
        sqlstate = str(exc.args[0])
        message = str(exc.args[1])
    elif len(exc.args) == 1:
        message = str(exc.args[0])

    number: Optional[int] = None
    match = _NATIVE_NUMBER.search(message) or _TRAILING_NUMBER.search(message)
    if match:
        number = int(match.group(1))
    elif sqlstate in SQLSTATE_NUMBERS:
        number = SQLSTATE_NUMBERS[sqlstate]
    return sqlstate, number, message


def translate_pyodbc_error(exc: pyodbc.Error, *, target_id: str) -> DataSourceError:
    """Translate a pyodbc error into a DataSourceError subclass.

    Connection-class SQLSTATEs (``08xxx``) become
    :class:`DataSourceConnectionError`; everything else becomes
    :class:`QueryError`.
    """
    sqlstate, number, message = parse_pyodbc_error(exc)
    is_connection_error = bool(sqlstate and sqlstate.startswith("08"))
    error_class = DataSourceConnectionError if is_connection_error else QueryError
    return error_class(
        message,
        number=number,
        sqlstate=sqlstate,
        code=ErrorCodes.CONNECTION_FAILED if is_connection_error else ErrorCodes.QUERY_EXECUTION_FAILED,
        context={"target": target_id},
        cause=exc,
    )


class MssqlDataSource(AsyncComponent[TargetConfig]):
    """SQL Server data source over pyodbc.

    The connection is opened lazily on first use and re-opened after a
    connection-level failure.

    Example:
        >>> async with MssqlDataSource(target_config) as source:
        ...     version = await source.scalar("SELECT @@VERSION")
    """

    component_name = "MssqlDataSource"
    version = "1.0.0"
    platform = "mssql"

    def __init__(self, config: TargetConfig) -> None:
        super().__init__(config)
        self.logger = get_logger(f"connector.mssql.{config.id}")
        self.perf_logger = get_performance_logger("connector.mssql", auto_log=False)
        self._connection: Optional[pyodbc.Connection] = None
        self._lock = asyncio.Lock()
        self._server_version: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        """Check if a connection is open."""
        return self._connection is not None

    def get_connection_info(self) -> Dict[str, Any]:
        """Connection details for diagnostics, without secrets."""
        return {
            "platform": self.platform,
            "target": self.config.id,
            "connection": self.config.connection_string,
            "connected": self.is_connected,
            "server_version": self._server_version,
        }

    async def _async_initialize(self) -> None:
        async with self._lock:
            await self._open()
        self.logger.info(
            "SQL Server data source initialized",
            connection=self.config.connection_string,
            server_version=self._server_version,
        )

    async def _async_cleanup(self) -> None:
        async with self._lock:
            await self._close_connection()

    async def _open(self) -> None:
        connection_string = self.config.build_odbc_connection_string()
        try:
            self._connection = await asyncio.to_thread(
                pyodbc.connect, connection_string, autocommit=True
            )
            self._server_version = await asyncio.to_thread(
                self._connection.getinfo, pyodbc.SQL_DBMS_VER
            )
        except pyodbc.Error as e:
            self._connection = None
            error = translate_pyodbc_error(e, target_id=self.config.id)
            raise DataSourceConnectionError(
                f"Failed to connect to {self.config.connection_string}: {error.message}",
                number=error.number,
                sqlstate=error.sqlstate,
                code=ErrorCodes.CONNECTION_FAILED,
                context={"target": self.config.id},
                cause=e,
            ) from e

    async def _close_connection(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        try:
            await asyncio.to_thread(connection.close)
        except pyodbc.Error as e:
            self.logger.warning("Error closing connection", error=str(e))
        self.logger.info("SQL Server connection closed")

    async def _call(self, func: Any, sql: str, params: Params, timeout: Optional[float]) -> Any:
        async with self._lock:
            if self._connection is None:
                await self._open()
            connection = self._connection
            try:
                with self.perf_logger.measure("statement"):
                    return await asyncio.to_thread(func, connection, sql, params, timeout)
            except pyodbc.Error as e:
                error = translate_pyodbc_error(e, target_id=self.config.id)
                if isinstance(error, DataSourceConnectionError) or error.number in (11, 233, 10054):
                    await self._close_connection()
                raise error from e

    @staticmethod
    def _cursor(connection: "pyodbc.Connection", sql: str, params: Params, timeout: Optional[float]) -> "pyodbc.Cursor":
        # pyodbc takes whole seconds and treats 0 as no limit
        connection.timeout = max(1, math.ceil(timeout)) if timeout else 0
        cursor = connection.cursor()
        if params:
            cursor.execute(sql, *params)
        else:
            cursor.execute(sql)
        return cursor

    @classmethod
    def _fetch_rows(cls, connection: "pyodbc.Connection", sql: str, params: Params, timeout: Optional[float]) -> List[Row]:
        cursor = cls._cursor(connection, sql, params, timeout)
        try:
            # Skip row counts produced by leading SET statements
            while cursor.description is None:
                if not cursor.nextset():
                    return []
            columns = [column[0] for column in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        finally:
            cursor.close()

    @classmethod
    def _fetch_scalar(cls, connection: "pyodbc.Connection", sql: str, params: Params, timeout: Optional[float]) -> Any:
        rows = cls._fetch_rows(connection, sql, params, timeout)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    @classmethod
    def _execute(cls, connection: "pyodbc.Connection", sql: str, params: Params, timeout: Optional[float]) -> int:
        cursor = cls._cursor(connection, sql, params, timeout)
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    async def query(self, sql: str, params: Params = None, *, timeout: Optional[float] = None) -> List[Row]:
        """Run a statement and return its rows as dictionaries."""
        return await self._call(self._fetch_rows, sql, params, timeout or self.config.command_timeout)

    async def scalar(self, sql: str, params: Params = None, *, timeout: Optional[float] = None) -> Any:
        """Run a statement and return the first column of the first row."""
        return await self._call(self._fetch_scalar, sql, params, timeout or self.config.command_timeout)

    async def execute(self, sql: str, params: Params = None, *, timeout: Optional[float] = None) -> int:
        """Run a statement that returns no rows."""
        return await self._call(self._execute, sql, params, timeout or self.config.command_timeout)

    async def close(self) -> None:
        """Close the connection and release the component."""
        await self.cleanup()
        async with self._lock:
            await self._close_connection()
