"""Resilient execution of data source calls.

:class:`ResilientExecutor` wraps every data source call with transient
error classification, bounded retry with exponential backoff, a default
command timeout, cooperative cancellation, and a read-uncommitted hint for
read-only statements.

Functions:
    classify_error: Classify an exception as transient or permanent
    is_read_only_query: Check whether a statement only reads
    add_read_uncommitted_hint: Prefix read-only statements with a dirty-read hint
    sanitize_query_for_logging: Truncate and scrub a statement for logs
    describe_error_number: User-facing message for a SQL Server error number

Example:
    >>> executor = ResilientExecutor(data_source)
    >>> rows = await executor.query("SELECT name FROM sys.databases")
"""

import asyncio
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .base import DataSource, Params, Row
from ..core.exceptions import DataSourceError, ErrorCodes
from ..core.utils import CancellationToken, StringUtils
from ..logging import get_logger, get_performance_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.1
DEFAULT_COMMAND_TIMEOUT = 30.0
MAX_LOGGED_QUERY_LENGTH = 200

READ_UNCOMMITTED_PREFIX = "SET TRANSACTION ISOLATION LEVEL READ UNCOMMITTED;\r\n"

# Native error numbers that succeed on retry
TRANSIENT_ERROR_NUMBERS: Dict[int, str] = {
    1205: "deadlock victim",
    -2: "command timeout",
    11: "general network error",
}

ISOLATION_HINTS = ("WITH (NOLOCK)", "WITH(NOLOCK)", "READUNCOMMITTED", "READ UNCOMMITTED")

ERROR_MESSAGES: Dict[int, str] = {
    -2: "The command timed out. The server may be under heavy load.",
    11: "A network error occurred while communicating with the server.",
    53: "The server was not found or was not accessible.",
    208: "An object referenced by the query does not exist.",
    229: "The login does not have permission to perform this operation.",
    233: "The connection was closed by the server.",
    547: "The statement conflicted with a constraint.",
    1205: "The operation was chosen as a deadlock victim and can be retried.",
    1222: "A lock request timed out.",
    2627: "A primary key or unique constraint was violated.",
    4060: "The requested database cannot be opened.",
    8928: "DBCC reported an object inconsistency.",
    8939: "DBCC reported a table error.",
    8966: "DBCC could not read an allocation structure.",
    8976: "DBCC reported an extent inconsistency.",
    10054: "The connection was forcibly closed by the remote host.",
    10060: "The connection attempt timed out.",
    18456: "Login failed. Check the configured credentials.",
}

_FIRST_KEYWORD = re.compile(r"^\s*(?:--[^\n]*\n\s*|/\*.*?\*/\s*)*([A-Za-z]+)", re.DOTALL)
_PASSWORD_PATTERN = re.compile(r"""password\s*=\s*['"][^'"]*['"]""", re.IGNORECASE)


class ErrorClass(str, Enum):
    """Retry classification of a failed call."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_error(exc: BaseException) -> ErrorClass:
    """Classify an exception as transient or permanent.

    Transient errors are SQL Server deadlocks (1205), command timeouts (-2)
    and network errors (11), plus ``asyncio.TimeoutError`` and builtin
    ``ConnectionError``. Everything else is permanent.

    Example:
        >>> classify_error(DataSourceError("deadlocked", number=1205))
        <ErrorClass.TRANSIENT: 'transient'>
    """
    if isinstance(exc, DataSourceError):
        if exc.number in TRANSIENT_ERROR_NUMBERS:
            return ErrorClass.TRANSIENT
        return ErrorClass.PERMANENT
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def describe_error_number(number: Optional[int]) -> str:
    """Return a user-facing message for a SQL Server error number."""
    if number is None:
        return "An unknown database error occurred."
    return ERROR_MESSAGES.get(number, f"A database error occurred (error {number}).")


def is_read_only_query(sql: str) -> bool:
    """Check whether the first keyword of ``sql`` is SELECT or WITH.

    Leading comments are skipped.
    """
    match = _FIRST_KEYWORD.match(sql)
    return bool(match) and match.group(1).upper() in ("SELECT", "WITH")


def add_read_uncommitted_hint(sql: str) -> str:
    """Prefix a read-only statement with a READ UNCOMMITTED isolation hint.

    Statements that already carry an isolation hint, and statements that
    are not read-only, are returned unchanged.
    """
    if not is_read_only_query(sql):
        return sql
    upper = sql.upper()
    if any(hint in upper for hint in ISOLATION_HINTS):
        return sql
    return READ_UNCOMMITTED_PREFIX + sql


def sanitize_query_for_logging(sql: str) -> str:
    """Truncate a statement to 200 characters and mask password literals."""
    truncated = StringUtils.truncate_string(sql, MAX_LOGGED_QUERY_LENGTH)
    return _PASSWORD_PATTERN.sub("password='***'", truncated)


class ResilientExecutor:
    """Retrying wrapper around a :class:`DataSource`.

    Transient failures are retried up to ``max_retries`` additional times.
    The delay before retry ``n`` is ``base_delay * 2 ** (n - 1)``. Permanent
    failures, and the last transient failure once retries run out, are
    re-raised unchanged.

    Args:
        data_source: Data source to wrap
        max_retries: Additional attempts after the first call
        base_delay: Delay in seconds before the first retry
        command_timeout: Default per-call timeout in seconds
        sleep: Replacement for the backoff sleep, mainly for tests
        read_uncommitted: Apply the read-uncommitted hint to read-only queries
    """

    def __init__(
        self,
        data_source: DataSource,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        read_uncommitted: bool = True,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")

        self.data_source = data_source
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.command_timeout = command_timeout
        self.read_uncommitted = read_uncommitted
        self._sleep = sleep
        self._perf_logger = get_performance_logger("metronome.executor", auto_log=False)

    def backoff_delay(self, retry: int) -> float:
        """Delay in seconds before retry number ``retry`` (1-based)."""
        return self.base_delay * (2 ** (retry - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        timeout: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> T:
        """Run ``operation`` with transient-error retry.

        Each attempt is bounded by ``timeout`` and abandoned as soon as the
        token is set, even when the data source itself ignores both. An
        attempt that runs out of time fails with a transient command
        timeout (error -2) and is retried.

        Args:
            operation: Zero-argument coroutine factory performing one call
            description: Statement or label used in log messages
            timeout: Per-attempt limit in seconds, or None for no limit
            cancellation_token: Token observed before, during and between attempts

        Returns:
            The operation's result

        Raises:
            OperationCancelledError: If the token is set
            Exception: The operation's own error, unchanged
        """
        retry = 0
        while True:
            if cancellation_token is not None:
                cancellation_token.raise_if_cancelled(description)

            started = time.perf_counter()
            try:
                result = await self._attempt(operation, timeout, cancellation_token, description)
            except Exception as e:
                self._perf_logger.record_timing(
                    "data_source_call", time.perf_counter() - started, success=False, error=str(e)
                )
                if classify_error(e) is ErrorClass.PERMANENT:
                    raise

                if retry >= self.max_retries:
                    logger.error(
                        "Transient error persisted after retries",
                        attempts=retry + 1,
                        operation=sanitize_query_for_logging(description),
                        error=str(e),
                        error_number=getattr(e, "number", None),
                    )
                    raise

                retry += 1
                delay = self.backoff_delay(retry)
                logger.warning(
                    "Transient error, retrying",
                    attempt=retry,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                    operation=sanitize_query_for_logging(description),
                    error_number=getattr(e, "number", None),
                )
                await self._backoff(delay, cancellation_token)
                continue

            self._perf_logger.record_timing("data_source_call", time.perf_counter() - started)
            return result

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: Optional[float],
        token: Optional[CancellationToken],
        description: str,
    ) -> T:
        call = asyncio.ensure_future(self._bounded(operation, timeout, description))
        if token is None:
            return await call

        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({call, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)

        if call.cancelled():
            token.raise_if_cancelled(description)
        return call.result()

    async def _bounded(
        self, operation: Callable[[], Awaitable[T]], timeout: Optional[float], description: str
    ) -> T:
        if timeout is None:
            return await operation()
        call = asyncio.ensure_future(operation())
        try:
            done, _ = await asyncio.wait({call}, timeout=timeout)
        finally:
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)
        if not done:
            raise DataSourceError(
                f"Command timed out after {timeout:g}s",
                number=-2,
                code=ErrorCodes.OPERATION_TIMEOUT,
                context={"operation": sanitize_query_for_logging(description), "timeout_seconds": timeout},
            )
        return call.result()

    async def _backoff(self, delay: float, token: Optional[CancellationToken]) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            if token is not None:
                token.raise_if_cancelled("backoff")
        elif token is not None:
            await token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    def _prepare(self, sql: str) -> str:
        return add_read_uncommitted_hint(sql) if self.read_uncommitted else sql

    async def query(
        self,
        sql: str,
        params: Params = None,
        *,
        timeout: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> List[Row]:
        """Run a row-returning statement with retry."""
        statement = self._prepare(sql)
        effective_timeout = timeout or self.command_timeout
        return await self.run(
            lambda: self.data_source.query(statement, params, timeout=effective_timeout),
            description=sql,
            timeout=effective_timeout,
            cancellation_token=cancellation_token,
        )

    async def scalar(
        self,
        sql: str,
        params: Params = None,
        *,
        timeout: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Any:
        """Run a single-value statement with retry."""
        statement = self._prepare(sql)
        effective_timeout = timeout or self.command_timeout
        return await self.run(
            lambda: self.data_source.scalar(statement, params, timeout=effective_timeout),
            description=sql,
            timeout=effective_timeout,
            cancellation_token=cancellation_token,
        )

    async def execute(
        self,
        sql: str,
        params: Params = None,
        *,
        timeout: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> int:
        """Run a non-query statement with retry. No isolation hint is added."""
        effective_timeout = timeout or self.command_timeout
        return await self.run(
            lambda: self.data_source.execute(sql, params, timeout=effective_timeout),
            description=sql,
            timeout=effective_timeout,
            cancellation_token=cancellation_token,
        )
