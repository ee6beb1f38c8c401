"""Unit tests for the resilient executor."""

import asyncio

import pytest
from structlog.testing import capture_logs

from conftest import FakeDataSource, sequence
from metronome.core.exceptions import DataSourceError, OperationCancelledError, QueryError
from metronome.core.utils import CancellationToken
from metronome.database.executor import (
    READ_UNCOMMITTED_PREFIX,
    ErrorClass,
    ResilientExecutor,
    add_read_uncommitted_hint,
    classify_error,
    describe_error_number,
    is_read_only_query,
    sanitize_query_for_logging,
)

DEADLOCK = DataSourceError("Transaction was deadlocked", number=1205)
TIMEOUT = DataSourceError("Query timeout expired", number=-2)
NETWORK = DataSourceError("General network error", number=11)
MISSING_OBJECT = QueryError("Invalid object name 'dbo.Nope'", number=208)


class _Delays:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _HangingSource(FakeDataSource):
    """Data source whose queries take ``delay`` seconds and ignore ``timeout``."""

    def __init__(self, delay: float, responses=None):
        super().__init__(responses)
        self.delay = delay
        self.finished = 0

    async def query(self, sql, params=None, *, timeout=None):
        self.calls.append((sql, params))
        await asyncio.sleep(self.delay)
        self.finished += 1
        return [{"ok": 1}]


def _executor(source, **kwargs) -> ResilientExecutor:
    kwargs.setdefault("sleep", _Delays())
    return ResilientExecutor(source, **kwargs)


class TestClassifyError:
    """Test transient error classification."""

    @pytest.mark.parametrize("error", [DEADLOCK, TIMEOUT, NETWORK, asyncio.TimeoutError(), ConnectionResetError()])
    def test_transient(self, error):
        """Test deadlock, timeout and network errors are transient."""
        assert classify_error(error) is ErrorClass.TRANSIENT

    @pytest.mark.parametrize("error", [MISSING_OBJECT, DataSourceError("no number"), ValueError("bad")])
    def test_permanent(self, error):
        """Test everything else is permanent."""
        assert classify_error(error) is ErrorClass.PERMANENT


class TestResilientExecutor:
    """Test retry, backoff and cancellation."""

    @pytest.mark.asyncio
    async def test_eventually_succeeds(self):
        """Test transient failures are retried until the call succeeds."""
        source = FakeDataSource({"SELECT name": sequence(DEADLOCK, TIMEOUT, [{"name": "Sales"}])})
        executor = _executor(source)

        rows = await executor.query("SELECT name FROM sys.databases")

        assert rows == [{"name": "Sales"}]
        assert len(source.calls) == 3

    @pytest.mark.asyncio
    async def test_backoff_delays_double(self):
        """Test the delay before retry n is base * 2 ** (n - 1)."""
        delays = _Delays()
        source = FakeDataSource({"SELECT": DEADLOCK})
        executor = ResilientExecutor(source, max_retries=3, base_delay=0.5, sleep=delays)

        with pytest.raises(DataSourceError):
            await executor.scalar("SELECT 1")

        assert delays.delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_last_error_after_retries(self):
        """Test the final transient error is raised once attempts run out."""
        source = FakeDataSource({"SELECT": sequence(DEADLOCK, DEADLOCK, TIMEOUT)})
        executor = _executor(source, max_retries=2)

        with capture_logs() as logs:
            with pytest.raises(DataSourceError) as exc_info:
                await executor.query("SELECT 1")

        assert exc_info.value is TIMEOUT
        assert len(source.calls) == 3
        assert any(entry["event"] == "Transient error persisted after retries" for entry in logs)

    @pytest.mark.asyncio
    async def test_permanent_error_single_call(self):
        """Test a permanent error is raised after exactly one call."""
        source = FakeDataSource({"SELECT": MISSING_OBJECT})
        delays = _Delays()
        executor = ResilientExecutor(source, sleep=delays)

        with pytest.raises(QueryError):
            await executor.query("SELECT * FROM dbo.Nope")

        assert len(source.calls) == 1
        assert delays.delays == []

    @pytest.mark.asyncio
    async def test_read_uncommitted_prefix(self):
        """Test read-only statements get the isolation hint."""
        source = FakeDataSource()
        executor = _executor(source)

        await executor.query("SELECT 1")
        await executor.execute("UPDATE dbo.T SET x = 1")

        assert source.calls[0][0] == READ_UNCOMMITTED_PREFIX + "SELECT 1"
        assert source.calls[1][0] == "UPDATE dbo.T SET x = 1"

    @pytest.mark.asyncio
    async def test_cancelled_before_call(self):
        """Test a cancelled token prevents the call."""
        source = FakeDataSource()
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            await _executor(source).query("SELECT 1", cancellation_token=token)

        assert source.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_during_backoff(self):
        """Test cancellation while backing off stops further attempts."""
        token = CancellationToken()

        async def cancel_while_sleeping(delay: float) -> None:
            token.cancel()

        source = FakeDataSource({"SELECT": DEADLOCK})
        executor = ResilientExecutor(source, sleep=cancel_while_sleeping)

        with pytest.raises(OperationCancelledError):
            await executor.query("SELECT 1", cancellation_token=token)

        assert len(source.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_during_call(self):
        """Test a hung call is abandoned as soon as the token is set."""
        source = _HangingSource(delay=5.0)
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, token.cancel)
        started = loop.time()

        with pytest.raises(OperationCancelledError):
            await _executor(source).query("SELECT 1", cancellation_token=token)

        assert loop.time() - started < 1.0
        assert len(source.calls) == 1
        assert source.finished == 0

    @pytest.mark.asyncio
    async def test_command_timeout_enforced_and_retried(self):
        """Test a call ignoring its timeout is cut off and retried as a command timeout."""
        source = _HangingSource(delay=5.0)
        delays = _Delays()
        executor = ResilientExecutor(source, max_retries=2, command_timeout=0.05, sleep=delays)
        started = asyncio.get_running_loop().time()

        with pytest.raises(DataSourceError) as exc_info:
            await executor.query("SELECT 1")

        assert asyncio.get_running_loop().time() - started < 2.0
        assert exc_info.value.number == -2
        assert exc_info.value.code == "OPERATION_TIMEOUT"
        assert classify_error(exc_info.value) is ErrorClass.TRANSIENT
        assert len(source.calls) == 3
        assert delays.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_call_within_timeout_succeeds(self):
        """Test a call finishing inside its timeout returns its rows."""
        source = _HangingSource(delay=0.01)

        rows = await _executor(source).query("SELECT 1", timeout=1.0)

        assert rows == [{"ok": 1}]

    @pytest.mark.asyncio
    async def test_source_timeout_error_reraised_unchanged(self):
        """Test a data source's own TimeoutError is retried and re-raised as-is."""
        error = asyncio.TimeoutError()
        source = FakeDataSource({"SELECT": error})

        with pytest.raises(asyncio.TimeoutError) as exc_info:
            await _executor(source, max_retries=1).query("SELECT 1")

        assert exc_info.value is error
        assert len(source.calls) == 2

        assert len(source.calls) == 1

    def test_invalid_arguments(self):
        """Test negative retry settings are rejected."""
        with pytest.raises(ValueError):
            ResilientExecutor(FakeDataSource(), max_retries=-1)
        with pytest.raises(ValueError):
            ResilientExecutor(FakeDataSource(), base_delay=-0.1)


class TestQueryHelpers:
    """Test statement helpers."""

    def test_is_read_only_skips_comments(self):
        """Test leading comments are ignored when finding the first keyword."""
        assert is_read_only_query("-- waits\nWITH w AS (SELECT 1) SELECT * FROM w")
        assert is_read_only_query("/* hint */ SELECT 1")
        assert not is_read_only_query("EXEC sp_who2")

    def test_existing_hint_kept(self):
        """Test statements with NOLOCK are left unchanged."""
        sql = "SELECT * FROM dbo.Orders WITH (NOLOCK)"

        assert add_read_uncommitted_hint(sql) == sql

    def test_sanitize(self):
        """Test logged statements are truncated and passwords masked."""
        sanitized = sanitize_query_for_logging("CREATE LOGIN x WITH PASSWORD = 'hunter2'")

        assert "hunter2" not in sanitized
        assert len(sanitize_query_for_logging("SELECT " + "x" * 500)) == 203

    def test_describe_error_number(self):
        """Test known, unknown and missing error numbers."""
        assert "deadlock" in describe_error_number(1205)
        assert describe_error_number(99999) == "A database error occurred (error 99999)."
        assert describe_error_number(None) == "An unknown database error occurred."
