"""Metronome exception hierarchy.

This module defines the structured exception hierarchy used across the
monitoring engine. Every exception carries an error code, a context
dictionary and an optional cause so failures can be logged and reported
without losing information.

Classes:
    MetronomeException: Base exception for all Metronome operations
    ConfigurationError: Configuration related errors
    DataSourceError: Errors reported by a monitored data source
    CollectionError: Snapshot collection errors
    AnalysisError: Analyzer execution errors
    DispatchError: Alert dispatch errors
    SchedulerError: Scheduler state errors
    OperationCancelledError: Cooperative cancellation signal

Example:
    >>> try:
    ...     await executor.query("SELECT 1")
    ... except DataSourceError as e:
    ...     logger.error("Query failed", error_code=e.code, number=e.number)
"""

from typing import Any, Dict, Optional


class MetronomeException(Exception):
    """Base exception for all Metronome operations.

    Attributes:
        code: Unique error code for categorization
        context: Additional context information about the error
        cause: Original exception that caused this error (if any)

    Example:
        >>> raise MetronomeException(
        ...     "Cycle failed",
        ...     code="CYCLE_FAILED",
        ...     context={"target": "prod-sql-01"}
        ... )
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        """Initialize Metronome exception.

        Args:
            message: Human-readable error description
            code: Unique error code for categorization (defaults to class name)
            context: Additional context information
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message: str = message
        self.code: str = code or self.__class__.__name__
        self.context: Dict[str, Any] = context or {}
        self.cause: Optional[BaseException] = cause

    def __str__(self) -> str:
        """Return formatted error message with code."""
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation of the exception."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"context={self.context!r}, "
            f"cause={self.cause!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary representation of the exception
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(MetronomeException):
    """Configuration related errors.

    Raised when configuration is invalid, missing, or cannot be loaded
    from the configured store.
    """
    pass


class ValidationError(ConfigurationError):
    """Data validation errors.

    Raised when input data fails validation rules, including type mismatches,
    value constraints, and format requirements.
    """
    pass


class DataSourceError(MetronomeException):
    """Error reported by a monitored data source.

    Carries the native server error number and SQLSTATE (when the driver
    exposes them) so the error can be classified as transient or permanent.

    Attributes:
        number: Native SQL Server error number, if known
        sqlstate: ODBC SQLSTATE, if known
    """

    def __init__(
        self,
        message: str,
        *,
        number: Optional[int] = None,
        sqlstate: Optional[str] = None,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        """Initialize data source error.

        Args:
            message: Human-readable error description
            number: Native SQL Server error number
            sqlstate: ODBC SQLSTATE code
            code: Unique error code for categorization
            context: Additional context information
            cause: Original driver exception
        """
        super().__init__(message, code=code, context=context, cause=cause)
        self.number = number
        self.sqlstate = sqlstate

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary including native error details."""
        data = super().to_dict()
        data.update({"number": self.number, "sqlstate": self.sqlstate})
        return data


class DataSourceConnectionError(DataSourceError):
    """Data source connection establishment errors."""
    pass


class QueryError(DataSourceError):
    """SQL statement execution errors."""
    pass


class CollectionError(MetronomeException):
    """Snapshot or metadata collection errors.

    Raised when a whole collection step fails. Failures of individual
    metric groups are recorded on the snapshot instead.
    """
    pass


class AnalysisError(MetronomeException):
    """Analyzer execution errors.

    Raised inside an analyzer; the pipeline catches it and treats the
    analyzer as having produced no issues.
    """
    pass


class StoreError(MetronomeException):
    """Issue or metrics store errors."""
    pass


class DispatchError(MetronomeException):
    """Alert dispatch errors."""
    pass


class ChannelError(DispatchError):
    """Notification channel delivery errors.

    Raised by a channel when delivery fails. The dispatcher logs it and
    continues with the remaining channels.
    """
    pass


class SchedulerError(MetronomeException):
    """Scheduler state machine errors."""
    pass


class OperationCancelledError(MetronomeException):
    """Raised when a cancellation token has been set.

    Long-running steps raise this between units of work so a cycle can
    abort early without recording partial analyzer output.
    """
    pass


class ErrorCodes:
    """Common error codes for Metronome exceptions."""

    # Configuration errors
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_INVALID = "CONFIG_INVALID"
    CONFIG_VALIDATION_FAILED = "CONFIG_VALIDATION_FAILED"

    # Data source errors
    CONNECTION_FAILED = "CONNECTION_FAILED"
    CONNECTION_NOT_OPEN = "CONNECTION_NOT_OPEN"
    QUERY_EXECUTION_FAILED = "QUERY_EXECUTION_FAILED"
    TRANSIENT_RETRIES_EXHAUSTED = "TRANSIENT_RETRIES_EXHAUSTED"
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"

    # Collection and analysis errors
    SNAPSHOT_COLLECTION_FAILED = "SNAPSHOT_COLLECTION_FAILED"
    METADATA_COLLECTION_FAILED = "METADATA_COLLECTION_FAILED"
    ANALYZER_FAILED = "ANALYZER_FAILED"
    ANALYZER_NOT_FOUND = "ANALYZER_NOT_FOUND"
    PATTERN_RULE_INVALID = "PATTERN_RULE_INVALID"

    # Store errors
    STORE_WRITE_FAILED = "STORE_WRITE_FAILED"

    # Dispatch errors
    CHANNEL_NOT_CONFIGURED = "CHANNEL_NOT_CONFIGURED"
    CHANNEL_DELIVERY_FAILED = "CHANNEL_DELIVERY_FAILED"

    # Scheduler errors
    INVALID_STATE = "INVALID_STATE"
    SCHEDULER_START_FAILED = "SCHEDULER_START_FAILED"
    CYCLE_FAILED = "CYCLE_FAILED"
    OPERATION_CANCELLED = "OPERATION_CANCELLED"


def create_error_from_exception(
    exc: BaseException,
    message: Optional[str] = None,
    code: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> MetronomeException:
    """Create Metronome exception from generic exception.

    Args:
        exc: Original exception to convert
        message: Override message (uses original if not provided)
        code: Error code to assign
        context: Additional context information

    Returns:
        Appropriate Metronome exception type

    Example:
        >>> try:
        ...     connection = open_connection()
        ... except ConnectionRefusedError as e:
        ...     raise create_error_from_exception(
        ...         e,
        ...         code=ErrorCodes.CONNECTION_FAILED,
        ...         context={"server": "prod-sql-01"}
        ...     )
    """
    if isinstance(exc, MetronomeException):
        return exc

    error_message = message or str(exc) or type(exc).__name__
    error_context = context or {}

    exception_mapping = {
        ConnectionRefusedError: DataSourceConnectionError,
        ConnectionResetError: DataSourceConnectionError,
        FileNotFoundError: ConfigurationError,
        ValueError: ValidationError,
        TypeError: ValidationError,
    }

    exception_class = exception_mapping.get(type(exc), MetronomeException)

    return exception_class(
        error_message,
        code=code,
        context=error_context,
        cause=exc,
    )
