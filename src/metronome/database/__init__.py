"""Metronome data access layer.

This package defines the :class:`DataSource` contract, the SQL Server
connector and the :class:`ResilientExecutor` every query goes through.

Example:
    >>> from metronome.database import ResilientExecutor
    >>> from metronome.database.connectors import MssqlDataSource
    >>> executor = ResilientExecutor(MssqlDataSource(app_config.target))
"""

from .base import DataSource, Params, Row
from .executor import (
    READ_UNCOMMITTED_PREFIX,
    TRANSIENT_ERROR_NUMBERS,
    ErrorClass,
    ResilientExecutor,
    add_read_uncommitted_hint,
    classify_error,
    describe_error_number,
    is_read_only_query,
    sanitize_query_for_logging,
)

__all__ = [
    "DataSource",
    "Params",
    "Row",
    "READ_UNCOMMITTED_PREFIX",
    "TRANSIENT_ERROR_NUMBERS",
    "ErrorClass",
    "ResilientExecutor",
    "add_read_uncommitted_hint",
    "classify_error",
    "describe_error_number",
    "is_read_only_query",
    "sanitize_query_for_logging",
]
