"""Metronome core infrastructure.

This package provides the exception hierarchy, component base classes and
shared utilities used by every other Metronome package.

Example:
    >>> from metronome.core import CancellationToken, MetronomeException
    >>> token = CancellationToken()
"""

from .base import AsyncComponent, BaseComponent, ComponentState, LifecycleComponent
from .exceptions import (
    AnalysisError,
    ChannelError,
    CollectionError,
    ConfigurationError,
    DataSourceConnectionError,
    DataSourceError,
    DispatchError,
    ErrorCodes,
    MetronomeException,
    OperationCancelledError,
    QueryError,
    SchedulerError,
    StoreError,
    ValidationError,
    create_error_from_exception,
)
from .types import AlertType, IssueSeverity, IssueType, NotificationChannel
from .utils import (
    CancellationToken,
    FormatUtils,
    StringUtils,
    ValidationUtils,
    ensure_utc,
    utc_now,
)

__all__ = [
    # Base classes
    "BaseComponent",
    "AsyncComponent",
    "LifecycleComponent",
    "ComponentState",

    # Exceptions
    "MetronomeException",
    "ConfigurationError",
    "ValidationError",
    "DataSourceError",
    "DataSourceConnectionError",
    "QueryError",
    "CollectionError",
    "AnalysisError",
    "StoreError",
    "DispatchError",
    "ChannelError",
    "SchedulerError",
    "OperationCancelledError",
    "ErrorCodes",
    "create_error_from_exception",

    # Enumerations
    "AlertType",
    "IssueSeverity",
    "IssueType",
    "NotificationChannel",

    # Utilities
    "CancellationToken",
    "FormatUtils",
    "StringUtils",
    "ValidationUtils",
    "ensure_utc",
    "utc_now",
]
