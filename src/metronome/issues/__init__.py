"""Metronome issue recording and persistence.

Example:
    >>> from metronome.issues import InMemoryIssueStore, IssueSink
    >>> sink = IssueSink(InMemoryIssueStore())
    >>> await sink.record(issues)
"""

from .sink import IssueSink
from .stores import (
    InMemoryIssueStore,
    InMemoryMetricsStore,
    IssueStore,
    MetricsStore,
    SqliteIssueStore,
    SqliteMetricsStore,
)

__all__ = [
    "IssueSink",
    "IssueStore",
    "MetricsStore",
    "InMemoryIssueStore",
    "InMemoryMetricsStore",
    "SqliteIssueStore",
    "SqliteMetricsStore",
]
