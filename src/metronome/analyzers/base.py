"""Analyzer contract for Metronome.

An analyzer is a pure, rule-based check. It receives an
:class:`AnalysisContext` and returns the issues it found; it never talks
to the data source and never records or dispatches issues itself.

Classes:
    AnalyzerScope: Whether an analyzer runs once per cycle or per database
    AnalysisContext: Inputs of one analyzer run
    Analyzer: Base class for all analyzers

Example:
    >>> class GuestAnalyzer(Analyzer):
    ...     name = "guest"
    ...     requires = ("security",)
    ...
    ...     def analyze(self, context):
    ...         security = context.metadata.security
    ...         if security and security.guest_has_access:
    ...             return [self.issue(context, IssueType.SECURITY, IssueSeverity.HIGH, "Guest enabled")]
    ...         return []
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, FrozenSet, Iterable, Iterator, List, Optional, Tuple, TypeVar

from ..config.models import AnalyzerThresholds, MonitoringConfig
from ..core.types import AlertType, IssueSeverity, IssueType
from ..core.utils import CancellationToken, utc_now
from ..logging import get_logger
from ..monitoring.models import DatabaseMetadata, Issue, Snapshot

T = TypeVar("T")


class AnalyzerScope(str, Enum):
    """Where an analyzer runs in a cycle."""
    SERVER = "server"
    DATABASE = "database"


@dataclass(frozen=True)
class AnalysisContext:
    """Inputs of one analyzer run.

    ``metadata`` is ``None`` for server-scope runs. ``now`` is fixed for
    the whole cycle so every age comparison uses the same reference time.
    """
    config: MonitoringConfig
    snapshot: Optional[Snapshot] = None
    metadata: Optional[DatabaseMetadata] = None
    cancellation_token: Optional[CancellationToken] = None
    now: datetime = field(default_factory=utc_now)

    @property
    def scope(self) -> AnalyzerScope:
        return AnalyzerScope.SERVER if self.metadata is None else AnalyzerScope.DATABASE

    @property
    def thresholds(self) -> AnalyzerThresholds:
        return self.config.thresholds

    @property
    def database_name(self) -> Optional[str]:
        return self.metadata.name if self.metadata is not None else None

    def check_cancelled(self, operation: Optional[str] = None) -> None:
        """Raise OperationCancelledError if the cycle was cancelled."""
        if self.cancellation_token is not None:
            self.cancellation_token.raise_if_cancelled(operation)

    def for_database(self, metadata: DatabaseMetadata) -> "AnalysisContext":
        """Return a database-scope copy of this context."""
        return AnalysisContext(
            config=self.config,
            snapshot=self.snapshot,
            metadata=metadata,
            cancellation_token=self.cancellation_token,
            now=self.now,
        )


class Analyzer(ABC):
    """Base class for all analyzers.

    Subclasses set ``name`` (the key used by ``MonitoringConfig.analyzers``),
    ``scopes`` and ``requires``, the metadata detail sections the analyzer
    reads, and implement :meth:`analyze`.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    scopes: ClassVar[FrozenSet[AnalyzerScope]] = frozenset({AnalyzerScope.DATABASE})
    requires: ClassVar[Tuple[str, ...]] = ()

    def __init__(self) -> None:
        self.logger = get_logger(f"metronome.analyzers.{self.name}")

    def supports(self, scope: AnalyzerScope) -> bool:
        return scope in self.scopes

    @abstractmethod
    def analyze(self, context: AnalysisContext) -> List[Issue]:
        """Return the issues found in ``context``.

        Raises:
            OperationCancelledError: If the cycle token is set
        """

    def iterate(self, context: AnalysisContext, items: Optional[Iterable[T]]) -> Iterator[T]:
        """Iterate ``items`` checking cancellation before each unit of work."""
        for item in items or ():
            context.check_cancelled(self.name)
            yield item

    def issue(
        self,
        context: AnalysisContext,
        issue_type: IssueType,
        severity: IssueSeverity,
        message: str,
        recommended_action: str = "",
        *,
        sql_script: Optional[str] = None,
        affected_object: Optional[str] = None,
        alert_type: Optional[AlertType] = None,
        **metadata: Any,
    ) -> Issue:
        """Build an issue scoped to the context's database."""
        return Issue(
            type=issue_type,
            severity=severity,
            message=message,
            recommended_action=recommended_action,
            sql_script=sql_script,
            affected_object=affected_object,
            database_name=context.database_name,
            alert_type=alert_type,
            metadata={"analyzer": self.name, **metadata},
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


def tiered_severity(
    value: float,
    tiers: Iterable[Tuple[float, IssueSeverity]],
) -> Optional[IssueSeverity]:
    """Return the severity of the highest tier ``value`` exceeds.

    Args:
        value: Measured value
        tiers: ``(threshold, severity)`` pairs; order does not matter

    Returns:
        Worst matching severity, or None when no threshold is exceeded

    Example:
        >>> tiered_severity(700, [(30, IssueSeverity.LOW), (600, IssueSeverity.MEDIUM)])
        <IssueSeverity.MEDIUM: 2>
    """
    matched = [severity for threshold, severity in tiers if value > threshold]
    return max(matched) if matched else None


def age_in_hours(now: datetime, then: datetime) -> float:
    return (now - then).total_seconds() / 3600.0


def age_in_days(now: datetime, then: datetime) -> float:
    return (now - then).total_seconds() / 86400.0
