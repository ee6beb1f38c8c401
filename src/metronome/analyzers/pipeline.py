"""Analyzer pipeline.

Holds the registered analyzers and runs the enabled ones for a scope. A
failing analyzer is logged and contributes no issues; cancellation aborts
the run.

Classes:
    AnalyzerBatch: Output of one analyzer run
    AnalyzerPipeline: Registry and runner of analyzers

Example:
    >>> pipeline = default_pipeline()
    >>> batches = pipeline.run(AnalysisContext(config=config, snapshot=snapshot))
    >>> issues = [issue for batch in batches for issue in batch.issues]
"""

import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional

from ..config.models import MonitoringConfig
from ..core.exceptions import ErrorCodes, OperationCancelledError, ValidationError
from ..logging import get_logger
from ..monitoring.models import Issue
from .backup import BackupAnalyzer
from .base import AnalysisContext, Analyzer, AnalyzerScope
from .capacity import CapacityAnalyzer
from .code_patterns import CodePatternAnalyzer
from .configuration import ConfigurationAnalyzer
from .identity import IdentityAnalyzer
from .indexing import IndexingAnalyzer
from .integrity import IntegrityAnalyzer
from .jobs import JobAnalyzer
from .performance import PerformanceAnalyzer
from .schema import SchemaAnalyzer
from .security import SecurityAnalyzer


@dataclass
class AnalyzerBatch:
    """Issues produced by one analyzer run.

    ``error`` holds the failure message when the analyzer raised; its
    ``issues`` are then empty.
    """
    analyzer: str
    issues: List[Issue] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None


class AnalyzerPipeline:
    """Registry and sequential runner of analyzers.

    Analyzers run one at a time in registration order, so issue order is
    stable for a given input.

    Example:
        >>> pipeline = AnalyzerPipeline()
        >>> pipeline.register(BackupAnalyzer())
        >>> pipeline.names()
        ['backup']
    """

    def __init__(self, analyzers: Optional[Iterable[Analyzer]] = None) -> None:
        self._analyzers: Dict[str, Analyzer] = {}
        self._logger = get_logger("metronome.analyzers.pipeline")
        for analyzer in analyzers or ():
            self.register(analyzer)

    def register(self, analyzer: Analyzer) -> None:
        """Register an analyzer.

        Raises:
            ValidationError: If an analyzer with the same name exists
        """
        if not analyzer.name:
            raise ValidationError(
                f"Analyzer has no name: {analyzer!r}",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
            )
        if analyzer.name in self._analyzers:
            raise ValidationError(
                f"Analyzer already registered: {analyzer.name}",
                code=ErrorCodes.CONFIG_VALIDATION_FAILED,
                context={"analyzer": analyzer.name},
            )
        self._analyzers[analyzer.name] = analyzer
        self._logger.info(
            "Analyzer registered",
            analyzer=analyzer.name,
            scopes=sorted(scope.value for scope in analyzer.scopes),
        )

    def unregister(self, name: str) -> Analyzer:
        """Remove and return the named analyzer.

        Raises:
            ValidationError: If no analyzer has that name
        """
        try:
            return self._analyzers.pop(name)
        except KeyError:
            raise ValidationError(
                f"Analyzer not found: {name}",
                code=ErrorCodes.ANALYZER_NOT_FOUND,
                context={"analyzer": name},
            ) from None

    def get(self, name: str) -> Optional[Analyzer]:
        return self._analyzers.get(name)

    def names(self) -> List[str]:
        return list(self._analyzers)

    def enabled(self, scope: AnalyzerScope, config: MonitoringConfig) -> List[Analyzer]:
        """Analyzers supporting ``scope`` and enabled in ``config``."""
        return [
            analyzer
            for analyzer in self._analyzers.values()
            if analyzer.supports(scope) and config.is_analyzer_enabled(analyzer.name)
        ]

    def required_sections(self, config: MonitoringConfig) -> FrozenSet[str]:
        """Metadata detail sections read by the enabled database analyzers."""
        return frozenset(
            section
            for analyzer in self.enabled(AnalyzerScope.DATABASE, config)
            for section in analyzer.requires
        )

    def run(self, context: AnalysisContext) -> List[AnalyzerBatch]:
        """Run every enabled analyzer for the context's scope.

        Raises:
            OperationCancelledError: If the context's token is set
        """
        batches: List[AnalyzerBatch] = []

        for analyzer in self.enabled(context.scope, context.config):
            context.check_cancelled("analysis")
            started = time.perf_counter()
            try:
                issues = list(analyzer.analyze(context))
            except OperationCancelledError:
                raise
            except Exception as e:
                duration_ms = (time.perf_counter() - started) * 1000
                self._logger.error(
                    "Analyzer failed",
                    analyzer=analyzer.name,
                    database=context.database_name,
                    error=str(e),
                    error_type=type(e).__name__,
                    code=ErrorCodes.ANALYZER_FAILED,
                )
                batches.append(AnalyzerBatch(analyzer.name, error=str(e), duration_ms=duration_ms))
                continue

            duration_ms = (time.perf_counter() - started) * 1000
            self._logger.debug(
                "Analyzer completed",
                analyzer=analyzer.name,
                database=context.database_name,
                issue_count=len(issues),
                duration_ms=round(duration_ms, 2),
            )
            batches.append(AnalyzerBatch(analyzer.name, issues=issues, duration_ms=duration_ms))

        return batches


def default_pipeline() -> AnalyzerPipeline:
    """Pipeline with every built-in analyzer registered."""
    return AnalyzerPipeline(
        [
            PerformanceAnalyzer(),
            SchemaAnalyzer(),
            IndexingAnalyzer(),
            ConfigurationAnalyzer(),
            SecurityAnalyzer(),
            CodePatternAnalyzer(),
            BackupAnalyzer(),
            CapacityAnalyzer(),
            JobAnalyzer(),
            IntegrityAnalyzer(),
            IdentityAnalyzer(),
        ]
    )
