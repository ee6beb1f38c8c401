"""Unit tests for the analyzer pipeline."""

from typing import List

import pytest
from structlog.testing import capture_logs

from conftest import make_context, make_issue, make_metadata, make_snapshot
from metronome.analyzers import (
    AnalysisContext,
    Analyzer,
    AnalyzerPipeline,
    AnalyzerScope,
    default_pipeline,
    tiered_severity,
)
from metronome.config import MonitoringConfig
from metronome.core.exceptions import ErrorCodes, OperationCancelledError, ValidationError
from metronome.core.types import IssueSeverity
from metronome.core.utils import CancellationToken
from metronome.monitoring.models import Issue


class _Finding(Analyzer):
    name = "finding"
    requires = ("tables",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        return [make_issue(database_name=context.database_name)]


class _Broken(Analyzer):
    name = "broken"

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        raise KeyError("tables")


class _Server(Analyzer):
    name = "server"
    scopes = frozenset({AnalyzerScope.SERVER})
    requires = ("agent_jobs",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        return [make_issue(database_name=None)]


class _CancelsCycle(Analyzer):
    name = "cancels"

    def __init__(self, token: CancellationToken):
        super().__init__()
        self.token = token

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        self.token.cancel()
        return []


class TestRegistration:
    """Test analyzer registration."""

    def test_duplicate_name_rejected(self):
        """Test registering the same name twice raises ValidationError."""
        pipeline = AnalyzerPipeline([_Finding()])

        with pytest.raises(ValidationError):
            pipeline.register(_Finding())

    def test_unregister_unknown(self):
        """Test removing an unknown analyzer raises ANALYZER_NOT_FOUND."""
        with pytest.raises(ValidationError) as exc_info:
            AnalyzerPipeline().unregister("missing")

        assert exc_info.value.code == ErrorCodes.ANALYZER_NOT_FOUND

    def test_default_pipeline_names(self):
        """Test every built-in analyzer is registered once."""
        names = default_pipeline().names()

        assert len(names) == len(set(names)) == 11
        assert {"backup", "identity", "indexing", "performance", "security"} <= set(names)


class TestRun:
    """Test pipeline execution."""

    def test_failure_is_isolated(self):
        """Test a raising analyzer yields an error batch and others still run."""
        pipeline = AnalyzerPipeline([_Broken(), _Finding()])

        with capture_logs() as logs:
            batches = pipeline.run(make_context(make_metadata()))

        assert [b.analyzer for b in batches] == ["broken", "finding"]
        assert not batches[0].succeeded and batches[0].issues == []
        assert batches[1].succeeded and len(batches[1].issues) == 1
        assert any(e["event"] == "Analyzer failed" and e["analyzer"] == "broken" for e in logs)

    def test_scope_selection(self):
        """Test server contexts only run server analyzers."""
        pipeline = AnalyzerPipeline([_Finding(), _Server()])

        server = pipeline.run(make_context(snapshot=make_snapshot()))
        database = pipeline.run(make_context(make_metadata()))

        assert [b.analyzer for b in server] == ["server"]
        assert [b.analyzer for b in database] == ["finding"]

    def test_disabled_analyzers_skipped(self):
        """Test only analyzers named in config.analyzers run."""
        pipeline = AnalyzerPipeline([_Finding(), _Broken()])
        config = MonitoringConfig(analyzers=["finding"])

        batches = pipeline.run(make_context(make_metadata(), config=config))

        assert [b.analyzer for b in batches] == ["finding"]
        assert pipeline.required_sections(config) == frozenset({"tables"})

    def test_cancellation_stops_run(self):
        """Test cancelling mid-run raises before the next analyzer."""
        token = CancellationToken()
        pipeline = AnalyzerPipeline([_CancelsCycle(token), _Finding()])

        with pytest.raises(OperationCancelledError):
            pipeline.run(make_context(make_metadata(), token=token))


class TestTieredSeverity:
    """Test tier selection."""

    def test_worst_tier_wins(self):
        """Test the highest exceeded tier is returned."""
        tiers = [(80, IssueSeverity.HIGH), (95, IssueSeverity.CRITICAL)]

        assert tiered_severity(96, tiers) is IssueSeverity.CRITICAL
        assert tiered_severity(85, tiers) is IssueSeverity.HIGH
        assert tiered_severity(80, tiers) is None
