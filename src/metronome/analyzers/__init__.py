"""Metronome analyzers.

Rule-based checks over a server snapshot or a database's metadata. Each
analyzer is pure: it reads an :class:`AnalysisContext` and returns issues.

Example:
    >>> from metronome.analyzers import AnalysisContext, default_pipeline
    >>> pipeline = default_pipeline()
    >>> batches = pipeline.run(AnalysisContext(config=config, metadata=metadata))
"""

from .backup import BackupAnalyzer
from .base import AnalysisContext, Analyzer, AnalyzerScope, tiered_severity
from .capacity import CapacityAnalyzer, monthly_growth_percent
from .code_patterns import CodePatternAnalyzer, load_default_pattern_rules, parse_pattern_rules
from .configuration import ConfigurationAnalyzer
from .identity import TYPE_MAX, IdentityAnalyzer, percent_used
from .indexing import IndexingAnalyzer, find_duplicate_indexes, is_potential_duplicate
from .integrity import IntegrityAnalyzer
from .jobs import JobAnalyzer
from .performance import PerformanceAnalyzer
from .pipeline import AnalyzerBatch, AnalyzerPipeline, default_pipeline
from .schema import SchemaAnalyzer
from .security import SecurityAnalyzer, find_injection_pattern

__all__ = [
    # Contract
    "Analyzer",
    "AnalyzerScope",
    "AnalysisContext",
    "tiered_severity",

    # Pipeline
    "AnalyzerBatch",
    "AnalyzerPipeline",
    "default_pipeline",

    # Analyzers
    "PerformanceAnalyzer",
    "SchemaAnalyzer",
    "IndexingAnalyzer",
    "ConfigurationAnalyzer",
    "SecurityAnalyzer",
    "CodePatternAnalyzer",
    "BackupAnalyzer",
    "CapacityAnalyzer",
    "JobAnalyzer",
    "IntegrityAnalyzer",
    "IdentityAnalyzer",

    # Helpers
    "TYPE_MAX",
    "percent_used",
    "monthly_growth_percent",
    "find_duplicate_indexes",
    "is_potential_duplicate",
    "find_injection_pattern",
    "parse_pattern_rules",
    "load_default_pattern_rules",
]
