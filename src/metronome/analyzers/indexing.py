"""Indexing analyzer: unused, duplicate and fragmented indexes."""

from datetime import timedelta
from typing import List, Tuple

from ..core.types import IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import IndexInfo, Issue, TableInfo
from .base import AnalysisContext, Analyzer


def is_potential_duplicate(first: IndexInfo, second: IndexInfo) -> bool:
    """Check whether two indexes overlap.

    Indexes overlap when they have the same set of key columns, or when
    one key sequence is a leading prefix of the other.
    """
    a, b = first.key_columns, second.key_columns
    if not a or not b:
        return False
    if len(a) == len(b) and set(a) == set(b):
        return True
    shorter, longer = (a, b) if len(a) < len(b) else (b, a)
    return len(shorter) < len(longer) and longer[: len(shorter)] == shorter


def find_duplicate_indexes(indexes: Tuple[IndexInfo, ...]) -> List[Tuple[IndexInfo, IndexInfo]]:
    """Return overlapping pairs, skipping clustered and primary key indexes."""
    candidates = [index for index in indexes if not index.is_primary_key and not index.is_clustered]
    pairs = []
    for i, first in enumerate(candidates):
        for second in candidates[i + 1:]:
            if is_potential_duplicate(first, second):
                pairs.append((first, second))
    return pairs


def consolidation_script(table: TableInfo, first: IndexInfo, second: IndexInfo) -> str:
    """Script that consolidates an overlapping index pair.

    The index with more included columns is kept. If the other index adds
    key or included columns, both are replaced by one index over the kept
    keys including the union of included columns; otherwise the redundant
    index is simply dropped.
    """
    keep, drop = (first, second) if len(first.included_columns) >= len(second.included_columns) else (second, first)
    extra_keys = [column for column in drop.key_columns if column not in keep.key_columns]
    extra_includes = [column for column in drop.included_columns if column not in keep.included_columns]

    if not extra_keys and not extra_includes:
        return f"DROP INDEX {StringUtils.quote_identifier(drop.name)} ON {table.full_name};"

    included = list(keep.included_columns)
    for column in drop.included_columns:
        if column not in included:
            included.append(column)

    key_list = ", ".join(StringUtils.quote_identifier(column) for column in keep.key_columns)
    include_clause = ""
    if included:
        include_clause = " INCLUDE (" + ", ".join(StringUtils.quote_identifier(c) for c in included) + ")"
    new_name = StringUtils.quote_identifier(f"IX_{table.name}_Consolidated")

    return (
        "-- Drop both existing indexes\n"
        f"DROP INDEX {StringUtils.quote_identifier(first.name)} ON {table.full_name};\n"
        f"DROP INDEX {StringUtils.quote_identifier(second.name)} ON {table.full_name};\n"
        "-- Create a new consolidated index\n"
        f"CREATE INDEX {new_name} ON {table.full_name} ({key_list}){include_clause};"
    )


class IndexingAnalyzer(Analyzer):
    """Reports index maintenance opportunities on tables above the row floor."""

    name = "indexing"
    description = "Unused, duplicate and fragmented indexes"
    requires = ("tables",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        thresholds = context.thresholds
        unused_cutoff = context.now - timedelta(days=thresholds.unused_index_days)
        issues: List[Issue] = []

        for table in self.iterate(context, context.metadata.tables):
            if table.row_count < thresholds.index_min_table_rows:
                continue

            for index in table.indexes:
                if index.is_primary_key or index.is_clustered:
                    continue
                last_used = index.last_used
                never_read = index.total_reads == 0
                stale = last_used is not None and last_used < unused_cutoff and index.user_updates > 0
                if never_read or stale:
                    issues.append(
                        self.issue(
                            context,
                            IssueType.INDEX,
                            IssueSeverity.MEDIUM,
                            f"Unused index '{index.name}' on table '{table.display_name}'",
                            f"Consider dropping unused index '{index.name}' to improve write performance and reduce storage",
                            sql_script=f"DROP INDEX {StringUtils.quote_identifier(index.name)} ON {table.full_name};",
                            affected_object=f"{table.display_name}.{index.name}",
                            user_updates=index.user_updates,
                        )
                    )

            for first, second in find_duplicate_indexes(table.indexes):
                issues.append(
                    self.issue(
                        context,
                        IssueType.INDEX,
                        IssueSeverity.MEDIUM,
                        f"Potential duplicate indexes: '{first.name}' and '{second.name}' on table '{table.display_name}'",
                        "Consider consolidating these indexes to reduce overhead",
                        sql_script=consolidation_script(table, first, second),
                        affected_object=table.display_name,
                    )
                )

            for index in table.indexes:
                fragmentation = index.fragmentation_percent
                if fragmentation is None or fragmentation <= thresholds.fragmentation_reorganize_percent:
                    continue
                rebuild = fragmentation > thresholds.fragmentation_rebuild_percent
                action = "REBUILD" if rebuild else "REORGANIZE"
                issues.append(
                    self.issue(
                        context,
                        IssueType.INDEX,
                        IssueSeverity.HIGH if rebuild else IssueSeverity.MEDIUM,
                        f"Index '{index.name}' on table '{table.display_name}' is {fragmentation:,.2f}% fragmented",
                        f"Perform index maintenance ({action}) to reduce fragmentation",
                        sql_script=f"ALTER INDEX {StringUtils.quote_identifier(index.name)} ON {table.full_name} {action};",
                        affected_object=f"{table.display_name}.{index.name}",
                        fragmentation_percent=fragmentation,
                    )
                )

        return issues
