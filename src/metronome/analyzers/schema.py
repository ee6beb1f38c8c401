"""Schema analyzer: table design and referential integrity checks."""

from typing import Dict, List, Optional

from ..core.types import IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import ColumnInfo, Issue, TableInfo
from .base import AnalysisContext, Analyzer

DEPRECATED_TYPES: Dict[str, str] = {
    "text": "VARCHAR(MAX)",
    "ntext": "NVARCHAR(MAX)",
    "image": "VARBINARY(MAX)",
}


def _primary_key_candidate(table: TableInfo) -> Optional[ColumnInfo]:
    """Pick an existing column suitable as primary key.

    Identity columns win; otherwise the first non-nullable column named
    ``ID``, ending in ``ID`` or named ``Key``.
    """
    for column in table.columns:
        if column.is_identity:
            return column
    for column in table.columns:
        name = column.name.lower()
        if (name == "id" or name.endswith("id") or name == "key") and not column.is_nullable:
            return column
    return None


def primary_key_script(table: TableInfo) -> str:
    """Script adding a clustered primary key to ``table``."""
    constraint = StringUtils.quote_identifier(f"PK_{table.name}")
    candidate = _primary_key_candidate(table)
    if candidate is not None:
        return (
            f"ALTER TABLE {table.full_name} ADD CONSTRAINT {constraint} "
            f"PRIMARY KEY CLUSTERED ({StringUtils.quote_identifier(candidate.name)});"
        )
    return (
        "-- Add a new identity column to serve as the primary key\n"
        f"ALTER TABLE {table.full_name} ADD [ID] INT IDENTITY(1,1) NOT NULL;\n"
        f"ALTER TABLE {table.full_name} ADD CONSTRAINT {constraint} PRIMARY KEY CLUSTERED ([ID]);"
    )


class SchemaAnalyzer(Analyzer):
    """Flags missing keys, wide tables, deprecated types and foreign key problems."""

    name = "schema"
    description = "Table design and referential integrity"
    requires = ("tables",)

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        issues: List[Issue] = []
        max_columns = context.thresholds.max_columns

        for table in self.iterate(context, context.metadata.tables):
            if not table.has_primary_key:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SCHEMA,
                        IssueSeverity.MEDIUM,
                        f"Table '{table.display_name}' does not have a primary key",
                        f"Add a primary key to '{table.display_name}' to improve query performance and data integrity",
                        sql_script=primary_key_script(table),
                        affected_object=table.display_name,
                    )
                )

            if len(table.columns) > max_columns:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SCHEMA,
                        IssueSeverity.MEDIUM,
                        f"Table '{table.display_name}' has {len(table.columns)} columns, which is excessive",
                        f"Consider normalizing table '{table.display_name}' by splitting it into multiple related tables",
                        affected_object=table.display_name,
                    )
                )

            for column in table.columns:
                issues.extend(self._check_column(context, table, column))

            issues.extend(self._check_foreign_keys(context, table))

        return issues

    def _check_column(self, context: AnalysisContext, table: TableInfo, column: ColumnInfo) -> List[Issue]:
        affected = f"{table.display_name}.{column.name}"
        if column.data_type == "nvarchar" and column.is_max:
            return [
                self.issue(
                    context,
                    IssueType.SCHEMA,
                    IssueSeverity.LOW,
                    f"Column '{column.name}' in table '{table.display_name}' uses nvarchar(MAX) which may lead "
                    "to performance issues if used frequently in queries",
                    "Consider using a fixed-length nvarchar type if the maximum length is known",
                    affected_object=affected,
                )
            ]
        if column.data_type in DEPRECATED_TYPES:
            return [
                self.issue(
                    context,
                    IssueType.SCHEMA,
                    IssueSeverity.MEDIUM,
                    f"Column '{column.name}' in table '{table.display_name}' uses deprecated data type '{column.data_type}'",
                    f"Replace '{column.data_type}' with a modern data type such as nvarchar(max), varchar(max), "
                    "or varbinary(max)",
                    sql_script=(
                        f"ALTER TABLE {table.full_name} ALTER COLUMN {StringUtils.quote_identifier(column.name)} "
                        f"{DEPRECATED_TYPES[column.data_type]};"
                    ),
                    affected_object=affected,
                )
            ]
        return []

    def _check_foreign_keys(self, context: AnalysisContext, table: TableInfo) -> List[Issue]:
        issues: List[Issue] = []
        indexed = {column for index in table.indexes for column in index.key_columns}

        for foreign_key in table.foreign_keys:
            for column in foreign_key.columns:
                if column in indexed:
                    continue
                index_name = StringUtils.quote_identifier(f"IX_{table.name}_{column}")
                issues.append(
                    self.issue(
                        context,
                        IssueType.SCHEMA,
                        IssueSeverity.MEDIUM,
                        f"Foreign key column '{column}' in table '{table.display_name}' is not indexed",
                        f"Add an index on foreign key column '{column}' to improve query performance",
                        sql_script=(
                            f"CREATE INDEX {index_name} ON {table.full_name} "
                            f"({StringUtils.quote_identifier(column)});"
                        ),
                        affected_object=f"{table.display_name}.{column}",
                    )
                )

            if foreign_key.is_disabled:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SCHEMA,
                        IssueSeverity.HIGH,
                        f"Foreign key '{foreign_key.name}' in table '{table.display_name}' is disabled",
                        "Enable the foreign key constraint to maintain referential integrity",
                        sql_script=(
                            f"ALTER TABLE {table.full_name} CHECK CONSTRAINT "
                            f"{StringUtils.quote_identifier(foreign_key.name)};"
                        ),
                        affected_object=f"{table.display_name}.{foreign_key.name}",
                    )
                )

        return issues
