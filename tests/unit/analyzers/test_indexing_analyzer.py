"""Unit tests for the indexing analyzer and duplicate detection."""

from conftest import days_ago, make_context, make_metadata
from metronome.analyzers import IndexingAnalyzer, find_duplicate_indexes, is_potential_duplicate
from metronome.core.types import IssueSeverity, IssueType
from metronome.monitoring.models import IndexInfo, TableInfo

PK = IndexInfo("PK_Orders", index_type="CLUSTERED", is_primary_key=True, key_columns=("OrderId",), user_seeks=100)


def _table(*indexes, row_count=50000):
    return TableInfo("dbo", "Orders", row_count=row_count, indexes=(PK,) + indexes)


def _analyze(*tables):
    return IndexingAnalyzer().analyze(make_context(make_metadata(tables=tables)))


def _used(name, keys, **overrides):
    values = {"key_columns": keys, "user_seeks": 50, "last_user_seek": days_ago(1)}
    values.update(overrides)
    return IndexInfo(name, **values)


class TestDuplicateDetection:
    """Test overlapping index detection."""

    def test_same_key_set(self):
        """Test the same columns in a different order overlap."""
        assert is_potential_duplicate(_used("a", ("CustomerId", "OrderDate")), _used("b", ("OrderDate", "CustomerId")))

    def test_leading_prefix(self):
        """Test a leading prefix overlaps and a non-leading subset does not."""
        wide = _used("wide", ("CustomerId", "OrderDate", "Status"))

        assert is_potential_duplicate(_used("narrow", ("CustomerId",)), wide)
        assert not is_potential_duplicate(_used("other", ("OrderDate",)), wide)

    def test_primary_key_excluded(self):
        """Test clustered and primary key indexes are never paired."""
        assert find_duplicate_indexes((PK, _used("IX_OrderId", ("OrderId",)))) == []


class TestIndexingAnalyzer:
    """Test index maintenance findings."""

    def test_fragmentation_45_reorganize(self):
        """Test 45% fragmentation is Medium with REORGANIZE."""
        issues = _analyze(_table(_used("IX_Date", ("OrderDate",), fragmentation_percent=45.0, page_count=2000)))

        assert len(issues) == 1
        assert issues[0].severity is IssueSeverity.MEDIUM
        assert issues[0].type is IssueType.INDEX
        assert issues[0].sql_script == "ALTER INDEX [IX_Date] ON [dbo].[Orders] REORGANIZE;"

    def test_fragmentation_85_rebuild(self):
        """Test 85% fragmentation is High with REBUILD."""
        issues = _analyze(_table(_used("IX_Date", ("OrderDate",), fragmentation_percent=85.0)))

        assert [i.severity for i in issues] == [IssueSeverity.HIGH]
        assert issues[0].sql_script.endswith("REBUILD;")
        assert "85.00% fragmented" in issues[0].message

    def test_unknown_fragmentation_ignored(self):
        """Test indexes without fragmentation data raise nothing."""
        assert _analyze(_table(_used("IX_Date", ("OrderDate",)))) == []

    def test_unused_index(self):
        """Test a never-read index is reported with a drop script."""
        issues = _analyze(_table(IndexInfo("IX_Status", key_columns=("Status",), user_updates=900)))

        assert len(issues) == 1
        assert issues[0].affected_object == "dbo.Orders.IX_Status"
        assert issues[0].sql_script == "DROP INDEX [IX_Status] ON [dbo].[Orders];"

    def test_stale_index(self):
        """Test an index last read long ago but still written is unused."""
        stale = _used("IX_Status", ("Status",), last_user_seek=days_ago(45), user_updates=10)

        assert len(_analyze(_table(stale))) == 1

    def test_small_tables_skipped(self):
        """Test tables under the row floor are not analyzed."""
        unused = IndexInfo("IX_Status", key_columns=("Status",))

        assert _analyze(_table(unused, row_count=50)) == []

    def test_duplicate_consolidation_script(self):
        """Test overlapping indexes are consolidated into one index."""
        narrow = _used("IX_Customer", ("CustomerId",), included_columns=("Total",))
        wide = _used("IX_Customer_Date", ("CustomerId", "OrderDate"))

        issues = _analyze(_table(narrow, wide))

        assert len(issues) == 1
        script = issues[0].sql_script
        assert "DROP INDEX [IX_Customer] ON [dbo].[Orders];" in script
        assert "DROP INDEX [IX_Customer_Date] ON [dbo].[Orders];" in script
        assert "CREATE INDEX [IX_Orders_Consolidated] ON [dbo].[Orders] ([CustomerId]) INCLUDE ([Total]);" in script

    def test_redundant_duplicate_dropped(self):
        """Test a duplicate adding nothing is simply dropped."""
        keep = _used("IX_A", ("CustomerId", "OrderDate"), included_columns=("Total",))
        redundant = _used("IX_B", ("OrderDate", "CustomerId"))

        issues = _analyze(_table(keep, redundant))

        assert issues[0].sql_script == "DROP INDEX [IX_B] ON [dbo].[Orders];"
