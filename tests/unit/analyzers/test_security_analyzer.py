"""Unit tests for the security and code pattern analyzers."""

import pytest

from conftest import make_context, make_metadata
from metronome.analyzers import (
    CodePatternAnalyzer,
    SecurityAnalyzer,
    find_injection_pattern,
    load_default_pattern_rules,
    parse_pattern_rules,
)
from metronome.config import MonitoringConfig, PatternRule
from metronome.core.exceptions import ConfigurationError, ErrorCodes
from metronome.core.types import IssueSeverity, IssueType
from metronome.monitoring.models import ModuleDefinition, PrincipalInfo, SecurityInfo, SensitiveColumn

INJECTABLE = """CREATE PROCEDURE dbo.Search @Name nvarchar(100) AS
BEGIN
    DECLARE @sql nvarchar(max) = N'SELECT * FROM dbo.Customers WHERE Name = ''' + @Name + N'''';
    EXEC(@sql + N' ORDER BY Name');
END"""

SAFE = """CREATE PROCEDURE dbo.Lookup @Id int AS
SELECT Name FROM dbo.Customers WHERE Id = @Id;"""


def _procedure(definition, name="Search", type_desc="SQL_STORED_PROCEDURE"):
    return ModuleDefinition("dbo", name, type_desc, definition)


class TestInjectionPatterns:
    """Test dynamic SQL detection."""

    @pytest.mark.parametrize(
        "definition",
        [
            "EXEC('SELECT * FROM ' + @table)",
            "EXECUTE (@sql + @where)",
            "EXEC sp_executesql N'SELECT ' + @cols",
            "EXEC @cmd",
        ],
    )
    def test_detected(self, definition):
        """Test concatenated dynamic SQL is detected."""
        assert find_injection_pattern(definition) is not None

    def test_parameterized_is_clean(self):
        """Test parameterized statements are not flagged."""
        assert find_injection_pattern("EXEC sp_executesql @stmt, N'@id int', @id = @Id") is None
        assert find_injection_pattern(SAFE) is None


class TestSecurityAnalyzer:
    """Test security findings."""

    def _run(self, security=None, modules=(), is_encrypted=False):
        metadata = make_metadata(security=security, modules=modules, is_encrypted=is_encrypted)
        return SecurityAnalyzer().analyze(make_context(metadata))

    def test_clean_database(self):
        """Test a database without findings raises nothing."""
        assert self._run(SecurityInfo(), (_procedure(SAFE),)) == []

    def test_guest_and_power_users(self):
        """Test guest access is High and privileged members are Medium."""
        security = SecurityInfo(
            guest_permissions=("CONNECT",),
            power_users=(PrincipalInfo("app_user", "db_owner"),),
        )

        issues = self._run(security)

        assert [(i.severity, i.affected_object) for i in issues] == [
            (IssueSeverity.HIGH, "guest"),
            (IssueSeverity.MEDIUM, "app_user"),
        ]
        assert issues[0].sql_script == "REVOKE CONNECT FROM guest;"
        assert issues[1].metadata["role"] == "db_owner"

    def test_sensitive_columns_without_tde(self):
        """Test sensitive data requires TDE and column encryption."""
        security = SecurityInfo(
            sensitive_columns=(
                SensitiveColumn("dbo", "Customers", "SSN", "char"),
                SensitiveColumn("dbo", "Customers", "CardNumber", "varbinary", is_encrypted=True),
            )
        )

        issues = self._run(security)

        assert len(issues) == 2
        assert "SET ENCRYPTION ON" in issues[0].sql_script
        assert issues[1].affected_object == "dbo.Customers.SSN"

    def test_sensitive_columns_with_tde(self):
        """Test TDE removes the database-level finding."""
        security = SecurityInfo(sensitive_columns=(SensitiveColumn("dbo", "Customers", "SSN", "char"),))

        issues = self._run(security, is_encrypted=True)

        assert [i.affected_object for i in issues] == ["dbo.Customers.SSN"]

    def test_injectable_procedure_is_critical(self):
        """Test concatenated dynamic SQL in a procedure is Critical."""
        issues = self._run(modules=(_procedure(INJECTABLE), _procedure(INJECTABLE, "Fn", "SQL_SCALAR_FUNCTION")))

        assert len(issues) == 1
        assert issues[0].severity is IssueSeverity.CRITICAL
        assert issues[0].type is IssueType.SECURITY
        assert issues[0].affected_object == "dbo.Search"


class TestPatternRules:
    """Test pattern rule loading."""

    def test_defaults_load(self):
        """Test the packaged rules parse."""
        rules = load_default_pattern_rules()

        assert rules
        assert any(rule.pattern == r"SELECT\s+\*" for rule in rules)

    def test_invalid_document(self):
        """Test a document without a rules list is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            parse_pattern_rules("patterns: []")

        assert exc_info.value.code == ErrorCodes.PATTERN_RULE_INVALID

    def test_invalid_rule(self):
        """Test a rule missing fields is rejected."""
        with pytest.raises(ConfigurationError):
            parse_pattern_rules("rules:\n  - pattern: 'CURSOR'\n")


class TestCodePatternAnalyzer:
    """Test module text rules."""

    def test_default_rules(self):
        """Test one issue per matching rule with the rule's severity."""
        module = _procedure("CREATE PROCEDURE dbo.Report AS SELECT * FROM dbo.Orders CROSS JOIN dbo.Days", "Report")

        issues = CodePatternAnalyzer().analyze(make_context(make_metadata(modules=(module,))))

        by_category = {(i.metadata["category"], i.severity) for i in issues}
        assert ("best_practice", IssueSeverity.LOW) in by_category
        assert ("performance", IssueSeverity.MEDIUM) in by_category
        assert all(i.type is IssueType.PERFORMANCE for i in issues)
        assert issues[0].message.endswith("in stored procedure 'dbo.Report'")

    def test_configured_rules_replace_defaults(self):
        """Test rules from configuration are used instead of defaults."""
        rule = PatternRule(
            pattern=r"NOLOCK",
            description="Using NOLOCK hint",
            recommendation="Use snapshot isolation",
            category="best_practice",
            severity="medium",
        )
        config = MonitoringConfig(pattern_rules=[rule])
        module = _procedure("SELECT * FROM dbo.Orders WITH (nolock)", "Dirty", "SQL_TABLE_VALUED_FUNCTION")

        issues = CodePatternAnalyzer().analyze(make_context(make_metadata(modules=(module,)), config=config))

        assert len(issues) == 1
        assert issues[0].message == "Using NOLOCK hint in function 'dbo.Dirty'"
