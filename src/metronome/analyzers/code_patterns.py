"""Code pattern analyzer.

Applies regex :class:`~metronome.config.models.PatternRule` objects to
module text. Rules come from ``MonitoringConfig.pattern_rules`` or, when
that is unset, from the packaged ``default_rules.yaml``.
"""

import re
from functools import lru_cache
from importlib import resources
from typing import List, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..config.models import PatternRule
from ..core.exceptions import ConfigurationError, ErrorCodes
from ..core.types import IssueType
from ..monitoring.models import Issue, ModuleDefinition
from .base import AnalysisContext, Analyzer

DEFAULT_RULES_RESOURCE = "default_rules.yaml"


def parse_pattern_rules(text: str, *, source: str = "<string>") -> Tuple[PatternRule, ...]:
    """Parse pattern rules from a YAML document with a top-level ``rules`` list.

    Raises:
        ConfigurationError: If the document or a rule is invalid
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid pattern rule file {source}: {e}",
            code=ErrorCodes.PATTERN_RULE_INVALID,
            context={"source": source},
            cause=e,
        ) from e

    rules = data.get("rules") if isinstance(data, dict) else None
    if not isinstance(rules, list):
        raise ConfigurationError(
            f"Pattern rule file {source} must contain a 'rules' list",
            code=ErrorCodes.PATTERN_RULE_INVALID,
            context={"source": source},
        )

    try:
        return tuple(PatternRule.model_validate(rule) for rule in rules)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid pattern rule in {source}",
            code=ErrorCodes.PATTERN_RULE_INVALID,
            context={"source": source, "errors": e.errors(include_url=False)},
            cause=e,
        ) from e


@lru_cache(maxsize=1)
def load_default_pattern_rules() -> Tuple[PatternRule, ...]:
    """Load the packaged default pattern rules."""
    text = resources.files(__package__).joinpath(DEFAULT_RULES_RESOURCE).read_text(encoding="utf-8")
    return parse_pattern_rules(text, source=DEFAULT_RULES_RESOURCE)


def _module_kind(module: ModuleDefinition) -> str:
    kind = module.type_desc.upper()
    if "PROCEDURE" in kind:
        return "stored procedure"
    if "FUNCTION" in kind:
        return "function"
    if "TRIGGER" in kind:
        return "trigger"
    return "module"


class CodePatternAnalyzer(Analyzer):
    """Reports one Performance issue per (module, matching rule).

    Args:
        rules: Fixed rules overriding both configuration and defaults
    """

    name = "code_patterns"
    description = "Regex rules over stored procedure, function and trigger text"
    requires = ("modules",)

    def __init__(self, rules: Optional[Sequence[PatternRule]] = None) -> None:
        super().__init__()
        self._rules = tuple(rules) if rules is not None else None

    def rules_for(self, context: AnalysisContext) -> Tuple[PatternRule, ...]:
        if self._rules is not None:
            return self._rules
        if context.config.pattern_rules is not None:
            return tuple(context.config.pattern_rules)
        return load_default_pattern_rules()

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        compiled: List[Tuple[PatternRule, "re.Pattern[str]"]] = [
            (rule, rule.compile()) for rule in self.rules_for(context)
        ]
        issues: List[Issue] = []

        for module in self.iterate(context, context.metadata.modules):
            kind = _module_kind(module)
            for rule, pattern in compiled:
                if not pattern.search(module.definition):
                    continue
                issues.append(
                    self.issue(
                        context,
                        IssueType.PERFORMANCE,
                        rule.severity,
                        f"{rule.description} in {kind} '{module.display_name}'",
                        rule.recommendation,
                        affected_object=module.display_name,
                        category=rule.category,
                        pattern=rule.pattern,
                    )
                )

        return issues
