"""Security analyzer: permissions, encryption and dynamic SQL injection risks."""

import re
from typing import List, Optional, Pattern, Tuple

from ..core.types import IssueSeverity, IssueType
from ..core.utils import StringUtils
from ..monitoring.models import Issue, ModuleDefinition
from .base import AnalysisContext, Analyzer

INJECTION_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"EXEC(?:UTE)?\s*\(\s*.*\+.*\)",
        r"sp_executesql\s+.*\+.*",
        r"DECLARE\s+@(?:sql|cmd)\s+.*\+.*\s+EXEC",
        r"EXEC\s+@(?:sql|cmd)\b",
    )
)

TDE_SCRIPT = """-- Create a master key and certificate if they do not exist
USE [master];
IF NOT EXISTS (SELECT 1 FROM sys.symmetric_keys WHERE name = '##MS_DatabaseMasterKey##')
    CREATE MASTER KEY ENCRYPTION BY PASSWORD = '<strong_password_here>';
IF NOT EXISTS (SELECT 1 FROM sys.certificates WHERE name = 'TDECertificate')
    CREATE CERTIFICATE TDECertificate WITH SUBJECT = 'TDE Certificate';
USE {database};
CREATE DATABASE ENCRYPTION KEY WITH ALGORITHM = AES_256 ENCRYPTION BY SERVER CERTIFICATE TDECertificate;
ALTER DATABASE {database} SET ENCRYPTION ON;"""


def find_injection_pattern(definition: str) -> Optional[str]:
    """Return the first dynamic-SQL concatenation pattern found in ``definition``."""
    for pattern in INJECTION_PATTERNS:
        if pattern.search(definition):
            return pattern.pattern
    return None


def _is_procedure(module: ModuleDefinition) -> bool:
    return "PROCEDURE" in module.type_desc.upper()


class SecurityAnalyzer(Analyzer):
    """Flags guest access, privileged users, unencrypted sensitive data and injectable procedures."""

    name = "security"
    description = "Permissions, encryption and SQL injection"
    requires = ("security", "modules")

    def analyze(self, context: AnalysisContext) -> List[Issue]:
        metadata = context.metadata
        issues: List[Issue] = []
        security = metadata.security

        if security is not None:
            if security.guest_has_access:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SECURITY,
                        IssueSeverity.HIGH,
                        f"Guest user has permissions in database '{metadata.name}'",
                        "Revoke permissions from the guest user to reduce security risk",
                        sql_script="REVOKE CONNECT FROM guest;",
                        affected_object="guest",
                        permissions=list(security.guest_permissions),
                    )
                )

            for principal in self.iterate(context, security.power_users):
                issues.append(
                    self.issue(
                        context,
                        IssueType.SECURITY,
                        IssueSeverity.MEDIUM,
                        f"User '{principal.name}' has high-privilege role in database '{metadata.name}'",
                        "Review if this user requires elevated permissions, and consider using a more restricted role",
                        affected_object=principal.name,
                        role=principal.role,
                    )
                )

            if security.sensitive_columns and not metadata.is_encrypted:
                issues.append(
                    self.issue(
                        context,
                        IssueType.SECURITY,
                        IssueSeverity.HIGH,
                        f"Database '{metadata.name}' potentially contains sensitive data but is not encrypted with TDE",
                        "Enable Transparent Data Encryption (TDE) to protect data at rest",
                        sql_script=TDE_SCRIPT.format(database=StringUtils.quote_identifier(metadata.name)),
                        affected_object=metadata.name,
                    )
                )

        for module in self.iterate(context, metadata.modules):
            if not _is_procedure(module):
                continue
            matched = find_injection_pattern(module.definition)
            if matched is None:
                continue
            issues.append(
                self.issue(
                    context,
                    IssueType.SECURITY,
                    IssueSeverity.CRITICAL,
                    f"Potential SQL injection vulnerability in stored procedure '{module.display_name}'",
                    "Review and parameterize dynamic SQL in this stored procedure",
                    affected_object=module.display_name,
                    pattern=matched,
                )
            )

        if security is not None:
            for column in self.iterate(context, security.sensitive_columns):
                if column.is_encrypted:
                    continue
                issues.append(
                    self.issue(
                        context,
                        IssueType.SECURITY,
                        IssueSeverity.HIGH,
                        f"Potential sensitive data in column '{column.table}.{column.column}' without encryption",
                        "Consider using Always Encrypted, column-level encryption or data masking for sensitive data",
                        affected_object=column.display_name,
                    )
                )

        return issues
