"""Shared enumerations for Metronome.

These enums are used by configuration models, domain models, analyzers
and the alert dispatcher alike, so they live in the core package.

Example:
    >>> IssueSeverity.HIGH >= IssueSeverity.MEDIUM
    True
    >>> IssueSeverity.parse("critical")
    <IssueSeverity.CRITICAL: 4>
"""

from enum import Enum, IntEnum
from typing import Union


class IssueSeverity(IntEnum):
    """Totally ordered issue severity."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        """Display label, e.g. ``"High"``."""
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: Union[str, int, "IssueSeverity"]) -> "IssueSeverity":
        """Parse a severity from its name (any case) or numeric value.

        Raises:
            ValueError: If the value does not name a severity
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown issue severity: {value!r}") from None


class IssueType(str, Enum):
    """Closed taxonomy of issue categories."""

    SCHEMA = "Schema"
    PERFORMANCE = "Performance"
    INDEX = "Index"
    CONFIGURATION = "Configuration"
    SECURITY = "Security"
    BACKUP = "Backup"
    INTEGRITY = "Integrity"
    CAPACITY = "Capacity"
    CONNECTIVITY = "Connectivity"
    SYSTEM = "System"


class AlertType(str, Enum):
    """Alert categories that alert rules are keyed on."""

    HIGH_CPU = "HighCpu"
    LOW_MEMORY = "LowMemory"
    DISK_SPACE = "DiskSpace"
    IO_BOTTLENECK = "IoBottleneck"
    BLOCKING = "Blocking"
    DEADLOCK = "Deadlock"
    LONG_RUNNING_QUERY = "LongRunningQuery"
    BACKUP_FAILURE = "BackupFailure"
    JOB_FAILURE = "JobFailure"
    INTEGRITY_CHECK = "IntegrityCheck"
    SECURITY_ISSUE = "SecurityIssue"
    CONFIGURATION_ISSUE = "ConfigurationIssue"
    CONNECTIVITY_LOSS = "ConnectivityLoss"
    IDENTITY_COLUMN_EXHAUSTION = "IdentityColumnExhaustion"
    CUSTOM_CHECK = "CustomCheck"


class NotificationChannel(str, Enum):
    """Kinds of notification channel."""

    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    LOG = "log"
