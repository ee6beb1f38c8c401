"""Alert message formatting."""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..core.types import AlertType, NotificationChannel
from ..core.utils import utc_now
from ..monitoring.models import Issue


@dataclass(frozen=True)
class AlertMessage:
    """Rendered alert.

    Attributes:
        subject: ``SQL Server Alert: {Severity} {AlertType} Issue``
        body: Multi-line body for e-mail, webhook and log channels
        short_text: Single-line text for SMS
    """
    subject: str
    body: str
    short_text: str

    def text_for(self, channel: NotificationChannel) -> str:
        """Body text appropriate for ``channel``."""
        return self.short_text if channel == NotificationChannel.SMS else self.body


def alert_subject(issue: Issue, alert_type: AlertType) -> str:
    return f"SQL Server Alert: {issue.severity.label} {alert_type.value} Issue"


def format_alert(
    issue: Issue,
    alert_type: AlertType,
    *,
    server: str = "Unknown",
    include_details: bool = True,
    now: Optional[datetime] = None,
) -> AlertMessage:
    """Render the subject, body and SMS text for an issue.

    Example:
        >>> message = format_alert(issue, AlertType.BACKUP_FAILURE, server="sql01")
        >>> message.subject
        'SQL Server Alert: High BackupFailure Issue'
    """
    subject = alert_subject(issue, alert_type)
    timestamp = issue.detection_time or now or utc_now()
    lines: List[str] = [
        f"Server: {server}",
        f"Database: {issue.database_name or 'N/A'}",
        f"Time: {timestamp:%Y-%m-%d %H:%M:%S %Z}".rstrip(),
        f"Issue Type: {issue.type.value}",
        f"Severity: {issue.severity.label}",
        f"Message: {issue.message}",
    ]

    if include_details:
        lines += [
            "",
            "Details:",
            f"Affected Object: {issue.affected_object or 'N/A'}",
            f"Recommended Action: {issue.recommended_action}",
        ]
        if issue.sql_script:
            lines += ["", "Suggested Fix Script:", issue.sql_script]

    return AlertMessage(
        subject=subject,
        body="\n".join(lines) + "\n",
        short_text=f"{subject}: {issue.message}",
    )
