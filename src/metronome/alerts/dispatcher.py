"""Alert dispatcher.

Maps issues to alert types, matches them against alert rules and fans out
to every notification of each firing rule. Channel failures are logged
and never retried; one failing channel does not stop the others.

Example:
    >>> dispatcher = AlertDispatcher(build_channels(app_config.channels), server_name="sql01")
    >>> fired = await dispatcher.evaluate(issue, monitoring_config.alerts)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..config.models import AlertRule, Notification
from ..core.exceptions import ChannelError, ErrorCodes
from ..core.types import AlertType, IssueType, NotificationChannel
from ..core.utils import utc_now
from ..logging import get_logger
from ..monitoring.models import Issue
from .channels import NotificationSender
from .formatting import format_alert

ISSUE_ALERT_TYPES: Dict[IssueType, AlertType] = {
    IssueType.CONFIGURATION: AlertType.CONFIGURATION_ISSUE,
    IssueType.SECURITY: AlertType.SECURITY_ISSUE,
    IssueType.BACKUP: AlertType.BACKUP_FAILURE,
    IssueType.CAPACITY: AlertType.DISK_SPACE,
    IssueType.INTEGRITY: AlertType.INTEGRITY_CHECK,
    IssueType.SYSTEM: AlertType.JOB_FAILURE,
    IssueType.CONNECTIVITY: AlertType.CONNECTIVITY_LOSS,
}

CooldownKey = Tuple[AlertType, Optional[str], Optional[str]]


def alert_type_for(issue: Issue) -> AlertType:
    """Alert type of an issue: its explicit hint, else the type mapping."""
    if issue.alert_type is not None:
        return issue.alert_type
    return ISSUE_ALERT_TYPES.get(issue.type, AlertType.CUSTOM_CHECK)


def rule_fires(rule: AlertRule, issue: Issue, alert_type: AlertType) -> bool:
    return rule.enabled and rule.alert_type == alert_type and issue.severity >= rule.minimum_severity


def configure_rule(rules: Sequence[AlertRule], rule: AlertRule) -> List[AlertRule]:
    """Return ``rules`` with ``rule`` replacing any rule of the same alert type."""
    updated = [existing for existing in rules if existing.alert_type != rule.alert_type]
    position = next((i for i, existing in enumerate(rules) if existing.alert_type == rule.alert_type), None)
    if position is None:
        updated.append(rule)
    else:
        updated.insert(position, rule)
    return updated


@dataclass
class Delivery:
    """Outcome of one notification."""
    channel: NotificationChannel
    target: str
    success: bool
    error: Optional[str] = None


@dataclass
class DispatchRecord:
    """Outcome of evaluating one issue."""
    issue_id: str
    alert_type: AlertType
    fired: bool
    suppressed: bool = False
    deliveries: List[Delivery] = field(default_factory=list)


class AlertDispatcher:
    """Evaluates issues against alert rules and sends notifications.

    Args:
        channels: Notification senders keyed by channel kind
        server_name: Server name shown in alert bodies
        cooldown_seconds: Default repeat-alert suppression window, 0 disables
        clock: Time source for cooldown tracking
    """

    def __init__(
        self,
        channels: Mapping[NotificationChannel, NotificationSender],
        *,
        server_name: str = "Unknown",
        cooldown_seconds: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.channels = dict(channels)
        self.server_name = server_name
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_fired: Dict[CooldownKey, datetime] = {}
        self._history: List[DispatchRecord] = []
        self.logger = get_logger("metronome.alerts.dispatcher")

    @property
    def history(self) -> List[DispatchRecord]:
        return list(self._history)

    def _in_cooldown(self, key: CooldownKey, window: float, now: datetime) -> bool:
        if window <= 0:
            return False
        last = self._last_fired.get(key)
        return last is not None and (now - last).total_seconds() < window

    async def evaluate(
        self,
        issue: Issue,
        rules: Sequence[AlertRule],
        *,
        cooldown_seconds: Optional[float] = None,
    ) -> bool:
        """Fire every matching rule for ``issue``.

        Args:
            issue: Recorded issue
            rules: All configured alert rules
            cooldown_seconds: Overrides the dispatcher's cooldown window

        Returns:
            True if at least one rule fired
        """
        alert_type = alert_type_for(issue)
        firing = [rule for rule in rules if rule_fires(rule, issue, alert_type)]
        record = DispatchRecord(issue_id=issue.id, alert_type=alert_type, fired=False)
        if not firing:
            self._history.append(record)
            return False

        now = self._clock()
        key: CooldownKey = (alert_type, issue.database_name, issue.affected_object)
        window = self.cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        if self._in_cooldown(key, window, now):
            record.suppressed = True
            self._history.append(record)
            self.logger.info(
                "Alert suppressed by cooldown",
                alert_type=alert_type.value,
                database=issue.database_name,
                affected_object=issue.affected_object,
            )
            return False

        self._last_fired[key] = now
        record.fired = True
        for rule in firing:
            self.logger.info(
                "Alert rule fired",
                rule=rule.name,
                alert_type=alert_type.value,
                severity=issue.severity.label,
                database=issue.database_name,
                notification_count=len(rule.notifications),
            )
            for notification in rule.notifications:
                record.deliveries.append(await self._notify(issue, alert_type, notification, now))

        self._history.append(record)
        return True

    async def _notify(
        self, issue: Issue, alert_type: AlertType, notification: Notification, now: datetime
    ) -> Delivery:
        sender = self.channels.get(notification.channel)
        if sender is None:
            self.logger.error(
                "Notification channel not configured",
                channel=notification.channel.value,
                target=notification.target,
                code=ErrorCodes.CHANNEL_NOT_CONFIGURED,
            )
            return Delivery(notification.channel, notification.target, False, "channel not configured")

        message = format_alert(
            issue,
            alert_type,
            server=self.server_name,
            include_details=notification.include_details,
            now=now,
        )
        try:
            await sender.send(
                notification,
                message.subject,
                message.text_for(notification.channel),
                issue=issue,
            )
        except ChannelError as e:
            self.logger.error(
                "Notification delivery failed",
                channel=notification.channel.value,
                target=notification.target,
                error=e.message,
                code=e.code,
            )
            return Delivery(notification.channel, notification.target, False, e.message)
        except Exception as e:
            self.logger.error(
                "Notification delivery failed",
                channel=notification.channel.value,
                target=notification.target,
                error=str(e),
                error_type=type(e).__name__,
            )
            return Delivery(notification.channel, notification.target, False, str(e))

        return Delivery(notification.channel, notification.target, True)
