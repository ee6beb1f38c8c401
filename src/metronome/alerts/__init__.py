"""Metronome alerting: rule evaluation and notification channels.

Example:
    >>> from metronome.alerts import AlertDispatcher, build_channels
    >>> dispatcher = AlertDispatcher(build_channels(app_config.channels))
"""

from .channels import (
    EmailChannel,
    LogChannel,
    NotificationSender,
    SmsChannel,
    WebhookChannel,
    build_channels,
)
from .dispatcher import (
    ISSUE_ALERT_TYPES,
    AlertDispatcher,
    Delivery,
    DispatchRecord,
    alert_type_for,
    configure_rule,
    rule_fires,
)
from .formatting import AlertMessage, alert_subject, format_alert

__all__ = [
    "AlertDispatcher",
    "Delivery",
    "DispatchRecord",
    "ISSUE_ALERT_TYPES",
    "alert_type_for",
    "configure_rule",
    "rule_fires",
    "AlertMessage",
    "alert_subject",
    "format_alert",
    "NotificationSender",
    "EmailChannel",
    "SmsChannel",
    "WebhookChannel",
    "LogChannel",
    "build_channels",
]
