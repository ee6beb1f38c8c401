"""Metronome configuration management.

This package provides the type-safe configuration models and the stores
the engine reads its monitoring configuration from.

Example:
    >>> from metronome.config import YamlConfigStore, load_app_config
    >>> app_config = load_app_config("metronome.yaml")
    >>> store = YamlConfigStore("metronome.yaml")
"""

from .models import (
    AlertRule,
    AnalyzerThresholds,
    AppConfig,
    BaseConfig,
    ChannelSettings,
    CredentialConfig,
    LoggingConfig,
    MonitoringConfig,
    Notification,
    PatternRule,
    SmsSettings,
    SmtpSettings,
    StorageConfig,
    TargetConfig,
    WebhookSettings,
)
from .store import ConfigStore, InMemoryConfigStore, YamlConfigStore, load_app_config

__all__ = [
    "AlertRule",
    "AnalyzerThresholds",
    "AppConfig",
    "BaseConfig",
    "ChannelSettings",
    "CredentialConfig",
    "LoggingConfig",
    "MonitoringConfig",
    "Notification",
    "PatternRule",
    "SmsSettings",
    "SmtpSettings",
    "StorageConfig",
    "TargetConfig",
    "WebhookSettings",
    "ConfigStore",
    "InMemoryConfigStore",
    "YamlConfigStore",
    "load_app_config",
]
