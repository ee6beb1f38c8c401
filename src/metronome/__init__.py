"""Metronome - SQL Server Monitoring Engine.

Metronome periodically samples a SQL Server instance, runs rule-based
analyzers over the collected metrics and metadata, records the issues it
finds and dispatches alerts through e-mail, SMS, webhook and log channels.

Modules:
    core: Core infrastructure and base classes
    config: Configuration models and stores
    logging: Structured logging framework
    database: Data source contract and resilient executor
    monitoring: Snapshot and metadata collection
    analyzers: Rule-based analyzers and the analyzer pipeline
    issues: Issue sink and stores
    alerts: Alert rules and notification channels
    service: Scheduler and monitoring service

Example:
    >>> from metronome.config import load_app_config
    >>> from metronome.logging import configure_logging
    >>> from metronome.service import create_service
    >>>
    >>> app_config = load_app_config("metronome.yaml")
    >>> configure_logging(level=app_config.logging.level)
    >>> service = create_service(app_config)
    >>> await service.start()
"""

from . import alerts, analyzers, config, core, database, issues, logging, monitoring, service

__version__ = "0.1.0"
__title__ = "Metronome"
__description__ = "SQL Server Monitoring Engine"
__author__ = "Metronome Team"
__license__ = "MIT"

__all__ = [
    "core",
    "config",
    "logging",
    "database",
    "monitoring",
    "analyzers",
    "issues",
    "alerts",
    "service",
    "__version__",
    "__title__",
    "__description__",
    "__author__",
    "__license__",
]
