"""Metronome monitoring service and scheduler.

Example:
    >>> from metronome.service import create_service
    >>> service = create_service(load_app_config("metronome.yaml"))
    >>> await service.start()
"""

from .monitor import (
    CONNECTIVITY_ACTION,
    CycleResult,
    MonitoringService,
    StepError,
    create_service,
)
from .scheduler import DEFAULT_GRACE_PERIOD, CycleCallable, Scheduler, SchedulerState

__all__ = [
    "MonitoringService",
    "CycleResult",
    "StepError",
    "CONNECTIVITY_ACTION",
    "create_service",
    "Scheduler",
    "SchedulerState",
    "CycleCallable",
    "DEFAULT_GRACE_PERIOD",
]
