"""
Background tasks for credential maintenance.

Expired challenges and codes are purged on an interval configured by
``MFA_PURGE_INTERVAL_SECONDS`` (disabled by default).
"""

from .scheduler import (
    BackgroundTaskScheduler,
    start_background_tasks,
    stop_background_tasks,
)

__all__ = [
    "BackgroundTaskScheduler",
    "start_background_tasks",
    "stop_background_tasks",
]
