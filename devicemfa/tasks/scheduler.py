"""
Background scheduler for credential maintenance.

Expired challenges and one-time codes are never valid, whether or not their
rows still exist; the purge task only keeps the tables small.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from devicemfa.config import settings
from devicemfa.core.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    """Represents a scheduled background task."""
    name: str
    func: Callable
    interval_seconds: int
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    enabled: bool = True
    running: bool = False

    def __post_init__(self):
        """Calculate next run time after initialization."""
        if self.next_run is None:
            self.next_run = utcnow() + timedelta(seconds=self.interval_seconds)

    def should_run(self, now: Optional[datetime] = None) -> bool:
        """Check if task should run now."""
        now = now or utcnow()
        return (
            self.enabled
            and not self.running
            and self.next_run is not None
            and now >= self.next_run
        )

    def mark_completed(self):
        """Mark task as completed and schedule next run."""
        self.last_run = utcnow()
        self.next_run = self.last_run + timedelta(seconds=self.interval_seconds)
        self.running = False

    def mark_started(self):
        """Mark task as started."""
        self.running = True


class BackgroundTaskScheduler:
    """Manages background task scheduling and execution."""

    def __init__(self, session_factory=None, purge_interval_seconds: Optional[int] = None, tick_seconds: float = 10):
        """
        Initialize task scheduler.

        Args:
            session_factory: Async session factory (defaults to the app's)
            purge_interval_seconds: Interval of the purge task; 0 disables it
            tick_seconds: How often due tasks are checked
        """
        if session_factory is None:
            from devicemfa.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.tick_seconds = tick_seconds
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False

        interval = settings.purge_interval_seconds if purge_interval_seconds is None else purge_interval_seconds
        if interval > 0:
            self.add_task(
                name="purge_expired_credentials",
                func=self.purge_expired_credentials,
                interval_seconds=interval,
            )

    def add_task(self, name: str, func: Callable, interval_seconds: int, enabled: bool = True):
        """Add a new scheduled task."""
        self.tasks[name] = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            enabled=enabled,
        )
        logger.info(f"Added background task: {name} (interval: {interval_seconds}s)")

    async def start(self):
        """Run due tasks until stopped."""
        if self.running:
            logger.warning("Task scheduler is already running")
            return

        self.running = True
        logger.info("Starting background task scheduler")

        while self.running:
            try:
                for task in list(self.tasks.values()):
                    if task.should_run():
                        await self._execute_task(task)

                await asyncio.sleep(self.tick_seconds)

            except asyncio.CancelledError:
                logger.info("Task scheduler cancelled")
                break
            except Exception as e:
                logger.error(f"Error in task scheduler: {e}")
                await asyncio.sleep(self.tick_seconds * 3)

        logger.info("Background task scheduler stopped")

    def stop(self):
        """Stop the task scheduler."""
        self.running = False
        logger.info("Stopping background task scheduler")

    async def _execute_task(self, task: ScheduledTask):
        """Execute a single task."""
        logger.debug(f"Executing background task: {task.name}")
        task.mark_started()

        try:
            await task.func()
            logger.debug(f"Task completed successfully: {task.name}")
        except Exception as e:
            logger.error(f"Task failed: {task.name} - {e}")
        finally:
            # Always reschedule so a failing task cannot wedge the loop
            task.mark_completed()

    async def purge_expired_credentials(self) -> Dict[str, int]:
        """Delete expired challenges and one-time codes."""
        from devicemfa.services.credential_authority import CredentialAuthority

        async with self.session_factory() as session:
            return await CredentialAuthority(session).purge_expired()

    def get_task_status(self) -> Dict[str, Any]:
        """Get status of all scheduled tasks."""
        return {
            "scheduler_running": self.running,
            "total_tasks": len(self.tasks),
            "tasks": {
                name: {
                    "enabled": task.enabled,
                    "running": task.running,
                    "interval_seconds": task.interval_seconds,
                    "last_run": task.last_run.isoformat() if task.last_run else None,
                    "next_run": task.next_run.isoformat() if task.next_run else None,
                }
                for name, task in self.tasks.items()
            },
        }


# Global task scheduler instance
_task_scheduler: Optional[BackgroundTaskScheduler] = None
_scheduler_task: Optional[asyncio.Task] = None


async def start_background_tasks(purge_interval_seconds: Optional[int] = None) -> Optional[BackgroundTaskScheduler]:
    """Start the global background task scheduler if any task is configured."""
    global _task_scheduler, _scheduler_task

    if _task_scheduler is not None and _task_scheduler.running:
        logger.warning("Background tasks are already running")
        return _task_scheduler

    scheduler = BackgroundTaskScheduler(purge_interval_seconds=purge_interval_seconds)
    if not scheduler.tasks:
        logger.info("No background tasks configured")
        return None

    _task_scheduler = scheduler
    _scheduler_task = asyncio.create_task(_task_scheduler.start())
    logger.info("Background tasks started")
    return _task_scheduler


async def stop_background_tasks():
    """Stop the global background task scheduler."""
    global _task_scheduler, _scheduler_task

    if _task_scheduler is not None:
        _task_scheduler.stop()

    if _scheduler_task is not None:
        _scheduler_task.cancel()
        try:
            await _scheduler_task
        except asyncio.CancelledError:
            pass
        _scheduler_task = None

    if _task_scheduler is not None:
        _task_scheduler = None
        logger.info("Background tasks stopped")
