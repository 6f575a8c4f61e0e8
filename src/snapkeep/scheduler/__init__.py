"""
Scheduler for recurring backups.

Runs full backups (followed by retention cleanup) and, optionally, incremental
backups on fixed intervals using a background thread.

Usage:
    from snapkeep.scheduler import Scheduler

    scheduler = Scheduler(manager, interval_hours=24, incremental_interval_hours=6)
    scheduler.start()

    # Check status
    status = scheduler.status()
    print(f"Next run: {status.next_run}")

    scheduler.stop()
"""

from snapkeep.scheduler.timer import (
    BackupRun,
    Scheduler,
    SchedulerAlreadyRunningError,
    SchedulerError,
    ScheduleStatus,
)

__all__ = [
    # Main class
    "Scheduler",
    # Dataclasses
    "ScheduleStatus",
    "BackupRun",
    # Errors
    "SchedulerError",
    "SchedulerAlreadyRunningError",
]
