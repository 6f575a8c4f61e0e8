"""
Built-in scheduler for recurring backups.

Runs on a daemon thread, independent of whatever else the process does. Each
full cycle creates a backup named ``scheduled`` and then applies the
retention policy. Optionally, incremental backups run on a shorter interval
with the checkpoint set to the time of the previous run (kept in memory).

A failing run is logged and reported to the ``on_error`` callback; the next
tick still runs. On stop, an in-flight backup either completes or aborts
through the atomic rename, so no half-written file is left behind.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from snapkeep.backup.writer import utc_now

if TYPE_CHECKING:
    from snapkeep.backup.manager import BackupManager

logger = logging.getLogger(__name__)

SCHEDULED_BACKUP_NAME = "scheduled"
SCHEDULED_INCREMENTAL_NAME = "incremental"

# Upper bound on a single wait, so clock changes are noticed
MAX_WAIT_SECONDS = 300.0


class SchedulerError(Exception):
    """Base exception for scheduler errors."""

    pass


class SchedulerAlreadyRunningError(SchedulerError):
    """Raised when the scheduler is already running."""

    pass


@dataclass
class ScheduleStatus:
    """
    Current status of the scheduler.

    Attributes:
        enabled: Whether the scheduler thread is running.
        interval_hours: Hours between full backups.
        incremental_interval_hours: Hours between incremental backups (0 = off).
        next_run: Time of the next full backup.
        next_incremental_run: Time of the next incremental backup.
        last_run: Completion time of the last run of either kind.
        last_run_success: Whether the last run succeeded.
        last_run_error: Error message from last failed run, if any.
        runs: Number of runs since start.
    """

    enabled: bool = False
    interval_hours: float = 24
    incremental_interval_hours: float = 0
    next_run: datetime | None = None
    next_incremental_run: datetime | None = None
    last_run: datetime | None = None
    last_run_success: bool | None = None
    last_run_error: str | None = None
    runs: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert status to dictionary."""
        return {
            "enabled": self.enabled,
            "interval_hours": self.interval_hours,
            "incremental_interval_hours": self.incremental_interval_hours,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "next_incremental_run": (
                self.next_incremental_run.isoformat() if self.next_incremental_run else None
            ),
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_run_success": self.last_run_success,
            "last_run_error": self.last_run_error,
            "runs": self.runs,
        }


@dataclass
class BackupRun:
    """Record of a single scheduled run."""

    kind: str
    started_at: datetime
    completed_at: datetime | None = None
    success: bool = False
    error: str | None = None
    path: Path | None = None
    deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert run to dictionary."""
        return {
            "kind": self.kind,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "success": self.success,
            "error": self.error,
            "path": str(self.path) if self.path else None,
            "deleted": self.deleted,
        }


class Scheduler:
    """
    Runs backups for a BackupManager on fixed intervals.

    Usage:
        scheduler = Scheduler(manager, interval_hours=24, incremental_interval_hours=6)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        manager: BackupManager,
        interval_hours: float,
        incremental_interval_hours: float = 0,
        on_error: Callable[[Exception], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.manager = manager
        self.interval_hours = interval_hours
        self.incremental_interval_hours = incremental_interval_hours
        self.on_error = on_error
        self.clock = clock

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        # Only one run at a time, whether from the thread or run_once()
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()

        self._next_run: datetime | None = None
        self._next_incremental_run: datetime | None = None
        self._checkpoint: datetime | None = None
        self._last_run: datetime | None = None
        self._last_run_success: bool | None = None
        self._last_run_error: str | None = None
        self._runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """
        Start the scheduler thread.

        Never raises. Invalid intervals and an already running scheduler are
        logged and reported to ``on_error``.

        Returns:
            True if the thread was started.
        """
        try:
            self._validate()
            if self.running:
                raise SchedulerAlreadyRunningError("Scheduler is already running")

            now = self.clock()
            with self._state_lock:
                self._next_run = now + timedelta(hours=self.interval_hours)
                if self.incremental_interval_hours > 0:
                    self._next_incremental_run = now + timedelta(
                        hours=self.incremental_interval_hours
                    )
                    if self._checkpoint is None:
                        self._checkpoint = now

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="snapkeep-scheduler",
                daemon=True,
            )
            self._thread.start()
        except Exception as e:
            logger.error(f"Cannot start scheduled backups: {e}")
            self._report(e)
            return False

        logger.info(
            f"Scheduled backups every {self.interval_hours:g}h"
            + (
                f", incremental every {self.incremental_interval_hours:g}h"
                if self.incremental_interval_hours > 0
                else ""
            )
        )
        return True

    def stop(self, timeout: float | None = None) -> None:
        """
        Stop the scheduler thread and wait for it to finish.

        Args:
            timeout: Seconds to wait for an in-flight run; None waits forever.
        """
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Scheduler thread did not stop within the timeout")
        self._thread = None
        with self._state_lock:
            self._next_run = None
            self._next_incremental_run = None
        logger.info("Scheduled backups stopped")

    def run_once(self) -> BackupRun:
        """Run one full backup followed by retention cleanup."""
        with self._run_lock:
            run = BackupRun(kind="full", started_at=self.clock())
            logger.info("Running scheduled backup")

            try:
                result = self.manager.create_backup(SCHEDULED_BACKUP_NAME)
                run.path = result.path
                if not result.success:
                    raise SchedulerError(f"Scheduled backup failed: {result.error}")
                run.deleted = self.manager.cleanup_expired_backups()
                run.success = True
            except Exception as e:
                run.error = str(e)
                logger.error(f"Scheduled backup run failed: {e}")
                self._report(e)

            run.completed_at = self.clock()
            with self._state_lock:
                if run.success:
                    self._checkpoint = run.started_at
                if self._next_run is not None:
                    self._next_run = run.started_at + timedelta(hours=self.interval_hours)
            self._record(run)
            return run

    def run_incremental(self) -> BackupRun:
        """Run one incremental backup since the previous run's checkpoint."""
        with self._run_lock:
            run = BackupRun(kind="incremental", started_at=self.clock())
            with self._state_lock:
                since = self._checkpoint or run.started_at - timedelta(
                    hours=self.incremental_interval_hours or self.interval_hours
                )
            logger.info(f"Running scheduled incremental backup since {since.isoformat()}")

            try:
                result = self.manager.create_incremental_backup(since)
                run.path = result.path
                if not result.success:
                    raise SchedulerError(f"Scheduled incremental backup failed: {result.error}")
                run.success = True
            except Exception as e:
                run.error = str(e)
                logger.error(f"Scheduled incremental run failed: {e}")
                self._report(e)

            run.completed_at = self.clock()
            with self._state_lock:
                if run.success:
                    self._checkpoint = run.started_at
                if self._next_incremental_run is not None:
                    self._next_incremental_run = run.started_at + timedelta(
                        hours=self.incremental_interval_hours
                    )
            self._record(run)
            return run

    def status(self) -> ScheduleStatus:
        with self._state_lock:
            return ScheduleStatus(
                enabled=self.running,
                interval_hours=self.interval_hours,
                incremental_interval_hours=self.incremental_interval_hours,
                next_run=self._next_run,
                next_incremental_run=self._next_incremental_run,
                last_run=self._last_run,
                last_run_success=self._last_run_success,
                last_run_error=self._last_run_error,
                runs=self._runs,
            )

    def _validate(self) -> None:
        """
        Raises:
            SchedulerError: If an interval is not usable.
        """
        if not isinstance(self.interval_hours, (int, float)) or self.interval_hours <= 0:
            raise SchedulerError(f"Invalid interval_hours: {self.interval_hours!r}")
        if (
            not isinstance(self.incremental_interval_hours, (int, float))
            or self.incremental_interval_hours < 0
        ):
            raise SchedulerError(
                f"Invalid incremental_interval_hours: {self.incremental_interval_hours!r}"
            )

    def _record(self, run: BackupRun) -> None:
        with self._state_lock:
            self._last_run = run.completed_at
            self._last_run_success = run.success
            self._last_run_error = run.error
            self._runs += 1

    def _report(self, error: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            logger.exception("Scheduler error callback failed")

    def _seconds_until_due(self) -> float:
        with self._state_lock:
            due = [t for t in (self._next_run, self._next_incremental_run) if t is not None]
        if not due:
            return MAX_WAIT_SECONDS
        remaining = (min(due) - self.clock()).total_seconds()
        return min(max(remaining, 0.0), MAX_WAIT_SECONDS)

    def _run_loop(self) -> None:
        """Main scheduler loop."""
        logger.debug("Scheduler loop started")

        while not self._stop_event.wait(self._seconds_until_due()):
            now = self.clock()
            with self._state_lock:
                full_due = self._next_run is not None and now >= self._next_run
                incremental_due = (
                    self._next_incremental_run is not None and now >= self._next_incremental_run
                )

            try:
                if full_due:
                    self.run_once()
                    # A full run covers the incremental slot
                    if incremental_due:
                        with self._state_lock:
                            self._next_incremental_run = now + timedelta(
                                hours=self.incremental_interval_hours
                            )
                elif incremental_due:
                    self.run_incremental()
            except Exception as e:
                logger.exception("Error in scheduler loop")
                self._report(e)

        logger.debug("Scheduler loop stopped")
