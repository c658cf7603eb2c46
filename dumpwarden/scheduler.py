"""
APScheduler-based weekly backup scheduling for Dumpwarden.

Each enabled schedule expands into one trigger per (weekday, time) pair.
The scheduler is either stopped or running; configuration changes are
applied by stopping and starting again, never by editing triggers in place.
"""

import logging
import threading
from datetime import datetime, time as dt_time, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.util import astimezone

from dumpwarden.backup.errors import BackupError, SchedulerError, NoActiveSchedulesError

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


class WeeklyTrigger(BaseTrigger):
    """
    Fires once a week on a weekday (0=Sunday .. 6=Saturday) at HH:MM.

    Times are interpreted in the trigger's timezone.
    """

    def __init__(self, weekday: int, hour: int, minute: int, timezone='UTC'):
        if not 0 <= weekday <= 6:
            raise ValueError(f"Invalid weekday: {weekday}")
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError(f"Invalid time: {hour:02d}:{minute:02d}")

        self.weekday = weekday
        self.hour = hour
        self.minute = minute
        self.timezone = astimezone(timezone)

    @classmethod
    def from_selector(cls, weekday: int, hhmm: str, timezone='UTC') -> 'WeeklyTrigger':
        hour, minute = (int(part) for part in hhmm.split(':'))
        return cls(weekday, hour, minute, timezone)

    def _localize(self, naive: datetime) -> datetime:
        if hasattr(self.timezone, 'localize'):
            return self.timezone.localize(naive)
        return naive.replace(tzinfo=self.timezone)

    def get_next_fire_time(self, previous_fire_time, now):
        if previous_fire_time is not None:
            start = max(now, previous_fire_time + timedelta(microseconds=1))
        else:
            start = now
        start = start.astimezone(self.timezone)

        # datetime.weekday() is 0=Monday
        target = (self.weekday - 1) % 7
        days_ahead = (target - start.weekday()) % 7
        candidate_date = start.date() + timedelta(days=days_ahead)
        candidate = self._localize(datetime.combine(candidate_date, dt_time(self.hour, self.minute)))

        if candidate < start:
            candidate = self._localize(
                datetime.combine(candidate_date + timedelta(days=7), dt_time(self.hour, self.minute))
            )
        return candidate

    def __str__(self):
        return f"weekly[{WEEKDAY_NAMES[self.weekday]} {self.hour:02d}:{self.minute:02d}]"

    def __repr__(self):
        return (
            f"<WeeklyTrigger (weekday={self.weekday}, time='{self.hour:02d}:{self.minute:02d}', "
            f"timezone='{self.timezone}')>"
        )


def expand_triggers(schedule, timezone='UTC') -> Iterator[Tuple[str, WeeklyTrigger]]:
    """Yield (key, trigger) for every weekday x time pair of a schedule."""
    for weekday in schedule.days_of_week:
        for hhmm in schedule.times:
            key = f"{schedule.id}_{weekday}_{hhmm}"
            yield key, WeeklyTrigger.from_selector(weekday, hhmm, timezone)


class BackupScheduler:
    """
    Owns the APScheduler dispatcher for all active schedules.

    Each call to start() builds a fresh BackgroundScheduler from the current
    schedules, so a stop/start cycle never keeps triggers from an older
    configuration.
    """

    def __init__(self, app):
        self.app = app
        self._lock = threading.RLock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._next_runs: Dict[str, datetime] = {}
        self._active_schedule_count = 0

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        """
        Register triggers for all enabled schedules and start dispatching.

        Raises:
            SchedulerError: Already running
            NoActiveSchedulesError: No enabled schedule has any trigger
        """
        from dumpwarden.store import get_enabled_schedules

        with self._lock:
            if self.running:
                raise SchedulerError("Scheduler is already running")

            config = self.app.config
            timezone = config['SCHEDULER_TIMEZONE']

            with self.app.app_context():
                schedules = [s for s in get_enabled_schedules() if s.trigger_count > 0]

            if not schedules:
                raise NoActiveSchedulesError("No active schedules found")

            scheduler = BackgroundScheduler(
                executors={'default': ThreadPoolExecutor(max_workers=config['SCHEDULER_MAX_WORKERS'])},
                job_defaults={
                    'coalesce': True,  # Combine missed runs into one
                    'max_instances': 1,
                    'misfire_grace_time': 300
                },
                timezone=timezone
            )
            scheduler.start()

            registered = 0
            for schedule in schedules:
                try:
                    triggers = list(expand_triggers(schedule, timezone))
                except ValueError as e:
                    logger.error(f"Skipping schedule {schedule.name} with invalid selectors: {e}")
                    continue

                for key, trigger in triggers:
                    try:
                        scheduler.add_job(
                            func=self._run_scheduled_backup,
                            args=[schedule.id, schedule.machine_id, list(schedule.databases)],
                            trigger=trigger,
                            id=key,
                            name=f"Backup: {schedule.name} ({trigger})",
                            replace_existing=True
                        )
                        registered += 1
                    except Exception as e:
                        logger.error(f"Failed to register trigger {key} for schedule {schedule.name}: {e}")

            self._scheduler = scheduler
            self._active_schedule_count = len(schedules)
            self._refresh_next_runs()

            logger.info(f"Scheduler started with {registered} triggers from {len(schedules)} schedules")
            for key, next_run in sorted(self._next_runs.items(), key=lambda item: item[1]):
                logger.info(f"  - {key}: next run {next_run.isoformat()}")

    def stop(self):
        """Stop dispatching and drop all triggers. No-op when already stopped."""
        with self._lock:
            if self._scheduler is None:
                return

            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self._next_runs = {}
            self._active_schedule_count = 0
            logger.info("Scheduler stopped")

    def restart(self):
        with self._lock:
            self.stop()
            self.start()

    def reload(self) -> bool:
        """
        Apply configuration changes if running.

        Returns:
            True if the scheduler is running afterwards
        """
        with self._lock:
            if not self.running:
                return False
            try:
                self.restart()
            except NoActiveSchedulesError:
                logger.info("No active schedules left after reload; scheduler stays stopped")
                return False
            return True

    def _refresh_next_runs(self):
        self._next_runs = {}
        if self._scheduler is None:
            return
        for job in self._scheduler.get_jobs():
            if job.next_run_time is not None:
                self._next_runs[job.id] = job.next_run_time

    def status(self) -> dict:
        with self._lock:
            self._refresh_next_runs()
            next_run = min(self._next_runs.values()) if self._next_runs else None
            return {
                'running': self.running,
                'active_schedule_count': self._active_schedule_count,
                'trigger_count': len(self._next_runs),
                'next_run': next_run.isoformat() if next_run else None,
                'next_runs': {key: value.isoformat() for key, value in sorted(self._next_runs.items())},
            }

    def _run_scheduled_backup(self, schedule_id: str, machine_id: str, databases: List[str]):
        """
        Trigger callback, executed on an APScheduler worker thread.

        Retention cleanup runs after every job regardless of its outcome.
        """
        from dumpwarden.backup.executor import CancelToken, run_backup
        from dumpwarden.backup.retention import enforce_retention_policy

        with self.app.app_context():
            logger.info(f"Scheduled backup {schedule_id}: machine {machine_id}, databases {databases}")
            try:
                token = CancelToken(deadline=self.app.config['SCHEDULED_BACKUP_TIMEOUT'])
                results = run_backup(machine_id, databases, token, allow_disabled=False)
                succeeded = sum(1 for r in results if r.success)
                logger.info(
                    f"Scheduled backup {schedule_id} completed: {succeeded}/{len(results)} databases succeeded"
                )
            except BackupError as e:
                logger.error(f"Scheduled backup {schedule_id} failed: {e}")
            except Exception:
                logger.exception(f"Scheduled backup {schedule_id} crashed")
            finally:
                try:
                    enforce_retention_policy()
                except OSError as e:
                    logger.error(f"Retention cleanup after {schedule_id} failed: {e}")


# Process-wide scheduler instance
_backup_scheduler: Optional[BackupScheduler] = None


def init_scheduler(app) -> BackupScheduler:
    global _backup_scheduler

    if _backup_scheduler is None or _backup_scheduler.app is not app:
        if _backup_scheduler is not None:
            _backup_scheduler.stop()
        _backup_scheduler = BackupScheduler(app)
    return _backup_scheduler


def get_scheduler() -> BackupScheduler:
    if _backup_scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")
    return _backup_scheduler


def shutdown_scheduler():
    if _backup_scheduler is not None:
        _backup_scheduler.stop()


def reload_scheduler() -> bool:
    """Re-read schedules into the running scheduler after a configuration edit."""
    if _backup_scheduler is None:
        return False
    return _backup_scheduler.reload()
