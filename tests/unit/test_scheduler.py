"""
Unit tests for weekly scheduling (dumpwarden/scheduler.py).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import ANY, patch

import pytest

from dumpwarden import store
from dumpwarden.backup.errors import ConfigurationError, SchedulerError, NoActiveSchedulesError
from dumpwarden.scheduler import (
    BackupScheduler,
    WeeklyTrigger,
    expand_triggers,
    get_scheduler,
    init_scheduler,
    reload_scheduler,
)

# Wednesday
NOW = datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc)


class TestWeeklyTrigger:
    """Test next fire time computation (weekday 0=Sunday)."""

    def test_later_today(self):
        trigger = WeeklyTrigger(3, 11, 0)
        assert trigger.get_next_fire_time(None, NOW) == datetime(2024, 1, 10, 11, 0, tzinfo=timezone.utc)

    def test_earlier_today_rolls_to_next_week(self):
        trigger = WeeklyTrigger(3, 9, 0)
        assert trigger.get_next_fire_time(None, NOW) == datetime(2024, 1, 17, 9, 0, tzinfo=timezone.utc)

    def test_exact_time_fires_now(self):
        trigger = WeeklyTrigger(3, 10, 0)
        assert trigger.get_next_fire_time(None, NOW) == NOW

    def test_sunday(self):
        trigger = WeeklyTrigger(0, 9, 0)
        assert trigger.get_next_fire_time(None, NOW) == datetime(2024, 1, 14, 9, 0, tzinfo=timezone.utc)

    def test_saturday(self):
        trigger = WeeklyTrigger(6, 23, 59)
        assert trigger.get_next_fire_time(None, NOW) == datetime(2024, 1, 13, 23, 59, tzinfo=timezone.utc)

    def test_after_previous_fire(self):
        trigger = WeeklyTrigger(3, 11, 0)
        previous = datetime(2024, 1, 10, 11, 0, tzinfo=timezone.utc)

        next_fire = trigger.get_next_fire_time(previous, previous + timedelta(milliseconds=500))

        assert next_fire == datetime(2024, 1, 17, 11, 0, tzinfo=timezone.utc)

    def test_times_are_local_to_timezone(self):
        trigger = WeeklyTrigger(3, 10, 0, timezone='America/Sao_Paulo')
        now = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)

        # 10:00 in Sao Paulo (UTC-3) is 13:00 UTC
        assert trigger.get_next_fire_time(None, now) == datetime(2024, 1, 10, 13, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize('weekday,hour,minute', [(7, 0, 0), (-1, 0, 0), (1, 24, 0), (1, 0, 60)])
    def test_invalid_selectors(self, weekday, hour, minute):
        with pytest.raises(ValueError):
            WeeklyTrigger(weekday, hour, minute)

    def test_from_selector(self):
        trigger = WeeklyTrigger.from_selector(1, '02:30')
        assert (trigger.weekday, trigger.hour, trigger.minute) == (1, 2, 30)
        assert str(trigger) == 'weekly[mon 02:30]'


def test_expand_triggers(schedule):
    keys = [key for key, _ in expand_triggers(schedule)]

    assert keys == [
        f'{schedule.id}_1_02:00',
        f'{schedule.id}_1_14:30',
        f'{schedule.id}_3_02:00',
        f'{schedule.id}_3_14:30',
    ]


class TestSchedulerInitialization:
    """Test process-wide scheduler instance."""

    def test_init_scheduler(self, app):
        scheduler = get_scheduler()

        assert isinstance(scheduler, BackupScheduler)
        assert scheduler.app is app
        assert not scheduler.running

    def test_init_scheduler_only_once_per_app(self, app):
        assert init_scheduler(app) is init_scheduler(app)


class TestSchedulerLifecycle:
    """Test start/stop/reload."""

    def test_start_registers_every_trigger(self, schedule):
        scheduler = get_scheduler()
        scheduler.start()

        status = scheduler.status()
        assert status['running'] is True
        assert status['active_schedule_count'] == 1
        assert status['trigger_count'] == 4
        assert set(status['next_runs']) == {key for key, _ in expand_triggers(schedule)}
        assert status['next_run'] == min(status['next_runs'].values())

    def test_start_already_running(self, schedule):
        scheduler = get_scheduler()
        scheduler.start()

        with pytest.raises(SchedulerError):
            scheduler.start()

    def test_start_without_schedules(self, db):
        with pytest.raises(NoActiveSchedulesError):
            get_scheduler().start()

        assert not get_scheduler().running

    def test_disabled_and_empty_schedules_are_ignored(self, schedule, local_machine):
        store.update_schedule(schedule.id, {'enabled': False})
        store.create_schedule({
            'name': 'No times',
            'machine_id': local_machine.id,
            'databases': ['shop'],
            'days_of_week': [1],
            'times': [],
        })

        with pytest.raises(NoActiveSchedulesError):
            get_scheduler().start()

    def test_stop_drops_triggers(self, schedule):
        scheduler = get_scheduler()
        scheduler.start()
        scheduler.stop()

        status = scheduler.status()
        assert status['running'] is False
        assert status['trigger_count'] == 0
        assert status['next_run'] is None

    def test_stop_when_stopped(self, db):
        get_scheduler().stop()
        assert not get_scheduler().running

    def test_reload_when_stopped(self, schedule):
        assert reload_scheduler() is False
        assert not get_scheduler().running

    def test_reload_applies_changes(self, schedule):
        scheduler = get_scheduler()
        scheduler.start()

        store.update_schedule(schedule.id, {'days_of_week': [5], 'times': ['23:15']})

        assert reload_scheduler() is True
        assert list(scheduler.status()['next_runs']) == [f'{schedule.id}_5_23:15']

    def test_reload_stops_when_nothing_left(self, schedule):
        scheduler = get_scheduler()
        scheduler.start()

        store.delete_schedule(schedule.id)

        assert reload_scheduler() is False
        assert not scheduler.running


class TestScheduledRun:
    """Test the trigger callback."""

    @patch('dumpwarden.backup.retention.enforce_retention_policy')
    @patch('dumpwarden.backup.executor.run_backup')
    def test_runs_backup_then_retention(self, mock_run, mock_retention, app):
        mock_run.return_value = []

        get_scheduler()._run_scheduled_backup('schedule_1', 'local', ['shop', 'crm'])

        mock_run.assert_called_once_with('local', ['shop', 'crm'], ANY, allow_disabled=False)
        mock_retention.assert_called_once()

    @patch('dumpwarden.backup.retention.enforce_retention_policy')
    @patch('dumpwarden.backup.executor.run_backup')
    def test_retention_runs_after_failure(self, mock_run, mock_retention, app):
        mock_run.side_effect = ConfigurationError('Machine is disabled: Prod')

        get_scheduler()._run_scheduled_backup('schedule_1', 'machine_1', ['shop'])

        mock_retention.assert_called_once()

    @patch('dumpwarden.backup.retention.enforce_retention_policy')
    @patch('dumpwarden.backup.executor.run_backup')
    def test_unexpected_error_does_not_escape(self, mock_run, mock_retention, app):
        mock_run.side_effect = RuntimeError('boom')

        get_scheduler()._run_scheduled_backup('schedule_1', 'local', ['shop'])

        mock_retention.assert_called_once()

    @patch('dumpwarden.backup.retention.enforce_retention_policy')
    @patch('dumpwarden.backup.executor.run_backup')
    def test_job_gets_scheduled_deadline(self, mock_run, mock_retention, app):
        mock_run.return_value = []
        app.config['SCHEDULED_BACKUP_TIMEOUT'] = timedelta(seconds=0)

        get_scheduler()._run_scheduled_backup('schedule_1', 'local', ['shop'])

        token = mock_run.call_args.args[2]
        assert token.expired
