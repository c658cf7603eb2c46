"""
Unit tests for the configuration store (dumpwarden/store.py, dumpwarden/models.py,
dumpwarden/migrations.py).
"""

import dataclasses
import json

import pytest

from dumpwarden import store
from dumpwarden.backup.errors import ConfigurationError, NotFoundError
from dumpwarden.migrations import ensure_local_machine
from dumpwarden.models import Machine, Schedule, BackupLog, LOCAL_MACHINE_ID
from dumpwarden.store import BackupLogEntry


class TestMachines:
    """Test machine CRUD and credential handling."""

    def test_local_machine_seeded(self, db):
        machine = store.get_machine(LOCAL_MACHINE_ID)

        assert machine.machine_type == 'local'
        assert machine.database.host == 'localhost'
        assert machine.database.port == 3306
        assert machine.ssh is None

    def test_ensure_local_machine_idempotent(self, db):
        assert ensure_local_machine() is False
        assert Machine.query.filter_by(id=LOCAL_MACHINE_ID).count() == 1

    def test_create_remote_machine(self, remote_machine):
        machine = store.get_machine(remote_machine.id)

        assert machine.id.startswith('machine_')
        assert machine.is_remote
        assert machine.ssh.host == 'bastion.example.com'
        assert machine.ssh.password == 'ssh-secret'
        assert machine.database.password == 'db-secret'

    def test_secrets_encrypted_at_rest(self, db, remote_machine):
        row = db.session.get(Machine, remote_machine.id)

        assert row.db_password_encrypted not in (None, 'db-secret')
        assert row.ssh_password_encrypted not in (None, 'ssh-secret')
        assert 'db-secret' not in row.db_password_encrypted

    def test_snapshot_is_frozen(self, remote_machine):
        with pytest.raises(dataclasses.FrozenInstanceError):
            remote_machine.name = 'changed'

    def test_to_dict_hides_secrets(self, remote_machine):
        data = remote_machine.to_dict()
        serialized = json.dumps(data)

        assert 'db-secret' not in serialized
        assert 'ssh-secret' not in serialized
        assert data['mysql']['has_password'] is True
        assert data['ssh']['has_password'] is True
        assert data['ssh']['has_private_key'] is False

    def test_update_without_secret_keeps_it(self, remote_machine):
        updated = store.update_machine(remote_machine.id, {'mysql': {'host': '10.0.0.6'}})

        assert updated.database.host == '10.0.0.6'
        assert updated.database.password == 'db-secret'

    @pytest.mark.parametrize('cleared', [None, ''])
    def test_update_with_empty_secret_clears_it(self, remote_machine, cleared):
        updated = store.update_machine(remote_machine.id, {'ssh': {'password': cleared}})

        assert updated.ssh.password is None
        assert updated.ssh.host == 'bastion.example.com'

    def test_update_replaces_secret(self, remote_machine):
        updated = store.update_machine(remote_machine.id, {'ssh': {'private_key': 'KEY DATA'}})

        assert updated.ssh.private_key == 'KEY DATA'
        assert updated.ssh.password == 'ssh-secret'

    def test_create_requires_name(self, db):
        with pytest.raises(ConfigurationError):
            store.create_machine({'type': 'local'})

    def test_remote_requires_ssh_host(self, db):
        with pytest.raises(ConfigurationError):
            store.create_machine({'name': 'No hop', 'type': 'remote'})

    def test_invalid_type(self, db):
        with pytest.raises(ConfigurationError):
            store.create_machine({'name': 'Odd', 'type': 'cloud'})

    def test_local_machine_cannot_become_remote(self, db):
        with pytest.raises(ConfigurationError):
            store.update_machine(LOCAL_MACHINE_ID, {'type': 'remote', 'ssh': {'host': 'h'}})

    def test_local_machine_cannot_be_deleted(self, db):
        with pytest.raises(ConfigurationError):
            store.delete_machine(LOCAL_MACHINE_ID)

    def test_unknown_machine(self, db):
        with pytest.raises(NotFoundError, match='not found'):
            store.get_machine('machine_missing')

    @pytest.mark.parametrize('operation', [
        lambda: store.update_machine('machine_missing', {'name': 'x'}),
        lambda: store.delete_machine('machine_missing'),
        lambda: store.get_schedule('schedule_missing'),
        lambda: store.update_schedule('schedule_missing', {'enabled': False}),
        lambda: store.delete_schedule('schedule_missing'),
    ])
    def test_unknown_ids_are_not_found(self, db, operation):
        with pytest.raises(NotFoundError) as exc_info:
            operation()

        assert exc_info.value.kind == 'ConfigurationError'

    def test_delete_cascades_to_schedules(self, db, remote_machine):
        store.create_schedule({
            'name': 'Remote nightly',
            'machine_id': remote_machine.id,
            'databases': ['shop'],
            'days_of_week': [0],
            'times': ['03:00'],
        })

        store.delete_machine(remote_machine.id)

        assert Schedule.query.filter_by(machine_id=remote_machine.id).count() == 0
        with pytest.raises(ConfigurationError):
            store.get_machine(remote_machine.id)

    def test_spec_from_payload_is_not_stored(self, db):
        machine = store.machine_spec_from_payload({
            'name': 'Candidate',
            'type': 'remote',
            'mysql': {'host': '10.1.1.1', 'port': '3307', 'username': 'root', 'password': 'pw'},
            'ssh': {'host': 'hop', 'username': 'u', 'password': 'p'},
        })

        assert machine.id == 'temp_test'
        assert machine.database.port == 3307
        assert machine.ssh.port == 22
        assert Machine.query.count() == 1


class TestSchedules:
    """Test schedule CRUD and selector validation."""

    def test_create_schedule(self, schedule, local_machine):
        assert schedule.id.startswith('schedule_')
        assert schedule.machine_id == local_machine.id
        assert schedule.databases == ('shop', 'crm')
        assert schedule.days_of_week == (1, 3)
        assert schedule.times == ('02:00', '14:30')
        assert schedule.trigger_count == 4

    def test_selectors_normalized(self, local_machine):
        created = store.create_schedule({
            'name': 'Messy',
            'machine_id': local_machine.id,
            'databases': ['shop'],
            'days_of_week': [5, '1', 5],
            'times': ['9:05', '09:05', '23:59'],
        })

        assert created.days_of_week == (1, 5)
        assert created.times == ('09:05', '23:59')

    @pytest.mark.parametrize('value,expected', [('0:00', '00:00'), ('7:30', '07:30'), (' 23:59 ', '23:59')])
    def test_normalize_time(self, value, expected):
        assert store.normalize_time(value) == expected

    @pytest.mark.parametrize('value', ['24:00', '12:60', '1230', 'noon', '12:5', ''])
    def test_invalid_time(self, value):
        with pytest.raises(ConfigurationError):
            store.normalize_time(value)

    @pytest.mark.parametrize('value', [7, -1, 'mon', True, None])
    def test_invalid_weekday(self, value):
        with pytest.raises(ConfigurationError):
            store.normalize_weekday(value)

    def test_requires_machine(self, db):
        with pytest.raises(ConfigurationError):
            store.create_schedule({'name': 'Orphan', 'databases': ['shop']})

    def test_unknown_machine(self, db):
        with pytest.raises(ConfigurationError, match='not found'):
            store.create_schedule({'name': 'Orphan', 'machine_id': 'machine_missing'})

    def test_enabled_filter(self, schedule):
        store.update_schedule(schedule.id, {'enabled': False})

        assert store.get_enabled_schedules() == []
        assert len(store.list_schedules()) == 1

    def test_update_and_delete(self, schedule):
        updated = store.update_schedule(schedule.id, {'name': 'Weekly', 'times': ['01:00']})
        assert updated.name == 'Weekly'
        assert updated.days_of_week == (1, 3)
        assert updated.trigger_count == 2

        store.delete_schedule(schedule.id)
        with pytest.raises(ConfigurationError):
            store.get_schedule(schedule.id)

    def test_to_dict_uses_lists(self, schedule):
        data = schedule.to_dict()
        assert data['days_of_week'] == [1, 3]
        assert data['times'] == ['02:00', '14:30']


class TestBackupLog:
    """Test the append-only log ring."""

    def test_newest_first(self, db):
        store.append_backup_log(BackupLogEntry(machine_id='local', database='shop', success=True), limit=10)
        store.append_backup_log(BackupLogEntry(machine_id='local', database='crm', success=False, error='x'),
                                limit=10)

        logs = store.get_backup_logs()

        assert [log.database for log in logs] == ['crm', 'shop']
        assert logs[0].error == 'x'

    def test_ring_keeps_most_recent(self, db):
        for index in range(8):
            store.append_backup_log(
                BackupLogEntry(machine_id='local', database=f'db{index}', success=True),
                limit=5,
            )

        assert BackupLog.query.count() == 5
        assert [log.database for log in store.get_backup_logs()] == ['db7', 'db6', 'db5', 'db4', 'db3']

    def test_limit_on_read(self, db):
        for index in range(3):
            store.append_backup_log(BackupLogEntry(machine_id='local', database=f'db{index}', success=True))

        assert len(store.get_backup_logs(limit=2)) == 2

    def test_logs_outlive_machine(self, db, remote_machine):
        store.append_backup_log(BackupLogEntry(machine_id=remote_machine.id, database='shop', success=True))
        store.delete_machine(remote_machine.id)

        assert store.get_backup_logs()[0].machine_id == remote_machine.id
