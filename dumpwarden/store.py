"""
Configuration store interface.

Jobs and the scheduler read machines and schedules through this module and
get frozen snapshots with decrypted credentials, never live ORM rows, so an
edit made mid-job cannot change a running job.
"""

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from dumpwarden import db
from dumpwarden.models import Machine, Schedule, BackupLog, LOCAL_MACHINE_ID
from dumpwarden.backup.errors import ConfigurationError, NotFoundError
from dumpwarden.utils.crypto import encrypt_optional, decrypt_optional

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r'^(\d{1,2}):(\d{2})$')
_log_lock = threading.Lock()


@dataclass(frozen=True)
class DatabaseEndpoint:
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class SSHEndpoint:
    host: str
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    key_path: Optional[str] = None

    @property
    def has_credentials(self):
        return bool(self.private_key or self.key_path or self.password)


@dataclass(frozen=True)
class MachineSpec:
    id: str
    name: str
    machine_type: str
    database: DatabaseEndpoint
    ssh: Optional[SSHEndpoint] = None
    enabled: bool = True
    description: str = ''

    @property
    def is_remote(self):
        return self.machine_type == 'remote'

    def to_dict(self) -> Dict[str, Any]:
        """Public representation; secrets are reported only as presence flags."""
        data = {
            'id': self.id,
            'name': self.name,
            'type': self.machine_type,
            'description': self.description,
            'enabled': self.enabled,
            'mysql': {
                'host': self.database.host,
                'port': self.database.port,
                'username': self.database.username,
                'has_password': bool(self.database.password),
            },
        }
        if self.ssh is not None:
            data['ssh'] = {
                'host': self.ssh.host,
                'port': self.ssh.port,
                'username': self.ssh.username,
                'key_path': self.ssh.key_path,
                'has_password': bool(self.ssh.password),
                'has_private_key': bool(self.ssh.private_key),
            }
        return data


@dataclass(frozen=True)
class ScheduleSpec:
    id: str
    name: str
    machine_id: str
    databases: Tuple[str, ...]
    days_of_week: Tuple[int, ...]
    times: Tuple[str, ...]
    enabled: bool = True
    description: str = ''

    @property
    def trigger_count(self):
        return len(self.days_of_week) * len(self.times)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('databases', 'days_of_week', 'times'):
            data[key] = list(data[key])
        return data


@dataclass
class BackupLogEntry:
    machine_id: str
    database: str
    success: bool
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    remote_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


# ---------------------------------------------------------------------------
# Machines
# ---------------------------------------------------------------------------

def _machine_to_spec(machine: Machine) -> MachineSpec:
    ssh = None
    if machine.machine_type == 'remote':
        ssh = SSHEndpoint(
            host=machine.ssh_host,
            port=machine.ssh_port or 22,
            username=machine.ssh_username,
            password=decrypt_optional(machine.ssh_password_encrypted),
            private_key=decrypt_optional(machine.ssh_private_key_encrypted),
            passphrase=decrypt_optional(machine.ssh_passphrase_encrypted),
            key_path=machine.ssh_key_path,
        )

    return MachineSpec(
        id=machine.id,
        name=machine.name,
        machine_type=machine.machine_type,
        description=machine.description or '',
        enabled=machine.enabled,
        database=DatabaseEndpoint(
            host=machine.db_host,
            port=machine.db_port,
            username=machine.db_username,
            password=decrypt_optional(machine.db_password_encrypted),
        ),
        ssh=ssh,
    )


def get_machine(machine_id: str) -> MachineSpec:
    """
    Look up a machine snapshot by id.

    Raises:
        ConfigurationError: If the machine does not exist
    """
    machine = db.session.get(Machine, machine_id)
    if machine is None:
        raise NotFoundError(f"Machine not found: {machine_id}")
    return _machine_to_spec(machine)


def list_machines() -> List[MachineSpec]:
    machines = Machine.query.order_by(Machine.created_at).all()
    return [_machine_to_spec(m) for m in machines]


def machine_spec_from_payload(payload: Dict[str, Any], machine_id: str = 'temp_test') -> MachineSpec:
    """
    Build a transient machine from an API payload without touching the store.

    Used to test connectivity of a machine definition before saving it.
    """
    machine_type = _validate_machine_type(payload.get('type', 'local'))
    mysql = payload.get('mysql') or {}
    ssh = payload.get('ssh') or {}

    ssh_endpoint = None
    if machine_type == 'remote':
        if not ssh.get('host'):
            raise ConfigurationError("SSH host is required for remote machines")
        ssh_endpoint = SSHEndpoint(
            host=ssh['host'],
            port=int(ssh.get('port') or 22),
            username=ssh.get('username'),
            password=ssh.get('password') or None,
            private_key=ssh.get('private_key') or None,
            passphrase=ssh.get('passphrase') or None,
            key_path=ssh.get('key_path') or None,
        )

    return MachineSpec(
        id=machine_id,
        name=payload.get('name') or machine_id,
        machine_type=machine_type,
        description=payload.get('description', ''),
        enabled=bool(payload.get('enabled', True)),
        database=DatabaseEndpoint(
            host=mysql.get('host') or 'localhost',
            port=int(mysql.get('port') or 3306),
            username=mysql.get('username'),
            password=mysql.get('password') or None,
        ),
        ssh=ssh_endpoint,
    )


def _validate_machine_type(machine_type: str) -> str:
    if machine_type not in ('local', 'remote'):
        raise ConfigurationError("Machine type must be local or remote")
    return machine_type


def _set_secret(machine: Machine, column: str, section: Dict[str, Any], key: str):
    # Absent key keeps the stored secret; explicit null/"" clears it
    if key in section:
        setattr(machine, column, encrypt_optional(section[key]))


def _apply_machine_payload(machine: Machine, payload: Dict[str, Any]):
    if 'name' in payload:
        if not payload['name']:
            raise ConfigurationError("Machine name is required")
        machine.name = payload['name']
    if 'description' in payload:
        machine.description = payload['description']
    if 'enabled' in payload:
        machine.enabled = bool(payload['enabled'])
    if 'type' in payload:
        machine.machine_type = _validate_machine_type(payload['type'])

    mysql = payload.get('mysql') or {}
    if 'host' in mysql:
        machine.db_host = mysql['host'] or 'localhost'
    if 'port' in mysql:
        machine.db_port = int(mysql['port'] or 3306)
    if 'username' in mysql:
        machine.db_username = mysql['username']
    _set_secret(machine, 'db_password_encrypted', mysql, 'password')

    ssh = payload.get('ssh') or {}
    if 'host' in ssh:
        machine.ssh_host = ssh['host']
    if 'port' in ssh:
        machine.ssh_port = int(ssh['port'] or 22)
    if 'username' in ssh:
        machine.ssh_username = ssh['username']
    if 'key_path' in ssh:
        machine.ssh_key_path = ssh['key_path'] or None
    _set_secret(machine, 'ssh_password_encrypted', ssh, 'password')
    _set_secret(machine, 'ssh_private_key_encrypted', ssh, 'private_key')
    _set_secret(machine, 'ssh_passphrase_encrypted', ssh, 'passphrase')

    if machine.machine_type == 'remote' and not machine.ssh_host:
        raise ConfigurationError("SSH host is required for remote machines")


def create_machine(payload: Dict[str, Any]) -> MachineSpec:
    if not payload.get('name'):
        raise ConfigurationError("Machine name is required")

    machine = Machine(id=f"machine_{time.time_ns()}", machine_type='local', enabled=True)
    _apply_machine_payload(machine, payload)
    db.session.add(machine)
    db.session.commit()
    logger.info(f"Created machine {machine.id} ({machine.name})")
    return _machine_to_spec(machine)


def update_machine(machine_id: str, payload: Dict[str, Any]) -> MachineSpec:
    machine = db.session.get(Machine, machine_id)
    if machine is None:
        raise NotFoundError(f"Machine not found: {machine_id}")

    if machine.is_reserved and payload.get('type', 'local') != 'local':
        raise ConfigurationError("The local machine cannot be made remote")

    _apply_machine_payload(machine, payload)
    db.session.commit()
    logger.info(f"Updated machine {machine.id}")
    return _machine_to_spec(machine)


def delete_machine(machine_id: str):
    """
    Delete a machine and, by cascade, its schedules.

    Raises:
        ConfigurationError: For the reserved local machine or unknown ids
    """
    if machine_id == LOCAL_MACHINE_ID:
        raise ConfigurationError("Cannot delete local machine")

    machine = db.session.get(Machine, machine_id)
    if machine is None:
        raise NotFoundError(f"Machine not found: {machine_id}")

    db.session.delete(machine)
    db.session.commit()
    logger.info(f"Deleted machine {machine_id} and its schedules")


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

def normalize_time(value: str) -> str:
    """Validate a time-of-day selector and return it as HH:MM."""
    match = _TIME_RE.match(str(value).strip())
    if not match:
        raise ConfigurationError(f"Invalid time format: {value}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigurationError(f"Invalid time format: {value}")
    return f"{hour:02d}:{minute:02d}"


def normalize_weekday(value) -> int:
    """Validate a weekday selector (0=Sunday .. 6=Saturday)."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid weekday: {value}")
    try:
        weekday = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid weekday: {value}")
    if not 0 <= weekday <= 6:
        raise ConfigurationError(f"Invalid weekday: {value}")
    return weekday


def _schedule_to_spec(schedule: Schedule) -> ScheduleSpec:
    return ScheduleSpec(
        id=schedule.id,
        name=schedule.name,
        description=schedule.description or '',
        enabled=schedule.enabled,
        machine_id=schedule.machine_id,
        databases=tuple(json.loads(schedule.databases or '[]')),
        days_of_week=tuple(json.loads(schedule.days_of_week or '[]')),
        times=tuple(json.loads(schedule.times or '[]')),
    )


def _apply_schedule_payload(schedule: Schedule, payload: Dict[str, Any]):
    if 'name' in payload:
        if not payload['name']:
            raise ConfigurationError("Schedule name is required")
        schedule.name = payload['name']
    if 'description' in payload:
        schedule.description = payload['description']
    if 'enabled' in payload:
        schedule.enabled = bool(payload['enabled'])
    if 'machine_id' in payload:
        if db.session.get(Machine, payload['machine_id']) is None:
            raise ConfigurationError(f"Machine not found: {payload['machine_id']}")
        schedule.machine_id = payload['machine_id']
    if 'databases' in payload:
        databases = [str(name) for name in (payload['databases'] or []) if str(name).strip()]
        schedule.databases = json.dumps(databases)
    if 'days_of_week' in payload:
        days = sorted({normalize_weekday(d) for d in (payload['days_of_week'] or [])})
        schedule.days_of_week = json.dumps(days)
    if 'times' in payload:
        times = sorted({normalize_time(t) for t in (payload['times'] or [])})
        schedule.times = json.dumps(times)


def get_schedule(schedule_id: str) -> ScheduleSpec:
    schedule = db.session.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule not found: {schedule_id}")
    return _schedule_to_spec(schedule)


def list_schedules() -> List[ScheduleSpec]:
    return [_schedule_to_spec(s) for s in Schedule.query.order_by(Schedule.created_at).all()]


def get_enabled_schedules() -> List[ScheduleSpec]:
    schedules = Schedule.query.filter_by(enabled=True).order_by(Schedule.created_at).all()
    return [_schedule_to_spec(s) for s in schedules]


def create_schedule(payload: Dict[str, Any]) -> ScheduleSpec:
    if not payload.get('name'):
        raise ConfigurationError("Schedule name is required")
    if not payload.get('machine_id'):
        raise ConfigurationError("Schedule machine_id is required")

    schedule = Schedule(id=f"schedule_{time.time_ns()}", enabled=True)
    _apply_schedule_payload(schedule, payload)
    db.session.add(schedule)
    db.session.commit()
    logger.info(f"Created schedule {schedule.id} ({schedule.name})")
    return _schedule_to_spec(schedule)


def update_schedule(schedule_id: str, payload: Dict[str, Any]) -> ScheduleSpec:
    schedule = db.session.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule not found: {schedule_id}")

    _apply_schedule_payload(schedule, payload)
    db.session.commit()
    logger.info(f"Updated schedule {schedule_id}")
    return _schedule_to_spec(schedule)


def delete_schedule(schedule_id: str):
    schedule = db.session.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFoundError(f"Schedule not found: {schedule_id}")

    db.session.delete(schedule)
    db.session.commit()
    logger.info(f"Deleted schedule {schedule_id}")


# ---------------------------------------------------------------------------
# Backup log (append-only ring)
# ---------------------------------------------------------------------------

def append_backup_log(entry: BackupLogEntry, limit: Optional[int] = None):
    """
    Append one log row and trim the table to the most recent `limit` rows.

    Concurrent jobs append from different threads; the lock keeps the
    append+trim pair atomic within the process.
    """
    if limit is None:
        from flask import current_app
        limit = current_app.config.get('BACKUP_LOG_LIMIT', 1000)

    with _log_lock:
        db.session.add(BackupLog(
            timestamp=entry.timestamp,
            machine_id=entry.machine_id,
            database=entry.database,
            file_name=entry.file_name,
            file_size=entry.file_size,
            success=entry.success,
            remote_id=entry.remote_id,
            error=entry.error,
        ))
        db.session.flush()

        oldest_kept = (
            db.session.query(BackupLog.id)
            .order_by(BackupLog.id.desc())
            .offset(limit - 1)
            .limit(1)
            .scalar()
        )
        if oldest_kept is not None:
            BackupLog.query.filter(BackupLog.id < oldest_kept).delete(synchronize_session=False)

        db.session.commit()


def get_backup_logs(limit: Optional[int] = None) -> List[BackupLogEntry]:
    """Return log entries, most recent first."""
    query = BackupLog.query.order_by(BackupLog.id.desc())
    if limit:
        query = query.limit(limit)

    return [
        BackupLogEntry(
            timestamp=row.timestamp,
            machine_id=row.machine_id,
            database=row.database,
            file_name=row.file_name,
            file_size=row.file_size,
            success=row.success,
            remote_id=row.remote_id,
            error=row.error,
        )
        for row in query.all()
    ]
