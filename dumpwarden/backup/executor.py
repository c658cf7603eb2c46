"""
Backup executor - orchestrates the backup pipeline for one machine.

Workflow (per job):
1. Create LOCAL_BACKUP_DIR/<machine_id>
2. Open the SSH tunnel (remote machines)
3. Optionally probe the database once
4. For each database: dump -> write -> compress -> upload -> audit -> log row
5. Close the tunnel exactly once
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from dumpwarden import db
from dumpwarden.store import MachineSpec, BackupLogEntry, get_machine, append_backup_log
from dumpwarden.backup.errors import (
    AuditError,
    BackupError,
    CompressionError,
    ConfigurationError,
    JobCancelledError,
    StorageError,
)
from dumpwarden.backup.tunnel import open_tunnel
from dumpwarden.backup.probe import probe_database, test_machine_connection, list_databases
from dumpwarden.backup.dump import dump_database
from dumpwarden.backup.compression import (
    compress_artifact,
    generate_artifact_filename,
    get_artifact_size,
    timestamp_token,
)
from dumpwarden.backup.storage import create_uploader, create_audit_log

logger = logging.getLogger(__name__)

AUDIT_ATTEMPTS = 2


class CancelToken:
    """
    Cooperative cancellation with an optional deadline.

    Checked between pipeline stages and while the dump process runs.
    """

    def __init__(self, deadline: Optional[Union[timedelta, float]] = None):
        self._event = threading.Event()
        if isinstance(deadline, timedelta):
            deadline = deadline.total_seconds()
        self._expires_at = time.monotonic() + deadline if deadline is not None else None

    def cancel(self):
        self._event.set()

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise JobCancelledError("Backup job was cancelled")
        if self.expired:
            raise JobCancelledError("Backup job deadline exceeded")


@dataclass
class BackupResult:
    """Outcome for one database of a job."""
    database: str
    success: bool = False
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    remote_id: Optional[str] = None

    def to_dict(self):
        return {key: value for key, value in asdict(self).items() if value is not None or key == 'success'}


@dataclass
class BackupJob:
    """State of one in-flight job; never persisted."""
    machine: MachineSpec
    databases: List[str]
    token: str
    cancel_token: CancelToken
    backup_dir: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    tunnel_closer: Optional[Callable[[], None]] = None

    def close_tunnel(self):
        closer, self.tunnel_closer = self.tunnel_closer, None
        if closer is not None:
            closer()


class BackupExecutor:
    """
    Runs the backup pipeline for a machine and a list of databases.

    Returns one BackupResult per requested database, in request order.
    """

    def __init__(self, machine: MachineSpec, databases: List[str], cancel_token: Optional[CancelToken] = None):
        if not databases:
            raise ConfigurationError("No databases selected for backup")

        self.machine = machine
        self.databases = list(databases)
        self.cancel_token = cancel_token or CancelToken()
        self.config = current_app.config
        self.job: Optional[BackupJob] = None
        self.uploader = None
        self.audit_log = None
        self.logs = []

    def execute(self) -> List[BackupResult]:
        backup_dir = os.path.join(self.config['LOCAL_BACKUP_DIR'], self.machine.id)
        try:
            os.makedirs(backup_dir, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Failed to create backup directory {backup_dir}: {e}")

        self.job = BackupJob(
            machine=self.machine,
            databases=self.databases,
            token=timestamp_token(),
            cancel_token=self.cancel_token,
            backup_dir=backup_dir,
        )

        self._log(
            f"Starting backup for machine {self.machine.id} ({self.machine.name}): "
            f"{len(self.databases)} databases {self.databases}"
        )

        try:
            try:
                host, port = self._connect()
            except BackupError as e:
                self._log(f"Connection failed, no database attempted: {e}")
                return [self._record_failure(database, e) for database in self.databases]

            self._setup_storage()

            results = []
            for database in self.databases:
                self._log(f"Processing database {database}")
                result = self._backup_database(database, host, port)
                self._log(f"Completed database {database} (success: {result.success})")
                results.append(result)
        finally:
            self.job.close_tunnel()

        succeeded = sum(1 for r in results if r.success)
        self._log(f"Backup finished for machine {self.machine.id}: {succeeded}/{len(results)} succeeded")
        return results

    def _connect(self):
        """Resolve the address the dump utility should use; opens the tunnel for remote machines."""
        self.cancel_token.raise_if_cancelled()
        endpoint = self.machine.database

        if self.machine.is_remote:
            self._log(
                f"Opening SSH tunnel via {self.machine.ssh.host}:{self.machine.ssh.port} "
                f"to {endpoint.host}:{endpoint.port}"
            )
            (host, port), closer = open_tunnel(
                self.machine.ssh,
                endpoint.host,
                endpoint.port,
                settle_seconds=self.config['TUNNEL_SETTLE_SECONDS'],
                connect_timeout=self.config['SSH_CONNECT_TIMEOUT'],
            )
            self.job.tunnel_closer = closer
            self._log(f"Using SSH tunnel {host}:{port}")
        else:
            host, port = endpoint.host, endpoint.port
            self._log(f"Direct MySQL connection {host}:{port}")

        if self.config.get('PROBE_BEFORE_DUMP'):
            probe_database(host, port, endpoint.username, endpoint.password, self.config['DB_PROBE_TIMEOUT'])
            self._log("Database probe successful")

        return host, port

    def _setup_storage(self):
        try:
            self.uploader = create_uploader()
        except BackupError as e:
            self._log(f"Remote storage unavailable, keeping files locally: {e}")
            self.uploader = None
            return

        if self.uploader is None:
            self._log("Remote storage not configured, keeping files locally")
            return

        self.audit_log = create_audit_log(self.uploader)

    def _backup_database(self, database: str, host: str, port: int) -> BackupResult:
        result = BackupResult(database=database)
        artifact_path = None
        upload_error = None
        upload_attempted = False

        try:
            self.cancel_token.raise_if_cancelled()

            output = dump_database(
                host,
                port,
                self.machine.database.username,
                self.machine.database.password,
                database,
                binary=self.config['DUMP_BINARY'],
                cancel_token=self.cancel_token,
            )

            file_name = generate_artifact_filename(self.machine.name, database, self.job.token)
            artifact_path = os.path.join(self.job.backup_dir, file_name)
            try:
                with open(artifact_path, 'wb') as f:
                    f.write(output)
            except OSError as e:
                raise StorageError(f"Failed to write dump file: {e}")

            try:
                artifact_path = compress_artifact(artifact_path, self.config['COMPRESSOR_BINARY'])
            except CompressionError as e:
                self._log(f"Warning: compression failed, keeping uncompressed file: {e}")

            result.success = True
            result.file_name = os.path.basename(artifact_path)
            result.file_size = get_artifact_size(artifact_path)
            self._log(f"Artifact created: {result.file_name} ({result.file_size / (1024 * 1024):.2f} MB)")

            if self.uploader is not None:
                upload_attempted = True
                try:
                    result.remote_id = self.uploader.upload(
                        artifact_path,
                        result.file_name,
                        prefix=self.machine.id,
                        cancel_token=self.cancel_token,
                    )
                except (StorageError, JobCancelledError) as e:
                    # The dump stays successful; the file is kept for a later retry
                    upload_error = f"Upload failed: {e}"
                    self._log(f"Warning: {upload_error}")
                else:
                    self._log(f"Uploaded {result.file_name} (id: {result.remote_id})")
                    os.remove(artifact_path)
                    self._log(f"Local file {artifact_path} removed after upload")

        except BackupError as e:
            result.success = False
            result.error = str(e)
            result.error_kind = e.kind
            self._log(f"ERROR: backup of {database} failed: {e}")
            if artifact_path and os.path.exists(artifact_path):
                os.remove(artifact_path)
            result.file_name = None
            result.file_size = None

        entry = BackupLogEntry(
            machine_id=self.machine.id,
            database=database,
            success=result.success,
            file_name=result.file_name,
            file_size=result.file_size,
            remote_id=result.remote_id,
            error=result.error or upload_error,
        )

        if upload_attempted:
            self._record_audit(entry)
        self._append_log(entry)
        return result

    def _record_failure(self, database: str, error: BackupError) -> BackupResult:
        result = BackupResult(database=database, success=False, error=str(error), error_kind=error.kind)
        self._append_log(BackupLogEntry(
            machine_id=self.machine.id,
            database=database,
            success=False,
            error=result.error,
        ))
        return result

    def _record_audit(self, entry: BackupLogEntry):
        if self.audit_log is None:
            return

        for attempt in range(1, AUDIT_ATTEMPTS + 1):
            try:
                self.audit_log.record(entry)
                return
            except AuditError as e:
                self._log(f"Warning: audit append failed (attempt {attempt}/{AUDIT_ATTEMPTS}): {e}")

    def _append_log(self, entry: BackupLogEntry):
        try:
            append_backup_log(entry, limit=self.config['BACKUP_LOG_LIMIT'])
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to write backup log for {entry.database}: {e}")

    def _log(self, message: str):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def run_backup(
    machine_id: str,
    databases: List[str],
    cancel_token: Optional[CancelToken] = None,
    allow_disabled: bool = True,
) -> List[BackupResult]:
    """
    Back up databases of a machine.

    Args:
        machine_id: Machine to back up
        databases: Database names, processed in order
        cancel_token: Optional cancellation/deadline
        allow_disabled: If False, disabled machines are rejected (scheduled runs)

    Raises:
        ConfigurationError: Unknown or disabled machine, or empty database list
    """
    machine = get_machine(machine_id)

    if not machine.enabled and not allow_disabled:
        raise ConfigurationError(f"Machine is disabled: {machine.name}")

    return BackupExecutor(machine, databases, cancel_token).execute()


def _connection_options():
    config = current_app.config
    return {
        'probe_timeout': config['DB_PROBE_TIMEOUT'],
        'connect_timeout': config['SSH_CONNECT_TIMEOUT'],
        'settle_seconds': config['TUNNEL_SETTLE_SECONDS'],
    }


def test_connectivity(machine_id: Optional[str] = None, machine: Optional[MachineSpec] = None):
    """
    Test a stored machine by id, or a transient machine passed explicitly.

    Raises:
        ConfigurationError: Neither given, or unknown id
        ConnectivityError: First failing connectivity step
    """
    if machine is None:
        if machine_id is None:
            raise ConfigurationError("A machine id or machine definition is required")
        machine = get_machine(machine_id)

    test_machine_connection(machine, **_connection_options())


def get_machine_databases(machine_id: str) -> List[str]:
    """List non-system databases of a stored machine."""
    return list_databases(get_machine(machine_id), **_connection_options())
