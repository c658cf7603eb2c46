"""
Connectivity checks for database machines.
"""

import logging
from typing import List, Optional

import paramiko
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from dumpwarden.backup.errors import (
    BackupError,
    ConnError,
    ServiceUnavailableError,
)
from dumpwarden.backup.tunnel import SSHSession, open_tunnel

logger = logging.getLogger(__name__)

SYSTEM_DATABASES = frozenset({'information_schema', 'performance_schema', 'mysql', 'sys'})


def _service_commands(db_port: int) -> List[str]:
    return [
        'systemctl is-active mysql',
        'systemctl is-active mysqld',
        'systemctl is-active mariadb',
        'service mysql status',
        'pgrep mysqld',
        f'netstat -ln | grep :{db_port}',
        f'ss -ln | grep :{db_port}',
    ]


def _create_engine(host: str, port: int, username: Optional[str], password: Optional[str], timeout: int):
    url = URL.create(
        'mysql+pymysql',
        username=username,
        password=password,
        host=host,
        port=port,
    )
    return create_engine(url, poolclass=NullPool, connect_args={'connect_timeout': timeout})


def probe_database(host: str, port: int, username: Optional[str], password: Optional[str], timeout: int = 30):
    """
    Open one connection, run SELECT 1 and close.

    Raises:
        ConnError: If the server refuses, times out or rejects the credentials
    """
    logger.info(f"MySQL: probing {username}@{host}:{port}")
    engine = _create_engine(host, port, username, password, timeout)
    try:
        with engine.connect() as conn:
            conn.execute(text('SELECT 1'))
    except SQLAlchemyError as e:
        raise ConnError(f"Failed to connect to MySQL server at {host}:{port}: {e}")
    finally:
        engine.dispose()


def check_remote_service(session: SSHSession, db_port: int) -> str:
    """
    Confirm a database server is running on the SSH host.

    Tries each inspection command in order and succeeds on the first that
    produces output.

    Returns:
        The command that succeeded

    Raises:
        ServiceUnavailableError: If no command reports a running server
    """
    for command in _service_commands(db_port):
        logger.debug(f"SSH: running {command}")
        try:
            output = session.execute(command)
        except (BackupError, paramiko.SSHException, OSError) as e:
            logger.debug(f"SSH: command failed: {e}")
            continue
        if output and output.strip():
            logger.info(f"SSH: '{command}' reported {output.decode(errors='replace').strip()}")
            return command

    raise ServiceUnavailableError("MySQL service does not appear to be running on remote server")


def _endpoint_address(machine, settle_seconds: float, connect_timeout: int):
    """Return ((host, port), closer) for reaching the machine's database."""
    if machine.is_remote:
        return open_tunnel(
            machine.ssh,
            machine.database.host,
            machine.database.port,
            settle_seconds=settle_seconds,
            connect_timeout=connect_timeout,
        )
    return (machine.database.host, machine.database.port), None


def test_machine_connection(
    machine,
    probe_timeout: int = 30,
    connect_timeout: int = 30,
    settle_seconds: float = 3.0,
):
    """
    Verify a machine end to end.

    Remote: SSH test command, database service check, then tunnel and
    database probe. Local: direct database probe.

    Raises:
        ConnectivityError subclasses describing the first failing step
    """
    logger.info(f"Testing connection for machine {machine.name} ({machine.machine_type})")

    if machine.is_remote:
        SSHSession(machine.ssh, connect_timeout=connect_timeout).test_connection()
        logger.info("SSH connection successful")

        with SSHSession(machine.ssh, connect_timeout=connect_timeout) as session:
            check_remote_service(session, machine.database.port)
        logger.info("MySQL service is running on remote server")

    (host, port), closer = _endpoint_address(machine, settle_seconds, connect_timeout)
    try:
        probe_database(host, port, machine.database.username, machine.database.password, probe_timeout)
    finally:
        if closer is not None:
            closer()

    logger.info(f"MySQL connection successful for machine {machine.name}")


def list_databases(
    machine,
    probe_timeout: int = 30,
    connect_timeout: int = 30,
    settle_seconds: float = 3.0,
) -> List[str]:
    """
    List user databases on a machine, without the system schemas.

    Raises:
        ConnectivityError subclasses on tunnel or connection failure
    """
    (host, port), closer = _endpoint_address(machine, settle_seconds, connect_timeout)
    engine = _create_engine(host, port, machine.database.username, machine.database.password, probe_timeout)
    try:
        with engine.connect() as conn:
            rows = conn.execute(text('SHOW DATABASES')).fetchall()
    except SQLAlchemyError as e:
        raise ConnError(f"Failed to get databases from {machine.name}: {e}")
    finally:
        engine.dispose()
        if closer is not None:
            closer()

    return [row[0] for row in rows if row[0] not in SYSTEM_DATABASES]
