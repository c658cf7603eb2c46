"""
Database dump via the external mariadb-dump / mysqldump utility.
"""

import logging
import os
import shutil
import subprocess
from typing import List, Optional

from dumpwarden.backup.errors import (
    ToolNotFoundError,
    ToolExecutionError,
    EmptyOutputError,
)

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while the dump runs
POLL_INTERVAL = 1.0


def build_dump_command(binary: str, host: str, port: int, username: str, database: str) -> List[str]:
    """
    Build the dump argument list (without the binary itself).

    The password is never part of the argument list; it is passed through
    the MYSQL_PWD environment variable.
    """
    args = [
        '--protocol=TCP',
        '-h', host,
        '-P', str(port),
        '-u', username or '',
        '--skip-lock-tables',
        '--routines',
        '--triggers',
        '--no-tablespaces',
        '--default-character-set=utf8mb4',
        '--force',
        '--quick',
        '--max_allowed_packet=64M',
        '--skip-ssl',
        '--databases', database,
    ]

    # mariadb-dump rejects this option
    if os.path.basename(binary) == 'mysqldump':
        args.append('--set-gtid-purged=OFF')

    return args


def neutralize_definers(output: bytes) -> bytes:
    """Comment out DEFINER clauses so the dump restores under any account."""
    return output.replace(b'DEFINER=', b'-- DEFINER=')


def dump_database(
    host: str,
    port: int,
    username: str,
    password: Optional[str],
    database: str,
    binary: str = 'mariadb-dump',
    cancel_token=None,
) -> bytes:
    """
    Run the dump utility for one database and return the filtered output.

    Args:
        host: Database host (127.0.0.1 when going through a tunnel)
        port: Database port
        username: Database user
        password: Database password, passed via MYSQL_PWD
        database: Database to dump
        binary: Dump utility name
        cancel_token: Optional CancelToken checked while the process runs

    Raises:
        ToolNotFoundError: Binary not on PATH
        ToolExecutionError: Non-zero exit
        EmptyOutputError: Zero exit with no output
        JobCancelledError: Cancelled or deadline passed while running
    """
    executable = shutil.which(binary)
    if executable is None:
        raise ToolNotFoundError(f"{binary} not found in PATH")

    args = build_dump_command(binary, host, port, username, database)
    logger.info(f"Running {binary} for database {database} on {host}:{port}")

    env = os.environ.copy()
    if password:
        env['MYSQL_PWD'] = password
    else:
        env.pop('MYSQL_PWD', None)

    process = subprocess.Popen(
        [executable] + args,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
    )

    stdout, stderr = _wait_for_process(process, cancel_token)

    stderr_text = stderr.decode(errors='replace').strip()
    if stderr_text:
        logger.warning(f"{binary} stderr for {database}: {stderr_text}")

    if process.returncode != 0:
        raise ToolExecutionError(
            f"{binary} failed with exit code {process.returncode}: {stderr_text}",
            returncode=process.returncode,
            stderr=stderr_text,
        )

    if not stdout:
        raise EmptyOutputError(f"{binary} produced empty output for {database}")

    logger.info(f"{binary} output size for {database}: {len(stdout)} bytes")
    return neutralize_definers(stdout)


def _wait_for_process(process, cancel_token):
    """Collect process output, terminating the child if the job is cancelled."""
    if cancel_token is None:
        return process.communicate()

    while True:
        try:
            return process.communicate(timeout=POLL_INTERVAL)
        except subprocess.TimeoutExpired:
            if cancel_token.cancelled:
                _terminate(process)
                cancel_token.raise_if_cancelled()


def _terminate(process):
    process.terminate()
    try:
        process.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()
