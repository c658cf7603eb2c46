"""
Artifact naming and compression.

Dumps are written as `.sql` and compressed with the external `gzip` binary
into `.sql.gz`. When gzip is not installed the raw file is kept as is.
"""

import os
import re
import shutil
import subprocess
import threading
from datetime import datetime, timedelta
from typing import Optional

from dumpwarden.backup.errors import CompressionError

_UNSAFE_CHARS = re.compile(r'[^a-zA-Z0-9_-]')
_REPEATED_UNDERSCORES = re.compile(r'_+')

TOKEN_FORMAT = '%Y%m%d_%H%M%S'

_token_lock = threading.Lock()
_last_token_time: Optional[datetime] = None


def sanitize_machine_name(name: str) -> str:
    """
    Make a machine name safe for use in file names.

    Examples:
        'Prod DB #1' -> 'Prod_DB_1'
        '***' -> 'server'
    """
    sanitized = _UNSAFE_CHARS.sub('_', name or '')
    sanitized = _REPEATED_UNDERSCORES.sub('_', sanitized)
    sanitized = sanitized.strip('_')
    return sanitized or 'server'


def timestamp_token(now: Optional[datetime] = None) -> str:
    """
    Return a YYYYMMDD_HHMMSS token that never repeats within the process.

    Two jobs started in the same second would otherwise produce the same file
    names, so a token that would not advance is bumped by one second.
    """
    global _last_token_time

    current = (now or datetime.now()).replace(microsecond=0)
    with _token_lock:
        if _last_token_time is not None and current <= _last_token_time:
            current = _last_token_time + timedelta(seconds=1)
        _last_token_time = current
    return current.strftime(TOKEN_FORMAT)


def generate_artifact_filename(machine_name: str, database: str, token: str) -> str:
    """
    Build the raw dump file name.

    Format: backup_{machine}_{database}_{YYYYMMDD_HHMMSS}.sql
    """
    return f"backup_{sanitize_machine_name(machine_name)}_{database}_{token}.sql"


def compress_artifact(raw_path: str, compressor: str = 'gzip') -> str:
    """
    Compress a dump file with the external compressor.

    Args:
        raw_path: Path to the uncompressed .sql file
        compressor: Name of the gzip-compatible binary

    Returns:
        Path of the final artifact: `<raw_path>.gz`, or `raw_path` unchanged
        when the compressor is not installed

    Raises:
        CompressionError: If the compressor fails. The raw file is left in place.
    """
    binary = shutil.which(compressor)
    if binary is None:
        return raw_path

    compressed_path = f"{raw_path}.gz"
    try:
        with open(raw_path, 'rb') as src, open(compressed_path, 'wb') as dst:
            result = subprocess.run(
                [binary, '-c'],
                stdin=src,
                stdout=dst,
                stderr=subprocess.PIPE,
            )
    except OSError as e:
        _remove_quietly(compressed_path)
        raise CompressionError(f"Failed to compress {raw_path}: {e}")

    if result.returncode != 0:
        _remove_quietly(compressed_path)
        stderr = result.stderr.decode(errors='replace').strip()
        raise CompressionError(f"{compressor} exited with code {result.returncode}: {stderr}")

    os.remove(raw_path)
    return compressed_path


def get_artifact_size(path: str) -> int:
    """Size of an artifact in bytes."""
    return os.path.getsize(path)


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
