"""
Import-order tests for the dumpwarden package.

Each module is imported first in a fresh interpreter, so import cycles that a
warm test session would hide still fail here.
"""

import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]


@pytest.mark.parametrize('module', [
    'dumpwarden.store',
    'dumpwarden.backup.errors',
    'dumpwarden.backup.executor',
    'dumpwarden.scheduler',
    'dumpwarden.routes.backup_routes',
])
def test_module_imports_first(module):
    result = subprocess.run(
        [sys.executable, '-c', f'import {module}'],
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr


def test_app_factory_in_fresh_interpreter():
    result = subprocess.run(
        [sys.executable, '-c', "from dumpwarden import create_app; create_app('testing')"],
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr
