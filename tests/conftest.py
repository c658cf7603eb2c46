"""
Shared pytest fixtures for Dumpwarden tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Machine and schedule fixtures
- Remote storage settings (Google, AWS)
- Mock fixtures for external services (S3)
"""

import os
from datetime import datetime, timedelta

import pytest
import boto3
from moto import mock_aws

from dumpwarden import create_app, db as _db
from dumpwarden import store
from dumpwarden.models import AWSSettings, GoogleSettings
from dumpwarden.scheduler import shutdown_scheduler
from dumpwarden.utils.crypto import encrypt_optional


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    app.config.update({
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
    })
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)

    yield app

    shutdown_scheduler()


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables and the reserved local machine.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def local_machine(db):
    """Snapshot of the reserved local machine, with test credentials."""
    return store.update_machine('local', {
        'mysql': {'host': '127.0.0.1', 'port': 3306, 'username': 'backup', 'password': 'local-secret'}
    })


@pytest.fixture(scope='function')
def remote_machine(db):
    """A remote machine reached through SSH with password authentication."""
    return store.create_machine({
        'name': 'Prod DB #1',
        'type': 'remote',
        'description': 'Production database',
        'mysql': {'host': '10.0.0.5', 'port': 3306, 'username': 'dumper', 'password': 'db-secret'},
        'ssh': {'host': 'bastion.example.com', 'port': 22, 'username': 'deploy', 'password': 'ssh-secret'},
    })


@pytest.fixture(scope='function')
def schedule(db, local_machine):
    """Schedule backing up two databases on Monday and Wednesday at 02:00 and 14:30."""
    return store.create_schedule({
        'name': 'Nightly',
        'machine_id': local_machine.id,
        'databases': ['shop', 'crm'],
        'days_of_week': [1, 3],
        'times': ['02:00', '14:30'],
    })


@pytest.fixture(scope='function')
def aws_settings(db):
    """AWS settings with encrypted test credentials."""
    settings = AWSSettings(
        access_key_encrypted=encrypt_optional('test_access_key_123'),
        secret_key_encrypted=encrypt_optional('test_secret_key_456'),
        bucket_name='test-bucket',
        region='us-east-1'
    )
    _db.session.add(settings)
    _db.session.commit()
    return settings


@pytest.fixture(scope='function')
def google_settings(db):
    """Authenticated Google settings whose access token is valid for another hour."""
    settings = GoogleSettings(
        client_id='client-123.apps.googleusercontent.com',
        client_secret_encrypted=encrypt_optional('client-secret'),
        sheet_id='sheet-abc',
        drive_folder='folder-xyz',
        access_token_encrypted=encrypt_optional('access-token'),
        refresh_token_encrypted=encrypt_optional('refresh-token'),
        token_expiry=datetime.utcnow() + timedelta(hours=1),
    )
    _db.session.add(settings)
    _db.session.commit()
    return settings


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def fake_dump_tool(tmp_path):
    """
    Factory for executable shell scripts standing in for the dump utility.

    Usage: fake_dump_tool('echo hello', name='mariadb-dump') -> path
    """
    def _make(body: str, name: str = 'fake-dump') -> str:
        script = tmp_path / name
        script.write_text(f"#!/bin/sh\n{body}\n")
        script.chmod(0o755)
        return str(script)

    return _make
