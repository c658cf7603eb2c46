import os
import tempfile
from datetime import timedelta


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def _load_secret_key(data_dir):
    """
    Resolve SECRET_KEY from the environment or the persisted key file.

    The key also derives the Fernet key protecting stored credentials, so a
    non-persistent key makes every stored password unreadable after restart.
    """
    secret_key = os.environ.get('SECRET_KEY')
    if secret_key:
        return secret_key

    secret_file = os.path.join(data_dir, '.secret_key')
    if os.path.exists(secret_file):
        with open(secret_file, 'r') as f:
            return f.read().strip()

    import secrets
    print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")
    return secrets.token_hex(32)


class Config:
    """Base configuration"""

    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Flask
    SECRET_KEY = _load_secret_key(DATA_DIR)

    # Configuration store
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dumpwarden.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Local artifacts and retention
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/backups'
    RETENTION_DAYS = _env_int('RETENTION_DAYS', 30)
    BACKUP_LOG_LIMIT = _env_int('BACKUP_LOG_LIMIT', 1000)

    # External tools
    DUMP_BINARY = os.environ.get('DUMP_BINARY') or 'mariadb-dump'
    COMPRESSOR_BINARY = os.environ.get('COMPRESSOR_BINARY') or 'gzip'

    # Connectivity
    SSH_CONNECT_TIMEOUT = _env_int('SSH_CONNECT_TIMEOUT', 30)
    DB_PROBE_TIMEOUT = _env_int('DB_PROBE_TIMEOUT', 30)
    TUNNEL_SETTLE_SECONDS = float(os.environ.get('TUNNEL_SETTLE_SECONDS', 3))
    PROBE_BEFORE_DUMP = _env_bool('PROBE_BEFORE_DUMP', True)

    # Remote storage
    UPLOAD_TIMEOUT = _env_int('UPLOAD_TIMEOUT', 3600)
    AUDIT_TIMEOUT = _env_int('AUDIT_TIMEOUT', 30)
    TOKEN_REFRESH_MARGIN = _env_int('TOKEN_REFRESH_MARGIN', 300)
    GOOGLE_REDIRECT_URI = os.environ.get('GOOGLE_REDIRECT_URI') or 'http://localhost:8030/api/auth/google/callback'

    # Job deadlines
    MANUAL_BACKUP_TIMEOUT = timedelta(minutes=_env_int('MANUAL_BACKUP_TIMEOUT_MINUTES', 60))
    SCHEDULED_BACKUP_TIMEOUT = timedelta(minutes=_env_int('SCHEDULED_BACKUP_TIMEOUT_MINUTES', 120))

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_MAX_WORKERS = _env_int('SCHEDULER_MAX_WORKERS', 4)
    SCHEDULER_AUTOSTART = _env_bool('SCHEDULER_AUTOSTART', True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "dumpwarden.db")}'
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory store, no settle delay, no autostart"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    DATA_DIR = os.path.join(tempfile.gettempdir(), 'dumpwarden-test')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    TUNNEL_SETTLE_SECONDS = 0
    PROBE_BEFORE_DUMP = False
    SCHEDULER_AUTOSTART = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
