from datetime import datetime
from dumpwarden import db


LOCAL_MACHINE_ID = 'local'


class Machine(db.Model):
    """A database host, reached directly or through an SSH hop"""
    __tablename__ = 'machines'

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    machine_type = db.Column(db.String(20), nullable=False, default='local')  # 'local' or 'remote'
    enabled = db.Column(db.Boolean, default=True, nullable=False)

    # Database endpoint
    db_host = db.Column(db.String(255), nullable=False, default='localhost')
    db_port = db.Column(db.Integer, nullable=False, default=3306)
    db_username = db.Column(db.String(255))
    db_password_encrypted = db.Column(db.Text)

    # SSH hop (remote machines only)
    ssh_host = db.Column(db.String(255))
    ssh_port = db.Column(db.Integer, default=22)
    ssh_username = db.Column(db.String(255))
    ssh_password_encrypted = db.Column(db.Text)
    ssh_private_key_encrypted = db.Column(db.Text)
    ssh_passphrase_encrypted = db.Column(db.Text)
    ssh_key_path = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    schedules = db.relationship('Schedule', back_populates='machine', cascade='all, delete-orphan', lazy='dynamic')

    @property
    def is_reserved(self):
        return self.id == LOCAL_MACHINE_ID

    def __repr__(self):
        return f'<Machine {self.id} type={self.machine_type} enabled={self.enabled}>'


class Schedule(db.Model):
    """Weekly backup schedule: weekday set x time-of-day set"""
    __tablename__ = 'schedules'

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    machine_id = db.Column(db.String(64), db.ForeignKey('machines.id'), nullable=False)
    databases = db.Column(db.Text, nullable=False, default='[]')  # JSON list of names
    days_of_week = db.Column(db.Text, nullable=False, default='[]')  # JSON list, 0=Sunday
    times = db.Column(db.Text, nullable=False, default='[]')  # JSON list of "HH:MM"
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    machine = db.relationship('Machine', back_populates='schedules')

    def __repr__(self):
        return f'<Schedule {self.id} machine={self.machine_id} enabled={self.enabled}>'


class BackupLog(db.Model):
    """Append-only audit of per-database backup attempts"""
    __tablename__ = 'backup_logs'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    # Plain string, not a foreign key: logs outlive deleted machines
    machine_id = db.Column(db.String(64), nullable=False)
    database = db.Column(db.String(255), nullable=False)
    file_name = db.Column(db.String(500))
    file_size = db.Column(db.BigInteger)
    success = db.Column(db.Boolean, nullable=False)
    remote_id = db.Column(db.String(500))
    error = db.Column(db.Text)

    def __repr__(self):
        return f'<BackupLog machine={self.machine_id} database={self.database} success={self.success}>'


class GoogleSettings(db.Model):
    """Google Drive / Sheets OAuth configuration"""
    __tablename__ = 'google_settings'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.String(255))
    client_secret_encrypted = db.Column(db.Text)
    sheet_id = db.Column(db.String(255))
    drive_folder = db.Column(db.String(255))
    access_token_encrypted = db.Column(db.Text)
    refresh_token_encrypted = db.Column(db.Text)
    token_expiry = db.Column(db.DateTime)  # naive UTC
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_configured(self):
        return bool(self.client_id and self.client_secret_encrypted)

    @property
    def is_authenticated(self):
        return bool(self.access_token_encrypted and self.refresh_token_encrypted)

    def __repr__(self):
        return f'<GoogleSettings authenticated={self.is_authenticated}>'


class AWSSettings(db.Model):
    """AWS S3 configuration"""
    __tablename__ = 'aws_settings'

    id = db.Column(db.Integer, primary_key=True)
    access_key_encrypted = db.Column(db.Text, nullable=False)
    secret_key_encrypted = db.Column(db.Text, nullable=False)
    bucket_name = db.Column(db.String(255), nullable=False)
    region = db.Column(db.String(50), nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<AWSSettings bucket={self.bucket_name} region={self.region}>'
