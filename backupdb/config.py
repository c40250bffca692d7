import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from backupdb.backup.lock import DEFAULT_LOCK_FILE
from backupdb.backup.sources import DEFAULT_PORT, DatabaseHost
from backupdb.backup.storage import STORAGE_TYPES


class ConfigurationError(Exception):
    """Raised when the backup configuration is inconsistent."""
    pass


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',')]


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_int(name: str, value: Optional[str], default: Optional[int]) -> Optional[int]:
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'")


@dataclass
class BackupSettings:
    """Resolved configuration of a backup run."""

    storage_type: str = 'git'
    backup_dir: Path = field(default_factory=lambda: Path('~/DBBackup').expanduser())

    # Database servers (parallel lists)
    db_hosts: List[str] = field(default_factory=lambda: ['localhost'])
    db_users: List[str] = field(default_factory=lambda: ['root'])
    db_passwords: List[str] = field(default_factory=lambda: [''], repr=False)
    db_ports: List[str] = field(default_factory=list)

    max_parallel_jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    incremental: bool = True
    delete_local_backups: bool = True
    fingerprint_algorithm: str = 'sha256'
    lock_file: str = DEFAULT_LOCK_FILE

    # Git
    git_repo: Optional[str] = None
    git_retention_days: int = -1

    # S3
    s3_bucket: Optional[str] = None
    s3_prefix: str = 'DatabaseBackups/'
    s3_endpoint_url: Optional[str] = None
    s3_region: Optional[str] = None
    aws_access_key_id: Optional[str] = field(default=None, repr=False)
    aws_secret_access_key: Optional[str] = field(default=None, repr=False)

    # rclone (OneDrive and other rclone remotes)
    rclone_remote: Optional[str] = None
    rclone_path: str = '/DatabaseBackups'

    # SFTP
    sftp_host: Optional[str] = None
    sftp_port: int = 22
    sftp_username: Optional[str] = None
    sftp_password: Optional[str] = field(default=None, repr=False)
    sftp_private_key: Optional[str] = None
    sftp_path: str = '/DatabaseBackups'

    # Scheduling
    schedule_cron: str = '0 2 * * *'
    schedule_timezone: str = 'UTC'

    def validate(self):
        """
        Check the configuration for inconsistencies.

        Raises:
            ConfigurationError: On the first problem found
        """
        if self.storage_type not in STORAGE_TYPES:
            raise ConfigurationError(
                f"Invalid storage type: {self.storage_type}. Valid options: {list(STORAGE_TYPES)}"
            )

        if not self.db_hosts or not any(self.db_hosts):
            raise ConfigurationError("No database hosts configured")

        counts = (len(self.db_hosts), len(self.db_users), len(self.db_passwords))
        if len(set(counts)) != 1:
            raise ConfigurationError(
                f"Number of hosts ({counts[0]}), users ({counts[1]}) "
                f"and passwords ({counts[2]}) must match"
            )

        if self.db_ports and len(self.db_ports) != len(self.db_hosts):
            raise ConfigurationError(
                f"Number of ports ({len(self.db_ports)}) must match number of hosts "
                f"({len(self.db_hosts)}) or be empty"
            )

        for port in self.db_ports:
            if port and not port.isdigit():
                raise ConfigurationError(f"Invalid database port: '{port}'")

        if self.max_parallel_jobs < 1:
            raise ConfigurationError(f"Max parallel jobs must be at least 1, got {self.max_parallel_jobs}")

        if self.git_retention_days < -1:
            raise ConfigurationError(f"Git retention days must be -1 or more, got {self.git_retention_days}")

        if self.storage_type == 'git' and not self.git_repo and not (Path(self.backup_dir) / '.git').exists():
            raise ConfigurationError("Git repository URL (BACKUPDB_GIT_REPO) is required for git storage")

        if self.storage_type == 's3':
            if not self.s3_bucket:
                raise ConfigurationError("S3 bucket (BACKUPDB_S3_BUCKET) is required for s3 storage")
            if bool(self.aws_access_key_id) != bool(self.aws_secret_access_key):
                raise ConfigurationError("AWS access key and secret key must be set together")

        if self.storage_type in ('rclone', 'onedrive') and not self.rclone_remote:
            raise ConfigurationError("rclone remote (BACKUPDB_RCLONE_REMOTE) is required for rclone storage")

        if self.storage_type == 'sftp':
            if not self.sftp_host or not self.sftp_username:
                raise ConfigurationError("SFTP host and user are required for sftp storage")
            if not self.sftp_password and not self.sftp_private_key:
                raise ConfigurationError("SFTP password or private key is required for sftp storage")

    @property
    def hosts(self) -> List[DatabaseHost]:
        """Database host entries built from the parallel lists."""
        entries = []
        for index, host in enumerate(self.db_hosts):
            port = self.db_ports[index] if self.db_ports else ''
            entries.append(DatabaseHost(
                host=host,
                port=int(port) if port else DEFAULT_PORT,
                username=self.db_users[index],
                password=self.db_passwords[index],
            ))
        return entries

    def summary(self) -> List[str]:
        """Configuration lines safe to print (no secrets)."""
        lines = [
            f"Storage type: {self.storage_type}",
            f"Backup directory: {self.backup_dir}",
            f"Database hosts: {', '.join(h.label for h in self.hosts)}",
            f"Max parallel jobs: {self.max_parallel_jobs}",
            f"Incremental backups: {self.incremental}",
        ]
        if self.storage_type == 'git':
            lines.append(f"Git repository: {self.git_repo}")
            lines.append(f"Git retention days: {self.git_retention_days}")
        elif self.storage_type == 's3':
            lines.append(f"S3 target: s3://{self.s3_bucket}/{self.s3_prefix}")
            if self.s3_endpoint_url:
                lines.append(f"S3 endpoint: {self.s3_endpoint_url}")
        elif self.storage_type in ('rclone', 'onedrive'):
            lines.append(f"rclone target: {self.rclone_remote}:{self.rclone_path}")
        elif self.storage_type == 'sftp':
            lines.append(f"SFTP target: {self.sftp_username}@{self.sftp_host}:{self.sftp_path}")
        if self.storage_type != 'git':
            lines.append(f"Delete local backups: {self.delete_local_backups}")
        return lines


def load_settings(environ: Optional[Mapping[str, str]] = None) -> BackupSettings:
    """
    Build BackupSettings from environment variables.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        BackupSettings (not yet validated)

    Raises:
        ConfigurationError: If a numeric variable cannot be parsed
    """
    env = os.environ if environ is None else environ
    get = env.get

    defaults = BackupSettings()

    return BackupSettings(
        storage_type=(get('BACKUPDB_STORAGE_TYPE') or defaults.storage_type).strip().lower(),
        backup_dir=Path(get('BACKUPDB_BACKUP_DIR') or '~/DBBackup').expanduser(),
        db_hosts=_split_list(get('BACKUPDB_HOSTS', 'localhost')),
        db_users=_split_list(get('BACKUPDB_USERS', 'root')),
        db_passwords=_split_list(get('BACKUPDB_PASSWORDS', '')) or [''],
        db_ports=_split_list(get('BACKUPDB_PORTS')),
        max_parallel_jobs=_parse_int('BACKUPDB_MAX_PARALLEL_JOBS', get('BACKUPDB_MAX_PARALLEL_JOBS'),
                                     defaults.max_parallel_jobs),
        incremental=_parse_bool(get('BACKUPDB_INCREMENTAL'), True),
        delete_local_backups=_parse_bool(get('BACKUPDB_DELETE_LOCAL_BACKUPS'), True),
        fingerprint_algorithm=get('BACKUPDB_FINGERPRINT_ALGORITHM') or 'sha256',
        lock_file=get('BACKUPDB_LOCK_FILE') or DEFAULT_LOCK_FILE,
        git_repo=get('BACKUPDB_GIT_REPO') or None,
        git_retention_days=_parse_int('BACKUPDB_GIT_RETENTION_DAYS', get('BACKUPDB_GIT_RETENTION_DAYS'), -1),
        s3_bucket=get('BACKUPDB_S3_BUCKET') or None,
        s3_prefix=get('BACKUPDB_S3_PREFIX', 'DatabaseBackups/'),
        s3_endpoint_url=get('BACKUPDB_S3_ENDPOINT_URL') or None,
        s3_region=get('BACKUPDB_S3_REGION') or get('AWS_DEFAULT_REGION') or None,
        aws_access_key_id=get('AWS_ACCESS_KEY_ID') or None,
        aws_secret_access_key=get('AWS_SECRET_ACCESS_KEY') or None,
        rclone_remote=get('BACKUPDB_RCLONE_REMOTE') or None,
        rclone_path=get('BACKUPDB_RCLONE_PATH') or '/DatabaseBackups',
        sftp_host=get('BACKUPDB_SFTP_HOST') or None,
        sftp_port=_parse_int('BACKUPDB_SFTP_PORT', get('BACKUPDB_SFTP_PORT'), 22),
        sftp_username=get('BACKUPDB_SFTP_USER') or None,
        sftp_password=get('BACKUPDB_SFTP_PASSWORD') or None,
        sftp_private_key=get('BACKUPDB_SFTP_KEY') or None,
        sftp_path=get('BACKUPDB_SFTP_PATH') or '/DatabaseBackups',
        schedule_cron=get('BACKUPDB_SCHEDULE') or '0 2 * * *',
        schedule_timezone=get('BACKUPDB_SCHEDULE_TIMEZONE') or 'UTC',
    )


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'backupdb-status-api'

    # Database (run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/backupdb.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('BACKUPDB_LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = os.environ.get('BACKUPDB_SCHEDULE_TIMEZONE') or 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "backupdb.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
