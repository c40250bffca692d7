"""
Shared pytest fixtures for BackupDB tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Backup settings and host fixtures
- A fake database source that stands in for mysql/mysqldump
- Mock fixtures for external services (S3, SSH)
"""

import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backupdb import create_app, db as _db
from backupdb.backup.sources import ConnectivityError, DatabaseHost, DumpError
from backupdb.config import BackupSettings


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

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


@pytest.fixture
def backup_dir(tmp_path):
    """Empty backup directory."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def credential_dir(tmp_path):
    """Directory used as TMPDIR so staged credential files can be inspected."""
    path = tmp_path / 'credentials'
    path.mkdir()
    with patch('tempfile.tempdir', str(path)):
        yield path


@pytest.fixture
def db_host():
    """A single database host entry."""
    return DatabaseHost(host='db1.example.com', port=3306, username='backup', password='s3cr3t')


@pytest.fixture
def settings(tmp_path, backup_dir):
    """
    BackupSettings for an S3 backend with one host.

    The lock file lives in tmp_path so tests never touch /tmp/backupdb.lock.
    """
    return BackupSettings(
        storage_type='s3',
        backup_dir=backup_dir,
        db_hosts=['db1.example.com'],
        db_users=['backup'],
        db_passwords=['s3cr3t'],
        db_ports=['3306'],
        max_parallel_jobs=2,
        lock_file=str(tmp_path / 'backupdb.lock'),
        s3_bucket='test-bucket',
        s3_region='us-east-1',
    )


class FakeSource:
    """
    In-memory stand-in for MySQLSource.

    Args:
        databases: Mapping host -> list of database names
        contents: Mapping database -> dump bytes (default: b"-- dump of <db>")
        unreachable: Hosts whose probe fails
        failing: Databases whose dump fails
        delay: Seconds each dump sleeps (to observe concurrency)

    terminate_active() wakes every sleeping dump, which then fails the way
    a killed mysqldump does.
    """

    def __init__(self, databases, contents=None, unreachable=(), failing=(), delay=0.0):
        self.databases = databases
        self.contents = contents or {}
        self.unreachable = set(unreachable)
        self.failing = set(failing)
        self.delay = delay

        self.credential_files = []
        self.dumped = []
        self.active = 0
        self.max_active = 0
        self.terminated = 0
        self._lock = threading.Lock()
        self._terminate = threading.Event()

    def probe(self, server, credentials_file):
        self.credential_files.append(Path(credentials_file))
        if server.host in self.unreachable:
            raise ConnectivityError(f"Cannot connect to {server.label}")
        return True

    def list_databases(self, server, credentials_file):
        return list(self.databases.get(server.host, []))

    def dump(self, target, credentials_file, output_path):
        self.credential_files.append(Path(credentials_file))
        assert Path(credentials_file).exists()

        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay and self._terminate.wait(self.delay):
                with self._lock:
                    self.terminated += 1
                raise DumpError(f"mysqldump for {target.label} was terminated (signal 15)")
            if target.database in self.failing:
                raise DumpError(f"mysqldump failed for {target.label}")
            content = self.contents.get(target.database, f"-- dump of {target.database}\n".encode())
            Path(output_path).write_bytes(content)
            with self._lock:
                self.dumped.append((target.host, target.database))
            return Path(output_path)
        finally:
            with self._lock:
                self.active -= 1

    def terminate_active(self):
        with self._lock:
            active = self.active
        self._terminate.set()
        return active

    def check_tools(self):
        return []


@pytest.fixture
def fake_source_factory():
    """Factory fixture building FakeSource instances."""
    return FakeSource


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
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('backupdb.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('backupdb.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
