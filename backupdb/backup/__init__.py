"""
Backup module for BackupDB.

This module handles the core backup functionality including:
- Single-instance locking
- Credential staging for the MySQL client tools
- Per-database dump, change detection and compression
- Bounded parallel execution across hosts
- Storage backends (git, S3, rclone/SFTP)
- Execution orchestration and retention
"""

from .executor import BackupExecutor, execute_backup
from .lock import AlreadyRunningError, LockManager
from .parallel import ParallelBackupRunner
from .results import RunReport, TaskOutcome
from .retention import RetentionManager
from .sources import DatabaseHost, DatabaseTarget, MySQLSource
from .storage import GitStorage, RemoteSyncStorage, S3Storage, StorageError, create_storage
from .task import BackupTask

__all__ = [
    'AlreadyRunningError',
    'BackupExecutor',
    'BackupTask',
    'DatabaseHost',
    'DatabaseTarget',
    'GitStorage',
    'LockManager',
    'MySQLSource',
    'ParallelBackupRunner',
    'RemoteSyncStorage',
    'RetentionManager',
    'RunReport',
    'S3Storage',
    'StorageError',
    'TaskOutcome',
    'create_storage',
    'execute_backup',
]
