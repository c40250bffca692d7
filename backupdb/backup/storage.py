"""
Storage backends for backup artifacts.

Supports:
- GitStorage: Commit and push the backup directory to a git repository
- S3Storage: Upload to AWS S3 or an S3-compatible object store
- RemoteSyncStorage: Per-file copy to a remote via rclone or SFTP
"""

import posixpath
import shutil
import logging
import subprocess
from datetime import date
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import boto3
import paramiko
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from .compression import ARTIFACT_PATTERN, format_run_date
from .retention import KEEP_FOREVER, RetentionManager

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNKSIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def iter_artifacts(backup_dir, patterns: Sequence[str] = (ARTIFACT_PATTERN,)) -> List[Path]:
    """
    List artifact files below backup_dir, ignoring any .git directory.

    Args:
        backup_dir: Backup root directory
        patterns: Filename glob patterns to include

    Returns:
        Sorted list of matching file paths
    """
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        return []

    found = set()
    for pattern in patterns:
        for path in backup_dir.rglob(pattern):
            if path.is_file() and '.git' not in path.relative_to(backup_dir).parts:
                found.add(path)
    return sorted(found)


class StorageBackend:
    """
    Common contract of all storage backends.

    The orchestrator calls, in order: prepare, apply_retention, upload and,
    only after a successful upload, cleanup_local.
    """

    name = 'base'
    required_tools: Sequence[str] = ()

    def __init__(self, delete_local_backups: bool = True):
        self.delete_local_backups = delete_local_backups

    def prepare(self, backup_dir):
        """
        Make backup_dir ready to receive artifacts.

        Raises:
            StorageError: If the directory cannot be prepared
        """
        try:
            Path(backup_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create backup directory {backup_dir}: {e}")

    def apply_retention(self, backup_dir, today: Optional[date] = None) -> List[Path]:
        """Delete expired local artifacts. No-op unless the backend keeps history locally."""
        return []

    def upload(self, backup_dir, run_date: date):
        """
        Ship the artifacts in backup_dir.

        Raises:
            StorageError: If the upload fails
        """
        raise NotImplementedError

    def cleanup_local(self, backup_dir) -> List[Path]:
        """
        Delete local *.sql.gz artifacts after a confirmed upload.

        Only compressed artifacts are removed; every other file is left alone.

        Returns:
            Paths of deleted files
        """
        if not self.delete_local_backups:
            logger.debug("Keeping local backups")
            return []

        deleted = []
        for path in iter_artifacts(backup_dir):
            try:
                path.unlink()
                deleted.append(path)
            except OSError as e:
                logger.error(f"Failed to delete local backup {path}: {e}")

        logger.info(f"Deleted {len(deleted)} local backup file(s)")
        return deleted

    def test_connection(self) -> bool:
        """
        Test access to the remote.

        Returns:
            True if the remote is reachable

        Raises:
            StorageError: If connection test fails
        """
        raise NotImplementedError

    def describe(self) -> str:
        return self.name


class GitStorage(StorageBackend):
    """
    Keeps the backup directory as a git working tree and pushes each run.

    Old artifacts are removed by the retention policy before the dumps.
    After a push the local copies are deleted like on any other backend,
    unless local deletion is disabled.
    """

    name = 'git'
    required_tools = ('git',)

    def __init__(
        self,
        repo_url: str,
        retention_days: int = KEEP_FOREVER,
        git_bin: str = 'git',
        delete_local_backups: bool = True,
    ):
        """
        Initialize git storage handler.

        Args:
            repo_url: Remote repository URL (cloned when the directory is new)
            retention_days: Local retention policy (-1 = keep forever)
            git_bin: git executable
            delete_local_backups: Delete local artifacts after a successful push
        """
        super().__init__(delete_local_backups=delete_local_backups)
        self.repo_url = repo_url
        self.retention = RetentionManager(retention_days)
        self.git_bin = git_bin

    def _git(self, args: Sequence[str], cwd=None, check: bool = True) -> subprocess.CompletedProcess:
        """
        Run a git command in cwd without changing the process directory.

        Raises:
            StorageError: If check is set and git exits non-zero
        """
        command = [self.git_bin, *args]
        try:
            result = subprocess.run(command, cwd=cwd, capture_output=True, text=True)
        except FileNotFoundError:
            raise StorageError(f"{self.git_bin} not found in PATH")

        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise StorageError(f"git {args[0]} failed (exit {result.returncode}): {detail}")
        return result

    def is_repository(self, backup_dir) -> bool:
        return (Path(backup_dir) / '.git').exists()

    def prepare(self, backup_dir):
        """
        Clone the repository into backup_dir if it is not a work tree yet.

        Raises:
            StorageError: If cloning fails or backup_dir holds unrelated files
        """
        backup_dir = Path(backup_dir)
        if self.is_repository(backup_dir):
            return

        if backup_dir.exists() and any(backup_dir.iterdir()):
            raise StorageError(
                f"Backup directory {backup_dir} is not empty and is not a git repository"
            )

        if not self.repo_url:
            raise StorageError("Git repository URL is not configured")

        logger.info(f"Cloning {self.repo_url} into {backup_dir}")
        backup_dir.parent.mkdir(parents=True, exist_ok=True)
        self._git(['clone', self.repo_url, str(backup_dir)])

    def apply_retention(self, backup_dir, today: Optional[date] = None) -> List[Path]:
        return self.retention.enforce(backup_dir, today)

    def upload(self, backup_dir, run_date: date):
        """
        Commit pending changes and push them to origin.

        An unchanged working tree is a successful no-op.

        Raises:
            StorageError: If commit or push fails
        """
        backup_dir = Path(backup_dir)

        pull = self._git(['pull'], cwd=backup_dir, check=False)
        if pull.returncode != 0:
            logger.warning(f"git pull failed, continuing: {pull.stderr.strip()}")

        status = self._git(['status', '--porcelain'], cwd=backup_dir)
        if not status.stdout.strip():
            logger.info("No changes to commit")
            return

        self._git(['add', '.'], cwd=backup_dir)
        self._git(['commit', '-m', f"Database backup: {format_run_date(run_date)}"], cwd=backup_dir)

        branch = self._git(['rev-parse', '--abbrev-ref', 'HEAD'], cwd=backup_dir).stdout.strip()
        self._git(['push', 'origin', branch], cwd=backup_dir)
        logger.info(f"Pushed backups to origin/{branch}")

    def test_connection(self) -> bool:
        self._git(['ls-remote', self.repo_url])
        return True

    def describe(self) -> str:
        return f"git ({self.repo_url})"


class S3Storage(StorageBackend):
    """
    Handler for uploading backups to S3 or an S3-compatible service.

    Artifacts are uploaded under: {prefix}{YYYYMMDD}/{relative path}
    """

    name = 's3'

    def __init__(
        self,
        bucket_name: str,
        prefix: str = 'DatabaseBackups/',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        include_patterns: Sequence[str] = (ARTIFACT_PATTERN,),
        exclude_patterns: Sequence[str] = (),
        delete_local_backups: bool = True,
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix (a trailing slash is added if missing)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key
            region: AWS region
            endpoint_url: Custom endpoint for S3-compatible services
            include_patterns: Only files matching one of these are uploaded
            exclude_patterns: Files matching any of these are never uploaded
            delete_local_backups: Delete local artifacts after upload
        """
        super().__init__(delete_local_backups=delete_local_backups)
        self.bucket_name = bucket_name
        self.prefix = prefix if not prefix or prefix.endswith('/') else prefix + '/'
        self.region = region
        self.endpoint_url = endpoint_url
        self.include_patterns = tuple(include_patterns)
        self.exclude_patterns = tuple(exclude_patterns)
        self.transfer_config = TransferConfig(
            multipart_threshold=MULTIPART_THRESHOLD,
            multipart_chunksize=MULTIPART_CHUNKSIZE,
        )

        client_kwargs = {}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if region:
            client_kwargs['region_name'] = region
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _is_selected(self, relative_path: str) -> bool:
        name = posixpath.basename(relative_path)
        if not any(fnmatch(name, p) or fnmatch(relative_path, p) for p in self.include_patterns):
            return False
        return not any(fnmatch(name, p) or fnmatch(relative_path, p) for p in self.exclude_patterns)

    def object_key(self, run_date: date, relative_path: str) -> str:
        return f"{self.prefix}{format_run_date(run_date)}/{relative_path}"

    def upload(self, backup_dir, run_date: date) -> List[str]:
        """
        Upload every selected file below backup_dir.

        Returns:
            Uploaded S3 keys

        Raises:
            StorageError: If any upload fails
        """
        backup_dir = Path(backup_dir)
        uploaded = []

        for path in iter_artifacts(backup_dir, patterns=('*',)):
            relative_path = path.relative_to(backup_dir).as_posix()
            if not self._is_selected(relative_path):
                logger.debug(f"Not uploading {relative_path} (filtered)")
                continue

            s3_key = self.object_key(run_date, relative_path)
            try:
                self.s3_client.upload_file(
                    str(path), self.bucket_name, s3_key, Config=self.transfer_config
                )
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                raise StorageError(f"S3 upload failed ({error_code}) for {relative_path}: {e}")
            except BotoCoreError as e:
                raise StorageError(f"S3 upload failed for {relative_path}: {e}")
            except Exception as e:
                raise StorageError(f"Failed to upload {relative_path} to S3: {e}")

            logger.debug(f"Uploaded s3://{self.bucket_name}/{s3_key}")
            uploaded.append(s3_key)

        logger.info(f"Uploaded {len(uploaded)} file(s) to s3://{self.bucket_name}/{self.prefix}")
        return uploaded

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            # Try to head the bucket
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def describe(self) -> str:
        endpoint = f" via {self.endpoint_url}" if self.endpoint_url else ''
        return f"s3 (s3://{self.bucket_name}/{self.prefix}{endpoint})"


class RcloneTransport:
    """Copies files with the rclone CLI (OneDrive, Google Drive, ...)."""

    required_tools = ('rclone',)

    def __init__(self, remote: str, rclone_bin: str = 'rclone'):
        self.remote = remote.rstrip(':')
        self.rclone_bin = rclone_bin

    def _target(self, remote_path: str) -> str:
        return f"{self.remote}:{remote_path}"

    def _rclone(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run([self.rclone_bin, *args], capture_output=True, text=True)
        except FileNotFoundError:
            raise StorageError(f"{self.rclone_bin} not found in PATH")

        if result.returncode != 0:
            raise StorageError(f"rclone {args[0]} failed: {(result.stderr or result.stdout).strip()}")
        return result

    def open(self):
        pass

    def close(self):
        pass

    def mkdir(self, remote_dir: str):
        self._rclone(['mkdir', self._target(remote_dir)])

    def copy(self, local_path: Path, remote_dir: str):
        self._rclone(['copy', str(local_path), self._target(remote_dir)])

    def test_connection(self) -> bool:
        result = self._rclone(['listremotes'])
        remotes = {line.strip() for line in result.stdout.splitlines()}
        if f"{self.remote}:" not in remotes:
            raise StorageError(f"rclone remote '{self.remote}' is not configured")
        return True

    def describe(self) -> str:
        return f"rclone {self.remote}:"


class SFTPTransport:
    """Copies files to a remote host over SFTP."""

    required_tools = ()

    def __init__(self, host: str, username: str, port: int = 22,
                 password: Optional[str] = None, private_key: Optional[str] = None):
        """
        Initialize SFTP transport.

        Args:
            host: SSH hostname or IP
            username: SSH username
            port: SSH port (default 22)
            password: SSH password (optional if using key)
            private_key: Path to private key file (optional)
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key

        self.ssh_client = None
        self.sftp_client = None

    def open(self):
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            # Use password or private key
            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise StorageError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise StorageError("Either password or private_key must be provided")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except StorageError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise StorageError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            self.close()
            raise StorageError(f"SSH connection failed: {e}")
        except Exception as e:
            self.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        for attr in ('sftp_client', 'ssh_client'):
            client = getattr(self, attr)
            if client is not None:
                try:
                    client.close()
                except Exception as e:
                    logger.debug(f"Error closing {attr}: {e}")
                setattr(self, attr, None)

    def mkdir(self, remote_dir: str):
        """Create remote_dir and its parents."""
        current = '/' if remote_dir.startswith('/') else ''
        for part in [p for p in remote_dir.split('/') if p]:
            current = posixpath.join(current, part) if current else part
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                try:
                    self.sftp_client.mkdir(current)
                except OSError as e:
                    raise StorageError(f"Failed to create remote directory {current}: {e}")

    def copy(self, local_path: Path, remote_dir: str):
        remote_path = posixpath.join(remote_dir, local_path.name)
        try:
            self.sftp_client.put(str(local_path), remote_path)
        except PermissionError:
            raise StorageError(f"Permission denied writing {remote_path}")
        except Exception as e:
            raise StorageError(f"Failed to upload {local_path.name} to {remote_path}: {e}")

    def test_connection(self) -> bool:
        self.open()
        self.close()
        return True

    def describe(self) -> str:
        return f"sftp {self.username}@{self.host}:{self.port}"


class RemoteSyncStorage(StorageBackend):
    """
    Copies artifacts one by one to <remote_path>/<YYYYMMDD>/<relative path>.

    A failed file does not stop the walk; all failures are reported together
    once every file has been attempted.
    """

    name = 'remote'

    def __init__(self, transport, remote_path: str = '/DatabaseBackups', delete_local_backups: bool = True):
        """
        Initialize remote sync storage.

        Args:
            transport: RcloneTransport or SFTPTransport
            remote_path: Base directory on the remote
            delete_local_backups: Delete local artifacts after upload
        """
        super().__init__(delete_local_backups=delete_local_backups)
        self.transport = transport
        self.remote_path = remote_path.rstrip('/') or '/'
        self.required_tools = getattr(transport, 'required_tools', ())

    def remote_dir(self, run_date: date, relative_parent: str) -> str:
        parts = [self.remote_path, format_run_date(run_date)]
        if relative_parent and relative_parent != '.':
            parts.append(relative_parent)
        return posixpath.join(*parts)

    def upload(self, backup_dir, run_date: date) -> List[Path]:
        """
        Copy every artifact, attempting all files before reporting failures.

        Returns:
            Paths of uploaded files

        Raises:
            StorageError: If one or more files failed
        """
        backup_dir = Path(backup_dir)
        uploaded, failed = [], []

        self.transport.open()
        try:
            for path in iter_artifacts(backup_dir):
                relative = path.relative_to(backup_dir)
                target_dir = self.remote_dir(run_date, relative.parent.as_posix())

                try:
                    self.transport.mkdir(target_dir)
                except StorageError as e:
                    # The directory may already exist
                    logger.debug(f"mkdir {target_dir}: {e}")

                try:
                    self.transport.copy(path, target_dir)
                except StorageError as e:
                    logger.error(f"Failed to upload {relative}: {e}")
                    failed.append(str(relative))
                    continue

                logger.debug(f"Uploaded {relative} to {target_dir}")
                uploaded.append(path)
        finally:
            self.transport.close()

        if failed:
            raise StorageError(f"Failed to upload {len(failed)} file(s): {', '.join(failed)}")

        logger.info(f"Uploaded {len(uploaded)} file(s) to {self.transport.describe()}{self.remote_path}")
        return uploaded

    def test_connection(self) -> bool:
        return self.transport.test_connection()

    def describe(self) -> str:
        return f"{self.transport.describe()}{self.remote_path}"


STORAGE_TYPES = ('git', 's3', 'rclone', 'onedrive', 'sftp')


def create_storage(settings) -> StorageBackend:
    """
    Factory function to create the configured storage backend.

    Args:
        settings: BackupSettings instance

    Returns:
        StorageBackend instance

    Raises:
        ValueError: If the storage type is invalid
    """
    storage_type = settings.storage_type

    if storage_type == 'git':
        return GitStorage(
            settings.git_repo,
            retention_days=settings.git_retention_days,
            delete_local_backups=settings.delete_local_backups,
        )
    elif storage_type == 's3':
        return S3Storage(
            bucket_name=settings.s3_bucket,
            prefix=settings.s3_prefix,
            access_key=settings.aws_access_key_id,
            secret_key=settings.aws_secret_access_key,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            delete_local_backups=settings.delete_local_backups,
        )
    elif storage_type in ('rclone', 'onedrive'):
        return RemoteSyncStorage(
            RcloneTransport(settings.rclone_remote),
            remote_path=settings.rclone_path,
            delete_local_backups=settings.delete_local_backups,
        )
    elif storage_type == 'sftp':
        transport = SFTPTransport(
            host=settings.sftp_host,
            port=settings.sftp_port,
            username=settings.sftp_username,
            password=settings.sftp_password,
            private_key=settings.sftp_private_key,
        )
        return RemoteSyncStorage(
            transport,
            remote_path=settings.sftp_path,
            delete_local_backups=settings.delete_local_backups,
        )
    else:
        raise ValueError(f"Invalid storage type: {storage_type}")


def missing_tools(tools: Iterable[str]) -> List[str]:
    """Return the executables from tools that are not on PATH."""
    return [tool for tool in tools if shutil.which(tool) is None]
