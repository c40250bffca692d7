"""
Short-lived credential files for the MySQL client tools.

Passwords are written to a private option file and handed to mysql and
mysqldump through --defaults-extra-file, so they never appear in the
process table.
"""

import os
import stat
import logging
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Set

logger = logging.getLogger(__name__)

CREDENTIAL_FILE_PREFIX = 'backupdb_mycnf.'


class CredentialError(Exception):
    """Raised when a credential file cannot be staged."""
    pass


@dataclass(frozen=True)
class CredentialArtifact:
    """A staged credential file and the account it belongs to."""
    path: Path
    username: str = ''


def _quote_option_value(value: str) -> str:
    """Quote a value for a MySQL option file."""
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


class CredentialRegistry:
    """
    Run-scoped record of every live credential file.

    The orchestrator purges the registry on every exit path so no secret
    outlives the run, including when a task thread is still unwinding.
    """

    def __init__(self):
        self._paths: Set[Path] = set()
        self._lock = threading.Lock()

    def register(self, path: Path):
        with self._lock:
            self._paths.add(path)

    def discard(self, path: Path):
        with self._lock:
            self._paths.discard(path)

    def __len__(self):
        with self._lock:
            return len(self._paths)

    def purge(self) -> int:
        """
        Delete all registered credential files.

        Returns:
            Number of files removed
        """
        with self._lock:
            paths = list(self._paths)
            self._paths.clear()

        removed = 0
        for path in paths:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Failed to remove credential file {path}: {e}")

        if removed:
            logger.debug(f"Purged {removed} credential file(s)")
        return removed


class CredentialStager:
    """
    Stages one credential file at a time.

    Staging a new secret removes the previous file first, so a stager never
    owns more than one live artifact.
    """

    def __init__(self, registry: Optional[CredentialRegistry] = None, directory: Optional[str] = None):
        """
        Initialize credential stager.

        Args:
            registry: Run-scoped registry that tracks live files
            directory: Directory for credential files (default: system temp dir)
        """
        self.registry = registry
        self.directory = directory
        self.artifact: Optional[CredentialArtifact] = None

    def stage(self, secret: str, username: str = '') -> CredentialArtifact:
        """
        Write a private option file holding the password.

        Args:
            secret: Database password
            username: Account the password belongs to (for logging only)

        Returns:
            CredentialArtifact describing the staged file

        Raises:
            CredentialError: If the file cannot be created
        """
        self.unstage()

        try:
            fd, name = tempfile.mkstemp(prefix=CREDENTIAL_FILE_PREFIX, dir=self.directory)
        except OSError as e:
            raise CredentialError(f"Cannot create credential file: {e}")

        path = Path(name)
        if self.registry is not None:
            self.registry.register(path)

        try:
            # Restrict before any secret byte is written
            os.fchmod(fd, stat.S_IRUSR | stat.S_IWUSR)
            with os.fdopen(fd, 'w') as f:
                f.write("[client]\n")
                f.write(f"password={_quote_option_value(secret or '')}\n")
        except OSError as e:
            self._remove(path)
            raise CredentialError(f"Cannot write credential file {path}: {e}")

        self.artifact = CredentialArtifact(path=path, username=username)
        logger.debug(f"Staged credentials for '{username}' at {path}")
        return self.artifact

    def unstage(self):
        """Remove the currently staged file, if any."""
        if self.artifact is None:
            return
        path = self.artifact.path
        self.artifact = None
        self._remove(path)

    @contextmanager
    def staged(self, secret: str, username: str = ''):
        """Context manager yielding a staged artifact that is always removed."""
        artifact = self.stage(secret, username)
        try:
            yield artifact
        finally:
            self.unstage()

    def _remove(self, path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove credential file {path}: {e}")
        finally:
            if self.registry is not None:
                self.registry.discard(path)
