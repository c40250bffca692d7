"""
Single-instance lock for backup runs.

The lock is a file containing the PID of the owning process. A lock whose
owner is no longer alive is considered stale and is reclaimed.
"""

import os
import errno
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_LOCK_FILE = '/tmp/backupdb.lock'


class LockError(Exception):
    """Raised when the lock file cannot be created or read."""
    pass


class AlreadyRunningError(LockError):
    """Raised when another live process holds the lock."""

    def __init__(self, pid: int, path: str):
        self.pid = pid
        self.path = path
        super().__init__(f"Another instance is already running (PID: {pid})")


@dataclass(frozen=True)
class LockHandle:
    """Proof of lock ownership returned by LockManager.acquire()."""
    pid: int
    path: Path


def is_process_alive(pid: int) -> bool:
    """
    Check whether a process exists by sending it signal 0.

    Args:
        pid: Process ID to check

    Returns:
        True if the process exists (even if owned by another user)
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to someone else
        return True
    except OverflowError:
        return False
    return True


def read_pid(path: Path) -> Optional[int]:
    """Read the PID stored in a lock file, or None if there is none."""
    try:
        content = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        if e.errno == errno.EACCES:
            raise LockError(f"Cannot read lock file {path}: {e}")
        return None

    try:
        return int(content.split()[0])
    except (ValueError, IndexError):
        return None


class LockManager:
    """
    Guarantees at most one backup run per lock path.

    Acquisition creates the lock file with O_EXCL so that two processes
    racing for the same path cannot both succeed.
    """

    def __init__(self, path=DEFAULT_LOCK_FILE, pid: Optional[int] = None):
        """
        Initialize lock manager.

        Args:
            path: Filesystem path of the lock file
            pid: PID written into the lock (default: current process)
        """
        self.path = Path(path)
        self.pid = pid if pid is not None else os.getpid()

    def acquire(self) -> LockHandle:
        """
        Acquire the lock.

        Returns:
            LockHandle for the acquired lock

        Raises:
            AlreadyRunningError: If a live process holds the lock
            LockError: If the lock file cannot be created
        """
        # Two attempts: the second one follows removal of a stale lock
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                self._handle_existing_lock()
                continue
            except OSError as e:
                raise LockError(f"Cannot create lock file {self.path}: {e}")

            with os.fdopen(fd, 'w') as f:
                f.write(f"{self.pid}\n")

            logger.debug(f"Lock acquired: {self.path} (PID: {self.pid})")
            return LockHandle(pid=self.pid, path=self.path)

        # Another process reclaimed the stale lock between our attempts
        owner = self.read_owner()
        raise AlreadyRunningError(owner or 0, str(self.path))

    def release(self, handle: LockHandle) -> bool:
        """
        Release the lock if it is still owned by the handle's process.

        Args:
            handle: LockHandle returned by acquire()

        Returns:
            True if the lock file was removed
        """
        owner = self.read_owner()
        if owner != handle.pid:
            logger.warning(
                f"Lock {self.path} is not owned by PID {handle.pid} "
                f"(owner: {owner}), leaving it in place"
            )
            return False

        try:
            self.path.unlink()
        except FileNotFoundError:
            return False

        logger.debug(f"Lock released: {self.path}")
        return True

    @contextmanager
    def hold(self):
        """Context manager that acquires the lock and always releases it."""
        handle = self.acquire()
        try:
            yield handle
        finally:
            self.release(handle)

    def read_owner(self) -> Optional[int]:
        """
        Read the PID recorded in the lock file.

        Returns:
            PID, or None if the file is missing or does not hold a PID
        """
        return read_pid(self.path)

    def _handle_existing_lock(self):
        """
        Raise if the existing lock is live, otherwise remove it as stale.

        The file is renamed aside before it is deleted, so a lock that
        another process created after our check is put back instead of lost.
        """
        owner = self.read_owner()

        if owner is not None and is_process_alive(owner):
            raise AlreadyRunningError(owner, str(self.path))

        aside = self.path.with_name(f"{self.path.name}.{self.pid}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return
        except OSError as e:
            raise LockError(f"Cannot remove stale lock file {self.path}: {e}")

        moved_owner = read_pid(aside)
        if moved_owner != owner and moved_owner is not None and is_process_alive(moved_owner):
            try:
                os.link(aside, self.path)
            except FileExistsError:
                pass
            finally:
                aside.unlink(missing_ok=True)
            raise AlreadyRunningError(moved_owner, str(self.path))

        aside.unlink(missing_ok=True)
        logger.warning(f"Removed stale lock file {self.path} (PID: {owner})")
