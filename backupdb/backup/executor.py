"""
Backup executor - orchestrates a complete backup run.

Workflow:
1. Validate configuration
2. Resolve change detection (incremental mode off without a fingerprint)
3. Acquire the single-instance lock
4. Prepare storage (clone repository, create directories)
5. Apply the local retention policy
6. Back up every database on every host in parallel
7. Upload artifacts (even when some databases failed)
8. Delete local artifacts after a successful upload (if configured)
9. Purge staged credentials and release the lock (always)
"""

import signal
import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Optional

from .change_detector import resolve_change_detector
from .credentials import CredentialRegistry
from .lock import LockManager
from .parallel import ParallelBackupRunner
from .results import RunLogCapture, RunReport
from .sources import MySQLSource, create_source
from .storage import StorageBackend, StorageError, create_storage
from ..utils.log import SUCCESS

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = tuple(
    sig for sig in (getattr(signal, 'SIGTERM', None), getattr(signal, 'SIGHUP', None)) if sig is not None
)


class RunInterrupted(SystemExit):
    """Raised inside the run when the process receives a termination signal."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(128 + signum)


@contextmanager
def termination_guard():
    """
    Turn SIGTERM/SIGHUP into RunInterrupted for the duration of the block.

    Signal handlers can only be installed from the main thread; elsewhere
    (e.g. inside the scheduler's worker) the guard is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        logger.warning(f"Received signal {signum}, aborting backup run")
        raise RunInterrupted(signum)

    previous = {}
    for sig in TERMINATION_SIGNALS:
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class BackupExecutor:
    """
    Orchestrates a complete backup run for the configured hosts.
    """

    def __init__(
        self,
        settings,
        storage: Optional[StorageBackend] = None,
        source: Optional[MySQLSource] = None,
        lock_manager: Optional[LockManager] = None,
        run_date: Optional[date] = None,
        executor_factory=None,
    ):
        """
        Initialize backup executor.

        Args:
            settings: BackupSettings for the run
            storage: Storage backend (default: built from settings)
            source: Database source handler (default: mysql client tools)
            lock_manager: Lock manager (default: settings.lock_file)
            run_date: Date stamped on artifacts (default: today)
            executor_factory: Worker pool factory passed to the parallel runner
        """
        self.settings = settings
        self._storage = storage
        self.source = source or create_source('mysql')
        self.lock_manager = lock_manager or LockManager(settings.lock_file)
        self.run_date = run_date
        self.executor_factory = executor_factory
        self.registry = CredentialRegistry()

    @property
    def storage(self) -> StorageBackend:
        if self._storage is None:
            self._storage = create_storage(self.settings)
        return self._storage

    def execute(self) -> RunReport:
        """
        Execute one backup run.

        Task, host and upload failures are recorded in the report. Fatal
        conditions propagate after the lock and credentials are cleaned up.

        Returns:
            RunReport with all outcomes

        Raises:
            ConfigurationError: If the settings are inconsistent
            AlreadyRunningError: If another run holds the lock
            StorageError: If storage preparation fails
        """
        self.settings.validate()

        run_date = self.run_date or date.today()
        report = RunReport(run_date=run_date, storage_type=self.settings.storage_type)
        capture = RunLogCapture(report)
        package_logger = logging.getLogger('backupdb')
        package_logger.addHandler(capture)

        try:
            detector = resolve_change_detector(self.settings.incremental, self.settings.fingerprint_algorithm)

            with termination_guard(), self.lock_manager.hold():
                logger.info(f"Starting backup run (storage: {self.storage.describe()})")
                self._execute_workflow(report, run_date, detector)
        finally:
            self.registry.purge()
            report.finish()
            package_logger.removeHandler(capture)

        return report

    def _execute_workflow(self, report: RunReport, run_date: date, detector):
        """Execute the main backup workflow steps."""
        settings = self.settings
        backup_dir = settings.backup_dir

        # Step 1: Prepare storage
        self.storage.prepare(backup_dir)

        # Step 2: Retention runs before the dumps, even if nothing changes
        self.storage.apply_retention(backup_dir, today=run_date)

        # Step 3: Back up all databases
        runner_kwargs = {}
        if self.executor_factory is not None:
            runner_kwargs['executor_factory'] = self.executor_factory

        runner = ParallelBackupRunner(
            source=self.source,
            output_dir=backup_dir,
            max_parallel_jobs=settings.max_parallel_jobs,
            detector=detector,
            registry=self.registry,
            run_date=run_date,
            **runner_kwargs
        )
        runner.run_all(settings.hosts, report)
        logger.info(f"Database backups finished: {report.summary()}")

        # Step 4: Upload whatever was produced
        try:
            self.storage.upload(backup_dir, run_date)
        except StorageError as e:
            logger.error(f"Upload failed: {e}")
            report.record_upload_failure(str(e))
        else:
            report.uploaded = True
            logger.log(SUCCESS, f"Backups uploaded to {self.storage.describe()}")

            # Step 5: Local cleanup only after a confirmed upload
            self.storage.cleanup_local(backup_dir)

        if report.failed:
            for line in report.failures():
                logger.error(f"Failed: {line}")
        else:
            logger.log(SUCCESS, f"Backup run completed: {report.summary()}")


def execute_backup(settings, **kwargs) -> RunReport:
    """
    Run one backup with the given settings.

    Args:
        settings: BackupSettings
        **kwargs: Passed to BackupExecutor

    Returns:
        RunReport
    """
    return BackupExecutor(settings, **kwargs).execute()
