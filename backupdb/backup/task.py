"""
Backup of a single database: dump, compare, compress.
"""

import logging
import threading
from datetime import date, timedelta
from pathlib import Path
from typing import Optional

from .change_detector import ChangeDetector
from .compression import CompressionError, compress_file, generate_artifact_filename, get_archive_size
from .credentials import CredentialError, CredentialRegistry, CredentialStager
from .results import BackupArtifact, TaskOutcome
from .sources import DatabaseTarget, DumpError, MySQLSource
from ..utils.log import SUCCESS

logger = logging.getLogger(__name__)


class BackupTask:
    """
    Produces the backup artifact for one database.

    Steps:
    1. Stage credentials
    2. Dump to <date>_<db>.sql
    3. Compare with yesterday's artifact (incremental mode only)
    4. Compress to <date>_<db>.sql.gz
    5. Unstage credentials (always)

    Setting cancel_event stops the task between steps; the partial
    dump is removed and the task reports failure.
    """

    def __init__(
        self,
        target: DatabaseTarget,
        output_dir,
        source: MySQLSource,
        detector: Optional[ChangeDetector] = None,
        registry: Optional[CredentialRegistry] = None,
        run_date: Optional[date] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize backup task.

        Args:
            target: Database to back up
            output_dir: Directory receiving the artifact
            source: Source handler used to dump the database
            detector: Change detector, or None when incremental mode is off
            registry: Run-scoped credential registry
            run_date: Date stamped on the artifact (default: today)
            cancel_event: Set when the run is interrupted
        """
        self.target = target
        self.output_dir = Path(output_dir)
        self.source = source
        self.detector = detector
        self.registry = registry
        self.run_date = run_date or date.today()
        self.cancel_event = cancel_event

    @property
    def dump_path(self) -> Path:
        return self.output_dir / generate_artifact_filename(self.run_date, self.target.database, compressed=False)

    @property
    def previous_artifact_path(self) -> Path:
        yesterday = self.run_date - timedelta(days=1)
        return self.output_dir / generate_artifact_filename(yesterday, self.target.database)

    def run(self) -> TaskOutcome:
        """
        Execute the task.

        Never raises for task-level failures: they are returned as a failed
        outcome carrying the reason.

        Returns:
            TaskOutcome (success, skipped or failed)
        """
        stager = CredentialStager(self.registry)
        try:
            with stager.staged(self.target.password, self.target.username) as credentials:
                return self._run(credentials.path)
        except (CredentialError, DumpError, CompressionError) as e:
            logger.error(f"Backup of {self.target.database} on {self.target.host} failed: {e}")
            return TaskOutcome.failed(self.target.host, self.target.database, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error backing up {self.target.database} on {self.target.host}")
            self.dump_path.unlink(missing_ok=True)
            return TaskOutcome.failed(self.target.host, self.target.database, f"Unexpected error: {e}")

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _interrupted(self) -> TaskOutcome:
        self.dump_path.unlink(missing_ok=True)
        logger.warning(f"Backup of {self.target.database} on {self.target.host} interrupted")
        return TaskOutcome.failed(self.target.host, self.target.database, 'interrupted')

    def _run(self, credentials_file) -> TaskOutcome:
        host, database = self.target.host, self.target.database
        dump_path = self.dump_path

        if self.cancelled:
            return self._interrupted()

        logger.info(f"Backing up {database} from {host}")
        try:
            self.source.dump(self.target, credentials_file, dump_path)
        except DumpError:
            if self.cancelled:
                return self._interrupted()
            raise

        if self.cancelled:
            return self._interrupted()

        if dump_path.stat().st_size == 0:
            dump_path.unlink(missing_ok=True)
            logger.warning(f"Dump of {database} on {host} is empty, removed")
            return TaskOutcome.failed(host, database, 'empty dump')

        if self.detector is not None and self.detector.is_unchanged(dump_path, self.previous_artifact_path):
            dump_path.unlink(missing_ok=True)
            logger.info(f"No changes in {database} since yesterday, skipped")
            return TaskOutcome.skipped(host, database)

        if self.cancelled:
            return self._interrupted()

        artifact_path = compress_file(dump_path)
        artifact = BackupArtifact(
            date=self.run_date,
            database=database,
            path=artifact_path,
            size_bytes=get_archive_size(artifact_path),
        )

        logger.log(SUCCESS, f"Backed up {database} from {host} ({artifact.size_bytes / 1024 / 1024:.2f} MB)")
        return TaskOutcome.success(host, database, artifact)
