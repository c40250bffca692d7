"""
Retention policy enforcement for local backup artifacts.

Policy values:
- -1: keep everything (default)
-  0: delete every artifact older than today
-  N: keep artifacts from the last N days
"""

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .compression import ARTIFACT_PATTERN, artifact_date

logger = logging.getLogger(__name__)

KEEP_FOREVER = -1


class RetentionManager:
    """
    Deletes expired *.sql.gz artifacts from a backup directory.

    The artifact date comes from its filename; files with a foreign name
    fall back to their modification time.
    """

    def __init__(self, retention_days: int = KEEP_FOREVER):
        """
        Initialize retention manager.

        Args:
            retention_days: Days to keep (-1 = forever)
        """
        self.retention_days = retention_days

    @property
    def enabled(self) -> bool:
        return self.retention_days is not None and self.retention_days >= 0

    def cutoff(self, today: Optional[date] = None) -> date:
        """Artifacts dated before this day are expired."""
        today = today or date.today()
        return today - timedelta(days=self.retention_days)

    def is_expired(self, path: Path, today: Optional[date] = None) -> bool:
        if not self.enabled:
            return False

        day = artifact_date(path)
        if day is None:
            day = datetime.fromtimestamp(path.stat().st_mtime).date()

        return day < self.cutoff(today)

    def enforce(self, backup_dir, today: Optional[date] = None) -> List[Path]:
        """
        Delete expired artifacts below backup_dir.

        Args:
            backup_dir: Backup root directory
            today: Reference day (default: today)

        Returns:
            Paths of deleted artifacts
        """
        if not self.enabled:
            logger.debug("Retention: keeping all backups")
            return []

        backup_dir = Path(backup_dir)
        if not backup_dir.is_dir():
            return []

        logger.info(f"Retention: deleting backups older than {self.retention_days} day(s)")

        deleted = []
        for path in sorted(backup_dir.rglob(ARTIFACT_PATTERN)):
            if '.git' in path.relative_to(backup_dir).parts or not path.is_file():
                continue
            if not self.is_expired(path, today):
                continue
            try:
                path.unlink()
                deleted.append(path)
                logger.debug(f"Deleted expired backup: {path}")
            except OSError as e:
                logger.error(f"Failed to delete expired backup {path}: {e}")

        logger.info(f"Retention cleanup complete: {len(deleted)} file(s) deleted")
        return deleted


def enforce_local_retention(backup_dir, retention_days: int, today: Optional[date] = None) -> List[Path]:
    """
    Apply a retention policy to a backup directory.

    Args:
        backup_dir: Backup root directory
        retention_days: Days to keep (-1 = forever)
        today: Reference day (default: today)

    Returns:
        Paths of deleted artifacts
    """
    return RetentionManager(retention_days).enforce(backup_dir, today)
