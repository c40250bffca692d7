"""
Unit tests for retention policy management (backupdb/backup/retention.py).

Tests RetentionManager for cleaning up old backups.
"""

import os
from datetime import date, datetime

from freezegun import freeze_time

from backupdb.backup.retention import KEEP_FOREVER, RetentionManager, enforce_local_retention

TODAY = date(2024, 1, 15)


def _touch(directory, name, content=b'x'):
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


class TestRetentionManager:
    """Test RetentionManager basic functionality."""

    def test_default_keeps_forever(self):
        manager = RetentionManager()

        assert manager.retention_days == KEEP_FOREVER
        assert not manager.enabled

    def test_zero_is_enabled(self):
        assert RetentionManager(0).enabled

    def test_cutoff(self):
        assert RetentionManager(7).cutoff(TODAY) == date(2024, 1, 8)


class TestRetentionEnforcement:
    """Test deletion of expired artifacts."""

    def test_only_deletes_old_backups(self, backup_dir):
        old = _touch(backup_dir, '20240101_shop.sql.gz')
        boundary = _touch(backup_dir, '20240108_shop.sql.gz')
        recent = _touch(backup_dir, '20240114_shop.sql.gz')

        deleted = RetentionManager(7).enforce(backup_dir, today=TODAY)

        assert deleted == [old]
        assert not old.exists()
        assert boundary.exists()
        assert recent.exists()

    def test_keep_forever_deletes_nothing(self, backup_dir):
        ancient = _touch(backup_dir, '20100101_shop.sql.gz')

        assert RetentionManager(KEEP_FOREVER).enforce(backup_dir, today=TODAY) == []
        assert ancient.exists()

    def test_zero_days_keeps_only_today(self, backup_dir):
        yesterday = _touch(backup_dir, '20240114_shop.sql.gz')
        today = _touch(backup_dir, '20240115_shop.sql.gz')

        RetentionManager(0).enforce(backup_dir, today=TODAY)

        assert not yesterday.exists()
        assert today.exists()

    def test_foreign_files_untouched(self, backup_dir):
        notes = _touch(backup_dir, 'README.md')
        tarball = _touch(backup_dir, '20200101_dump.tar.gz')

        RetentionManager(0).enforce(backup_dir, today=TODAY)

        assert notes.exists()
        assert tarball.exists()

    def test_git_directory_is_skipped(self, backup_dir):
        internal = _touch(backup_dir, '.git/20200101_shop.sql.gz')

        RetentionManager(1).enforce(backup_dir, today=TODAY)

        assert internal.exists()

    def test_nested_artifacts_are_expired(self, backup_dir):
        nested = _touch(backup_dir, 'legacy/20231201_crm.sql.gz')

        assert RetentionManager(30).enforce(backup_dir, today=TODAY) == [nested]

    def test_unparseable_name_falls_back_to_mtime(self, backup_dir):
        stale = _touch(backup_dir, 'manual_export.sql.gz')
        fresh = _touch(backup_dir, 'other_export.sql.gz')
        old_time = datetime(2023, 6, 1).timestamp()
        os.utime(stale, (old_time, old_time))
        new_time = datetime(2024, 1, 14).timestamp()
        os.utime(fresh, (new_time, new_time))

        RetentionManager(7).enforce(backup_dir, today=TODAY)

        assert not stale.exists()
        assert fresh.exists()

    def test_missing_directory(self, tmp_path):
        assert RetentionManager(7).enforce(tmp_path / 'missing', today=TODAY) == []

    @freeze_time("2024-01-15")
    def test_defaults_to_today(self, backup_dir):
        old = _touch(backup_dir, '20240107_shop.sql.gz')
        kept = _touch(backup_dir, '20240108_shop.sql.gz')

        deleted = enforce_local_retention(backup_dir, 7)

        assert deleted == [old]
        assert kept.exists()
