"""
Command line entry point.

    backupdb              run one backup
    backupdb --test       check tools and connections, no backup
    backupdb --dry-run    show what would be done
    backupdb --daemon     run on the configured cron schedule
"""

import sys
import time
import logging
import argparse
from typing import Optional, Sequence

from backupdb import __version__
from backupdb.backup.credentials import CredentialError, CredentialStager
from backupdb.backup.executor import BackupExecutor, RunInterrupted
from backupdb.backup.lock import AlreadyRunningError, LockError
from backupdb.backup.sources import SourceError, create_source
from backupdb.backup.storage import StorageError, create_storage, missing_tools
from backupdb.config import ConfigurationError, load_settings
from backupdb.utils.log import SUCCESS, configure_logging, level_for_mode

logger = logging.getLogger('backupdb.cli')

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_ALREADY_RUNNING = 3
EXIT_INTERRUPTED = 130


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='backupdb',
        description="Back up MySQL/MariaDB databases to git, S3, rclone or SFTP storage.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--test', action='store_true',
                      help="Validate configuration and test connections without backing up.")
    mode.add_argument('--dry-run', action='store_true',
                      help="Show what would be done without doing it.")
    mode.add_argument('--daemon', action='store_true',
                      help="Run backups on the BACKUPDB_SCHEDULE cron schedule.")
    parser.add_argument('--debug', action='store_true', help="Enable debug output.")
    parser.add_argument('--log-dir', default=None, help="Also write a rotating log file here.")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def print_configuration(settings):
    logger.log(SUCCESS, "Configuration:")
    for line in settings.summary():
        logger.log(SUCCESS, f"  {line}")


def test_connections(settings, source=None, storage=None) -> bool:
    """
    Check required tools, database hosts and the storage backend.

    Args:
        settings: Validated BackupSettings
        source: Database source handler (default: mysql client tools)
        storage: Storage backend (default: built from settings)

    Returns:
        True if every check passed
    """
    source = source or create_source('mysql')
    storage = storage or create_storage(settings)
    ok = True

    missing = source.check_tools() + missing_tools(storage.required_tools)
    if missing:
        logger.error(f"Required tools not found: {', '.join(missing)}")
        ok = False
    else:
        logger.info("All required tools are installed")

    for server in settings.hosts:
        stager = CredentialStager()
        try:
            with stager.staged(server.password, server.username) as credentials:
                source.probe(server, credentials.path)
        except (SourceError, CredentialError) as e:
            logger.error(f"Database connection failed: {e}")
            ok = False
        else:
            logger.log(SUCCESS, f"Database connection OK: {server.label}")

    try:
        storage.test_connection()
    except StorageError as e:
        logger.error(f"Storage connection failed: {e}")
        ok = False
    else:
        logger.log(SUCCESS, f"Storage connection OK: {storage.describe()}")

    return ok


def dry_run(settings):
    print_configuration(settings)
    logger.log(SUCCESS, "Dry run: would perform these steps:")
    storage = create_storage(settings)
    logger.log(SUCCESS, f"  1. Prepare storage {storage.describe()} in {settings.backup_dir}")
    if settings.storage_type == 'git' and settings.git_retention_days >= 0:
        logger.log(SUCCESS, f"  2. Delete backups older than {settings.git_retention_days} day(s)")
    for server in settings.hosts:
        logger.log(SUCCESS, f"  3. Back up all databases on {server.label} as '{server.username}'")
    logger.log(SUCCESS, f"  4. Upload artifacts to {storage.describe()}")
    if settings.delete_local_backups:
        logger.log(SUCCESS, "  5. Delete local backups after a successful upload")


def run_once(settings) -> int:
    started = time.monotonic()
    print_configuration(settings)

    try:
        report = BackupExecutor(settings).execute()
    except AlreadyRunningError as e:
        logger.error(str(e))
        return EXIT_ALREADY_RUNNING
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except (StorageError, LockError) as e:
        logger.error(f"Backup aborted: {e}")
        return EXIT_FAILED
    except RunInterrupted as e:
        logger.error(f"Backup interrupted by signal {e.signum}")
        return EXIT_INTERRUPTED
    except KeyboardInterrupt:
        logger.error("Backup interrupted")
        return EXIT_INTERRUPTED

    elapsed = time.monotonic() - started
    if report.failed:
        logger.error(f"Backup finished with errors in {elapsed:.1f}s: {report.summary()}")
        for line in report.failures():
            logger.error(f"  {line}")
        return EXIT_FAILED

    logger.log(SUCCESS, f"Backup finished in {elapsed:.1f}s: {report.summary()}")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(level_for_mode(debug=args.debug, test=args.test), log_dir=args.log_dir)

    try:
        settings = load_settings()
        settings.validate()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    if args.test:
        print_configuration(settings)
        if test_connections(settings):
            logger.log(SUCCESS, "All tests passed")
            return EXIT_OK
        logger.error("Some tests failed")
        return EXIT_FAILED

    if args.dry_run:
        dry_run(settings)
        return EXIT_OK

    if args.daemon:
        from backupdb.scheduler import run_forever
        print_configuration(settings)
        run_forever(settings)
        return EXIT_OK

    return run_once(settings)


if __name__ == '__main__':
    sys.exit(main())
