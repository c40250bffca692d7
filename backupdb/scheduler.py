"""
APScheduler configuration and job scheduling for BackupDB.

Manages:
- The scheduled backup run (cron expression from BACKUPDB_SCHEDULE)
- Manual run triggers
- Daemon mode without the web service
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from backupdb.backup.executor import execute_backup
from backupdb.backup.lock import AlreadyRunningError
from backupdb.config import ConfigurationError, load_settings
from backupdb.backup.storage import StorageError

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'database_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

JOB_DEFAULTS = {
    'coalesce': True,  # Combine multiple pending instances into one
    'max_instances': 1,  # Only one instance of a job at a time
    'misfire_grace_time': 300  # 5 minutes grace period for misfires
}


def init_scheduler(app, settings=None):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
        settings: BackupSettings (default: loaded from the environment)
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    settings = settings or load_settings()
    timezone_name = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    scheduler = BackgroundScheduler(
        jobstores={'default': MemoryJobStore()},
        # One worker: runs never overlap within this process
        executors={'default': ThreadPoolExecutor(max_workers=1)},
        job_defaults=JOB_DEFAULTS,
        timezone=timezone_name
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=CronTrigger.from_crontab(settings.schedule_cron, timezone=timezone_name),
        id=BACKUP_JOB_ID,
        name='Database Backup',
        replace_existing=True
    )
    logger.info(f"Scheduled database backup ({settings.schedule_cron} {timezone_name})")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def run_backup(trigger='scheduled', settings=None):
    """
    Execute one backup run and record it in the run history.

    Must be called inside a Flask app context.

    Args:
        trigger: 'scheduled' or 'manual'
        settings: BackupSettings (default: loaded from the environment)

    Returns:
        BackupRun record
    """
    from backupdb.models import start_run, finish_run

    settings = settings or load_settings()
    run = start_run(storage_type=settings.storage_type, trigger=trigger)

    try:
        report = execute_backup(settings)
    except (AlreadyRunningError, ConfigurationError, StorageError) as e:
        logger.error(f"Backup run aborted: {e}")
        return finish_run(run, error=e)
    except Exception as e:
        logger.exception("Backup run crashed")
        return finish_run(run, error=e)

    return finish_run(run, report=report)


def _execute_backup_wrapper(trigger='scheduled'):
    """
    Wrapper function for executing backups in scheduler context.

    This function ensures the database session is properly managed when
    jobs are executed by APScheduler.
    """
    global flask_app

    # Execute within app context using stored Flask app reference
    with flask_app.app_context():
        run = run_backup(trigger=trigger)
        logger.info(f"Backup run {run.id} completed with status: {run.status}")


def trigger_backup_now():
    """
    Manually trigger a backup run immediately.

    Returns:
        ID of the one-off scheduler job

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # 1 second delay to avoid race condition with scheduler startup
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=['manual'],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual Database Backup',
        replace_existing=False
    )

    logger.info("Manually triggered database backup")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if scheduler is running."""
    return scheduler is not None and scheduler.running


def run_forever(settings, backup_func=None):
    """
    Run backups on the configured cron schedule until interrupted.

    Used by the command line daemon mode; runs are not recorded in the
    history database.

    Args:
        settings: BackupSettings
        backup_func: Callable run on each tick with the settings
    """
    backup_func = backup_func or _run_daemon_backup

    blocking = BlockingScheduler(
        executors={'default': ThreadPoolExecutor(max_workers=1)},
        job_defaults=JOB_DEFAULTS,
        timezone=settings.schedule_timezone
    )
    blocking.add_job(
        func=backup_func,
        args=[settings],
        trigger=CronTrigger.from_crontab(settings.schedule_cron, timezone=settings.schedule_timezone),
        id=BACKUP_JOB_ID,
        name='Database Backup',
        replace_existing=True
    )

    logger.info(f"Daemon started, schedule: {settings.schedule_cron} ({settings.schedule_timezone})")
    try:
        blocking.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Daemon stopped")


def _run_daemon_backup(settings):
    try:
        report = execute_backup(settings)
    except (AlreadyRunningError, ConfigurationError, StorageError) as e:
        logger.error(f"Backup run aborted: {e}")
        return None

    if report.failed:
        logger.error(f"Backup run failed: {report.summary()}")
    return report
