"""
Unit tests for scheduler (backupdb/scheduler.py).

Tests APScheduler configuration, manual triggers and recorded runs.
"""

from datetime import date, datetime
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from backupdb import scheduler as scheduler_module
from backupdb.backup.lock import AlreadyRunningError
from backupdb.backup.results import RunReport, TaskOutcome
from backupdb.models import BackupRun


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        # Reset global scheduler
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_init_scheduler(self, app, settings, mock_scheduler):
        """Test scheduler initialization."""
        result = scheduler_module.init_scheduler(app, settings)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.flask_app == app

        # Verify the cron job was added
        mock_scheduler.add_job.assert_called_once()
        call_kwargs = mock_scheduler.add_job.call_args[1]
        assert call_kwargs['id'] == scheduler_module.BACKUP_JOB_ID
        assert isinstance(call_kwargs['trigger'], CronTrigger)
        assert call_kwargs['func'] is scheduler_module._execute_backup_wrapper

    @patch('backupdb.scheduler.BackgroundScheduler')
    def test_scheduler_configuration(self, mock_scheduler_class, app, settings):
        """Test the scheduler runs at most one backup at a time."""
        scheduler_module.init_scheduler(app, settings)

        call_kwargs = mock_scheduler_class.call_args[1]
        assert call_kwargs['timezone'] == 'UTC'
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['job_defaults']['coalesce'] is True

    def test_init_scheduler_only_once(self, app, settings, mock_scheduler):
        """Test scheduler is only initialized once."""
        result1 = scheduler_module.init_scheduler(app, settings)
        result2 = scheduler_module.init_scheduler(app, settings)

        assert result1 is result2
        mock_scheduler.add_job.assert_called_once()

    def test_invalid_cron_expression(self, app, settings, mock_scheduler):
        settings.schedule_cron = 'every night'

        with pytest.raises(ValueError):
            scheduler_module.init_scheduler(app, settings)


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        """Test starting the scheduler."""
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        """Test starting scheduler before initialization raises error."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        """Test starting scheduler when already running."""
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        """Test stopping the scheduler."""
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()

    def test_stop_scheduler_not_running(self):
        """Test stopping scheduler when not running."""
        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_not_called()


class TestManualTrigger:
    """Test manual backup triggering."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_trigger_backup_now(self):
        """Test manually triggering a backup run."""
        job_id = scheduler_module.trigger_backup_now()

        self.mock_scheduler.add_job.assert_called_once()
        call_kwargs = self.mock_scheduler.add_job.call_args[1]
        assert call_kwargs['args'] == ['manual']
        assert call_kwargs['id'] == job_id
        assert job_id.startswith('manual_')
        assert isinstance(call_kwargs['trigger'], DateTrigger)

    def test_trigger_backup_now_not_initialized(self):
        """Test triggering backup when scheduler not initialized."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.trigger_backup_now()


class TestSchedulerQueries:
    """Test scheduler query functions."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_get_scheduled_jobs(self):
        """Test getting list of scheduled jobs."""
        mock_job1 = MagicMock()
        mock_job1.id = 'database_backup'
        mock_job1.name = 'Database Backup'
        mock_job1.next_run_time = datetime(2024, 1, 1, 2, 0, 0)
        mock_job1.trigger = 'cron'

        mock_job2 = MagicMock()
        mock_job2.id = 'manual_1704074400'
        mock_job2.name = 'Manual Database Backup'
        mock_job2.next_run_time = None
        mock_job2.trigger = 'date'

        self.mock_scheduler.get_jobs.return_value = [mock_job1, mock_job2]

        result = scheduler_module.get_scheduled_jobs()

        assert len(result) == 2
        assert result[0]['id'] == 'database_backup'
        assert result[0]['next_run'] == '2024-01-01T02:00:00'
        assert result[1]['next_run'] is None

    def test_get_scheduled_jobs_not_initialized(self):
        """Test getting jobs when scheduler not initialized."""
        scheduler_module.scheduler = None

        assert scheduler_module.get_scheduled_jobs() == []

    def test_is_scheduler_running(self):
        """Test scheduler running check."""
        self.mock_scheduler.running = True
        assert scheduler_module.is_scheduler_running() is True

        self.mock_scheduler.running = False
        assert scheduler_module.is_scheduler_running() is False

        scheduler_module.scheduler = None
        assert scheduler_module.is_scheduler_running() is False


class TestRunBackup:
    """Test recorded backup runs."""

    @patch('backupdb.scheduler.execute_backup')
    def test_successful_run_is_recorded(self, mock_execute, db, settings):
        report = RunReport(run_date=date(2024, 1, 15), storage_type='s3')
        report.record(TaskOutcome.skipped('db1.example.com', 'shop'))
        report.finish()
        mock_execute.return_value = report

        run = scheduler_module.run_backup(trigger='manual', settings=settings)

        mock_execute.assert_called_once_with(settings)
        assert run.status == 'success'
        assert run.trigger == 'manual'
        assert run.skipped_count == 1
        assert BackupRun.query.count() == 1

    @patch('backupdb.scheduler.execute_backup')
    def test_already_running_is_recorded_as_failed(self, mock_execute, db, settings):
        mock_execute.side_effect = AlreadyRunningError(4242, '/tmp/backupdb.lock')

        run = scheduler_module.run_backup(settings=settings)

        assert run.status == 'failed'
        assert '4242' in run.error_message

    @patch('backupdb.scheduler.execute_backup', side_effect=RuntimeError('boom'))
    def test_crash_is_recorded(self, mock_execute, db, settings):
        run = scheduler_module.run_backup(settings=settings)

        assert run.status == 'failed'
        assert run.error_message == 'boom'


class TestExecuteBackupWrapper:
    """Test backup execution wrapper."""

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.flask_app = None

    @patch('backupdb.scheduler.run_backup')
    def test_wrapper_runs_in_app_context(self, mock_run_backup):
        """Test wrapper executes the run inside the stored app's context."""
        mock_app = MagicMock()
        scheduler_module.flask_app = mock_app
        mock_run_backup.return_value = MagicMock(id=1, status='success')

        scheduler_module._execute_backup_wrapper('manual')

        mock_app.app_context.assert_called_once()
        mock_run_backup.assert_called_once_with(trigger='manual')


class TestDaemon:
    """Test daemon mode."""

    @patch('backupdb.scheduler.BlockingScheduler')
    def test_run_forever_schedules_backup(self, mock_blocking_class, settings):
        backup_func = MagicMock()

        scheduler_module.run_forever(settings, backup_func=backup_func)

        blocking = mock_blocking_class.return_value
        call_kwargs = blocking.add_job.call_args[1]
        assert call_kwargs['func'] is backup_func
        assert call_kwargs['args'] == [settings]
        blocking.start.assert_called_once()

    @patch('backupdb.scheduler.BlockingScheduler')
    def test_run_forever_stops_on_interrupt(self, mock_blocking_class, settings):
        mock_blocking_class.return_value.start.side_effect = KeyboardInterrupt

        scheduler_module.run_forever(settings, backup_func=MagicMock())

    @patch('backupdb.scheduler.execute_backup')
    def test_daemon_backup_survives_lock_conflict(self, mock_execute, settings):
        mock_execute.side_effect = AlreadyRunningError(4242, '/tmp/backupdb.lock')

        assert scheduler_module._run_daemon_backup(settings) is None
