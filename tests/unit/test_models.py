"""
Unit tests for run history models (backupdb/models.py) and the runs API.
"""

from datetime import date, datetime, timedelta
from pathlib import Path

from backupdb.backup.results import BackupArtifact, RunReport, TaskOutcome
from backupdb.models import BackupRun, BackupTaskRecord, finish_run, start_run


def _report():
    report = RunReport(run_date=date(2024, 1, 15), storage_type='s3')
    artifact = BackupArtifact(date=date(2024, 1, 15), database='shop',
                              path=Path('/backups/20240115_shop.sql.gz'), size_bytes=1024)
    report.record(TaskOutcome.success('db1', 'shop', artifact))
    report.record(TaskOutcome.skipped('db1', 'blog'))
    report.record(TaskOutcome.failed('db1', 'crm', 'mysqldump failed'))
    report.record_host_failure('db2:3306', 'Access denied')
    report.logs.append('[2024-01-15 02:00:00] INFO Starting backup run')
    report.finish()
    return report


class TestBackupRunModel:
    """Test BackupRun and BackupTaskRecord models."""

    def test_start_run(self, db):
        """Test a new run is persisted in running state."""
        run = start_run(storage_type='git', trigger='manual')

        assert run.id is not None
        assert run.status == 'running'
        assert run.trigger == 'manual'
        assert run.started_at is not None
        assert run.completed_at is None

    def test_finish_run_with_report(self, db):
        """Test outcomes and counters are stored from the report."""
        run = finish_run(start_run(storage_type='s3'), report=_report())

        assert run.status == 'failed'
        assert run.succeeded_count == 1
        assert run.skipped_count == 1
        assert run.failed_count == 2
        assert 'Access denied' in run.error_message
        assert 'Starting backup run' in run.logs
        assert run.completed_at is not None

        tasks = {(t.host, t.database): t for t in run.tasks}
        assert tasks[('db1', 'shop')].artifact_path == '/backups/20240115_shop.sql.gz'
        assert tasks[('db1', 'shop')].size_bytes == 1024
        assert tasks[('db1', 'blog')].status == 'skipped'
        assert tasks[('db2:3306', None)].reason == 'Access denied'

    def test_finish_successful_run(self, db):
        report = RunReport(storage_type='git')
        report.record(TaskOutcome.skipped('db1', 'shop'))
        report.finish()

        run = finish_run(start_run(storage_type='git'), report=report)

        assert run.status == 'success'
        assert run.error_message is None

    def test_finish_run_with_error(self, db):
        """Test a run aborted before producing a report."""
        run = finish_run(start_run(), error=RuntimeError('Another backup is running'))

        assert run.status == 'failed'
        assert run.error_message == 'Another backup is running'
        assert run.tasks.count() == 0

    def test_cascade_delete(self, db):
        run = finish_run(start_run(), report=_report())

        db.session.delete(run)
        db.session.commit()

        assert BackupTaskRecord.query.count() == 0

    def test_to_dict(self, db):
        run = BackupRun(status='success', trigger='scheduled', storage_type='git',
                        started_at=datetime(2024, 1, 15, 2, 0, 0),
                        completed_at=datetime(2024, 1, 15, 2, 0, 30), logs='line')
        db.session.add(run)
        db.session.commit()

        data = run.to_dict()
        assert data['duration_seconds'] == 30.0
        assert data['started_at'] == '2024-01-15T02:00:00'
        assert 'logs' not in data
        assert run.to_dict(include_logs=True)['logs'] == 'line'

    def test_repr(self, db):
        run = start_run()

        assert repr(run) == f'<BackupRun id={run.id} status=running>'


class TestRunsRoutes:
    """Test the run history API."""

    def _add_runs(self, db):
        base = datetime(2024, 1, 1, 2, 0, 0)
        for day in range(5):
            db.session.add(BackupRun(status='failed' if day == 2 else 'success', trigger='scheduled',
                                     started_at=base + timedelta(days=day)))
        db.session.commit()

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_list_runs_newest_first(self, client, db):
        self._add_runs(db)

        data = client.get('/api/runs/').get_json()

        assert data['total'] == 5
        started = [run['started_at'] for run in data['runs']]
        assert started == sorted(started, reverse=True)

    def test_list_runs_filter_and_paginate(self, client, db):
        self._add_runs(db)

        failed = client.get('/api/runs/?status=failed').get_json()
        page = client.get('/api/runs/?limit=2&offset=1').get_json()

        assert failed['total'] == 1
        assert failed['runs'][0]['status'] == 'failed'
        assert len(page['runs']) == 2
        assert page['limit'] == 2
        assert page['offset'] == 1

    def test_invalid_status_filter(self, client, db):
        response = client.get('/api/runs/?status=exploded')

        assert response.status_code == 400

    def test_run_detail(self, client, db):
        run = finish_run(start_run(storage_type='s3'), report=_report())

        data = client.get(f'/api/runs/{run.id}').get_json()

        assert data['id'] == run.id
        assert len(data['tasks']) == 4
        assert 'logs' in data

    def test_run_not_found(self, client, db):
        assert client.get('/api/runs/999').status_code == 404

    def test_scheduler_status_without_scheduler(self, client, db):
        data = client.get('/api/runs/scheduler').get_json()

        assert data == {'running': False, 'jobs': []}
