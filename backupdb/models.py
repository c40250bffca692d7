from datetime import datetime
from backupdb import db


class BackupRun(db.Model):
    """One execution of the backup workflow"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    trigger = db.Column(db.String(20), nullable=False, default='scheduled')  # scheduled, manual
    storage_type = db.Column(db.String(20))
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    succeeded_count = db.Column(db.Integer, default=0, nullable=False)
    skipped_count = db.Column(db.Integer, default=0, nullable=False)
    failed_count = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Captured run log

    # Relationship
    tasks = db.relationship('BackupTaskRecord', back_populates='run', cascade='all, delete-orphan',
                            lazy='dynamic')

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'status': self.status,
            'trigger': self.trigger,
            'storage_type': self.storage_type,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': (
                (self.completed_at - self.started_at).total_seconds()
                if self.completed_at and self.started_at else None
            ),
            'succeeded': self.succeeded_count,
            'skipped': self.skipped_count,
            'failed': self.failed_count,
            'error_message': self.error_message,
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun id={self.id} status={self.status}>'


class BackupTaskRecord(db.Model):
    """Outcome of backing up one database within a run"""
    __tablename__ = 'backup_tasks'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    host = db.Column(db.String(255), nullable=False)
    database = db.Column(db.String(255))  # null for host-level failures
    status = db.Column(db.String(20), nullable=False)  # success, skipped, failed
    reason = db.Column(db.Text)
    artifact_path = db.Column(db.String(500))
    size_bytes = db.Column(db.BigInteger)

    # Relationship
    run = db.relationship('BackupRun', back_populates='tasks')

    def to_dict(self):
        return {
            'id': self.id,
            'host': self.host,
            'database': self.database,
            'status': self.status,
            'reason': self.reason,
            'artifact_path': self.artifact_path,
            'size_bytes': self.size_bytes,
        }

    def __repr__(self):
        return f'<BackupTaskRecord {self.database}@{self.host} status={self.status}>'


def start_run(storage_type=None, trigger='scheduled') -> BackupRun:
    """
    Create a BackupRun record in 'running' state.

    Args:
        storage_type: Configured storage backend
        trigger: 'scheduled' or 'manual'

    Returns:
        The committed BackupRun
    """
    run = BackupRun(status='running', trigger=trigger, storage_type=storage_type,
                    started_at=datetime.utcnow())
    db.session.add(run)
    db.session.commit()
    return run


def finish_run(run: BackupRun, report=None, error=None) -> BackupRun:
    """
    Store the result of a run.

    Args:
        run: BackupRun created by start_run()
        report: RunReport of the run (None if it never started)
        error: Fatal error that aborted the run

    Returns:
        The updated BackupRun
    """
    run.completed_at = datetime.utcnow()

    if report is not None:
        for outcome in report.outcomes:
            artifact = outcome.artifact
            run.tasks.append(BackupTaskRecord(
                host=outcome.host,
                database=outcome.database,
                status=outcome.status,
                reason=outcome.reason or None,
                artifact_path=str(artifact.path) if artifact else None,
                size_bytes=artifact.size_bytes if artifact else None,
            ))

        for host, reason in report.host_failures.items():
            run.tasks.append(BackupTaskRecord(host=host, status='failed', reason=reason))

        run.succeeded_count = len(report.succeeded)
        run.skipped_count = len(report.skipped)
        run.failed_count = len(report.failed_tasks) + len(report.host_failures)
        run.logs = '\n'.join(report.logs)
        run.status = report.status
        if report.failed:
            run.error_message = '; '.join(report.failures())

    if error is not None:
        run.status = 'failed'
        run.error_message = str(error)

    db.session.commit()
    return run
