"""
Outcomes of backup tasks and the per-run report that aggregates them.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

STATUS_SUCCESS = 'success'
STATUS_SKIPPED = 'skipped'
STATUS_FAILED = 'failed'


@dataclass
class BackupArtifact:
    """A dump file produced by a backup task."""
    date: date
    database: str
    path: Path
    size_bytes: int
    compressed: bool = True


@dataclass
class TaskOutcome:
    """Result of backing up one database."""
    host: str
    database: str
    status: str
    reason: str = ''
    artifact: Optional[BackupArtifact] = None

    @classmethod
    def success(cls, host, database, artifact):
        return cls(host=host, database=database, status=STATUS_SUCCESS, artifact=artifact)

    @classmethod
    def skipped(cls, host, database, reason='unchanged since previous backup'):
        return cls(host=host, database=database, status=STATUS_SKIPPED, reason=reason)

    @classmethod
    def failed(cls, host, database, reason):
        return cls(host=host, database=database, status=STATUS_FAILED, reason=reason)

    @property
    def is_failure(self) -> bool:
        return self.status == STATUS_FAILED


@dataclass
class RunReport:
    """
    Accumulated result of one backup run.

    Owned by the orchestrator and only mutated from the coordinating thread.
    """
    run_date: date = field(default_factory=date.today)
    storage_type: str = ''
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    outcomes: List[TaskOutcome] = field(default_factory=list)
    host_failures: Dict[str, str] = field(default_factory=dict)
    upload_error: Optional[str] = None
    uploaded: bool = False
    logs: List[str] = field(default_factory=list)

    def record(self, outcome: TaskOutcome):
        self.outcomes.append(outcome)

    def record_host_failure(self, host: str, reason: str):
        self.host_failures[host] = reason

    def record_upload_failure(self, reason: str):
        self.upload_error = reason

    def finish(self):
        self.completed_at = datetime.utcnow()

    def _with_status(self, status) -> List[TaskOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == status]

    @property
    def succeeded(self) -> List[TaskOutcome]:
        return self._with_status(STATUS_SUCCESS)

    @property
    def skipped(self) -> List[TaskOutcome]:
        return self._with_status(STATUS_SKIPPED)

    @property
    def failed_tasks(self) -> List[TaskOutcome]:
        return self._with_status(STATUS_FAILED)

    @property
    def failed(self) -> bool:
        """True if any task, host or upload failed. Skips never count."""
        return bool(self.failed_tasks or self.host_failures or self.upload_error)

    @property
    def status(self) -> str:
        return STATUS_FAILED if self.failed else STATUS_SUCCESS

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def failures(self) -> List[str]:
        """
        Catalogue of every failed unit.

        Returns:
            Human readable lines naming the host, database or upload that failed
        """
        lines = [f"host {host}: {reason}" for host, reason in self.host_failures.items()]
        lines.extend(
            f"database {outcome.database} on {outcome.host}: {outcome.reason}"
            for outcome in self.failed_tasks
        )
        if self.upload_error:
            lines.append(f"upload: {self.upload_error}")
        return lines

    def summary(self) -> str:
        return (
            f"{len(self.succeeded)} succeeded, {len(self.skipped)} skipped, "
            f"{len(self.failed_tasks)} failed, {len(self.host_failures)} host(s) unreachable"
        )


class RunLogCapture(logging.Handler):
    """Collects log lines emitted during a run into the run report."""

    def __init__(self, report: RunReport, level=logging.DEBUG):
        super().__init__(level)
        self.report = report
        self.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(message)s'))

    def emit(self, record):
        try:
            self.report.logs.append(self.format(record))
        except Exception:
            self.handleError(record)
