"""
Bounded parallel execution of backup tasks across hosts.

Tasks run in a sliding window: once the window is full the coordinator
waits for the oldest in-flight task before launching the next one. Each
task's heavy lifting happens in a mysqldump subprocess, so the worker
threads mostly wait on the OS.

An interrupted run signals its tasks to stop, terminates the running
mysqldump processes and waits for the workers before re-raising, so no
task outlives the run.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date
from pathlib import Path
from typing import Callable, Deque, List, Optional, Sequence, Tuple

from .change_detector import ChangeDetector
from .credentials import CredentialError, CredentialRegistry, CredentialStager
from .results import RunReport, TaskOutcome
from .sources import DatabaseHost, DatabaseTarget, MySQLSource, SourceError
from .task import BackupTask

logger = logging.getLogger(__name__)

InFlight = Tuple[Future, DatabaseTarget]


class ParallelBackupRunner:
    """
    Runs one BackupTask per database on every reachable host.

    Only the coordinating thread (the caller of run_all) touches the report.
    """

    def __init__(
        self,
        source: MySQLSource,
        output_dir,
        max_parallel_jobs: int,
        detector: Optional[ChangeDetector] = None,
        registry: Optional[CredentialRegistry] = None,
        run_date: Optional[date] = None,
        executor_factory: Callable[..., ThreadPoolExecutor] = ThreadPoolExecutor,
    ):
        """
        Initialize parallel runner.

        Args:
            source: Database source handler
            output_dir: Directory receiving artifacts
            max_parallel_jobs: Maximum number of tasks in flight
            detector: Change detector, or None when incremental mode is off
            registry: Run-scoped credential registry
            run_date: Date stamped on artifacts
            executor_factory: Callable returning a concurrent.futures executor
        """
        if max_parallel_jobs < 1:
            raise ValueError(f"max_parallel_jobs must be at least 1, got {max_parallel_jobs}")

        self.source = source
        self.output_dir = Path(output_dir)
        self.max_parallel_jobs = max_parallel_jobs
        self.detector = detector
        self.registry = registry if registry is not None else CredentialRegistry()
        self.run_date = run_date or date.today()
        self.executor_factory = executor_factory
        self.cancel_event = threading.Event()

    def run_all(self, hosts: Sequence[DatabaseHost], report: Optional[RunReport] = None) -> RunReport:
        """
        Back up every database of every host.

        A host that fails its connection probe is recorded and skipped
        without launching any task. A failed task never affects its siblings.

        Args:
            hosts: Configured database hosts, processed in order
            report: Report to accumulate into (a new one if None)

        Returns:
            The run report
        """
        if report is None:
            report = RunReport(run_date=self.run_date)

        pool = self.executor_factory(max_workers=self.max_parallel_jobs)
        try:
            for server in hosts:
                databases = self._discover(server, report)
                if not databases:
                    continue

                logger.info(f"Backing up {len(databases)} database(s) on {server.label}")
                in_flight: Deque[InFlight] = deque()

                for database in databases:
                    target = server.target(database)
                    task = self._create_task(target)
                    in_flight.append((pool.submit(task.run), target))

                    if len(in_flight) >= self.max_parallel_jobs:
                        self._reap(in_flight.popleft(), report)

                while in_flight:
                    self._reap(in_flight.popleft(), report)
        except BaseException:
            self._stop_in_flight(pool)
            raise
        else:
            pool.shutdown(wait=True)

        return report

    def _create_task(self, target: DatabaseTarget) -> BackupTask:
        return BackupTask(
            target=target,
            output_dir=self.output_dir,
            source=self.source,
            detector=self.detector,
            registry=self.registry,
            run_date=self.run_date,
            cancel_event=self.cancel_event,
        )

    def _stop_in_flight(self, pool: ThreadPoolExecutor):
        """Cancel queued tasks, terminate running dumps and wait for the workers."""
        self.cancel_event.set()
        terminated = self.source.terminate_active()
        logger.warning(f"Run interrupted, stopping tasks ({terminated} dump(s) terminated)")
        pool.shutdown(wait=True, cancel_futures=True)

    def _discover(self, server: DatabaseHost, report: RunReport) -> List[str]:
        """
        Probe a host and list its databases.

        Returns:
            Database names, or an empty list if the host is unreachable
            or has no user databases
        """
        stager = CredentialStager(self.registry)
        try:
            with stager.staged(server.password, server.username) as credentials:
                self.source.probe(server, credentials.path)
                databases = self.source.list_databases(server, credentials.path)
        except (SourceError, CredentialError) as e:
            logger.error(f"Skipping host {server.label}: {e}")
            report.record_host_failure(server.label, str(e))
            return []

        if not databases:
            logger.warning(f"No databases found on {server.label}")

        return databases

    def _reap(self, entry: InFlight, report: RunReport):
        """Wait for one in-flight task and record its outcome."""
        future, target = entry
        try:
            outcome = future.result()
        except Exception as e:
            logger.exception(f"Task for {target.label} crashed")
            outcome = TaskOutcome.failed(target.host, target.database, f"Task crashed: {e}")

        report.record(outcome)
