"""
MySQL/MariaDB source handler.

Wraps the mysql and mysqldump client tools. Credentials are always passed
through a staged option file (see credentials.py), never on the command line.
"""

import shutil
import logging
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306

SYSTEM_DATABASES = frozenset({
    'mysql',
    'information_schema',
    'performance_schema',
    'sys',
})

DUMP_OPTIONS = (
    '--add-drop-table',
    '--allow-keywords',
    '--skip-dump-date',
    '--complete-insert',
)


class SourceError(Exception):
    """Raised when a database source operation fails."""
    pass


class ConnectivityError(SourceError):
    """Raised when a database host cannot be reached or rejects the login."""
    pass


class DumpError(SourceError):
    """Raised when dumping a database fails."""
    pass


@dataclass(frozen=True)
class DatabaseTarget:
    """One logical database on one host."""
    host: str
    port: int
    username: str
    password: str = field(repr=False)
    database: str

    @property
    def label(self) -> str:
        return f"{self.database}@{self.host}:{self.port}"


@dataclass(frozen=True)
class DatabaseHost:
    """A configured database server entry."""
    host: str
    port: int = DEFAULT_PORT
    username: str = 'root'
    password: str = field(default='', repr=False)

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}"

    def target(self, database: str) -> DatabaseTarget:
        return DatabaseTarget(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            database=database,
        )


class MySQLSource:
    """
    Handler for MySQL/MariaDB servers.

    Every operation receives the path of a staged credential file, which is
    passed as the first option so the client tools read it before anything
    else.
    """

    def __init__(self, mysql_bin: str = 'mysql', mysqldump_bin: str = 'mysqldump'):
        """
        Initialize MySQL source handler.

        Args:
            mysql_bin: mysql client executable
            mysqldump_bin: mysqldump executable
        """
        self.mysql_bin = mysql_bin
        self.mysqldump_bin = mysqldump_bin
        self._processes = set()
        self._processes_lock = threading.Lock()

    def _client_args(self, binary: str, credentials_file, host, port, username) -> List[str]:
        return [
            binary,
            f'--defaults-extra-file={credentials_file}',
            '-h', host,
            '-P', str(port),
            '-u', username,
        ]

    def _run_query(self, server, credentials_file, query: str, extra: Sequence[str] = ()):
        args = self._client_args(self.mysql_bin, credentials_file, server.host, server.port, server.username)
        args.extend(extra)
        args.extend(['-e', query])

        try:
            return subprocess.run(args, capture_output=True, text=True)
        except FileNotFoundError:
            raise SourceError(f"{self.mysql_bin} not found in PATH")

    def probe(self, server: DatabaseHost, credentials_file) -> bool:
        """
        Check that the host accepts the configured login.

        Args:
            server: Database host entry
            credentials_file: Path of the staged credential file

        Returns:
            True if the connection succeeded

        Raises:
            ConnectivityError: If the host is unreachable or rejects the login
        """
        result = self._run_query(server, credentials_file, 'SELECT 1;')

        if result.returncode != 0:
            raise ConnectivityError(
                f"Cannot connect to {server.label} as '{server.username}': "
                f"{result.stderr.strip() or 'unknown error'}"
            )

        return True

    def list_databases(self, server: DatabaseHost, credentials_file) -> List[str]:
        """
        List user databases on the host, excluding system schemas.

        Args:
            server: Database host entry
            credentials_file: Path of the staged credential file

        Returns:
            Database names in server order

        Raises:
            ConnectivityError: If the query fails
        """
        result = self._run_query(
            server, credentials_file, 'SHOW DATABASES;',
            extra=('--batch', '--skip-column-names'),
        )

        if result.returncode != 0:
            raise ConnectivityError(
                f"Failed to list databases on {server.label}: {result.stderr.strip()}"
            )

        databases = []
        for line in result.stdout.splitlines():
            name = line.strip()
            if name and name not in SYSTEM_DATABASES:
                databases.append(name)

        return databases

    def dump(self, target: DatabaseTarget, credentials_file, output_path) -> Path:
        """
        Dump one database to a file.

        A failed or terminated dump never leaves a partial file behind.

        Args:
            target: Database to dump
            credentials_file: Path of the staged credential file
            output_path: Destination .sql path

        Returns:
            Path of the dump file

        Raises:
            DumpError: If mysqldump fails or is terminated
        """
        output_path = Path(output_path)
        args = self._client_args(self.mysqldump_bin, credentials_file, target.host, target.port, target.username)
        args.extend(DUMP_OPTIONS)
        args.append(target.database)

        logger.debug(f"Dumping {target.label} to {output_path}")

        try:
            with open(output_path, 'wb') as f:
                process = subprocess.Popen(args, stdout=f, stderr=subprocess.PIPE)
                self._track(process)
                try:
                    _, stderr = process.communicate()
                finally:
                    self._untrack(process)
        except FileNotFoundError:
            output_path.unlink(missing_ok=True)
            raise DumpError(f"{self.mysqldump_bin} not found in PATH")
        except OSError as e:
            output_path.unlink(missing_ok=True)
            raise DumpError(f"Cannot write dump for {target.label}: {e}")

        if process.returncode != 0:
            output_path.unlink(missing_ok=True)
            if process.returncode < 0:
                raise DumpError(f"mysqldump for {target.label} was terminated (signal {-process.returncode})")
            stderr = stderr.decode(errors='replace').strip() if stderr else ''
            raise DumpError(
                f"mysqldump failed for {target.label} (exit {process.returncode}): "
                f"{stderr or 'no error output'}"
            )

        return output_path

    def _track(self, process: subprocess.Popen):
        with self._processes_lock:
            self._processes.add(process)

    def _untrack(self, process: subprocess.Popen):
        with self._processes_lock:
            self._processes.discard(process)

    def terminate_active(self) -> int:
        """
        Terminate every running mysqldump started by this source.

        Returns:
            Number of processes signalled
        """
        with self._processes_lock:
            processes = list(self._processes)

        for process in processes:
            logger.warning(f"Terminating mysqldump (PID: {process.pid})")
            try:
                process.terminate()
            except ProcessLookupError:
                pass

        return len(processes)

    def check_tools(self) -> List[str]:
        """Return the client tools that are missing from PATH."""
        return [tool for tool in (self.mysql_bin, self.mysqldump_bin) if shutil.which(tool) is None]


def create_source(source_type: str = 'mysql', **kwargs):
    """
    Factory function to create a database source handler.

    Args:
        source_type: 'mysql' or 'mariadb'
        **kwargs: Passed to the handler

    Returns:
        MySQLSource instance

    Raises:
        ValueError: If source_type is invalid
    """
    if source_type in ('mysql', 'mariadb'):
        return MySQLSource(**kwargs)
    else:
        raise ValueError(f"Invalid source type: {source_type}")
