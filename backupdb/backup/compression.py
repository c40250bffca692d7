"""
Compression and naming of database dump artifacts.

Dumps are written as <YYYYMMDD>_<database>.sql and compressed in place to
<YYYYMMDD>_<database>.sql.gz at maximum gzip level.
"""

import os
import re
import gzip
import shutil
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Union

DUMP_SUFFIX = '.sql'
ARTIFACT_SUFFIX = '.sql.gz'
ARTIFACT_PATTERN = '*' + ARTIFACT_SUFFIX
COMPRESSION_LEVEL = 9

_ARTIFACT_NAME_RE = re.compile(r'^(\d{8})_(.+)\.sql(\.gz)?$')


class CompressionError(Exception):
    """Raised when artifact compression fails."""
    pass


def format_run_date(day: date) -> str:
    """Format a date the way artifact names and remote paths use it."""
    return day.strftime('%Y%m%d')


def generate_artifact_filename(day: date, database: str, compressed: bool = True) -> str:
    """
    Generate the deterministic filename for a database artifact.

    Args:
        day: Run date
        database: Logical database name
        compressed: Whether to return the .sql.gz name (default) or .sql

    Returns:
        Filename like "20240115_shop.sql.gz"
    """
    suffix = ARTIFACT_SUFFIX if compressed else DUMP_SUFFIX
    return f"{format_run_date(day)}_{database}{suffix}"


def parse_artifact_filename(filename: str):
    """
    Extract the date and database name from an artifact filename.

    Args:
        filename: Filename (not a path)

    Returns:
        Tuple (date, database) or None if the name is not an artifact name
    """
    match = _ARTIFACT_NAME_RE.match(filename)
    if not match:
        return None
    try:
        day = datetime.strptime(match.group(1), '%Y%m%d').date()
    except ValueError:
        return None
    return day, match.group(2)


def compress_file(path: Union[str, Path]) -> Path:
    """
    Gzip a dump file in place, replacing it with <name>.gz.

    On failure both the partial archive and the uncompressed input are
    removed.

    Args:
        path: Path of the uncompressed dump

    Returns:
        Path to the compressed artifact

    Raises:
        CompressionError: If compression fails
    """
    source = Path(path)
    target = source.with_name(source.name + '.gz')

    try:
        # mtime=0 keeps the archive bytes stable for identical input
        with open(source, 'rb') as f_in, open(target, 'wb') as raw, \
                gzip.GzipFile(filename=source.name, mode='wb', compresslevel=COMPRESSION_LEVEL,
                              fileobj=raw, mtime=0) as f_out:
            shutil.copyfileobj(f_in, f_out)
    except Exception as e:
        _remove_quietly(target)
        _remove_quietly(source)
        raise CompressionError(f"Failed to compress {source.name}: {e}")

    _remove_quietly(source)
    return target


def open_artifact(path: Union[str, Path]):
    """Open a compressed artifact for streaming reads of its dump content."""
    return gzip.open(path, 'rb')


def get_archive_size(archive_path: Union[str, Path]) -> int:
    """
    Get size of artifact file in bytes.

    Args:
        archive_path: Path to artifact file

    Returns:
        File size in bytes
    """
    return os.path.getsize(archive_path)


def artifact_date(path: Union[str, Path]) -> Optional[date]:
    """Date encoded in an artifact name, or None for foreign filenames."""
    parsed = parse_artifact_filename(Path(path).name)
    return parsed[0] if parsed else None


def _remove_quietly(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
