"""
Detects whether a fresh dump differs from the previous day's artifact.
"""

import hashlib
import logging
from pathlib import Path
from typing import BinaryIO, Optional

from .compression import open_artifact

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB


class ChangeDetector:
    """
    Compares a new uncompressed dump with yesterday's compressed artifact.

    Both sides are hashed in chunks so that large dumps are never held in
    memory.
    """

    def __init__(self, algorithm: str = 'sha256'):
        self.algorithm = algorithm.lower()

    @property
    def available(self) -> bool:
        """True if the digest algorithm is provided by hashlib."""
        return self.algorithm in hashlib.algorithms_available

    def fingerprint_stream(self, stream: BinaryIO) -> str:
        digest = hashlib.new(self.algorithm)
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b''):
            digest.update(chunk)
        return digest.hexdigest()

    def fingerprint(self, path) -> str:
        """Fingerprint of an uncompressed file."""
        with open(path, 'rb') as f:
            return self.fingerprint_stream(f)

    def fingerprint_artifact(self, path) -> str:
        """Fingerprint of the decompressed content of a .sql.gz artifact."""
        with open_artifact(path) as f:
            return self.fingerprint_stream(f)

    def is_unchanged(self, candidate, previous: Optional[Path]) -> bool:
        """
        Check whether a fresh dump matches the previous artifact.

        Args:
            candidate: Path of the new uncompressed dump
            previous: Path of the previous compressed artifact

        Returns:
            True only if the previous artifact exists and both contents
            have the same fingerprint
        """
        if previous is None or not Path(previous).is_file():
            return False

        try:
            previous_fingerprint = self.fingerprint_artifact(previous)
        except (OSError, EOFError) as e:
            # A corrupt previous artifact cannot prove the dump unchanged
            logger.warning(f"Cannot read previous artifact {previous}: {e}")
            return False

        return self.fingerprint(candidate) == previous_fingerprint


def resolve_change_detector(incremental: bool, algorithm: str = 'sha256') -> Optional[ChangeDetector]:
    """
    Build the change detector for a run, or None when incremental mode is off.

    If the requested digest is unavailable, incremental mode is disabled for
    the run with a warning.
    """
    if not incremental:
        return None

    detector = ChangeDetector(algorithm)
    if not detector.available:
        logger.warning(
            f"Hash algorithm '{algorithm}' is not available, "
            f"incremental backups are disabled for this run"
        )
        return None

    return detector
