"""Checksum indexing of watch roots.

This module provides:
- compute_checksum: Base64 SHA-1 of a file, streamed in blocks
- ChecksumIndexer: Walks watch roots, registers directories with the
  watcher and digests every supported file

A file that cannot be read is logged and skipped; the walk always
continues with the rest of the tree.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from immichsync.client.api import ChecksumEntry, FileReadError

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 64 * 1024


def compute_checksum(path: Path) -> str:
    """Compute the SHA-1 of a file, base64-encoded.

    Reads the file in blocks so large files are never loaded whole.

    Args:
        path: Path to the file to hash.

    Returns:
        Base64 SHA-1 digest, the format the server compares against.

    Raises:
        FileReadError: If the file cannot be opened or read.
    """
    hasher = hashlib.sha1()
    try:
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
                hasher.update(block)
    except OSError as e:
        raise FileReadError(f"Cannot read {path}: {e}") from e
    return base64.b64encode(hasher.digest()).decode("ascii")


@dataclass
class SkippedPath:
    """A file or directory the indexer had to skip."""

    path: Path
    error: BaseException


class ChecksumIndexer:
    """Computes content digests for every supported file under the watch roots."""

    def __init__(self, on_directory: Callable[[Path], None] | None = None) -> None:
        """Initialize the indexer.

        Args:
            on_directory: Called for every directory encountered (including
                the roots), so the watcher can observe it.
        """
        self._on_directory = on_directory
        self.errors: list[SkippedPath] = []

    def _register_directory(self, path: Path) -> None:
        if self._on_directory is None:
            return
        try:
            self._on_directory(path)
        except OSError as e:
            logger.error("Cannot watch directory %s: %s", path, e)
            self.errors.append(SkippedPath(path, e))

    def index(
        self,
        roots: Iterable[Path],
        is_supported: Callable[[Path], bool],
    ) -> list[ChecksumEntry]:
        """Digest every supported file below the given roots.

        Args:
            roots: Directories to walk recursively.
            is_supported: Filter deciding which files are digested.

        Returns:
            One ChecksumEntry per readable supported file, in walk order.
        """
        self.errors = []
        entries: list[ChecksumEntry] = []

        def _on_walk_error(error: OSError) -> None:
            logger.error("Cannot list %s: %s", error.filename, error)
            self.errors.append(SkippedPath(Path(error.filename or ""), error))

        for root in roots:
            root = Path(root)
            if not root.is_dir():
                logger.error("Watch root is not a directory: %s", root)
                self.errors.append(SkippedPath(root, NotADirectoryError(str(root))))
                continue

            for root_str, dirs, files in os.walk(root, onerror=_on_walk_error):
                current = Path(root_str)
                dirs.sort()
                self._register_directory(current)

                for filename in sorted(files):
                    file_path = current / filename
                    if file_path.is_symlink() or not is_supported(file_path):
                        continue
                    try:
                        digest = compute_checksum(file_path)
                    except FileReadError as e:
                        logger.error("Skipping %s: %s", file_path, e)
                        self.errors.append(SkippedPath(file_path, e))
                        continue
                    entries.append(ChecksumEntry(digest=digest, local_id=file_path.absolute()))

        logger.info(
            "Indexed %d supported files (%d skipped)", len(entries), len(self.errors)
        )
        return entries
