"""Content-addressed document archive.

The archive is the set of SHA-256 digests of every document stored below the
documents root. It is built once per process by walking the root and kept
current by inserting the digest of each file copied in during a run, so two
byte-identical downloads in one run are only counted once.
"""

import hashlib
import logging
import os
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from .exceptions import ArchiveHashError
from .utils import STAGING_DIR_NAME, copy_file, unique_path

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024

# Directory names whose subtrees never hold archived documents.
EXCLUDED_DIR_NAMES = frozenset({"_local", STAGING_DIR_NAME})


def compute_hash(path: Path) -> str:
    """SHA-256 hex digest of a file's contents.

    Raises:
        ArchiveHashError: If the file cannot be read.
    """
    hasher = hashlib.sha256()
    try:
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                hasher.update(chunk)
    except OSError as e:
        raise ArchiveHashError(f"Cannot hash {path}: {e}") from e
    return hasher.hexdigest()


def is_excluded_name(name: str) -> bool:
    """Files the archive walk ignores: hidden/underscore-prefixed names and logs."""
    return name.startswith(("_", ".")) or name.lower().endswith(".log")


class DocumentArchive:
    """Set of content hashes scoped to one storage root.

    Usage:
        archive = DocumentArchive(root)
        archive.build()
        if archive.store_if_new(downloaded, documents_dir / downloaded.name):
            new_files += 1
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._hashes: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hashes)

    def __contains__(self, digest: object) -> bool:
        return self.contains_hash(digest) if isinstance(digest, str) else False

    def iter_documents(self) -> Iterator[Path]:
        """Yield every file below the root that belongs to the archive."""
        for dirpath, dirnames, filenames in os.walk(self.root):
            # Prune excluded subtrees in place so os.walk never descends into them.
            dirnames[:] = [d for d in dirnames if d not in EXCLUDED_DIR_NAMES]
            for name in filenames:
                if is_excluded_name(name):
                    continue
                yield Path(dirpath) / name

    def build(self, workers: int = 4) -> int:
        """Hash every archived document in parallel and replace the index.

        Files that cannot be hashed are logged and skipped.

        Returns:
            Number of digests in the index.
        """
        with self._lock:
            self._hashes.clear()

        if not self.root.exists():
            logger.info(f"Archive root {self.root} does not exist yet, index is empty")
            return 0

        def _hash_one(path: Path) -> None:
            try:
                digest = compute_hash(path)
            except ArchiveHashError as e:
                logger.warning(f"Skipping file in archive index: {e}")
                return
            self.add_hash(digest)

        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            # list() drains the iterator so worker exceptions surface here.
            list(pool.map(_hash_one, self.iter_documents()))

        count = len(self)
        logger.info(f"Archive index built: {count} documents under {self.root}")
        return count

    def contains_hash(self, digest: str) -> bool:
        if not digest:
            return False
        with self._lock:
            return digest in self._hashes

    def contains_file(self, path: Path) -> bool:
        """Check whether a file with the same content is already archived."""
        return self.contains_hash(compute_hash(path))

    def add_hash(self, digest: str) -> None:
        with self._lock:
            self._hashes.add(digest)

    def store_if_new(self, src: Path, dst: Path) -> bool:
        """Copy `src` to `dst` unless its content is already archived.

        The digest is inserted right after the copy, before any later
        duplicate check can run.

        Returns:
            True if the file was new and has been archived.

        Raises:
            ArchiveHashError: If `src` cannot be hashed.
        """
        digest = compute_hash(src)
        with self._lock:
            if digest in self._hashes:
                logger.debug(f"Skipping already archived document {src.name}")
                return False
            # A different document may already use this name.
            dst = unique_path(dst)
            copy_file(src, dst)
            self._hashes.add(digest)
        logger.info(f"Archived new document {dst}")
        return True
