"""Content-addressed download cache shared between build runs.

Entries are keyed by sha256 and laid out like a git object store::

    <root>/ab/cdef0123...

A writer holds an exclusive lock on ``<entry>.lock`` (threads of this
process via an in-memory lock, other processes via ``flock``) and publishes
the finished download with an atomic rename, so a partial file is never
visible under an entry's final name.
"""

import fcntl
import os
import re
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from stagecraft.exceptions import DownloadError
from stagecraft.log import logger
from stagecraft.run.hash import sha256_file
from stagecraft.run.workspace import remove_tree

logger = logger.getChild(__name__)

SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


def is_sha256(value: str) -> bool:
    """Check if a string looks like a hex sha256 digest."""
    return bool(SHA256_RE.match(value.lower()))


class PackageCache:
    """Directory-backed cache of downloaded package archives."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @classmethod
    @contextmanager
    def ephemeral(cls) -> Iterator["PackageCache"]:
        """A cache that lives only for the duration of the ``with`` block."""
        tmp = tempfile.mkdtemp(prefix="stagecraft-cache-")
        try:
            yield cls(Path(tmp))
        finally:
            remove_tree(Path(tmp))

    def path_for(self, sha256: str) -> Path:
        if not is_sha256(sha256):
            raise ValueError(f"not a sha256 digest: {sha256!r}")
        sha256 = sha256.lower()
        return self.root / sha256[:2] / sha256[2:]

    def get(self, sha256: str) -> Path | None:
        path = self.path_for(sha256)
        return path if path.exists() else None

    def _thread_lock(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def _writer(self, sha256: str) -> Iterator[Path]:
        path = self.path_for(sha256)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock(sha256):
            with open(str(path) + ".lock", "w") as lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    yield path
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def put(self, sha256: str, url: str, fetch: Callable[[str, Path], None]) -> Path:
        """Return the cached entry for ``sha256``, downloading it if needed.

        ``fetch(url, dest)`` writes the download to ``dest``. The result is
        verified against ``sha256`` before being published.

        Raises:
            DownloadError: If the download fails or its digest doesn't match
        """
        with self._writer(sha256) as path:
            if path.exists():
                logger.debug("cache hit %s", sha256[:12])
                return path

            fd, tmp_name = tempfile.mkstemp(prefix=".partial-", dir=path.parent)
            os.close(fd)
            tmp = Path(tmp_name)
            try:
                fetch(url, tmp)
                actual = sha256_file(tmp)
                if actual != sha256.lower():
                    raise DownloadError(url, f"sha256 mismatch: expected {sha256}, got {actual}")
                os.replace(tmp, path)
            finally:
                if tmp.exists():
                    tmp.unlink()
            logger.debug("cached %s from %s", sha256[:12], url)
            return path

    def clear(self):
        if self.root.exists():
            shutil.rmtree(self.root)
