"""Content-addressed, verify-on-read blob cache shared by all fetch tasks.

Storage layout: {root}/{sha256[0:2]}/{sha256}/{basename}

The cache is the only state shared between concurrent tasks. Writes are
at-most-once per digest: a second request for a digest that is already
being produced waits for the first producer's result instead of
duplicating the download.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Hashable, TypeVar

from pinforge.core.hasher import sha256_file, strip_algorithm

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._+-]")


class SingleFlight:
    """Collapses concurrent calls for the same key into one execution.

    Callers arriving while a call for ``key`` is in flight block on the
    first caller's Future and receive its result or its exception.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[Hashable, Future] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> T:
        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future
        if not owner:
            return future.result()
        try:
            value = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(value)
            return value
        finally:
            with self._lock:
                self._inflight.pop(key, None)


def safe_basename(name: str) -> str:
    """Reduce a URL or path tail to a filesystem-safe file name."""
    base = name.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
    base = _SAFE_NAME.sub("_", base)
    return base or "blob"


class ContentCache:
    """SHA-256 keyed blob store with per-digest single-flight production.

    Parameters
    ----------
    root:
        Root directory of the cache. Created if missing.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._flight = SingleFlight()
        self.produced = 0  # number of producer invocations this session

    @property
    def root(self) -> Path:
        return self._root

    @property
    def tmp_dir(self) -> Path:
        """Scratch area on the cache's filesystem so admission is a rename."""
        path = self._root / ".tmp"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _entry_dir(self, hex_digest: str) -> Path:
        return self._root / hex_digest[:2] / hex_digest

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def lookup(self, digest: str) -> Path | None:
        """Return the cached path for ``digest`` if present and intact.

        A corrupt or half-written entry is evicted and reported as a miss.
        """
        hex_digest = strip_algorithm(digest)
        entry_dir = self._entry_dir(hex_digest)
        if not entry_dir.is_dir():
            return None
        files = [p for p in entry_dir.iterdir() if p.is_file()]
        if len(files) == 1 and sha256_file(files[0]) == hex_digest:
            return files[0]
        logger.warning("Evicting corrupt cache entry %s", hex_digest)
        self._evict(entry_dir)
        return None

    def exists(self, digest: str) -> bool:
        return self.lookup(digest) is not None

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def get_or_produce(
        self, digest: str, name: str, producer: Callable[[], Path]
    ) -> Path:
        """Return the entry for ``digest``, running ``producer`` on a miss.

        ``producer`` must return a file under ``tmp_dir`` whose content it
        has already verified against ``digest``. The file is renamed into
        place and made read-only.
        """
        hex_digest = strip_algorithm(digest)

        def _produce() -> Path:
            cached = self.lookup(hex_digest)
            if cached is not None:
                return cached
            self.produced += 1
            return self._admit(hex_digest, name, producer())

        return self._flight.do(hex_digest, _produce)

    def _admit(self, hex_digest: str, name: str, produced: Path) -> Path:
        entry_dir = self._entry_dir(hex_digest)
        if entry_dir.exists():
            self._evict(entry_dir)
        entry_dir.mkdir(parents=True)
        dest = entry_dir / safe_basename(name)
        os.replace(produced, dest)
        dest.chmod(0o444)
        return dest

    def _evict(self, entry_dir: Path) -> None:
        for path in entry_dir.iterdir():
            path.chmod(0o644)
        shutil.rmtree(entry_dir)

    def clear(self) -> None:
        """Drop every entry (teardown of a non-persistent cache)."""
        if not self._root.exists():
            return
        for dirpath, _dirnames, filenames in os.walk(self._root):
            for fname in filenames:
                os.chmod(os.path.join(dirpath, fname), 0o644)
        shutil.rmtree(self._root)
