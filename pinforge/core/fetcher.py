"""Content-addressed fetcher: locate, download, verify, cache, unpack.

Every external input enters the build through ``Fetcher.fetch``. The pin is
validated before any I/O, content is hashed while it streams to a temp file
inside the cache, and only verified bytes are admitted. A mismatch leaves
nothing behind.

Lookup order for a missing digest: local mirror directories, then the
locator itself (``file://`` URL or plain path, else HTTP(S) via httpx).
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import ssl
import tarfile
import tempfile
import uuid
import zipfile
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from pinforge.core.content_cache import ContentCache, SingleFlight, safe_basename
from pinforge.core.errors import (
    ArtifactUnavailable,
    IntegrityMismatch,
    UnsafeArchiveMember,
)
from pinforge.core.hasher import parse_pin, strip_algorithm
from pinforge.models.artifacts import ArtifactRef, LocalBlob

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


class Fetcher:
    """Fetches ArtifactRefs into a shared ContentCache.

    Parameters
    ----------
    cache:
        Blob cache shared by all concurrent fetch tasks of the run.
    sources_dir:
        Where unpacked snapshots are kept, one directory per digest.
    mirror_dirs:
        Pre-populated directories searched (by file name and by hex digest)
        before the network.
    timeout:
        Per-request timeout in seconds for HTTP fetches.
    ca_bundle:
        Trust store for TLS-verifying fetches; system default if ``None``.
    client:
        Optional preconfigured ``httpx.Client`` (tests inject a transport).
    """

    def __init__(
        self,
        cache: ContentCache,
        *,
        sources_dir: Path,
        mirror_dirs: list[Path] | None = None,
        timeout: float = 60.0,
        ca_bundle: Path | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._cache = cache
        self._sources_dir = Path(sources_dir)
        self._mirror_dirs = [Path(p) for p in mirror_dirs or []]
        self._timeout = timeout
        self._ca_bundle = ca_bundle
        self._client = client
        self._owns_client = client is None
        self._unpack_flight = SingleFlight()

    @property
    def cache(self) -> ContentCache:
        return self._cache

    def __enter__(self) -> Fetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the HTTP client. Cache teardown is the caller's call."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def _http(self) -> httpx.Client:
        if self._client is None:
            verify: ssl.SSLContext | bool = True
            if self._ca_bundle is not None:
                verify = ssl.create_default_context(cafile=str(self._ca_bundle))
            self._client = httpx.Client(
                follow_redirects=True, timeout=self._timeout, verify=verify
            )
        return self._client

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def fetch(self, ref: ArtifactRef) -> LocalBlob:
        """Return verified local content for ``ref``.

        Raises UnpinnedDependency before any I/O when the pin is empty,
        a placeholder or malformed, and IntegrityMismatch when the content
        does not hash to the pin.
        """
        digest = parse_pin(ref.hash, subject=ref.name)
        expected = strip_algorithm(digest)

        def _produce() -> Path:
            mirrored = self._from_mirrors(ref, expected)
            if mirrored is not None:
                return mirrored
            tmp, actual = self._download(ref.url, subject=ref.name)
            if actual != expected:
                tmp.unlink(missing_ok=True)
                raise IntegrityMismatch(
                    f"{ref.name}: content of {ref.url} hashes to sha256:{actual}, "
                    f"pinned sha256:{expected}",
                    subject=ref.name,
                    expected=digest,
                    actual=f"sha256:{actual}",
                )
            return tmp

        path = self._cache.get_or_produce(digest, _basename(ref.url), _produce)
        logger.debug("Fetched %s -> %s", ref.name, path)
        return LocalBlob(
            name=ref.name, digest=digest, path=path, size_bytes=path.stat().st_size
        )

    def prefetch(self, url: str) -> tuple[str, Path]:
        """Download ``url`` without a pin and return its ``sha256:`` digest.

        Used only to compute a pin for the project file; the content is
        admitted to the cache under the digest it actually has.
        """
        tmp, actual = self._download(url, subject=url)
        path = self._cache.get_or_produce(actual, _basename(url), lambda: tmp)
        if tmp.exists():
            tmp.unlink()
        return f"sha256:{actual}", path

    def _from_mirrors(self, ref: ArtifactRef, expected: str) -> Path | None:
        for mirror in self._mirror_dirs:
            for candidate in (mirror / _basename(ref.url), mirror / expected):
                if not candidate.is_file():
                    continue
                tmp, actual = self._copy_hashing(candidate)
                if actual == expected:
                    logger.info("Using mirror copy %s for %s", candidate, ref.name)
                    return tmp
                tmp.unlink(missing_ok=True)
                logger.warning(
                    "Mirror copy %s does not match pin of %s; ignoring", candidate, ref.name
                )
        return None

    def _download(self, url: str, *, subject: str) -> tuple[Path, str]:
        local = _local_path(url)
        if local is not None:
            if not local.is_file():
                raise ArtifactUnavailable(f"{subject}: {local} does not exist", subject=subject)
            return self._copy_hashing(local)

        fd, name = tempfile.mkstemp(dir=self._cache.tmp_dir, prefix="dl-")
        tmp = Path(name)
        digest = hashlib.sha256()
        try:
            with os.fdopen(fd, "wb") as out, self._http().stream("GET", url) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes(_CHUNK):
                    digest.update(chunk)
                    out.write(chunk)
        except httpx.HTTPError as exc:
            tmp.unlink(missing_ok=True)
            raise ArtifactUnavailable(f"{subject}: cannot fetch {url}: {exc}", subject=subject) from exc
        return tmp, digest.hexdigest()

    def _copy_hashing(self, source: Path) -> tuple[Path, str]:
        fd, name = tempfile.mkstemp(dir=self._cache.tmp_dir, prefix="cp-")
        digest = hashlib.sha256()
        with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
            for chunk in iter(lambda: src.read(_CHUNK), b""):
                digest.update(chunk)
                out.write(chunk)
        return Path(name), digest.hexdigest()

    # ------------------------------------------------------------------
    # Unpacked snapshots
    # ------------------------------------------------------------------

    def snapshot(self, ref: ArtifactRef, blob: LocalBlob) -> Path:
        """Return the canonical unpacked tree of an archive artifact.

        Snapshots are keyed by digest and strip setting, unpacked at most
        once, and must never be written to; builders get working copies.
        """
        key = strip_algorithm(blob.digest)
        if ref.strip_components is not None:
            key = f"{key}-s{ref.strip_components}"
        dest = self._sources_dir / key

        def _unpack() -> Path:
            if dest.is_dir():
                return dest
            self._sources_dir.mkdir(parents=True, exist_ok=True)
            staging = self._sources_dir / f".tmp-{key}-{uuid.uuid4().hex[:8]}"
            try:
                unpack(blob, staging, ref.strip_components)
                os.replace(staging, dest)
            finally:
                if staging.exists():
                    shutil.rmtree(staging)
            logger.info("Unpacked %s into %s", ref.name, dest)
            return dest

        return self._unpack_flight.do(key, _unpack)


# ---------------------------------------------------------------------------
# Archive extraction
# ---------------------------------------------------------------------------


def _basename(url: str) -> str:
    return safe_basename(unquote(urlparse(url).path) or url)


def _local_path(url: str) -> Path | None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if not parsed.scheme:
        return Path(url)
    return None


def _single_top_dir(names: list[str]) -> bool:
    tops = {n.lstrip("./").split("/", 1)[0] for n in names if n.strip("./")}
    nested = any("/" in n.lstrip("./").rstrip("/") for n in names)
    return len(tops) == 1 and nested


def _strip(name: str, count: int) -> str | None:
    if count <= 0:
        return name
    parts = name.lstrip("./").split("/", count)
    if len(parts) <= count or not parts[-1]:
        return None
    return parts[-1]


def _check_inside(dest: Path, name: str, subject: str) -> None:
    target = os.path.abspath(os.path.join(dest, name))
    if os.path.isabs(name) or not target.startswith(os.path.abspath(dest) + os.sep):
        raise UnsafeArchiveMember(
            f"{subject}: archive member {name!r} escapes the destination", subject=subject
        )


def unpack(blob: LocalBlob, dest: Path, strip_components: int | None = None) -> Path:
    """Extract a tar (gz/xz/bz2) or zip blob into ``dest``.

    With ``strip_components=None`` a single top-level directory, if the
    archive has exactly one, is stripped.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    path = blob.path

    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as zf:
            infos = [i for i in zf.infolist() if not i.is_dir()]
            count = strip_components
            if count is None:
                count = 1 if _single_top_dir([i.filename for i in infos]) else 0
            for info in infos:
                name = _strip(info.filename, count)
                if name is None:
                    continue
                _check_inside(dest, name, blob.name)
                target = dest / name
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)
        return dest

    try:
        tf = tarfile.open(path, "r:*")
    except tarfile.TarError as exc:
        raise ArtifactUnavailable(
            f"{blob.name}: not a supported archive ({exc})", subject=blob.name
        ) from exc
    with tf:
        members = tf.getmembers()
        count = strip_components
        if count is None:
            count = 1 if _single_top_dir([m.name for m in members]) else 0
        for member in members:
            name = _strip(member.name, count)
            if name is None:
                continue
            member.name = os.path.normpath(name)
            if member.islnk() and member.linkname:
                member.linkname = _strip(member.linkname, count) or member.linkname
            _check_inside(dest, member.name, blob.name)
            try:
                tf.extract(member, dest, filter="tar")
            except tarfile.FilterError as exc:
                raise UnsafeArchiveMember(
                    f"{blob.name}: refused archive member {member.name!r}: {exc}",
                    subject=blob.name,
                ) from exc
    return dest
