"""Canonical hashing helpers for pins, trees, task inputs and the ledger.

All digests are SHA-256 and are written as ``sha256:<hex>`` once they
leave this module. Pins may be supplied in any of the spellings operators
copy from other tools (bare hex, SRI, Nix base32); ``parse_pin`` folds them
into the canonical form or refuses them.
"""

from __future__ import annotations

import base64
import binascii
import fnmatch
import hashlib
import json
import os
import re
from pathlib import Path
from typing import Any

from pinforge.core.errors import UnpinnedDependency

_CHUNK = 1024 * 1024

# Nix's base32 alphabet (omits e, o, u, t)
_NIX32_ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"
_NIX32_LEN = 52

_HEX_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_PLACEHOLDER_MARKERS = ("replace", "todo", "fixme", "placeholder", "xxx")


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Return the SHA-256 hex digest of a file, streamed."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object as ``sha256:<hex>``."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def strip_algorithm(address: str) -> str:
    """Strip the ``sha256:`` prefix from a content address, if present."""
    return address.removeprefix("sha256:")


def tree_digest(root: Path, exclude: list[str] | None = None) -> str:
    """Digest a directory tree: relative paths, exec bits, file digests.

    Directory entries are implicit; empty directories do not contribute.
    Names matching any ``exclude`` glob are skipped at every level.
    """
    exclude = exclude or []
    root = Path(root)
    records: list[list[str]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not any(fnmatch.fnmatch(d, p) for p in exclude)
        )
        for name in sorted(filenames):
            if any(fnmatch.fnmatch(name, p) for p in exclude):
                continue
            full = Path(dirpath) / name
            rel = full.relative_to(root).as_posix()
            if full.is_symlink():
                records.append([rel, "l", os.readlink(full)])
            else:
                mode = "x" if os.access(full, os.X_OK) else "f"
                records.append([rel, mode, sha256_file(full)])
    records.sort()
    return content_address(records)


# ---------------------------------------------------------------------------
# Pin parsing
# ---------------------------------------------------------------------------


def _nix32_decode(text: str) -> bytes:
    value = 0
    for char in text:
        index = _NIX32_ALPHABET.find(char)
        if index < 0:
            raise ValueError(f"invalid base32 character {char!r}")
        value = value * 32 + index
    if value >> 256:
        raise ValueError("base32 value exceeds 256 bits")
    # Nix stores the first character as the most significant digit of a
    # little-endian byte string.
    return value.to_bytes(32, "little")


def nix32_encode(digest: bytes) -> str:
    """Encode a 32-byte digest in Nix base32 (inverse of the decoder)."""
    value = int.from_bytes(digest, "little")
    chars = []
    for _ in range(_NIX32_LEN):
        chars.append(_NIX32_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def parse_pin(pin: str, *, subject: str = "") -> str:
    """Normalise a declared pin to ``sha256:<hex>``.

    Raises ``UnpinnedDependency`` for empty, placeholder or malformed pins.
    The fetcher refuses to run against any of those.
    """
    text = (pin or "").strip()
    if not text:
        raise UnpinnedDependency(
            f"{subject or 'artifact'}: no content hash pinned", subject=subject
        )
    lowered = text.lower()

    raw: bytes | None = None
    try:
        if lowered.startswith("sha256:"):
            body = text[len("sha256:"):]
            if _HEX_RE.match(body):
                raw = bytes.fromhex(body)
            elif len(body) == _NIX32_LEN:
                raw = _nix32_decode(body)
        elif lowered.startswith("sha256-"):
            raw = base64.b64decode(text[len("sha256-"):], validate=True)
        elif _HEX_RE.match(text):
            raw = bytes.fromhex(text)
        elif len(text) == _NIX32_LEN:
            raw = _nix32_decode(text)
    except (ValueError, binascii.Error):
        raw = None

    if raw is None or len(raw) != 32:
        # markers only explain text that is not a digest; real base32 and
        # base64 pins can contain them by chance
        if any(marker in lowered for marker in _PLACEHOLDER_MARKERS):
            raise UnpinnedDependency(
                f"{subject or 'artifact'}: placeholder hash {text!r}", subject=subject
            )
        raise UnpinnedDependency(
            f"{subject or 'artifact'}: malformed hash {text!r}", subject=subject
        )
    if not any(raw):
        raise UnpinnedDependency(
            f"{subject or 'artifact'}: all-zero placeholder hash", subject=subject
        )
    return f"sha256:{raw.hex()}"


def to_sri(address: str) -> str:
    """Render ``sha256:<hex>`` in SRI form (``sha256-<base64>``)."""
    raw = bytes.fromhex(strip_algorithm(address))
    return "sha256-" + base64.b64encode(raw).decode("ascii")


# ---------------------------------------------------------------------------
# Ledger hashes
# ---------------------------------------------------------------------------


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself)."""
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
