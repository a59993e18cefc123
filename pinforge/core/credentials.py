"""Per-build TLS credential generation.

A fresh self-signed key pair is produced for every assembled tree; no
credential is ever reused between builds or read from the source snapshot.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from pinforge.core.errors import ComponentBuildFailed, PrerequisiteMissing
from pinforge.models.assembly import CredentialSpec

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialGenerator(Protocol):
    """Protocol for credential backends.

    Any object with a ``generate(spec, directory) -> (key, cert)`` method
    satisfies this protocol. Both files must be new and inside
    ``directory``.
    """

    def generate(self, spec: CredentialSpec, directory: Path) -> tuple[Path, Path]:
        ...


class OpenSSLCredentialGenerator:
    """Generates an unencrypted RSA key and self-signed certificate with openssl."""

    def __init__(self, openssl: str = "openssl") -> None:
        self._openssl = openssl

    def command(self, spec: CredentialSpec, key: Path, cert: Path) -> list[str]:
        return [
            self._openssl,
            "req",
            "-x509",
            "-nodes",
            "-newkey",
            f"rsa:{spec.key_bits}",
            "-keyout",
            str(key),
            "-out",
            str(cert),
            "-days",
            str(spec.days),
            "-subj",
            spec.subject,
        ]

    def generate(self, spec: CredentialSpec, directory: Path) -> tuple[Path, Path]:
        key = directory / spec.key_name
        cert = directory / spec.cert_name
        for path in (key, cert):
            if path.exists():
                path.unlink()
        try:
            proc = subprocess.run(
                self.command(spec, key, cert),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise PrerequisiteMissing(
                f"'{self._openssl}' is required to generate credentials", subject="openssl"
            ) from exc
        if proc.returncode != 0:
            raise ComponentBuildFailed(
                f"credential generation failed: {proc.stderr.strip()}", subject="credentials"
            )
        key.chmod(0o600)
        logger.info("Generated %d-day credential pair %s / %s", spec.days, key.name, cert.name)
        return key, cert
