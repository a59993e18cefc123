"""Error kinds raised by the orchestrator.

Every error names the ``subject`` that failed (an ArtifactRef name, a
component, a config token) and carries the process exit code the CLI uses.
``fatal_for_optional`` marks errors that abort the run even when they occur
inside an optional extension module's chain: integrity failures are never
tolerated, build failures of add-on modules are.
"""

from __future__ import annotations


class ForgeError(RuntimeError):
    """Base class for all orchestrator errors."""

    exit_code: int = 1
    fatal_for_optional: bool = True

    def __init__(self, message: str, *, subject: str = "") -> None:
        super().__init__(message)
        self.subject = subject

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigError(ForgeError):
    """Raised when the project file is missing or invalid."""


class PrerequisiteMissing(ForgeError):
    """Raised when a required host tool is not installed."""

    exit_code = 2


class UnpinnedDependency(ForgeError):
    """Raised when a required hash is empty, a placeholder, or malformed."""

    exit_code = 3


class IntegrityMismatch(ForgeError):
    """Raised when content does not hash to its pin."""

    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        subject: str = "",
        expected: str = "",
        actual: str = "",
    ) -> None:
        super().__init__(message, subject=subject)
        self.expected = expected
        self.actual = actual


class VendorIntegrityError(IntegrityMismatch):
    """Raised when a vendor bundle's declared hash disagrees with its contents."""


class DependencyResolutionUnavailable(ForgeError):
    """Raised when the registry is unreachable and no cached resolution exists."""

    exit_code = 5
    fatal_for_optional = False


class ComponentBuildFailed(ForgeError):
    """Raised when a builder returns a non-zero result."""

    exit_code = 4
    fatal_for_optional = False


class MissingExpectedArtifact(ForgeError):
    """Raised when a builder succeeded but a declared output is absent."""

    exit_code = 4
    fatal_for_optional = False


class UnresolvedConfigToken(ForgeError):
    """Raised when assembly cannot resolve a path-rewrite token."""

    exit_code = 6


class BuildPathLeak(UnresolvedConfigToken):
    """Raised when shipped configuration still references a build-machine path."""


class PipelineCancelled(ForgeError):
    """Raised inside tasks cancelled because a required sibling failed."""


class ArtifactUnavailable(ForgeError):
    """Raised when an artifact's locator cannot be read at all."""

    exit_code = 5


class UnsafeArchiveMember(IntegrityMismatch):
    """Raised when an archive member would land outside its destination."""
