"""pinforge: deterministic, network-isolated build orchestration.

Fetches every external input against a pinned content hash, vendors each
component's dependencies, neutralizes build-time network calls, builds the
components inside a network-deny sandbox and assembles one relocatable
output tree with freshly generated credentials.
"""

__version__ = "0.1.0"
__description__ = "Deterministic, network-isolated build orchestrator"

from pinforge.core.orchestrator import Orchestrator
from pinforge.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
