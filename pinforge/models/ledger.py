"""Build ledger entry model (append-only, hash-chained)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only build ledger.

    One entry per pipeline state transition or task outcome. ``subject`` is
    ``"pipeline"`` for run-level transitions and the task id otherwise.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    subject: str
    transition: str  # "from->to", e.g. "fetching->vendoring"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    detail_hash: str = ""  # SHA-256 of canonical detail payload
    detail: str = ""
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed after construction, seals this entry
