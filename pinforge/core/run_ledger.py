"""Append-only, hash-chained build ledger backed by SQLite.

Every pipeline state transition and every task outcome of a run is
recorded here together with a digest of its detail payload.  The report
printed at the end of a build is a projection of this ledger for one run,
and ``pinforge verify-ledger`` replays the chains.

Each run forms its own chain: an entry's hash covers every field plus the
hash of the entry before it in the same run.  Appends from worker threads
are serialised in-process by a lock and across processes by an
``IMMEDIATE`` transaction, so two writers can never seal onto the same
predecessor.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pinforge.core.hasher import canonical_json_bytes, compute_entry_hash, sha256_hex
from pinforge.models.ledger import LedgerEntry

_FIELDS = tuple(LedgerEntry.model_fields)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS build_ledger (
    seq                 INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    run_id              TEXT NOT NULL,
    subject             TEXT NOT NULL,
    transition          TEXT NOT NULL,
    timestamp_utc       TEXT NOT NULL,
    detail_hash         TEXT NOT NULL DEFAULT '',
    detail              TEXT NOT NULL DEFAULT '',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
CREATE INDEX IF NOT EXISTS build_ledger_by_run ON build_ledger(run_id, seq);
"""

_INSERT = (
    f"INSERT INTO build_ledger ({', '.join(_FIELDS)}) "
    f"VALUES ({', '.join(':' + name for name in _FIELDS)})"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain of a run is broken."""


class BuildLedger:
    """Append-only, hash-chained record of orchestration runs.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def record(
        self,
        run_id: str,
        subject: str,
        transition: str,
        detail: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Build an entry around ``detail`` and append it to the run's chain."""
        fields: dict[str, Any] = {}
        if detail:
            body = canonical_json_bytes(detail)
            fields = {"detail": body.decode("utf-8"), "detail_hash": sha256_hex(body)}
        return self.append(
            LedgerEntry(run_id=run_id, subject=subject, transition=transition, **fields)
        )

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Seal ``entry`` onto the end of its run's chain and persist it.

        Any ``previous_entry_hash``/``entry_hash`` set by the caller is
        ignored; both are computed here.
        """
        with self._lock, self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT entry_hash FROM build_ledger WHERE run_id = ? "
                    "ORDER BY seq DESC LIMIT 1",
                    (entry.run_id,),
                ).fetchone()
                linked = entry.model_copy(
                    update={
                        "previous_entry_hash": row["entry_hash"] if row else "",
                        "entry_hash": "",
                    }
                )
                sealed = linked.model_copy(
                    update={"entry_hash": compute_entry_hash(linked.model_dump(mode="json"))}
                )
                conn.execute(_INSERT, sealed.model_dump(mode="json"))
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        return sealed

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _select(self, where: str, params: tuple) -> list[LedgerEntry]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(_FIELDS)} FROM build_ledger WHERE {where} ORDER BY seq",
                params,
            ).fetchall()
        return [LedgerEntry(**dict(row)) for row in rows]

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """All entries of a run, oldest first."""
        return self._select("run_id = ?", (run_id,))

    def get_subject_history(self, run_id: str, subject: str) -> list[LedgerEntry]:
        """Entries recorded for one task id (or ``"pipeline"``), oldest first."""
        return self._select("run_id = ? AND subject = ?", (run_id, subject))

    def get_all_run_ids(self) -> list[str]:
        """Run ids, most recently written first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT run_id FROM build_ledger GROUP BY run_id ORDER BY MAX(seq) DESC"
            ).fetchall()
        return [row["run_id"] for row in rows]

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Replay a run's chain: links, entry hashes and detail digests.

        Returns True when intact; raises ``LedgerIntegrityError`` at the
        first bad entry.
        """
        expected_previous = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != expected_previous:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: links to "
                    f"{entry.previous_entry_hash!r}, expected {expected_previous!r}"
                )
            recomputed = compute_entry_hash(entry.model_dump(mode="json"))
            if recomputed != entry.entry_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: stored hash {entry.entry_hash!r}, "
                    f"recomputed {recomputed!r}"
                )
            if entry.detail and sha256_hex(entry.detail.encode("utf-8")) != entry.detail_hash:
                raise LedgerIntegrityError(
                    f"Tampered detail in entry {entry.entry_id} ({entry.subject})"
                )
            expected_previous = entry.entry_hash
        return True
