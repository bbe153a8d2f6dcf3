"""Claim index for webhook idempotency (sqlite)."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .models import ClaimRecord, ClaimResult, ClaimState

_SELECT = """
    SELECT claim_key, state, claimed_at_utc, provider, external_event_id, event_type,
           attempts, last_error, committed_at_utc
    FROM webhook_claims
"""


@dataclass
class ClaimIndex:
    path: Path
    busy_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS webhook_claims (
                    claim_key TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    provider TEXT,
                    external_event_id TEXT,
                    event_type TEXT,
                    payload_hash TEXT,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    last_error TEXT,
                    claimed_at_utc TEXT NOT NULL,
                    committed_at_utc TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS webhook_claims_state ON webhook_claims (state)")

    def claim(
        self,
        key: str,
        *,
        provider: str | None = None,
        external_event_id: str | None = None,
        event_type: str | None = None,
        payload_hash: str | None = None,
    ) -> ClaimResult:
        """Insert-if-absent; exactly one caller per key observes ``claimed=True``."""
        now = _utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO webhook_claims
                (claim_key, state, provider, external_event_id, event_type, payload_hash, attempts, claimed_at_utc)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (key, ClaimState.CLAIMED.value, provider, external_event_id, event_type, payload_hash, now),
            )
            inserted = cursor.rowcount == 1
            if not inserted:
                conn.execute(
                    "UPDATE webhook_claims SET attempts = attempts + 1 WHERE claim_key = ?",
                    (key,),
                )
            row = conn.execute(_SELECT + " WHERE claim_key = ?", (key,)).fetchone()
        return ClaimResult(claimed=inserted, record=_to_record(row))

    def commit(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE webhook_claims SET
                    state = ?,
                    committed_at_utc = ?,
                    last_error = NULL
                WHERE claim_key = ?
                """,
                (ClaimState.COMMITTED.value, _utc_now(), key),
            )

    def record_failure(self, key: str, reason: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE webhook_claims SET last_error = ? WHERE claim_key = ?",
                (reason, key),
            )

    def lookup(self, key: str) -> ClaimRecord | None:
        with self._connect() as conn:
            row = conn.execute(_SELECT + " WHERE claim_key = ?", (key,)).fetchone()
        return _to_record(row) if row else None

    def list_uncommitted(self, limit: int = 100) -> list[ClaimRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                _SELECT + " WHERE state = ? ORDER BY claimed_at_utc LIMIT ?",
                (ClaimState.CLAIMED.value, limit),
            ).fetchall()
        return [_to_record(row) for row in rows]

    def probe(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            return False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_seconds)
        try:
            with conn:
                yield conn
        finally:
            conn.close()


def _to_record(row: tuple[Any, ...]) -> ClaimRecord:
    return ClaimRecord(
        key=row[0],
        state=ClaimState(row[1]),
        claimed_at_utc=row[2],
        provider=row[3],
        external_event_id=row[4],
        event_type=row[5],
        attempts=int(row[6] or 0),
        last_error=row[7],
        committed_at_utc=row[8],
    )


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
