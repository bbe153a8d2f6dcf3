"""Account ledger: user balances plus a transaction log keyed by idempotency key."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .errors import TransientCreditError, UnknownAccountError
from .models import CreditResult

logger = logging.getLogger(__name__)


class AccountLedger(Protocol):
    def credit(
        self,
        user_id: str,
        currency_delta: int,
        experience_delta: int,
        idempotency_key: str,
        reason_code: str,
        display_name: str | None = None,
    ) -> CreditResult: ...

    def balance(self, user_id: str) -> tuple[int, int] | None: ...

    def probe(self) -> bool: ...


@dataclass
class SqliteAccountLedger:
    path: Path
    auto_create_accounts: bool = True
    timeout_seconds: float = 3.0

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    user_id TEXT PRIMARY KEY,
                    display_name TEXT,
                    currency INTEGER NOT NULL DEFAULT 0,
                    experience INTEGER NOT NULL DEFAULT 0,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_transactions (
                    idempotency_key TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    currency_delta INTEGER NOT NULL,
                    experience_delta INTEGER NOT NULL,
                    reason_code TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL
                )
                """
            )
        finally:
            conn.close()

    def credit(
        self,
        user_id: str,
        currency_delta: int,
        experience_delta: int,
        idempotency_key: str,
        reason_code: str,
        display_name: str | None = None,
    ) -> CreditResult:
        """Apply one delta atomically; a repeated idempotency key is a no-op."""
        now = _utc_now()
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise TransientCreditError(f"LEDGER_UNAVAILABLE:{exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                applied = self._apply(
                    conn,
                    now,
                    user_id,
                    currency_delta,
                    experience_delta,
                    idempotency_key,
                    reason_code,
                    display_name,
                )
                row = conn.execute(
                    "SELECT currency, experience FROM accounts WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            raise TransientCreditError(f"LEDGER_UNAVAILABLE:{exc}") from exc
        finally:
            conn.close()
        currency, experience = row if row else (0, 0)
        return CreditResult(applied=applied, currency_balance=int(currency), experience_balance=int(experience))

    def _apply(
        self,
        conn: sqlite3.Connection,
        now: str,
        user_id: str,
        currency_delta: int,
        experience_delta: int,
        idempotency_key: str,
        reason_code: str,
        display_name: str | None,
    ) -> bool:
        existing = conn.execute(
            "SELECT user_id FROM ledger_transactions WHERE idempotency_key = ?",
            (idempotency_key,),
        ).fetchone()
        if existing:
            logger.info("Ledger duplicate credit key=%s user=%s", idempotency_key, existing[0])
            return False
        account = conn.execute("SELECT 1 FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        if not account:
            if not self.auto_create_accounts:
                raise UnknownAccountError(user_id)
            conn.execute(
                """
                INSERT INTO accounts (user_id, display_name, currency, experience, created_at_utc, updated_at_utc)
                VALUES (?, ?, 0, 0, ?, ?)
                """,
                (user_id, display_name, now, now),
            )
        conn.execute(
            """
            INSERT INTO ledger_transactions
            (idempotency_key, user_id, currency_delta, experience_delta, reason_code, created_at_utc)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (idempotency_key, user_id, currency_delta, experience_delta, reason_code, now),
        )
        conn.execute(
            """
            UPDATE accounts SET
                currency = currency + ?,
                experience = experience + ?,
                display_name = COALESCE(?, display_name),
                updated_at_utc = ?
            WHERE user_id = ?
            """,
            (currency_delta, experience_delta, display_name, now, user_id),
        )
        return True

    def balance(self, user_id: str) -> tuple[int, int] | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT currency, experience FROM accounts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        return (int(row[0]), int(row[1])) if row else None

    def transaction_count(self, user_id: str | None = None) -> int:
        conn = self._connect()
        try:
            if user_id is None:
                row = conn.execute("SELECT COUNT(*) FROM ledger_transactions").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM ledger_transactions WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        finally:
            conn.close()
        return int(row[0])

    def probe(self) -> bool:
        try:
            conn = self._connect()
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
            return True
        except sqlite3.Error:
            return False

    def _connect(self) -> sqlite3.Connection:
        # autocommit; credit() drives its own BEGIN IMMEDIATE
        return sqlite3.connect(self.path, timeout=self.timeout_seconds, isolation_level=None)


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
