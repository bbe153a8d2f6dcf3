"""Postgres-backed claim index and account ledger."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import psycopg

from .errors import TransientCreditError, UnknownAccountError
from .models import ClaimRecord, ClaimResult, ClaimState, CreditResult

logger = logging.getLogger(__name__)

_SELECT_CLAIM = """
    SELECT claim_key, state, claimed_at_utc, provider, external_event_id, event_type,
           attempts, last_error, committed_at_utc
    FROM webhook_claims
"""


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


class _ThreadLocalConnection:
    """One autocommit connection per thread, reopened after a failed probe."""

    dsn: str
    _local: threading.local
    _connect_lock: threading.Lock

    def _init_conn_state(self) -> None:
        self._local = threading.local()
        self._connect_lock = threading.Lock()

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.dsn, autocommit=True)

    def _get_conn(self) -> psycopg.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None and not bool(getattr(conn, "closed", False)):
            return conn
        with self._connect_lock:
            conn = getattr(self._local, "conn", None)
            if conn is not None and not bool(getattr(conn, "closed", False)):
                return conn
            conn = self._connect()
            self._local.conn = conn
            return conn

    def _reset_conn(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        try:
            conn.close()
        except psycopg.Error:
            logger.debug("Postgres close failed; dropping connection")
        self._local.conn = None

    def probe(self) -> bool:
        try:
            conn = self._get_conn()
            conn.execute("SELECT 1")
            return True
        except psycopg.Error:
            self._reset_conn()
            return False


@dataclass
class PostgresClaimIndex(_ThreadLocalConnection):
    dsn: str
    _local: threading.local = field(init=False, repr=False)
    _connect_lock: threading.Lock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._init_conn_state()
        conn = self._get_conn()
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
        conn = self._get_conn()
        cursor = conn.execute(
            """
            INSERT INTO webhook_claims
            (claim_key, state, provider, external_event_id, event_type, payload_hash, attempts, claimed_at_utc)
            VALUES (%s, %s, %s, %s, %s, %s, 1, %s)
            ON CONFLICT (claim_key) DO NOTHING
            """,
            (key, ClaimState.CLAIMED.value, provider, external_event_id, event_type, payload_hash, _utc_now()),
        )
        inserted = cursor.rowcount == 1
        if not inserted:
            conn.execute(
                "UPDATE webhook_claims SET attempts = attempts + 1 WHERE claim_key = %s",
                (key,),
            )
        row = conn.execute(_SELECT_CLAIM + " WHERE claim_key = %s", (key,)).fetchone()
        return ClaimResult(claimed=inserted, record=_to_record(row))

    def commit(self, key: str) -> None:
        conn = self._get_conn()
        conn.execute(
            """
            UPDATE webhook_claims SET
                state = %s,
                committed_at_utc = %s,
                last_error = NULL
            WHERE claim_key = %s
            """,
            (ClaimState.COMMITTED.value, _utc_now(), key),
        )

    def record_failure(self, key: str, reason: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "UPDATE webhook_claims SET last_error = %s WHERE claim_key = %s",
            (reason, key),
        )

    def lookup(self, key: str) -> ClaimRecord | None:
        conn = self._get_conn()
        row = conn.execute(_SELECT_CLAIM + " WHERE claim_key = %s", (key,)).fetchone()
        return _to_record(row) if row else None

    def list_uncommitted(self, limit: int = 100) -> list[ClaimRecord]:
        conn = self._get_conn()
        rows = conn.execute(
            _SELECT_CLAIM + " WHERE state = %s ORDER BY claimed_at_utc LIMIT %s",
            (ClaimState.CLAIMED.value, limit),
        ).fetchall()
        return [_to_record(row) for row in rows]


@dataclass
class PostgresAccountLedger(_ThreadLocalConnection):
    dsn: str
    auto_create_accounts: bool = True
    timeout_seconds: float = 3.0
    _local: threading.local = field(init=False, repr=False)
    _connect_lock: threading.Lock = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._init_conn_state()
        conn = self._get_conn()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
                user_id TEXT PRIMARY KEY,
                display_name TEXT,
                currency BIGINT NOT NULL DEFAULT 0,
                experience BIGINT NOT NULL DEFAULT 0,
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
                currency_delta BIGINT NOT NULL,
                experience_delta BIGINT NOT NULL,
                reason_code TEXT NOT NULL,
                created_at_utc TEXT NOT NULL
            )
            """
        )

    def credit(
        self,
        user_id: str,
        currency_delta: int,
        experience_delta: int,
        idempotency_key: str,
        reason_code: str,
        display_name: str | None = None,
    ) -> CreditResult:
        now = _utc_now()
        try:
            conn = self._get_conn()
            with conn.transaction():
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (str(int(self.timeout_seconds * 1000)),),
                )
                applied = self._apply(
                    conn, now, user_id, currency_delta, experience_delta, idempotency_key, reason_code, display_name
                )
                row = conn.execute(
                    "SELECT currency, experience FROM accounts WHERE user_id = %s",
                    (user_id,),
                ).fetchone()
        except psycopg.OperationalError as exc:
            self._reset_conn()
            raise TransientCreditError(f"LEDGER_UNAVAILABLE:{exc}") from exc
        currency, experience = row if row else (0, 0)
        return CreditResult(applied=applied, currency_balance=int(currency), experience_balance=int(experience))

    def _apply(
        self,
        conn: psycopg.Connection,
        now: str,
        user_id: str,
        currency_delta: int,
        experience_delta: int,
        idempotency_key: str,
        reason_code: str,
        display_name: str | None,
    ) -> bool:
        if not self.auto_create_accounts:
            exists = conn.execute("SELECT 1 FROM accounts WHERE user_id = %s", (user_id,)).fetchone()
            if not exists:
                raise UnknownAccountError(user_id)
        inserted = conn.execute(
            """
            INSERT INTO ledger_transactions
            (idempotency_key, user_id, currency_delta, experience_delta, reason_code, created_at_utc)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING idempotency_key
            """,
            (idempotency_key, user_id, currency_delta, experience_delta, reason_code, now),
        ).fetchone()
        if inserted is None:
            logger.info("Ledger duplicate credit key=%s user=%s", idempotency_key, user_id)
            return False
        conn.execute(
            """
            INSERT INTO accounts (user_id, display_name, currency, experience, created_at_utc, updated_at_utc)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                currency = accounts.currency + EXCLUDED.currency,
                experience = accounts.experience + EXCLUDED.experience,
                display_name = COALESCE(EXCLUDED.display_name, accounts.display_name),
                updated_at_utc = EXCLUDED.updated_at_utc
            """,
            (user_id, display_name, currency_delta, experience_delta, now, now),
        )
        return True

    def balance(self, user_id: str) -> tuple[int, int] | None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT currency, experience FROM accounts WHERE user_id = %s",
            (user_id,),
        ).fetchone()
        return (int(row[0]), int(row[1])) if row else None


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
