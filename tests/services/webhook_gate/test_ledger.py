from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from stream_economy.webhook_gate.errors import TransientCreditError, UnknownAccountError
from stream_economy.webhook_gate.ledger import SqliteAccountLedger


def test_credit_creates_account_and_applies_delta(tmp_path: Path) -> None:
    ledger = SqliteAccountLedger(tmp_path / "ledger.db")
    result = ledger.credit("kick:42", 500, 100, "kick:m-1", "KICK_SUBSCRIPTION", display_name="alice")
    assert result.applied is True
    assert (result.currency_balance, result.experience_balance) == (500, 100)
    assert ledger.balance("kick:42") == (500, 100)


def test_duplicate_idempotency_key_is_noop(tmp_path: Path) -> None:
    ledger = SqliteAccountLedger(tmp_path / "ledger.db")
    ledger.credit("kick:42", 500, 100, "kick:m-1", "KICK_SUBSCRIPTION")
    again = ledger.credit("kick:42", 500, 100, "kick:m-1", "KICK_SUBSCRIPTION")
    assert again.applied is False
    assert (again.currency_balance, again.experience_balance) == (500, 100)
    assert ledger.transaction_count() == 1


def test_distinct_events_for_same_user_both_apply(tmp_path: Path) -> None:
    ledger = SqliteAccountLedger(tmp_path / "ledger.db")
    ledger.credit("twitch:7", 250, 0, "twitch:m-1", "TWITCH_TIP_OR_CHEER")
    ledger.credit("twitch:7", 120, 24, "twitch:m-2", "TWITCH_RAID")
    assert ledger.balance("twitch:7") == (370, 24)
    assert ledger.transaction_count("twitch:7") == 2


def test_unknown_account_is_permanent_when_auto_create_disabled(tmp_path: Path) -> None:
    ledger = SqliteAccountLedger(tmp_path / "ledger.db", auto_create_accounts=False)
    with pytest.raises(UnknownAccountError):
        ledger.credit("kick:404", 10, 0, "kick:m-9", "KICK_TIP_OR_CHEER")
    assert ledger.balance("kick:404") is None
    assert ledger.transaction_count() == 0


def test_locked_ledger_raises_transient(tmp_path: Path) -> None:
    path = tmp_path / "ledger.db"
    ledger = SqliteAccountLedger(path, timeout_seconds=0.05)
    blocker = sqlite3.connect(path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(TransientCreditError):
            ledger.credit("kick:42", 1, 0, "kick:m-1", "KICK_TIP_OR_CHEER")
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
    assert ledger.credit("kick:42", 1, 0, "kick:m-1", "KICK_TIP_OR_CHEER").applied is True


def test_probe_and_missing_balance(tmp_path: Path) -> None:
    ledger = SqliteAccountLedger(tmp_path / "ledger.db")
    assert ledger.probe() is True
    assert ledger.balance("nobody") is None
