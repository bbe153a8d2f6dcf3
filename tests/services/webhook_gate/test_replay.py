from __future__ import annotations

from datetime import datetime, timedelta, timezone

from stream_economy.webhook_gate.replay import DEFAULT_MAX_SKEW, is_fresh, parse_timestamp

NOW = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)


def test_is_fresh_inside_window_both_directions() -> None:
    assert is_fresh(NOW - timedelta(minutes=9), NOW) is True
    assert is_fresh(NOW + timedelta(minutes=9), NOW) is True
    assert is_fresh(NOW - DEFAULT_MAX_SKEW, NOW) is True


def test_is_fresh_rejects_outside_window() -> None:
    assert is_fresh(NOW - timedelta(minutes=11), NOW) is False
    assert is_fresh(NOW + timedelta(minutes=11), NOW) is False
    assert is_fresh(NOW - timedelta(seconds=61), NOW, timedelta(seconds=60)) is False


def test_is_fresh_rejects_missing_timestamp() -> None:
    assert is_fresh(None, NOW) is False


def test_parse_timestamp_handles_nanoseconds_and_zulu() -> None:
    parsed = parse_timestamp("2026-10-17T11:59:30.123456789Z")
    assert parsed == datetime(2026, 10, 17, 11, 59, 30, 123456, tzinfo=timezone.utc)


def test_parse_timestamp_handles_offsets_epoch_and_naive() -> None:
    assert parse_timestamp("2026-10-17T14:00:00+02:00") == NOW
    assert parse_timestamp(str(int(NOW.timestamp()))) == NOW
    assert parse_timestamp("2026-10-17T12:00:00") == NOW


def test_parse_timestamp_returns_none_for_garbage() -> None:
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None
