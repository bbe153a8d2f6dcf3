import json
from datetime import datetime, timezone
from pathlib import Path

from stream_economy.webhook_gate.security import sign_kick, sign_twitch
from stream_economy.webhook_gate.service import create_app


def _write_yaml(path: Path, payload: dict) -> None:
    import yaml

    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def _write_profile(tmp_path: Path, providers: dict | None = None) -> Path:
    profile = {
        "profile_id": "test",
        "wiring": {
            "claim_db_path": str(tmp_path / "claims.db"),
            "ledger_db_path": str(tmp_path / "ledger.db"),
            "credit_retry_base_delay_seconds": 0,
            "metrics_flush_seconds": 3600,
        },
        "providers": providers
        if providers is not None
        else {
            "kick": {"secret": "kick-secret"},
            "twitch": {"secret": "twitch-secret"},
            "stripe": {"secret": "whsec_test"},
        },
    }
    path = tmp_path / "profile.yaml"
    _write_yaml(path, profile)
    return path


def test_kick_webhook_credits_and_dedupes(tmp_path: Path) -> None:
    app = create_app(str(_write_profile(tmp_path)))
    client = app.test_client()
    raw = json.dumps({"sender": {"user_id": 9, "username": "tipper"}, "gift": {"amount": 100}}).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "Kick-Event-Signature": sign_kick(raw, "kick-secret"),
        "Kick-Event-Type": "kicks.gifted",
        "Kick-Event-Message-Id": "m-100",
    }

    first = client.post("/webhooks/kick", data=raw, headers=headers)
    assert first.status_code == 200
    assert first.get_json()["status"] == "credited"
    assert first.get_json()["currency_delta"] == 100

    second = client.post("/webhooks/kick", data=raw, headers=headers)
    assert second.status_code == 200
    assert second.get_json()["status"] == "already_processed"


def test_bad_signature_returns_401(tmp_path: Path) -> None:
    client = create_app(str(_write_profile(tmp_path))).test_client()
    response = client.post(
        "/webhooks/kick",
        data=b"{}",
        headers={"Kick-Event-Signature": "00" * 32, "Kick-Event-Type": "kicks.gifted", "Kick-Event-Message-Id": "x"},
    )
    assert response.status_code == 401
    assert response.get_json() == {"error": "AUTHENTICATION_FAILURE"}


def test_twitch_challenge_is_echoed_as_plain_text(tmp_path: Path) -> None:
    client = create_app(str(_write_profile(tmp_path))).test_client()
    raw = json.dumps({"challenge": "abc123", "subscription": {"type": "channel.raid"}}).encode("utf-8")
    ts = datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    response = client.post(
        "/webhooks/twitch",
        data=raw,
        headers={
            "Twitch-Eventsub-Message-Id": "c-1",
            "Twitch-Eventsub-Message-Timestamp": ts,
            "Twitch-Eventsub-Message-Type": "webhook_callback_verification",
            "Twitch-Eventsub-Message-Signature": sign_twitch(raw, "c-1", ts, "twitch-secret"),
        },
    )
    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    assert response.get_data(as_text=True) == "abc123"


def test_webhook_health_lists_supported_events(tmp_path: Path) -> None:
    client = create_app(str(_write_profile(tmp_path, {"twitch": {"secret": "twitch-secret"}}))).test_client()

    twitch = client.get("/webhooks/twitch").get_json()
    assert twitch["webhook"] == "twitch"
    assert twitch["configured"] is True
    assert "channel.cheer" in twitch["supported_events"]

    stripe = client.get("/webhooks/stripe").get_json()
    assert stripe["configured"] is False
    assert stripe["status"] == "not_configured"

    assert client.get("/webhooks/youtube").status_code == 404


def test_unconfigured_provider_returns_500(tmp_path: Path) -> None:
    client = create_app(str(_write_profile(tmp_path, {"kick": {"secret": "kick-secret"}}))).test_client()
    response = client.post("/webhooks/stripe", data=b"{}", headers={"Stripe-Signature": "t=1,v1=00"})
    assert response.status_code == 500
    assert response.get_json()["error"] == "WEBHOOK_NOT_CONFIGURED"


def test_unknown_provider_returns_404(tmp_path: Path) -> None:
    client = create_app(str(_write_profile(tmp_path))).test_client()
    assert client.post("/webhooks/youtube", data=b"{}").status_code == 404


def test_ops_health_reports_green(tmp_path: Path) -> None:
    client = create_app(str(_write_profile(tmp_path))).test_client()
    response = client.get("/v1/ops/health")
    assert response.status_code == 200
    assert response.get_json() == {"state": "GREEN", "reasons": []}
