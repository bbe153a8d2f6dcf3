from __future__ import annotations

import logging
from decimal import Decimal

import pytest

from stream_economy.webhook_gate.errors import MalformedPayload
from stream_economy.webhook_gate.models import EventKind, Provider
from stream_economy.webhook_gate.normalize import (
    donation_identity,
    normalize,
    normalize_tier,
    supported_event_types,
)


def _stripe_event(obj: dict, event_type: str = "checkout.session.completed") -> dict:
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


@pytest.mark.parametrize(
    "raw,expected",
    [("1000", 1), ("2000", 2), ("3000", 3), ("tier_2", 2), ("2", 2), (3, 3), ("prime", 1), (None, 1), ("gold", 1)],
)
def test_normalize_tier(raw: object, expected: int) -> None:
    assert normalize_tier(raw) == expected


def test_kick_subscription_maps_subscriber_and_tier() -> None:
    event = normalize(
        Provider.KICK,
        "channel.subscription.new",
        {"subscriber": {"user_id": 42, "username": "alice"}, "tier": "tier_2"},
        external_event_id="m-1",
    )
    assert event is not None
    assert event.kind == EventKind.SUBSCRIPTION
    assert event.actor_platform_user_id == "42"
    assert event.actor_display_name == "alice"
    assert event.tier == 2
    assert event.account_id == "kick:42"


def test_kick_gift_flagged_subscription_is_not_credited_twice() -> None:
    payload = {"subscriber": {"user_id": 42, "username": "alice"}, "is_gift": True}
    assert normalize(Provider.KICK, "channel.subscription.new", payload, external_event_id="m-2") is None


def test_kick_gifts_count_giftees_and_drop_anonymous() -> None:
    payload = {
        "gifter": {"user_id": 7, "username": "gifter"},
        "giftees": [{"user_id": 1}, {"user_id": 2}, {"user_id": 3}],
    }
    event = normalize(Provider.KICK, "channel.subscription.gifts", payload, external_event_id="m-3")
    assert event is not None
    assert event.kind == EventKind.GIFT_SUBSCRIPTION
    assert event.magnitude == Decimal(3)

    anonymous = {"gifter": {"is_anonymous": True}, "giftees": [{"user_id": 1}]}
    assert normalize(Provider.KICK, "channel.subscription.gifts", anonymous, external_event_id="m-4") is None


def test_kick_kicks_gifted_amount() -> None:
    payload = {"sender": {"user_id": 9, "username": "tipper"}, "gift": {"amount": 250}}
    event = normalize(Provider.KICK, "kicks.gifted", payload, external_event_id="m-5")
    assert event is not None
    assert event.kind == EventKind.TIP_OR_CHEER
    assert event.magnitude == Decimal(250)


def test_twitch_events_map_to_kinds() -> None:
    cheer = normalize(
        Provider.TWITCH,
        "channel.cheer",
        {"user_id": "7", "user_login": "bob", "bits": 250, "is_anonymous": False},
        external_event_id="t-1",
    )
    raid = normalize(
        Provider.TWITCH,
        "channel.raid",
        {"from_broadcaster_user_id": "8", "from_broadcaster_user_login": "raider", "viewers": 12},
        external_event_id="t-2",
    )
    sub = normalize(
        Provider.TWITCH,
        "channel.subscribe",
        {"user_id": "9", "user_login": "sub", "tier": "3000", "is_gift": False},
        external_event_id="t-3",
    )
    assert cheer is not None and cheer.kind == EventKind.TIP_OR_CHEER and cheer.magnitude == Decimal(250)
    assert raid is not None and raid.kind == EventKind.RAID and raid.actor_display_name == "raider"
    assert sub is not None and sub.tier == 3 and sub.account_id == "twitch:9"


def test_twitch_anonymous_contributions_are_dropped() -> None:
    gift = {"is_anonymous": True, "total": 5, "tier": "1000"}
    cheer = {"is_anonymous": True, "bits": 100}
    assert normalize(Provider.TWITCH, "channel.subscription.gift", gift, external_event_id="t-4") is None
    assert normalize(Provider.TWITCH, "channel.cheer", cheer, external_event_id="t-5") is None


def test_zero_magnitude_is_unrewardable() -> None:
    cheer = {"user_id": "7", "user_login": "bob", "bits": 0}
    assert normalize(Provider.TWITCH, "channel.cheer", cheer, external_event_id="t-6") is None


def test_unknown_discriminator_returns_none() -> None:
    assert normalize(Provider.TWITCH, "channel.follow", {"user_id": "1"}, external_event_id="t-7") is None
    assert normalize(Provider.KICK, None, {}, external_event_id="m-6") is None


def test_structurally_invalid_payload_raises() -> None:
    with pytest.raises(MalformedPayload):
        normalize(Provider.KICK, "channel.subscription.new", {"tier": 1}, external_event_id="m-7")
    with pytest.raises(MalformedPayload):
        normalize(Provider.TWITCH, "channel.cheer", {"user_id": "7", "bits": "lots"}, external_event_id="t-8")
    with pytest.raises(MalformedPayload):
        normalize(Provider.STRIPE, "checkout.session.completed", {"id": "evt"}, external_event_id="evt")
    with pytest.raises(MalformedPayload):
        normalize(Provider.KICK, "kicks.gifted", ["not", "an", "object"], external_event_id="m-8")


def test_stripe_paid_checkout_resolves_donor_identity() -> None:
    obj = {
        "id": "cs_1",
        "mode": "payment",
        "payment_status": "paid",
        "amount_total": 1050,
        "metadata": {"purchase_type": "donation", "username": "alice", "twitch_user_id": "99"},
    }
    event = normalize(Provider.STRIPE, "checkout.session.completed", _stripe_event(obj), external_event_id="evt_1")
    assert event is not None
    assert event.kind == EventKind.CHECKOUT_PAYMENT
    assert event.magnitude == Decimal("10.50")
    assert event.account_id == "twitch:99"


def test_stripe_unpaid_or_subscription_sessions_are_unrewardable() -> None:
    unpaid = {"mode": "payment", "payment_status": "unpaid", "amount_total": 500, "metadata": {}}
    subscription = {"mode": "subscription", "payment_status": "paid", "amount_total": 500, "metadata": {}}
    for obj in (unpaid, subscription):
        assert normalize(Provider.STRIPE, "checkout.session.completed", _stripe_event(obj), external_event_id="e") is None


def test_stripe_payment_without_donor_metadata_is_unrewardable() -> None:
    intent = {"id": "pi_1", "amount_received": 2000, "metadata": {}}
    event = _stripe_event(intent, "payment_intent.succeeded")
    assert normalize(Provider.STRIPE, "payment_intent.succeeded", event, external_event_id="evt_2") is None


def test_stripe_non_donation_purchase_is_unrewardable() -> None:
    obj = {
        "mode": "payment",
        "payment_status": "paid",
        "amount_total": 500,
        "metadata": {"purchase_type": "bond", "username": "alice", "kick_user_id": "42"},
    }
    assert normalize(Provider.STRIPE, "checkout.session.completed", _stripe_event(obj), external_event_id="e") is None


def test_paid_non_donation_purchase_is_logged_for_reconciliation(caplog: pytest.LogCaptureFixture) -> None:
    obj = {
        "mode": "payment",
        "payment_status": "paid",
        "amount_total": 500,
        "metadata": {"purchase_type": "bonds", "username": "alice", "kick_user_id": "42"},
    }
    with caplog.at_level(logging.WARNING, logger="stream_economy.webhook_gate.normalize"):
        assert normalize(Provider.STRIPE, "checkout.session.completed", _stripe_event(obj), external_event_id="e") is None
    assert any(
        record.levelno == logging.WARNING and "data-integrity" in record.getMessage() for record in caplog.records
    )


def test_stripe_checkout_and_intent_share_settlement_id() -> None:
    metadata = {"purchase_type": "donation", "username": "alice", "kick_user_id": "42"}
    session = {
        "id": "cs_1",
        "mode": "payment",
        "payment_status": "paid",
        "amount_total": 1000,
        "payment_intent": "pi_1",
        "metadata": metadata,
    }
    intent = {"id": "pi_1", "amount_received": 1000, "metadata": metadata}
    checkout_event = normalize(
        Provider.STRIPE, "checkout.session.completed", _stripe_event(session), external_event_id="evt_cs"
    )
    intent_event = normalize(
        Provider.STRIPE,
        "payment_intent.succeeded",
        _stripe_event(intent, "payment_intent.succeeded"),
        external_event_id="evt_pi",
    )
    assert checkout_event.credit_key == intent_event.credit_key == "pi_1"

    expanded = dict(session, payment_intent={"id": "pi_2", "object": "payment_intent"})
    event = normalize(Provider.STRIPE, "checkout.session.completed", _stripe_event(expanded), external_event_id="evt_x")
    assert event.credit_key == "pi_2"


def test_donation_identity_precedence() -> None:
    metadata = {"username": "alice", "twitch_user_id": "2", "kick_user_id": "1"}
    identity = donation_identity(metadata)
    assert identity is not None and identity.platform == "kick" and identity.platform_user_id == "1"

    generic = donation_identity({"username": "bob", "platform": "Discord", "platform_user_id": "5"})
    assert generic is not None and generic.platform == "discord"
    assert donation_identity({"kick_user_id": "1"}) is None


def test_supported_event_types_lists_discriminators() -> None:
    assert "channel.cheer" in supported_event_types(Provider.TWITCH)
    assert "checkout.session.completed" in supported_event_types(Provider.STRIPE)
    assert "channel.subscription.gifts" in supported_event_types(Provider.KICK)
