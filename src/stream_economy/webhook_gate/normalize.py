"""Provider payload normalization into canonical ingested events.

Each (provider, event type) pair owns a payload variant that binds the loose
JSON into typed fields, and a mapping function that turns the variant into an
``IngestedEvent`` or ``None`` when there is nothing to credit. The variant is
chosen from the discriminator before any field access.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from .errors import MalformedPayload
from .models import EventKind, IngestedEvent, Provider

logger = logging.getLogger(__name__)

KICK_SUBSCRIPTION_NEW = "channel.subscription.new"
KICK_SUBSCRIPTION_RENEWAL = "channel.subscription.renewal"
KICK_SUBSCRIPTION_GIFTS = "channel.subscription.gifts"
KICK_KICKS_GIFTED = "kicks.gifted"

TWITCH_SUBSCRIBE = "channel.subscribe"
TWITCH_SUBSCRIPTION_GIFT = "channel.subscription.gift"
TWITCH_CHEER = "channel.cheer"
TWITCH_RAID = "channel.raid"

STRIPE_CHECKOUT_COMPLETED = "checkout.session.completed"
STRIPE_PAYMENT_SUCCEEDED = "payment_intent.succeeded"

_TWITCH_TIERS = {"1000": 1, "2000": 2, "3000": 3, "prime": 1}
_TIER_DIGIT = re.compile(r"([123])")


def normalize_tier(value: Any) -> int:
    """Map heterogeneous tier encodings onto {1, 2, 3}; unknown means 1."""
    if isinstance(value, bool) or value is None:
        return 1
    if isinstance(value, int):
        if value in (1, 2, 3):
            return value
        return _TWITCH_TIERS.get(str(value), 1)
    text = str(value).strip().lower()
    if text in _TWITCH_TIERS:
        return _TWITCH_TIERS[text]
    match = _TIER_DIGIT.search(text)
    return int(match.group(1)) if match else 1


@dataclass(frozen=True)
class Actor:
    user_id: str
    display_name: str


# ---------------------------------------------------------------------------
# Kick variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KickSubscription:
    subscriber: Actor
    tier: int
    is_gift: bool

    @classmethod
    def bind(cls, payload: dict[str, Any]) -> "KickSubscription":
        return cls(
            subscriber=_require_actor(payload.get("subscriber"), "subscriber"),
            tier=normalize_tier(payload.get("tier")),
            is_gift=bool(payload.get("is_gift", False)),
        )


@dataclass(frozen=True)
class KickGiftSubscriptions:
    gifter: Actor | None
    gift_count: int
    tier: int

    @classmethod
    def bind(cls, payload: dict[str, Any]) -> "KickGiftSubscriptions":
        gifter_raw = payload.get("gifter")
        giftees = payload.get("giftees")
        if giftees is not None and not isinstance(giftees, list):
            raise MalformedPayload("giftees")
        gifter = None
        if isinstance(gifter_raw, dict) and not gifter_raw.get("is_anonymous"):
            gifter = _optional_actor(gifter_raw)
        elif gifter_raw is not None and not isinstance(gifter_raw, dict):
            raise MalformedPayload("gifter")
        return cls(
            gifter=gifter,
            gift_count=max(len(giftees or []), 1),
            tier=normalize_tier(payload.get("tier")),
        )


@dataclass(frozen=True)
class KickKicksGifted:
    sender: Actor | None
    amount: Decimal

    @classmethod
    def bind(cls, payload: dict[str, Any]) -> "KickKicksGifted":
        sender_raw = payload.get("sender")
        if sender_raw is not None and not isinstance(sender_raw, dict):
            raise MalformedPayload("sender")
        sender = None
        if isinstance(sender_raw, dict) and not sender_raw.get("is_anonymous"):
            sender = _optional_actor(sender_raw)
        gift = payload.get("gift") if isinstance(payload.get("gift"), dict) else {}
        raw_amount = payload.get("amount", gift.get("amount", 1))
        return cls(sender=sender, amount=_decimal(raw_amount, "amount"))


def _kick_subscription(event_id: str, payload: dict[str, Any]) -> IngestedEvent | None:
    variant = KickSubscription.bind(payload)
    if variant.is_gift:
        logger.info("Kick subscription %s is gift-derived; handled by gifts event", event_id)
        return None
    return IngestedEvent(
        external_event_id=event_id,
        provider=Provider.KICK,
        kind=EventKind.SUBSCRIPTION,
        actor_platform_user_id=variant.subscriber.user_id,
        actor_display_name=variant.subscriber.display_name,
        magnitude=Decimal(variant.tier),
        raw_payload=payload,
        tier=variant.tier,
        identity_platform=Provider.KICK.value,
    )


def _kick_gift_subscriptions(event_id: str, payload: dict[str, Any]) -> IngestedEvent | None:
    variant = KickGiftSubscriptions.bind(payload)
    if variant.gifter is None:
        logger.info("Kick gift subscriptions %s are anonymous; not credited", event_id)
        return None
    return IngestedEvent(
        external_event_id=event_id,
        provider=Provider.KICK,
        kind=EventKind.GIFT_SUBSCRIPTION,
        actor_platform_user_id=variant.gifter.user_id,
        actor_display_name=variant.gifter.display_name,
        magnitude=Decimal(variant.gift_count),
        raw_payload=payload,
        tier=variant.tier,
        identity_platform=Provider.KICK.value,
    )


def _kick_kicks_gifted(event_id: str, payload: dict[str, Any]) -> IngestedEvent | None:
    variant = KickKicksGifted.bind(payload)
    if variant.sender is None:
        logger.info("Kick kicks %s are anonymous; not credited", event_id)
        return None
    if variant.amount <= 0:
        return None
    return IngestedEvent(
        external_event_id=event_id,
        provider=Provider.KICK,
        kind=EventKind.TIP_OR_CHEER,
        actor_platform_user_id=variant.sender.user_id,
        actor_display_name=variant.sender.display_name,
        magnitude=variant.amount,
        raw_payload=payload,
        identity_platform=Provider.KICK.value,
    )


# ---------------------------------------------------------------------------
# Twitch variants (payload is the EventSub ``event`` object)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TwitchSubscribe:
    user: Actor
    tier: int
    is_gift: bool

    @classmethod
    def bind(cls, event: dict[str, Any]) -> "TwitchSubscribe":
        return cls(
            user=_twitch_actor(event, "user"),
            tier=normalize_tier(event.get("tier")),
            is_gift=bool(event.get("is_gift", False)),
        )


@dataclass(frozen=True)
class TwitchSubscriptionGift:
    gifter: Actor | None
    total: Decimal
    tier: int

    @classmethod
    def bind(cls, event: dict[str, Any]) -> "TwitchSubscriptionGift":
        anonymous = bool(event.get("is_anonymous", False))
        return cls(
            gifter=None if anonymous else _twitch_actor(event, "user"),
            total=_decimal(event.get("total", 1), "total"),
            tier=normalize_tier(event.get("tier")),
        )


@dataclass(frozen=True)
class TwitchCheer:
    cheerer: Actor | None
    bits: Decimal

    @classmethod
    def bind(cls, event: dict[str, Any]) -> "TwitchCheer":
        anonymous = bool(event.get("is_anonymous", False))
        return cls(
            cheerer=None if anonymous else _twitch_actor(event, "user"),
            bits=_decimal(event.get("bits"), "bits"),
        )


@dataclass(frozen=True)
class TwitchRaid:
    raider: Actor
    viewers: Decimal

    @classmethod
    def bind(cls, event: dict[str, Any]) -> "TwitchRaid":
        return cls(
            raider=_twitch_actor(event, "from_broadcaster_user"),
            viewers=_decimal(event.get("viewers"), "viewers"),
        )


def _twitch_subscribe(event_id: str, event: dict[str, Any]) -> IngestedEvent | None:
    variant = TwitchSubscribe.bind(event)
    if variant.is_gift:
        logger.info("Twitch subscription %s is gift-derived; handled by gift event", event_id)
        return None
    return _twitch_event(event_id, event, EventKind.SUBSCRIPTION, variant.user, Decimal(variant.tier), variant.tier)


def _twitch_subscription_gift(event_id: str, event: dict[str, Any]) -> IngestedEvent | None:
    variant = TwitchSubscriptionGift.bind(event)
    if variant.gifter is None:
        logger.info("Twitch gift subscriptions %s are anonymous; not credited", event_id)
        return None
    if variant.total <= 0:
        return None
    return _twitch_event(event_id, event, EventKind.GIFT_SUBSCRIPTION, variant.gifter, variant.total, variant.tier)


def _twitch_cheer(event_id: str, event: dict[str, Any]) -> IngestedEvent | None:
    variant = TwitchCheer.bind(event)
    if variant.cheerer is None:
        logger.info("Twitch cheer %s is anonymous; not credited", event_id)
        return None
    if variant.bits <= 0:
        return None
    return _twitch_event(event_id, event, EventKind.TIP_OR_CHEER, variant.cheerer, variant.bits)


def _twitch_raid(event_id: str, event: dict[str, Any]) -> IngestedEvent | None:
    variant = TwitchRaid.bind(event)
    if variant.viewers <= 0:
        return None
    return _twitch_event(event_id, event, EventKind.RAID, variant.raider, variant.viewers)


def _twitch_event(
    event_id: str,
    event: dict[str, Any],
    kind: EventKind,
    actor: Actor,
    magnitude: Decimal,
    tier: int = 1,
) -> IngestedEvent:
    return IngestedEvent(
        external_event_id=event_id,
        provider=Provider.TWITCH,
        kind=kind,
        actor_platform_user_id=actor.user_id,
        actor_display_name=actor.display_name,
        magnitude=magnitude,
        raw_payload=event,
        tier=tier,
        identity_platform=Provider.TWITCH.value,
    )


# ---------------------------------------------------------------------------
# Stripe variants (payload is the full event object)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DonationIdentity:
    platform: str
    platform_user_id: str
    username: str


@dataclass(frozen=True)
class StripeCheckoutSession:
    session_id: str
    payment_intent_id: str
    mode: str
    payment_status: str
    amount_usd: Decimal
    metadata: dict[str, str]

    @classmethod
    def bind(cls, event: dict[str, Any]) -> "StripeCheckoutSession":
        session = _stripe_object(event)
        return cls(
            session_id=str(session.get("id") or ""),
            payment_intent_id=_object_id(session.get("payment_intent")),
            mode=str(session.get("mode") or ""),
            payment_status=str(session.get("payment_status") or ""),
            amount_usd=_decimal(session.get("amount_total") or 0, "amount_total") / 100,
            metadata=_metadata(session),
        )


@dataclass(frozen=True)
class StripePaymentIntent:
    payment_intent_id: str
    amount_usd: Decimal
    metadata: dict[str, str]

    @classmethod
    def bind(cls, event: dict[str, Any]) -> "StripePaymentIntent":
        intent = _stripe_object(event)
        raw_amount = intent.get("amount_received", intent.get("amount", 0))
        return cls(
            payment_intent_id=str(intent.get("id") or ""),
            amount_usd=_decimal(raw_amount or 0, "amount") / 100,
            metadata=_metadata(intent),
        )


def donation_identity(metadata: dict[str, str]) -> DonationIdentity | None:
    """Resolve who a donation belongs to from checkout metadata."""
    username = metadata.get("username")
    if not username:
        return None
    for platform in ("kick", "twitch", "discord"):
        user_id = metadata.get(f"{platform}_user_id")
        if user_id:
            return DonationIdentity(platform=platform, platform_user_id=user_id, username=username)
    platform = (metadata.get("platform") or "").lower()
    user_id = metadata.get(f"{platform}_user_id") or metadata.get("platform_user_id")
    if platform and user_id:
        return DonationIdentity(platform=platform, platform_user_id=user_id, username=username)
    return None


def _stripe_checkout_completed(event_id: str, event: dict[str, Any]) -> IngestedEvent | None:
    variant = StripeCheckoutSession.bind(event)
    if variant.mode != "payment" or variant.payment_status != "paid":
        logger.info("Stripe session %s is not a completed payment", variant.session_id)
        return None
    return _stripe_donation(event_id, event, variant.amount_usd, variant.metadata, variant.payment_intent_id)


def _stripe_payment_succeeded(event_id: str, event: dict[str, Any]) -> IngestedEvent | None:
    variant = StripePaymentIntent.bind(event)
    return _stripe_donation(event_id, event, variant.amount_usd, variant.metadata, variant.payment_intent_id)


def _stripe_donation(
    event_id: str,
    event: dict[str, Any],
    amount_usd: Decimal,
    metadata: dict[str, str],
    payment_intent_id: str = "",
) -> IngestedEvent | None:
    """Checkout and intent deliveries of one payment share the intent id as settlement id."""
    if amount_usd <= 0:
        return None
    purchase_type = metadata.get("purchase_type")
    if purchase_type and purchase_type != "donation":
        logger.warning(
            "data-integrity: Stripe event %s is a paid %s purchase with no credit path; reconcile manually",
            event_id,
            purchase_type,
        )
        return None
    identity = donation_identity(metadata)
    if identity is None:
        logger.warning("Stripe event %s has no donor metadata; logged but not credited", event_id)
        return None
    return IngestedEvent(
        external_event_id=event_id,
        provider=Provider.STRIPE,
        kind=EventKind.CHECKOUT_PAYMENT,
        actor_platform_user_id=identity.platform_user_id,
        actor_display_name=identity.username,
        magnitude=amount_usd,
        raw_payload=event,
        identity_platform=identity.platform,
        settlement_id=payment_intent_id,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

Normalizer = Callable[[str, dict[str, Any]], Optional[IngestedEvent]]

NORMALIZERS: dict[Provider, dict[str, Normalizer]] = {
    Provider.KICK: {
        KICK_SUBSCRIPTION_NEW: _kick_subscription,
        KICK_SUBSCRIPTION_RENEWAL: _kick_subscription,
        KICK_SUBSCRIPTION_GIFTS: _kick_gift_subscriptions,
        KICK_KICKS_GIFTED: _kick_kicks_gifted,
    },
    Provider.TWITCH: {
        TWITCH_SUBSCRIBE: _twitch_subscribe,
        TWITCH_SUBSCRIPTION_GIFT: _twitch_subscription_gift,
        TWITCH_CHEER: _twitch_cheer,
        TWITCH_RAID: _twitch_raid,
    },
    Provider.STRIPE: {
        STRIPE_CHECKOUT_COMPLETED: _stripe_checkout_completed,
        STRIPE_PAYMENT_SUCCEEDED: _stripe_payment_succeeded,
    },
}


def supported_event_types(provider: Provider) -> list[str]:
    return list(NORMALIZERS.get(provider, {}))


def normalize(
    provider: Provider,
    event_type: str | None,
    payload: Any,
    *,
    external_event_id: str,
) -> IngestedEvent | None:
    handler = NORMALIZERS.get(provider, {}).get(event_type or "")
    if handler is None:
        logger.info("Unhandled %s event type %s", provider.value, event_type)
        return None
    if not isinstance(payload, dict):
        raise MalformedPayload(f"{provider.value}:{event_type}:payload_not_object")
    return handler(external_event_id, payload)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _require_actor(value: Any, name: str) -> Actor:
    if not isinstance(value, dict):
        raise MalformedPayload(name)
    actor = _optional_actor(value)
    if actor is None:
        raise MalformedPayload(f"{name}.user_id")
    return actor


def _optional_actor(value: dict[str, Any]) -> Actor | None:
    user_id = value.get("user_id")
    if user_id in (None, ""):
        return None
    name = value.get("username") or value.get("channel_slug") or str(user_id)
    return Actor(user_id=str(user_id), display_name=str(name))


def _twitch_actor(event: dict[str, Any], prefix: str) -> Actor:
    user_id = event.get(f"{prefix}_id")
    if user_id in (None, ""):
        raise MalformedPayload(f"{prefix}_id")
    name = event.get(f"{prefix}_login") or event.get(f"{prefix}_name") or str(user_id)
    return Actor(user_id=str(user_id), display_name=str(name))


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise MalformedPayload(name)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedPayload(name) from None
    if not result.is_finite():
        raise MalformedPayload(name)
    return result


def _stripe_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedPayload("data.object")
    return obj


def _metadata(obj: dict[str, Any]) -> dict[str, str]:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedPayload("metadata")
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


def _object_id(value: Any) -> str:
    # Stripe references are either an id string or an expanded object.
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else ""
