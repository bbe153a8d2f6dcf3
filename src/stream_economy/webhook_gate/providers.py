"""Per-provider envelope handling: signature, freshness headers and discriminators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .config import ProviderSettings
from .errors import MalformedPayload
from .models import GateResponse, Provider
from .security import (
    TWITCH_MESSAGE_ID_HEADER,
    TWITCH_TIMESTAMP_HEADER,
    first_header,
    verify_kick,
    verify_stripe,
    verify_twitch,
)

KICK_EVENT_TYPE_HEADER = "kick-event-type"
KICK_MESSAGE_ID_HEADERS = ("kick-event-message-id", "kick-event-id")
KICK_TIMESTAMP_HEADER = "kick-event-message-timestamp"
TWITCH_MESSAGE_TYPE_HEADER = "twitch-eventsub-message-type"

TWITCH_NOTIFICATION = "notification"
TWITCH_CHALLENGE = "webhook_callback_verification"
TWITCH_REVOCATION = "revocation"


@dataclass(frozen=True)
class Notification:
    """A verified, parsed delivery: either a reward candidate or a control reply."""

    external_event_id: str = ""
    event_type: str | None = None
    payload: Any = None
    control: GateResponse | None = None


class ProviderAdapter:
    provider: Provider

    def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: ProviderSettings) -> bool:
        raise NotImplementedError

    def timestamp(self, headers: Mapping[str, str]) -> str | None:
        return None

    def replay_applies(self, headers: Mapping[str, str], settings: ProviderSettings) -> bool:
        return False

    def parse(self, body: Any, headers: Mapping[str, str]) -> Notification:
        raise NotImplementedError


class StripeAdapter(ProviderAdapter):
    # the signed envelope carries its own tolerance window
    provider = Provider.STRIPE

    def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: ProviderSettings) -> bool:
        return verify_stripe(raw_body, headers, settings.secret, tolerance_seconds=settings.tolerance_seconds)

    def parse(self, body: Any, headers: Mapping[str, str]) -> Notification:
        body = _require_object(body)
        event_id = body.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedPayload("id")
        event_type = body.get("type")
        if not isinstance(event_type, str):
            raise MalformedPayload("type")
        return Notification(external_event_id=event_id, event_type=event_type, payload=body)


class KickAdapter(ProviderAdapter):
    provider = Provider.KICK

    def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: ProviderSettings) -> bool:
        return verify_kick(raw_body, headers, settings.secret)

    def timestamp(self, headers: Mapping[str, str]) -> str | None:
        return (headers.get(KICK_TIMESTAMP_HEADER) or "").strip() or None

    def replay_applies(self, headers: Mapping[str, str], settings: ProviderSettings) -> bool:
        return settings.require_timestamp or self.timestamp(headers) is not None

    def parse(self, body: Any, headers: Mapping[str, str]) -> Notification:
        event_type = (headers.get(KICK_EVENT_TYPE_HEADER) or "").strip()
        if not event_type:
            raise MalformedPayload(KICK_EVENT_TYPE_HEADER)
        message_id = first_header(headers, KICK_MESSAGE_ID_HEADERS)
        if not message_id:
            raise MalformedPayload(KICK_MESSAGE_ID_HEADERS[0])
        return Notification(external_event_id=message_id, event_type=event_type, payload=_require_object(body))


class TwitchAdapter(ProviderAdapter):
    provider = Provider.TWITCH

    def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: ProviderSettings) -> bool:
        return verify_twitch(raw_body, headers, settings.secret)

    def timestamp(self, headers: Mapping[str, str]) -> str | None:
        return (headers.get(TWITCH_TIMESTAMP_HEADER) or "").strip() or None

    def replay_applies(self, headers: Mapping[str, str], settings: ProviderSettings) -> bool:
        return True

    def parse(self, body: Any, headers: Mapping[str, str]) -> Notification:
        body = _require_object(body)
        message_type = (headers.get(TWITCH_MESSAGE_TYPE_HEADER) or "").strip().lower()
        if message_type == TWITCH_CHALLENGE:
            challenge = body.get("challenge")
            if not isinstance(challenge, str) or not challenge:
                raise MalformedPayload("challenge")
            return Notification(
                control=GateResponse(200, "CHALLENGE", challenge, content_type="text/plain")
            )
        if message_type == TWITCH_REVOCATION:
            subscription = body.get("subscription") if isinstance(body.get("subscription"), dict) else {}
            return Notification(
                control=GateResponse(
                    200,
                    "REVOCATION",
                    {
                        "status": "revocation_acknowledged",
                        "subscription_type": subscription.get("type"),
                        "reason": subscription.get("status"),
                    },
                )
            )
        if message_type != TWITCH_NOTIFICATION:
            return Notification(
                control=GateResponse(200, "IGNORED", {"status": "ignored", "message_type": message_type or None})
            )
        subscription = body.get("subscription")
        if not isinstance(subscription, dict) or not isinstance(subscription.get("type"), str):
            raise MalformedPayload("subscription.type")
        event = body.get("event")
        if not isinstance(event, dict):
            raise MalformedPayload("event")
        message_id = (headers.get(TWITCH_MESSAGE_ID_HEADER) or "").strip()
        return Notification(external_event_id=message_id, event_type=subscription["type"], payload=event)


ADAPTERS: dict[Provider, ProviderAdapter] = {
    Provider.STRIPE: StripeAdapter(),
    Provider.KICK: KickAdapter(),
    Provider.TWITCH: TwitchAdapter(),
}


def adapter_for(provider: Provider) -> ProviderAdapter:
    return ADAPTERS[provider]


def _require_object(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise MalformedPayload("body_not_object")
    return body
