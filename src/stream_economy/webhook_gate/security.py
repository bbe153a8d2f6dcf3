"""Signature verification for inbound provider webhooks.

Every verifier is a pure function of the raw body, the (lower-cased) request
headers and the shared secret. They return ``False`` on any malformed or
missing input instead of raising, so the gate can map the result to a 401.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Mapping

import stripe

KICK_SIGNATURE_HEADERS = ("kick-event-signature", "kick-signature")
TWITCH_MESSAGE_ID_HEADER = "twitch-eventsub-message-id"
TWITCH_TIMESTAMP_HEADER = "twitch-eventsub-message-timestamp"
TWITCH_SIGNATURE_HEADER = "twitch-eventsub-message-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"

DEFAULT_STRIPE_TOLERANCE_SECONDS = 300


def normalize_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    if not headers:
        return {}
    return {str(key).strip().lower(): str(value) for key, value in headers.items()}


def first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return None


def verify_kick(raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
    signature = first_header(headers, KICK_SIGNATURE_HEADERS)
    if not signature or not secret:
        return False
    expected = _hmac_hex(secret, raw_body)
    return hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("utf-8"))


def verify_twitch(raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
    message_id = (headers.get(TWITCH_MESSAGE_ID_HEADER) or "").strip()
    timestamp = (headers.get(TWITCH_TIMESTAMP_HEADER) or "").strip()
    signature = (headers.get(TWITCH_SIGNATURE_HEADER) or "").strip()
    if not (message_id and timestamp and signature and secret):
        return False
    message = message_id.encode("utf-8") + timestamp.encode("utf-8") + raw_body
    expected = "sha256=" + _hmac_hex(secret, message)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


def verify_stripe(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: str | None,
    *,
    tolerance_seconds: int = DEFAULT_STRIPE_TOLERANCE_SECONDS,
) -> bool:
    signature = (headers.get(STRIPE_SIGNATURE_HEADER) or "").strip()
    if not signature or not secret:
        return False
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    try:
        return bool(
            stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance=tolerance_seconds)
        )
    except (stripe.SignatureVerificationError, ValueError, TypeError):
        return False


def sign_kick(raw_body: bytes, secret: str) -> str:
    return _hmac_hex(secret, raw_body)


def sign_twitch(raw_body: bytes, message_id: str, timestamp: str, secret: str) -> str:
    message = message_id.encode("utf-8") + timestamp.encode("utf-8") + raw_body
    return "sha256=" + _hmac_hex(secret, message)


def sign_stripe(raw_body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + raw_body
    return f"t={timestamp},v1={_hmac_hex(secret, signed)}"


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
