"""Webhook gate core models."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class Provider(str, Enum):
    STRIPE = "stripe"
    KICK = "kick"
    TWITCH = "twitch"


class EventKind(str, Enum):
    SUBSCRIPTION = "subscription"
    GIFT_SUBSCRIPTION = "gift_subscription"
    TIP_OR_CHEER = "tip_or_cheer"
    RAID = "raid"
    CHECKOUT_PAYMENT = "checkout_payment"


class ClaimState(str, Enum):
    CLAIMED = "claimed"
    COMMITTED = "committed"


@dataclass(frozen=True)
class IngestedEvent:
    """Canonical view of one external event; lives for a single request."""

    external_event_id: str
    provider: Provider
    kind: EventKind
    actor_platform_user_id: str
    actor_display_name: str
    magnitude: Decimal
    raw_payload: dict[str, Any] = field(repr=False, compare=False)
    tier: int = 1
    identity_platform: str = ""
    # Provider-side payment id shared by every delivery of one purchase.
    settlement_id: str = ""

    @property
    def account_id(self) -> str:
        platform = self.identity_platform or self.provider.value
        return f"{platform}:{self.actor_platform_user_id}"

    @property
    def credit_key(self) -> str:
        return self.settlement_id or self.external_event_id


@dataclass(frozen=True)
class AccountDelta:
    user_id: str
    currency_delta: int
    experience_delta: int
    reason_code: str
    idempotency_key: str


@dataclass(frozen=True)
class ClaimRecord:
    key: str
    state: ClaimState
    claimed_at_utc: str
    provider: str | None = None
    external_event_id: str | None = None
    event_type: str | None = None
    attempts: int = 1
    last_error: str | None = None
    committed_at_utc: str | None = None


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    record: ClaimRecord

    @property
    def committed(self) -> bool:
        return self.record.state == ClaimState.COMMITTED


@dataclass(frozen=True)
class CreditResult:
    applied: bool
    currency_balance: int
    experience_balance: int


@dataclass(frozen=True)
class GateResponse:
    status_code: int
    decision: str
    body: dict[str, Any] | str
    content_type: str = "application/json"
