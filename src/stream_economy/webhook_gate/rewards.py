"""Reward table: canonical event -> account delta (pure, deterministic)."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from pathlib import Path
from typing import Any

import yaml

from .ids import claim_key, reason_code_for
from .models import AccountDelta, EventKind, IngestedEvent, Provider


@dataclass(frozen=True)
class RewardRule:
    currency: Decimal
    experience: Decimal
    per: Decimal = Decimal(1)
    flat: bool = False

    def units(self, magnitude: Decimal) -> Decimal:
        if self.flat:
            return Decimal(1)
        return magnitude / self.per


def _rule(currency: int, experience: int, per: int = 1, flat: bool = False) -> RewardRule:
    return RewardRule(Decimal(currency), Decimal(experience), Decimal(per), flat)


TIERED_KINDS = frozenset({EventKind.SUBSCRIPTION, EventKind.GIFT_SUBSCRIPTION})

DEFAULT_RULES: dict[tuple[Provider, EventKind, int | None], RewardRule] = {
    (Provider.KICK, EventKind.SUBSCRIPTION, 1): _rule(500, 100, flat=True),
    (Provider.KICK, EventKind.SUBSCRIPTION, 2): _rule(750, 150, flat=True),
    (Provider.KICK, EventKind.SUBSCRIPTION, 3): _rule(1000, 200, flat=True),
    (Provider.KICK, EventKind.GIFT_SUBSCRIPTION, None): _rule(500, 100),
    (Provider.KICK, EventKind.TIP_OR_CHEER, None): _rule(1, 0),
    (Provider.TWITCH, EventKind.SUBSCRIPTION, 1): _rule(500, 100, flat=True),
    (Provider.TWITCH, EventKind.SUBSCRIPTION, 2): _rule(750, 150, flat=True),
    (Provider.TWITCH, EventKind.SUBSCRIPTION, 3): _rule(1000, 200, flat=True),
    (Provider.TWITCH, EventKind.GIFT_SUBSCRIPTION, None): _rule(500, 100),
    (Provider.TWITCH, EventKind.TIP_OR_CHEER, None): _rule(100, 0, per=100),
    (Provider.TWITCH, EventKind.RAID, None): _rule(10, 2),
    (Provider.STRIPE, EventKind.CHECKOUT_PAYMENT, None): _rule(100, 0),
}


@dataclass(frozen=True)
class RewardTable:
    rules: dict[tuple[Provider, EventKind, int | None], RewardRule]

    @classmethod
    def default(cls) -> "RewardTable":
        return cls(rules=dict(DEFAULT_RULES))

    @classmethod
    def load(cls, path: Path) -> "RewardTable":
        """Load a table from YAML; entries replace the defaults they match."""
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        entries = data.get("rewards", [])
        if not isinstance(entries, list):
            raise ValueError("REWARDS_INVALID: 'rewards' must be a list")
        rules = dict(DEFAULT_RULES)
        for item in entries:
            key, rule = _parse_entry(item)
            rules[key] = rule
        return cls(rules=rules)

    def rule_for(self, event: IngestedEvent) -> RewardRule | None:
        if event.kind in TIERED_KINDS:
            rule = self.rules.get((event.provider, event.kind, event.tier))
            if rule is not None:
                return rule
        return self.rules.get((event.provider, event.kind, None))

    def compute(self, event: IngestedEvent) -> AccountDelta:
        rule = self.rule_for(event)
        currency = 0
        experience = 0
        if rule is not None:
            units = rule.units(event.magnitude)
            currency = _floor(rule.currency * units)
            experience = _floor(rule.experience * units)
        return AccountDelta(
            user_id=event.account_id,
            currency_delta=currency,
            experience_delta=experience,
            reason_code=reason_code_for(event.provider, event.kind.value),
            idempotency_key=claim_key(event.provider, event.credit_key),
        )


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def _parse_entry(item: Any) -> tuple[tuple[Provider, EventKind, int | None], RewardRule]:
    if not isinstance(item, dict):
        raise ValueError("REWARDS_INVALID: entry must be a mapping")
    try:
        provider = Provider(str(item["provider"]).lower())
        kind = EventKind(str(item["kind"]).lower())
    except (KeyError, ValueError) as exc:
        raise ValueError(f"REWARDS_INVALID: {exc}") from None
    tier = item.get("tier")
    if tier is not None and kind not in TIERED_KINDS:
        raise ValueError(f"REWARDS_INVALID: {kind.value} is not tiered")
    if tier is not None and int(tier) not in (1, 2, 3):
        raise ValueError(f"REWARDS_INVALID: tier {tier}")
    per = Decimal(str(item.get("per", 1)))
    if per <= 0:
        raise ValueError("REWARDS_INVALID: per must be > 0")
    rule = RewardRule(
        currency=Decimal(str(item.get("currency", 0))),
        experience=Decimal(str(item.get("experience", 0))),
        per=per,
        flat=bool(item.get("flat", kind == EventKind.SUBSCRIPTION)),
    )
    return (provider, kind, int(tier) if tier is not None else None), rule
