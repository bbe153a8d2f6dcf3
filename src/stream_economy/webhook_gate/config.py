"""Webhook gate configuration loader (wiring + providers + policy)."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import Provider
from .security import DEFAULT_STRIPE_TOLERANCE_SECONDS


@dataclass(frozen=True)
class ProviderSettings:
    provider: Provider
    secret: str | None = field(default=None, repr=False)
    tolerance_seconds: int = DEFAULT_STRIPE_TOLERANCE_SECONDS
    require_timestamp: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.secret)


@dataclass(frozen=True)
class WiringProfile:
    profile_id: str
    claim_db_path: str
    ledger_db_path: str
    providers: dict[Provider, ProviderSettings]
    ledger_auto_create_accounts: bool = True
    credit_timeout_seconds: float = 3.0
    credit_retry_attempts: int = 2
    credit_retry_base_delay_seconds: float = 0.1
    replay_max_skew_seconds: int = 600
    metrics_flush_seconds: int = 30
    log_paths: list[str] | None = None
    rewards_ref: str | None = None

    @classmethod
    def load(cls, path: Path) -> "WiringProfile":
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WiringProfile":
        wiring = data.get("wiring") or {}
        policy = data.get("policy") or {}
        providers_raw = data.get("providers") or {}
        if not isinstance(providers_raw, dict):
            raise ValueError("PROFILE_INVALID: 'providers' must be a mapping")
        unknown = sorted(set(providers_raw) - {p.value for p in Provider})
        if unknown:
            raise ValueError(f"PROFILE_INVALID: unknown providers {', '.join(unknown)}")
        providers = {
            provider: _provider_settings(provider, providers_raw.get(provider.value) or {})
            for provider in Provider
        }
        claim_db_path = _resolve_env(wiring.get("claim_db_path")) or "runs/webhook_gate/claims.db"
        ledger_db_path = _resolve_env(wiring.get("ledger_db_path")) or "runs/webhook_gate/ledger.db"
        attempts = int(wiring.get("credit_retry_attempts", 2))
        if attempts < 1:
            raise ValueError("PROFILE_INVALID: credit_retry_attempts must be >= 1")
        return cls(
            profile_id=str(data.get("profile_id", "local")),
            claim_db_path=claim_db_path,
            ledger_db_path=ledger_db_path,
            providers=providers,
            ledger_auto_create_accounts=_as_bool(wiring.get("ledger_auto_create_accounts", True)),
            credit_timeout_seconds=float(wiring.get("credit_timeout_seconds", 3.0)),
            credit_retry_attempts=attempts,
            credit_retry_base_delay_seconds=float(wiring.get("credit_retry_base_delay_seconds", 0.1)),
            replay_max_skew_seconds=int(wiring.get("replay_max_skew_seconds", 600)),
            metrics_flush_seconds=int(wiring.get("metrics_flush_seconds", 30)),
            log_paths=list(wiring.get("log_paths") or []) or None,
            rewards_ref=policy.get("rewards_ref"),
        )

    def provider(self, provider: Provider) -> ProviderSettings:
        return self.providers[provider]


def _provider_settings(provider: Provider, raw: dict[str, Any]) -> ProviderSettings:
    if not isinstance(raw, dict):
        raise ValueError(f"PROFILE_INVALID: providers.{provider.value} must be a mapping")
    secret = _resolve_env(raw.get("secret"))
    secret = str(secret).strip() if secret is not None else ""
    return ProviderSettings(
        provider=provider,
        secret=secret or None,
        tolerance_seconds=int(raw.get("tolerance_seconds", DEFAULT_STRIPE_TOLERANCE_SECONDS)),
        require_timestamp=_as_bool(raw.get("require_timestamp", False)),
    )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def _resolve_env(value: str | None) -> str | None:
    if value is None or not isinstance(value, str):
        return value
    match = _ENV_PATTERN.match(value.strip())
    if not match:
        return value
    return os.getenv(match.group(1))
