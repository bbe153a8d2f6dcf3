"""Webhook gate pipeline.

One delivery moves through a fixed sequence of steps; each step either hands
its result to the next one or ends the request with a ``GateResponse``:

    verify (401) -> freshness (401) -> parse (400) -> claim (200 duplicate)
    -> normalize (200 no reward) -> compute -> credit (500 transient,
    200 permanent) -> commit (200 credited)

``handle`` never raises; anything unexpected becomes a retryable 500.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Mapping

from .config import WiringProfile
from .errors import (
    AUTHENTICATION_FAILURE,
    DUPLICATE_EVENT,
    MALFORMED_PAYLOAD,
    PERMANENT_CREDIT_FAILURE,
    REPLAY_REJECTED,
    TRANSIENT_CREDIT_FAILURE,
    UNREWARDABLE_EVENT,
    MalformedPayload,
    PermanentCreditError,
    TransientCreditError,
    reason_code,
)
from .health import HealthProbe
from .ids import claim_key, payload_hash
from .index import ClaimIndex
from .ledger import AccountLedger, SqliteAccountLedger
from .metrics import MetricsRecorder
from .models import AccountDelta, CreditResult, GateResponse, IngestedEvent, Provider
from .normalize import normalize
from .pg_index import PostgresAccountLedger, PostgresClaimIndex, is_postgres_dsn
from .providers import Notification, adapter_for
from .replay import is_fresh, parse_timestamp, utc_now
from .retry import with_retry
from .rewards import RewardTable
from .security import normalize_headers

logger = logging.getLogger(__name__)

CREDITED = "CREDITED"
NOT_CONFIGURED = "WEBHOOK_NOT_CONFIGURED"
UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
INTERNAL_ERROR = "INTERNAL_ERROR"

_BODY_LOG_LIMIT = 512

ClaimStore = ClaimIndex | PostgresClaimIndex


@dataclass
class WebhookGate:
    wiring: WiringProfile
    claims: ClaimStore
    ledger: AccountLedger
    rewards: RewardTable
    health: HealthProbe
    metrics: MetricsRecorder
    clock: Callable[[], datetime] = field(default=utc_now)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def build(cls, wiring: WiringProfile) -> "WebhookGate":
        claims = _build_claim_index(wiring)
        ledger = _build_ledger(wiring)
        rewards = RewardTable.load(Path(wiring.rewards_ref)) if wiring.rewards_ref else RewardTable.default()
        return cls(
            wiring=wiring,
            claims=claims,
            ledger=ledger,
            rewards=rewards,
            health=HealthProbe(claims, ledger),
            metrics=MetricsRecorder(flush_interval_seconds=wiring.metrics_flush_seconds),
        )

    def handle(self, provider: Provider | str, raw_body: bytes, headers: Mapping[str, str] | None) -> GateResponse:
        started = time.perf_counter()
        provider_name = provider.value if isinstance(provider, Provider) else str(provider).lower()
        try:
            resolved = Provider(provider_name)
        except ValueError:
            return _error(404, UNKNOWN_PROVIDER)
        try:
            response = self._run(resolved, raw_body or b"", normalize_headers(headers))
        except Exception as exc:
            logger.exception("Webhook %s failed unexpectedly", provider_name)
            response = _error(500, INTERNAL_ERROR, reason_code(exc))
        self.metrics.record_decision(provider_name, response.decision)
        self.metrics.record_latency(f"{provider_name}.handle_seconds", time.perf_counter() - started)
        self.metrics.flush_if_due({"profile_id": self.wiring.profile_id})
        return response

    def _run(self, provider: Provider, raw_body: bytes, headers: dict[str, str]) -> GateResponse:
        settings = self.wiring.provider(provider)
        if not settings.configured:
            logger.error("Webhook %s has no signing secret configured", provider.value)
            return _error(500, NOT_CONFIGURED)
        adapter = adapter_for(provider)

        if not adapter.verify(raw_body, headers, settings):
            logger.warning("Webhook %s signature rejected", provider.value)
            return _error(401, AUTHENTICATION_FAILURE)

        if adapter.replay_applies(headers, settings):
            claimed_at = parse_timestamp(adapter.timestamp(headers))
            max_skew = timedelta(seconds=self.wiring.replay_max_skew_seconds)
            if not is_fresh(claimed_at, self.clock(), max_skew):
                logger.warning(
                    "Webhook %s rejected as stale timestamp=%s",
                    provider.value,
                    adapter.timestamp(headers),
                )
                return _error(401, REPLAY_REJECTED)

        try:
            notification = adapter.parse(_decode_json(raw_body), headers)
        except MalformedPayload as exc:
            _log_malformed(provider, exc, raw_body)
            return _error(400, MALFORMED_PAYLOAD, exc.detail)
        if notification.control is not None:
            logger.info("Webhook %s control message decision=%s", provider.value, notification.control.decision)
            return notification.control

        return self._process(provider, notification, raw_body)

    def _process(self, provider: Provider, notification: Notification, raw_body: bytes) -> GateResponse:
        key = claim_key(provider, notification.external_event_id)
        claim = self.claims.claim(
            key,
            provider=provider.value,
            external_event_id=notification.external_event_id,
            event_type=notification.event_type,
            payload_hash=payload_hash(raw_body),
        )
        if not claim.claimed and claim.committed:
            logger.info("Webhook duplicate key=%s already committed", key)
            return _already_processed(key)
        if not claim.claimed:
            logger.info("Webhook key=%s claimed but uncommitted; re-driving attempt=%s", key, claim.record.attempts)

        try:
            event = normalize(
                provider,
                notification.event_type,
                notification.payload,
                external_event_id=notification.external_event_id,
            )
        except MalformedPayload as exc:
            _log_malformed(provider, exc, raw_body)
            self.claims.record_failure(key, MALFORMED_PAYLOAD)
            return _error(400, MALFORMED_PAYLOAD, exc.detail)
        if event is None:
            self.claims.record_failure(key, UNREWARDABLE_EVENT)
            return GateResponse(
                200,
                UNREWARDABLE_EVENT,
                {"status": "acknowledged", "reward": None, "key": key},
            )

        delta = self.rewards.compute(event)
        try:
            result = self._credit(event, delta)
        except TransientCreditError as exc:
            logger.warning("Webhook credit transient failure key=%s: %s", key, exc)
            self.claims.record_failure(key, TRANSIENT_CREDIT_FAILURE)
            return _error(500, TRANSIENT_CREDIT_FAILURE)
        except PermanentCreditError as exc:
            logger.error(
                "data-integrity: permanent credit failure key=%s user=%s: %s",
                key,
                delta.user_id,
                exc,
            )
            self.claims.record_failure(key, f"{PERMANENT_CREDIT_FAILURE}:{exc}")
            return GateResponse(200, PERMANENT_CREDIT_FAILURE, {"status": "not_credited", "key": key})

        self.claims.commit(key)
        if not result.applied:
            return _already_processed(key)
        logger.info(
            "Webhook credited key=%s user=%s currency=%s experience=%s reason=%s",
            key,
            delta.user_id,
            delta.currency_delta,
            delta.experience_delta,
            delta.reason_code,
        )
        return GateResponse(
            200,
            CREDITED,
            {
                "status": "credited",
                "key": key,
                "user_id": delta.user_id,
                "currency_delta": delta.currency_delta,
                "experience_delta": delta.experience_delta,
                "reason_code": delta.reason_code,
                "currency_balance": result.currency_balance,
                "experience_balance": result.experience_balance,
            },
        )

    def _credit(self, event: IngestedEvent, delta: AccountDelta) -> CreditResult:
        def attempt() -> CreditResult:
            return self.ledger.credit(
                delta.user_id,
                delta.currency_delta,
                delta.experience_delta,
                delta.idempotency_key,
                delta.reason_code,
                display_name=event.actor_display_name,
            )

        return with_retry(
            attempt,
            attempts=self.wiring.credit_retry_attempts,
            base_delay_seconds=self.wiring.credit_retry_base_delay_seconds,
            sleep=self.sleep,
        )


def _build_claim_index(wiring: WiringProfile) -> ClaimStore:
    if is_postgres_dsn(wiring.claim_db_path):
        return PostgresClaimIndex(wiring.claim_db_path)
    return ClaimIndex(Path(wiring.claim_db_path))


def _build_ledger(wiring: WiringProfile) -> AccountLedger:
    if is_postgres_dsn(wiring.ledger_db_path):
        return PostgresAccountLedger(
            wiring.ledger_db_path,
            auto_create_accounts=wiring.ledger_auto_create_accounts,
            timeout_seconds=wiring.credit_timeout_seconds,
        )
    return SqliteAccountLedger(
        Path(wiring.ledger_db_path),
        auto_create_accounts=wiring.ledger_auto_create_accounts,
        timeout_seconds=wiring.credit_timeout_seconds,
    )


def _decode_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedPayload("invalid_json") from None


def _log_malformed(provider: Provider, exc: MalformedPayload, raw_body: bytes) -> None:
    snippet = raw_body[:_BODY_LOG_LIMIT].decode("utf-8", errors="replace")
    logger.warning("Webhook %s malformed payload detail=%s body=%s", provider.value, exc.detail, snippet)


def _already_processed(key: str) -> GateResponse:
    return GateResponse(200, DUPLICATE_EVENT, {"status": "already_processed", "key": key})


def _error(status_code: int, code: str, detail: str | None = None) -> GateResponse:
    body: dict[str, Any] = {"error": code}
    if detail:
        body["detail"] = detail
    return GateResponse(status_code, code, body)
