"""Storage health probe for the webhook gate."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class HealthState(str, Enum):
    GREEN = "GREEN"
    RED = "RED"


@dataclass(frozen=True)
class HealthResult:
    state: HealthState
    reasons: list[str]
    checked_at_utc: str


class HealthProbe:
    def __init__(self, claims: Any, ledger: Any, probe_interval_seconds: int = 5) -> None:
        self.claims = claims
        self.ledger = ledger
        self.probe_interval_seconds = probe_interval_seconds
        self._last_result: HealthResult | None = None
        self._last_checked_at: float | None = None

    def check(self) -> HealthResult:
        now = time.time()
        if self._last_result is not None and self._last_checked_at is not None:
            if (now - self._last_checked_at) < self.probe_interval_seconds:
                return self._last_result
        reasons: list[str] = []
        if not self.claims.probe():
            reasons.append("CLAIM_DB_UNHEALTHY")
        if not self.ledger.probe():
            reasons.append("LEDGER_DB_UNHEALTHY")
        state = HealthState.RED if reasons else HealthState.GREEN
        result = HealthResult(
            state=state,
            reasons=reasons,
            checked_at_utc=datetime.now(tz=timezone.utc).isoformat(),
        )
        self._last_result = result
        self._last_checked_at = now
        return result
