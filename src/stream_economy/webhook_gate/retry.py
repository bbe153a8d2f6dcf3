"""Bounded retry for account-ledger credits."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .errors import TransientCreditError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 2,
    base_delay_seconds: float = 0.1,
    max_delay_seconds: float = 1.0,
    retry_on: tuple[type[Exception], ...] = (TransientCreditError,),
    on_retry: Callable[[int, float, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` up to ``attempts`` times; only ``retry_on`` errors are retried."""
    if attempts <= 1:
        return func()
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            delay = min(base_delay_seconds * (2 ** (attempt - 1)), max_delay_seconds)
            if on_retry:
                on_retry(attempt, delay, exc)
            else:
                logger.warning("Retrying after %s (attempt %s, sleep %.2fs)", exc, attempt, delay)
            sleep(delay)
    raise RuntimeError("RETRY_FAILED")
