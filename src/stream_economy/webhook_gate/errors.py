"""Webhook gate error taxonomy and helpers."""

from __future__ import annotations

AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
REPLAY_REJECTED = "REPLAY_REJECTED"
MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
DUPLICATE_EVENT = "DUPLICATE_EVENT"
UNREWARDABLE_EVENT = "UNREWARDABLE_EVENT"
TRANSIENT_CREDIT_FAILURE = "TRANSIENT_CREDIT_FAILURE"
PERMANENT_CREDIT_FAILURE = "PERMANENT_CREDIT_FAILURE"


class GateError(RuntimeError):
    """Stable, policy-safe error surfaced as a reason code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class MalformedPayload(GateError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__(MALFORMED_PAYLOAD, detail)


class LedgerError(RuntimeError):
    """Base for Account Ledger failures."""


class TransientCreditError(LedgerError):
    """Ledger unavailable or timed out; the provider should retry."""


class PermanentCreditError(LedgerError):
    """Retrying cannot fix this credit; needs manual reconciliation."""


class UnknownAccountError(PermanentCreditError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"UNKNOWN_ACCOUNT:{user_id}")


def reason_code(exc: Exception) -> str:
    if isinstance(exc, GateError):
        return exc.code
    if isinstance(exc, TransientCreditError):
        return TRANSIENT_CREDIT_FAILURE
    if isinstance(exc, PermanentCreditError):
        return PERMANENT_CREDIT_FAILURE
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
