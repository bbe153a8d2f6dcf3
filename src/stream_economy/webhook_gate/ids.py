"""Deterministic identifiers for the webhook gate."""

from __future__ import annotations

import hashlib

from .models import Provider


def claim_key(provider: Provider | str, external_event_id: str) -> str:
    value = provider.value if isinstance(provider, Provider) else str(provider)
    return f"{value}:{external_event_id}"


def payload_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def reason_code_for(provider: Provider, kind: str) -> str:
    return f"{provider.value}.{kind}".upper().replace(".", "_")
