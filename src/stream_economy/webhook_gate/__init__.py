"""Monetization webhook gate package."""

from .config import ProviderSettings, WiringProfile
from .gate import WebhookGate
from .ledger import SqliteAccountLedger
from .models import AccountDelta, EventKind, GateResponse, IngestedEvent, Provider
from .rewards import RewardTable

__all__ = [
    "AccountDelta",
    "EventKind",
    "GateResponse",
    "IngestedEvent",
    "Provider",
    "ProviderSettings",
    "RewardTable",
    "SqliteAccountLedger",
    "WebhookGate",
    "WiringProfile",
]
