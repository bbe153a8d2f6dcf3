"""Operator CLI for the webhook gate (reconciliation lookups)."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path

from .config import WiringProfile
from .gate import WebhookGate


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Stream economy webhook gate CLI")
    parser.add_argument("--profile", required=True, help="Path to webhook gate profile YAML")
    parser.add_argument("--lookup-key", help="Show the claim record for provider:event_id")
    parser.add_argument("--list-uncommitted", action="store_true", help="List claims never committed")
    parser.add_argument("--limit", type=int, default=100, help="Row limit for --list-uncommitted")
    parser.add_argument("--balance", metavar="USER_ID", help="Show currency/experience for an account")
    parser.add_argument("--health", action="store_true", help="Print storage health state")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    wiring = WiringProfile.load(Path(args.profile))
    gate = WebhookGate.build(wiring)

    if args.lookup_key:
        record = gate.claims.lookup(args.lookup_key)
        print(json.dumps(asdict(record) if record else {}, ensure_ascii=True))
        return
    if args.list_uncommitted:
        records = gate.claims.list_uncommitted(args.limit)
        for record in records:
            print(json.dumps(asdict(record), ensure_ascii=True))
        print(f"UNCOMMITTED={len(records)}")
        return
    if args.balance:
        balance = gate.ledger.balance(args.balance)
        payload = {"user_id": args.balance, "currency": balance[0], "experience": balance[1]} if balance else {}
        print(json.dumps(payload, ensure_ascii=True))
        return
    if args.health:
        result = gate.health.check()
        print(json.dumps({"state": result.state.value, "reasons": result.reasons}, ensure_ascii=True))
        return
    raise SystemExit("Provide --lookup-key, --list-uncommitted, --balance or --health")


if __name__ == "__main__":
    main()
