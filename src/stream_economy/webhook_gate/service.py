"""Flask service wrapper for the webhook gate."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

from flask import Flask, Response, jsonify, request

from .config import WiringProfile
from .gate import UNKNOWN_PROVIDER, WebhookGate
from .logging_utils import configure_logging
from .models import GateResponse, Provider
from .normalize import supported_event_types


def create_app(profile_path: str, gate: WebhookGate | None = None) -> Flask:
    wiring = WiringProfile.load(Path(profile_path))
    configure_logging(log_paths=wiring.log_paths)
    gate = gate or WebhookGate.build(wiring)

    app = Flask(__name__)
    app.config["WEBHOOK_GATE"] = gate

    @app.post("/webhooks/<provider>")
    def receive_webhook(provider: str) -> Any:
        # signatures cover the exact bytes; read before any parsing
        raw_body = request.get_data(cache=False, as_text=False)
        response = gate.handle(provider, raw_body, dict(request.headers))
        return _to_flask(response)

    @app.get("/webhooks/<provider>")
    def webhook_health(provider: str) -> Any:
        try:
            resolved = Provider(provider.lower())
        except ValueError:
            return jsonify({"error": UNKNOWN_PROVIDER}), 404
        settings = gate.wiring.provider(resolved)
        return jsonify(
            {
                "status": "ok" if settings.configured else "not_configured",
                "webhook": resolved.value,
                "configured": settings.configured,
                "supported_events": supported_event_types(resolved),
            }
        )

    @app.get("/v1/ops/health")
    def ops_health() -> Any:
        result = gate.health.check()
        status = 200 if result.state.value == "GREEN" else 503
        return jsonify({"state": result.state.value, "reasons": result.reasons}), status

    return app


def _to_flask(response: GateResponse) -> Response:
    if response.content_type == "application/json":
        flask_response = jsonify(response.body)
        flask_response.status_code = response.status_code
        return flask_response
    return Response(str(response.body), status=response.status_code, content_type=response.content_type)


def main() -> None:
    parser = argparse.ArgumentParser(description="Stream economy webhook service")
    parser.add_argument("--profile", required=True, help="Path to webhook gate profile YAML")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8085)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    app = create_app(args.profile)
    app.run(host=args.host, port=args.port, debug=args.debug, threaded=True)


if __name__ == "__main__":
    main()
