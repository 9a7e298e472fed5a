"""
Flask web server for Coinsight.

Routes
──────
GET    /                                 Service description (JSON)
GET    /api/health                       Key presence, circuit breaker state
POST   /api/analyze                      Research a query → AnalysisResult
GET    /api/analyze?conversationId=...   Conversation transcript
DELETE /api/analyze?conversationId=...   Forget a conversation
POST   /api/chat                         Direct model conversation, no data fetch
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

# Allow running as `python web/app.py` from the project root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

load_dotenv()

from coinsight.errors import CoinsightError  # noqa: E402
from coinsight.models import utc_now_iso  # noqa: E402
from coinsight.pipeline import ResearchService, build_service  # noqa: E402
from config.settings import Settings  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[ResearchService] = None,
) -> Flask:
    """Build the Flask app around a ``ResearchService``.

    Args:
        settings: Configuration; read from the environment when omitted.
        service: Pre-wired service (tests inject one with mocked clients).
    """
    settings = settings or Settings()
    settings.validate()
    service = service or build_service(settings)

    missing = settings.missing_keys()
    if missing:
        logger.warning("Running in degraded mode, unset keys: %s", ", ".join(missing))

    app = Flask(__name__)
    app.config["SERVICE"] = service

    # ── Error handling ─────────────────────────────────────────────────────

    @app.errorhandler(CoinsightError)
    def handle_coinsight_error(exc: CoinsightError):
        if exc.http_status >= 500:
            logger.error("Request failed (%s): %s", type(exc).__name__, exc)
        return jsonify({
            "success": False,
            "error": exc.public_message,
            "details": str(exc),
        }), exc.http_status

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify({"success": False, "error": exc.description}), exc.code
        logger.exception("Unhandled error")
        return jsonify({
            "success": False,
            "error": "Failed to process query",
            "details": str(exc),
        }), 500

    # ── Service description / health ──────────────────────────────────────

    @app.route("/")
    def index():
        return jsonify({
            "name": "coinsight",
            "description": "Crypto and DeFi research assistant",
            "endpoints": {
                "POST /api/analyze": "Research a query",
                "GET /api/analyze?conversationId=": "Conversation history",
                "DELETE /api/analyze?conversationId=": "Clear a conversation",
                "POST /api/chat": "Direct model chat",
                "GET /api/health": "Service health",
            },
        })

    @app.route("/api/health")
    def health():
        return jsonify({"success": True, "timestamp": utc_now_iso(), **service.health()})

    # ── Analysis ───────────────────────────────────────────────────────────

    @app.route("/api/analyze", methods=["POST"])
    def analyze():
        """Run the research pipeline.

        JSON body:
          query           (required) the question
          mode            "research" | "chat" (default "research")
          conversationId  continue an existing conversation
          sources         any of ["standard", "planner"] (default ["planner"])
        """
        body = _json_body()
        result = service.analyze(
            body.get("query"),
            mode=body.get("mode") or "research",
            conversation_id=body.get("conversationId"),
            sources=body.get("sources"),
        )
        return jsonify({
            "success": True,
            "data": result.to_json_dict(),
            "conversationId": result.conversation_id,
        })

    @app.route("/api/analyze", methods=["GET"])
    def conversation_history():
        conversation_id = request.args.get("conversationId", "").strip()
        history = service.history(conversation_id) if conversation_id else None
        if history is None:
            return jsonify({"success": False, "error": "Conversation not found"}), 404
        return jsonify({"success": True, "data": history})

    @app.route("/api/analyze", methods=["DELETE"])
    def clear_conversation():
        service.clear(request.args.get("conversationId", "").strip() or None)
        return jsonify({"success": True})

    # ── Chat ───────────────────────────────────────────────────────────────

    @app.route("/api/chat", methods=["POST"])
    def chat():
        body = _json_body()
        response = service.chat(body.get("query"))
        return jsonify({
            "success": True,
            "summary": response.text,
            "modelUsed": response.model,
            "timestamp": utc_now_iso(),
        })

    return app


def _json_body() -> dict:
    """The request's JSON object, or an empty dict for any other body."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


app = create_app()


if __name__ == "__main__":
    settings = Settings()
    app.run(debug=settings.debug, port=settings.port, threaded=True)
