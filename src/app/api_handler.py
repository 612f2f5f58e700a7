# =============================================================================
# API Gateway Handler
# =============================================================================
# Entry point for API Gateway HTTP API (v2) and REST API (v1) requests.
# Translates the Lambda event into a WebhookRequest, runs it through the
# webhook strategy and formats the reply for API Gateway.
#
# Usage (Lambda module):
#   app = InteractionApp()
#   register_builtins(app)
#   api_handler = create_api_handler(app, verifier=HmacVerifier(secret))
# =============================================================================

import asyncio
import base64
import binascii
import json
import logging
from typing import Any, Callable, Dict, Optional

from src.app.application import InteractionApp
from src.delivery.webhook import Verifier, WebhookRequest, WebhookResponse, WebhookStrategy
from src.interactions.errors import ContextStoreError

logger = logging.getLogger(__name__)


def api_response(data: Dict[str, Any], status_code: int = 200, headers: Dict[str, str] = None) -> Dict[str, Any]:
    """Format response for API Gateway."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            **(headers or {}),
        },
        "body": json.dumps(data, ensure_ascii=False, default=str),
    }


def parse_api_event(event: Dict[str, Any]) -> WebhookRequest:
    """
    Build a WebhookRequest from an API Gateway event.

    Raises:
        ValueError: body flagged as base64 but not decodable
    """
    context = event.get("requestContext") or {}
    method = (context.get("http") or {}).get("method") or event.get("httpMethod") or "POST"

    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 body: {e}")
    else:
        raw = body.encode("utf-8")

    return WebhookRequest(body=raw, headers=dict(event.get("headers") or {}), method=method)


def to_api_response(response: WebhookResponse) -> Dict[str, Any]:
    return api_response(response.body, response.status, response.headers)


def create_api_handler(
    app: InteractionApp,
    verifier: Verifier = None,
    strategy: WebhookStrategy = None,
) -> Callable[[Dict[str, Any], Any], Dict[str, Any]]:
    """
    Create the Lambda entry point for an app.

    The event loop and strategy live across warm invocations; setup runs on
    the first request.
    """
    if strategy is None:
        rest = app.deps.rest if app.profile.supports_background_execution else None
        strategy = WebhookStrategy(
            app.router,
            rest=rest,
            verifier=verifier,
            require_signature=app.settings.require_signature,
        )
    app.add_strategy(strategy)

    loop = asyncio.new_event_loop()
    state: Dict[str, Any] = {"started": False, "setup_error": None}

    def _ensure_started() -> Optional[str]:
        if not state["started"]:
            loop.run_until_complete(app.start())
            state["started"] = True
            if strategy not in app.active:
                state["setup_error"] = f"{strategy.name} strategy failed setup"
        return state["setup_error"]

    def api_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
        """
        API Gateway entry point.

        Args:
            event: API Gateway event
            context: Lambda context

        Returns:
            API Gateway response format
        """
        logger.info(f"API_HANDLER event keys: {list(event.keys())}")

        setup_error = _ensure_started()
        if setup_error:
            logger.error(setup_error)
            return api_response({"error": "Service unavailable"}, 503)

        try:
            request = parse_api_event(event)
        except ValueError as e:
            logger.warning(f"Could not parse request: {e}")
            return api_response({"error": "Could not parse request"}, 400)

        try:
            response = loop.run_until_complete(strategy.handle_request(request))
        except ContextStoreError as e:
            logger.exception(f"Context store failure: {e}")
            return api_response({"error": "Session storage unavailable"}, 500)

        return to_api_response(response)

    api_handler.loop = loop
    api_handler.strategy = strategy
    return api_handler
