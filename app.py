import logging
from typing import Any, Callable, Dict, Optional

from src.app.api_handler import create_api_handler
from src.app.application import InteractionApp
from src.app.builtin import register_builtins
from src.delivery.webhook import HmacVerifier

# ---------- Logger ----------
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# =============================================================================
# LAZY APP INITIALIZATION (Import-safe pattern)
# =============================================================================
# The app and its clients are created on the first invocation, not at import
# time, so the module imports without AWS credentials or a bot token.
# Bot modules register their handlers through configure() before that.
# =============================================================================
_state: Dict[str, Any] = {}
_configurators = []


def configure(func: Callable[[InteractionApp], None]) -> Callable[[InteractionApp], None]:
    """
    Register a setup function that adds handlers to the app.

    Usage:
        @configure
        def setup(app):
            @app.command("hello")
            def handle_hello(interaction, ctx):
                return f"Hello <@{interaction.origin_user}>"
    """
    _configurators.append(func)
    return func


def get_app() -> InteractionApp:
    if "app" not in _state:
        app = InteractionApp()
        for func in _configurators:
            func(app)
        register_builtins(app)
        _state["app"] = app
    return _state["app"]


def _get_handler() -> Callable[[Dict[str, Any], Any], Dict[str, Any]]:
    if "handler" not in _state:
        app = get_app()
        secret = app.settings.webhook_secret
        verifier: Optional[HmacVerifier] = HmacVerifier(secret) if secret else None
        _state["handler"] = create_api_handler(app, verifier=verifier)
    return _state["handler"]


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Lambda entry point for interaction webhooks behind API Gateway."""
    return _get_handler()(event, context)
