# =============================================================================
# Application Entry Points
# =============================================================================
# The InteractionApp plus thin transport adapters that feed it.
# =============================================================================

from src.app.api_handler import api_response, create_api_handler, parse_api_event
from src.app.application import InteractionApp
from src.app.builtin import register_builtins

__all__ = [
    "api_response",
    "create_api_handler",
    "parse_api_event",
    "InteractionApp",
    "register_builtins",
]
