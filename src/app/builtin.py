# =============================================================================
# Built-in Commands
# =============================================================================
# Commands every bot gets for free: a health check and a listing of what is
# registered.
# =============================================================================

import logging
from datetime import datetime, timezone
from typing import Iterable

from src.interactions.model import Interaction, InteractionKind, Response
from src.interactions.registry import HandlerRegistration, HandlerRegistry

logger = logging.getLogger(__name__)


def handle_ping(interaction: Interaction, ctx) -> Response:
    """Health check."""
    timestamp = datetime.now(timezone.utc).isoformat()
    return Response.message(f"pong ({timestamp})", ephemeral=True)


def format_help(registrations: Iterable[HandlerRegistration]) -> str:
    commands = sorted(
        (r for r in registrations if r.kind == InteractionKind.COMMAND and not r.is_pattern),
        key=lambda r: r.key,
    )
    if not commands:
        return "No commands available."
    return "\n".join(f"/{r.key} - {r.description}" for r in commands)


def make_help_handler(registry: HandlerRegistry):
    def handle_help(interaction: Interaction, ctx) -> Response:
        """List registered commands."""
        return Response.message(format_help(registry.registrations()), ephemeral=True)
    return handle_help


def register_builtins(app) -> None:
    """Register 'ping' and 'help' unless the bot defines its own."""
    registry = app.registry
    if registry.resolve(InteractionKind.COMMAND, "ping") is None:
        app.register(InteractionKind.COMMAND, "ping", handle_ping)
    if registry.resolve(InteractionKind.COMMAND, "help") is None:
        app.register(InteractionKind.COMMAND, "help", make_help_handler(registry))
    logger.info(f"Built-in commands ready ({len(registry)} handlers registered)")
