# =============================================================================
# Delivery Package - Transport Strategies
# =============================================================================
# Push-channel and webhook strategies, the shared normalizer and the REST
# client used for out-of-band replies.
# =============================================================================

from src.delivery.base import DeliveryStrategy, StrategyConfig
from src.delivery.normalize import (
    CONTEXT_SEPARATOR,
    NormalizationError,
    normalize_interaction,
    outcome_callback,
)
from src.delivery.push import GatewayConnection, PushChannelStrategy
from src.delivery.rest import RestClient
from src.delivery.webhook import HmacVerifier, WebhookRequest, WebhookResponse, WebhookStrategy

__all__ = [
    "DeliveryStrategy",
    "StrategyConfig",
    "CONTEXT_SEPARATOR",
    "NormalizationError",
    "normalize_interaction",
    "outcome_callback",
    "GatewayConnection",
    "PushChannelStrategy",
    "RestClient",
    "HmacVerifier",
    "WebhookRequest",
    "WebhookResponse",
    "WebhookStrategy",
]
