# =============================================================================
# Request/Response (Webhook) Delivery Strategy
# =============================================================================
# One HTTP request per interaction. The reply body must go back on the same
# request before the ack deadline:
#   - outcome ready in time        -> callback body
#   - late, background execution   -> deferred body now, edit original later
#   - late, no background work     -> ConstraintViolated fallback
#
# Usage:
#   strategy = WebhookStrategy(router, rest=rest, verifier=HmacVerifier(secret))
#   await strategy.setup()
#   response = await strategy.handle_request(WebhookRequest(body=raw, headers=headers))
# =============================================================================

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from src.delivery.base import DeliveryStrategy, StrategyConfig
from src.delivery.normalize import (
    CallbackType,
    NormalizationError,
    deferred_callback,
    is_ping,
    outcome_callback,
    outcome_followup,
)
from src.delivery.rest import RestClient
from src.interactions.errors import ContextStoreError, SetupError
from src.interactions.model import (
    ConstraintViolated,
    DispatchOutcome,
    HandlerFailed,
    Interaction,
    InteractionKind,
    InteractionSource,
)
from src.interactions.router import DispatchRouter
from src.runtime.constraints import ConstraintProfile

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}

# (body, headers) -> True when the request is authentic
Verifier = Callable[[bytes, Mapping[str, str]], bool]


@dataclass
class WebhookRequest:
    """Inbound HTTP request as seen by the strategy."""
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    method: str = "POST"

    def header(self, name: str, default: str = None) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


@dataclass
class WebhookResponse:
    """HTTP reply returned to the caller."""
    status: int
    body: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=lambda: dict(JSON_HEADERS))

    def to_dict(self) -> Dict[str, Any]:
        return {"statusCode": self.status, "headers": self.headers, "body": json.dumps(self.body)}


def _error(status: int, message: str) -> WebhookResponse:
    return WebhookResponse(status=status, body={"error": message})


class HmacVerifier:
    """
    Shared-secret verifier: hex HMAC-SHA256 of ``timestamp + body``.

    Platforms signing with public keys plug in their own callable instead.
    """

    def __init__(self, secret: str, signature_header: str = "X-Signature-256",
                 timestamp_header: str = "X-Signature-Timestamp"):
        self.secret = secret.encode()
        self.signature_header = signature_header
        self.timestamp_header = timestamp_header

    def sign(self, body: bytes, timestamp: str = "") -> str:
        return hmac.new(self.secret, timestamp.encode() + body, hashlib.sha256).hexdigest()

    def __call__(self, body: bytes, headers: Mapping[str, str]) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(self.signature_header.lower())
        if not signature:
            return False
        timestamp = lowered.get(self.timestamp_header.lower(), "")
        return hmac.compare_digest(self.sign(body, timestamp), signature)


class WebhookStrategy(DeliveryStrategy):
    """
    Delivery over per-request HTTP calls.

    Args:
        router: Dispatch router
        rest: REST client for follow-up edits (needed when the host allows
            background execution)
        verifier: Signature check, see ``Verifier``
        profile: Host constraint profile (defaults to the router's)
        require_signature: Refuse to start without a verifier
        response_margin: Seconds kept free before the ack deadline for the
            HTTP reply itself
        clock: Time source returning epoch seconds
    """

    name = "webhook"
    source = InteractionSource.WEBHOOK

    def __init__(
        self,
        router: DispatchRouter,
        rest: RestClient = None,
        verifier: Verifier = None,
        profile: ConstraintProfile = None,
        require_signature: bool = True,
        response_margin: float = 0.25,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(router, profile, clock)
        self.rest = rest
        self.verifier = verifier
        self.require_signature = require_signature
        self.response_margin = response_margin
        self.fatal_error: Optional[BaseException] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._ready = False

    # =========================================================================
    # CONTRACT
    # =========================================================================
    async def setup(self, config: Optional[StrategyConfig] = None) -> None:
        if config is not None:
            self.config = config
        if self.require_signature and self.verifier is None:
            raise SetupError(self.name, "signature verification required but no verifier configured")
        if self.profile.supports_background_execution and self.rest is None:
            raise SetupError(self.name, "no REST client configured for deferred follow-ups")

        limit = self.profile.max_concurrent_operations
        self._semaphore = asyncio.Semaphore(limit) if limit else None
        self._ready = True
        logger.info(f"Webhook strategy ready (concurrency limit: {limit or 'unbounded'})")

    def denormalize(self, outcome: DispatchOutcome, interaction: Interaction) -> WebhookResponse:
        return WebhookResponse(status=200, body=outcome_callback(outcome, interaction, self.config.fallback_messages))

    async def teardown(self) -> None:
        self._ready = False
        logger.info(f"Webhook strategy stopped ({len(self._pending)} follow-ups pending)")

    # =========================================================================
    # REQUEST HANDLING
    # =========================================================================
    async def handle_request(self, request: WebhookRequest) -> WebhookResponse:
        """Answer one HTTP request carrying a platform interaction."""
        if self.fatal_error is not None:
            return _error(500, "Context store unavailable")
        if not self._ready:
            return _error(503, "Not accepting interactions")
        if request.method.upper() != "POST":
            return WebhookResponse(status=405, body={"error": "Method not allowed"},
                                   headers={**JSON_HEADERS, "Allow": "POST"})

        if self.verifier is not None and not self._verify(request):
            logger.warning("Rejected webhook request with invalid signature")
            return _error(401, "Invalid request signature")

        try:
            raw = request.json()
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Unparseable webhook body: {e}")
            return _error(400, "Invalid JSON")

        if isinstance(raw, dict) and is_ping(raw):
            return WebhookResponse(status=200, body={"type": CallbackType.PONG})

        try:
            interaction = self.normalize(raw)
        except NormalizationError as e:
            logger.warning(f"Rejected webhook interaction: {e}")
            return _error(400, str(e))

        return await self._respond(interaction)

    def _verify(self, request: WebhookRequest) -> bool:
        try:
            return bool(self.verifier(request.body, request.headers))
        except Exception as e:
            logger.exception(f"Signature verifier raised: {e}")
            return False

    async def _dispatch(self, interaction: Interaction, deadline: float = None) -> DispatchOutcome:
        if self._semaphore is None:
            return await self.router.dispatch(interaction, deadline=deadline)
        async with self._semaphore:
            return await self.router.dispatch(interaction, deadline=deadline)

    def _can_defer(self, interaction: Interaction) -> bool:
        return self.profile.supports_background_execution and interaction.kind != InteractionKind.AUTOCOMPLETE

    async def _respond(self, interaction: Interaction) -> WebhookResponse:
        cutoff = interaction.ack_deadline - self.response_margin

        if not self._can_defer(interaction):
            # The router settles the outcome at the cutoff, so the reply and
            # the recorded outcome for this id are the same one
            outcome = await self._dispatch(interaction, deadline=cutoff)
            if isinstance(outcome, ConstraintViolated):
                logger.warning(f"Interaction {interaction.id}: {outcome.reason}")
            return self.denormalize(outcome, interaction)

        dispatch = asyncio.ensure_future(self._dispatch(interaction))
        done, _ = await asyncio.wait({dispatch}, timeout=max(cutoff - self._clock(), 0))
        if dispatch in done:
            return self.denormalize(dispatch.result(), interaction)

        self._spawn(self._follow_up(dispatch, interaction))
        logger.info(f"Interaction {interaction.id} deferred; follow-up scheduled")
        return WebhookResponse(status=200, body=deferred_callback(interaction))

    async def _follow_up(self, dispatch: asyncio.Future, interaction: Interaction) -> None:
        try:
            outcome = await dispatch
        except ContextStoreError as e:
            logger.critical(f"Context store failure while dispatching {interaction.id}: {e}")
            self.fatal_error = e
            self._ready = False
            outcome = HandlerFailed(interaction.id, error=e)

        body = outcome_followup(outcome, interaction, self.config.fallback_messages)
        if body is None:
            return
        result = await asyncio.to_thread(self.rest.edit_original, interaction.token, body, interaction.application_id)
        if not result.get("success", False):
            logger.error(f"Follow-up for interaction {interaction.id} failed: {result.get('error')}")

