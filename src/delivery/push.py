# =============================================================================
# Push-Channel Delivery Strategy
# =============================================================================
# Long-lived connection to the platform gateway. Inbound events are
# normalized and handed to the router strictly in arrival order; handlers
# then run concurrently and replies go out as REST calls.
#
# A dropped connection is re-established with capped exponential backoff.
# Events missed while disconnected are not replayed (at-most-once).
# =============================================================================

import asyncio
import inspect
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, List, Optional, Protocol

from src.delivery.base import DeliveryStrategy, StrategyConfig
from src.delivery.normalize import (
    NormalizationError,
    deferred_callback,
    is_ping,
    outcome_callback,
    outcome_followup,
)
from src.delivery.rest import RestClient
from src.interactions.errors import ContextStoreError, SetupError
from src.interactions.model import DispatchOutcome, Interaction, InteractionKind, InteractionSource
from src.interactions.router import DispatchRouter
from src.interactions.scopes import Scope
from src.runtime.constraints import ConstraintProfile

logger = logging.getLogger(__name__)

INTERACTION_EVENT = "INTERACTION_CREATE"


class GatewayConnection(Protocol):
    """
    Transport collaborator owning the socket, heartbeats and resume logic.

    Iterating yields dispatch events shaped {"t": <event name>, "d": <data>};
    iteration ends (or raises) when the connection drops.
    """

    async def connect(self, scopes: FrozenSet[Scope], bitmask: int) -> None: ...

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]: ...

    async def close(self) -> None: ...


class PushChannelStrategy(DeliveryStrategy):
    """
    Delivery over a persistent gateway connection.

    Args:
        router: Dispatch router
        rest: REST client used for replies
        connection_factory: Returns a fresh GatewayConnection per attempt
        profile: Host constraint profile (defaults to the router's)
        reconnect_delay: First backoff delay in seconds
        max_reconnect_delay: Backoff ceiling in seconds
        clock: Time source returning epoch seconds
    """

    name = "push"
    source = InteractionSource.PUSH

    def __init__(
        self,
        router: DispatchRouter,
        rest: RestClient = None,
        connection_factory: Callable[[], GatewayConnection] = None,
        profile: ConstraintProfile = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(router, profile, clock)
        self.rest = rest
        self.connection_factory = connection_factory
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.reconnects = 0
        self.fatal_error: Optional[BaseException] = None
        self._connection: Optional[GatewayConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._stopping = False
        self._listeners: Dict[str, List[Callable]] = {}

    # =========================================================================
    # CONTRACT
    # =========================================================================
    async def setup(self, config: Optional[StrategyConfig] = None) -> None:
        if config is not None:
            self.config = config
        if not self.profile.supports_persistent_connection:
            raise SetupError(self.name, f"host '{self.profile.host}' does not allow persistent connections")
        if self.connection_factory is None:
            raise SetupError(self.name, "no gateway connection factory configured")
        if self.rest is None:
            raise SetupError(self.name, "no REST client configured for replies")

        self._stopping = False
        self._reader = asyncio.get_running_loop().create_task(self._read_forever())
        logger.info(f"Push channel started with scopes {sorted(s.value for s in self.router.registry.required_scopes)}")

    def denormalize(self, outcome: DispatchOutcome, interaction: Interaction) -> Dict[str, Any]:
        """Callback body sent through the REST client."""
        return outcome_callback(outcome, interaction, self.config.fallback_messages)

    async def teardown(self) -> None:
        self._stopping = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._close_connection()
        logger.info("Push channel stopped")

    async def wait_closed(self) -> None:
        """Block until the reader stops; re-raise a fatal dispatch error."""
        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self.fatal_error is not None:
            raise self.fatal_error

    # =========================================================================
    # CONNECTION LOOP
    # =========================================================================
    async def _read_forever(self) -> None:
        delay = self.reconnect_delay
        while not self._stopping:
            self._connection = self.connection_factory()
            try:
                registry = self.router.registry
                await self._connection.connect(registry.required_scopes, registry.scope_bitmask)
                delay = self.reconnect_delay
                async for event in self._connection:
                    await self._on_event(event)
                logger.warning("Push connection closed by remote")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Push connection dropped: {e}")
            finally:
                await self._close_connection()

            if self._stopping:
                break
            self.reconnects += 1
            logger.info(f"Reconnecting push channel in {delay:.1f}s (attempt {self.reconnects})")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error closing push connection: {e}")

    async def _on_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("t")
        data = event.get("d") or {}

        if event_type != INTERACTION_EVENT:
            self._emit(event_type, data)
            return
        if is_ping(data):
            return

        try:
            interaction = self.normalize(data)
        except NormalizationError as e:
            logger.warning(f"Dropping malformed interaction event: {e}")
            return

        # Dispatch order follows arrival order; the reply runs on its own
        self._spawn(self._deliver(interaction))

    # =========================================================================
    # REPLIES
    # =========================================================================
    async def _deliver(self, interaction: Interaction) -> Optional[DispatchOutcome]:
        dispatch = asyncio.ensure_future(self.router.dispatch(interaction))
        try:
            # Autocomplete has no deferred form; always wait for the real choices
            timeout = None
            if interaction.kind != InteractionKind.AUTOCOMPLETE:
                timeout = max(interaction.remaining(self._clock()), 0)
            done, _ = await asyncio.wait({dispatch}, timeout=timeout)

            if dispatch in done:
                outcome = dispatch.result()
                await self._send(self.rest.create_response, interaction.id, interaction.token,
                                 self.denormalize(outcome, interaction))
                return outcome

            await self._send(self.rest.create_response, interaction.id, interaction.token,
                             deferred_callback(interaction))
            outcome = await dispatch
            body = outcome_followup(outcome, interaction, self.config.fallback_messages)
            if body is not None:
                await self._send(self.rest.edit_original, interaction.token, body, interaction.application_id)
            return outcome
        except ContextStoreError as e:
            logger.critical(f"Context store failure while dispatching {interaction.id}: {e}")
            self.fatal_error = e
            self._stopping = True
            if self._reader is not None:
                self._reader.cancel()
            return None

    async def _send(self, call: Callable, *args) -> Dict[str, Any]:
        result = await asyncio.to_thread(call, *args)
        if not result.get("success", False):
            logger.error(f"Push reply {getattr(call, '__name__', 'request')} failed: {result.get('error')}")
        return result

    # =========================================================================
    # LISTENERS
    # =========================================================================
    def add_listener(self, event: str, callback: Callable) -> Callable[[], None]:
        """Subscribe to a non-interaction gateway event; returns unsubscribe."""
        self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._listeners.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    self._spawn(result)
            except Exception as e:
                logger.exception(f"Listener for {event} failed: {e}")
