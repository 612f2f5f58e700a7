# =============================================================================
# Interaction Application
# =============================================================================
# Wires the registry, lifecycle manager, context store, router and delivery
# strategies together for one bot process.
#
# Usage:
#   app = InteractionApp()
#
#   @app.command("ping")
#   async def handle_ping(interaction, ctx):
#       return "pong"
#
#   app.add_strategy(WebhookStrategy(app.router, rest=app.deps.rest, verifier=verifier))
#   await app.start()
# =============================================================================

import asyncio
import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Union

from src.delivery.base import DeliveryStrategy, StrategyConfig
from src.interactions.context_store import ContextStore
from src.interactions.dynamo_backend import DynamoSessionBackend
from src.interactions.errors import SetupError
from src.interactions.lifecycle import LifecycleManager
from src.interactions.model import DispatchOutcome, Interaction, InteractionKind
from src.interactions.registry import HandlerRegistration, HandlerRegistry, RoutingKey
from src.interactions.router import DispatchRouter
from src.interactions.scopes import Scope
from src.runtime.constraints import ConstraintProfile
from src.runtime.deps import Deps, Settings, create_deps, resolve_constraint_profile

logger = logging.getLogger(__name__)


class InteractionApp:
    """
    One bot process: registration API, dispatch and transports.

    Args:
        settings: Runtime settings (read from the environment by default)
        profile: Constraint profile override (detected by default)
        deps: Dependency container (built from settings by default)
        store_backend: Session backend override
    """

    def __init__(
        self,
        settings: Settings = None,
        profile: ConstraintProfile = None,
        deps: Deps = None,
        store_backend: Any = None,
        clock: Callable[[], float] = None,
    ):
        self.deps = deps or create_deps(settings)
        self.settings = self.deps.settings
        self.profile = resolve_constraint_profile(self.settings, profile)

        if store_backend is None and self.settings.session_table_name:
            store_backend = DynamoSessionBackend(self.deps.session_table)

        clock_kwargs = {"clock": clock} if clock is not None else {}
        self.lifecycle = LifecycleManager()
        self.registry = HandlerRegistry(self.lifecycle)
        self.store = ContextStore(store_backend, default_ttl=self.settings.session_ttl, **clock_kwargs)
        self.router = DispatchRouter(
            self.registry,
            store=self.store,
            profile=self.profile,
            lifecycle=self.lifecycle,
            **clock_kwargs,
        )
        self.strategies: List[DeliveryStrategy] = []
        self.active: List[DeliveryStrategy] = []
        self._sweeper: Optional[asyncio.Task] = None

        logger.info(f"Interaction app on host '{self.profile.host}'")

    # =========================================================================
    # REGISTRATION
    # =========================================================================
    def register(
        self,
        kind: Union[InteractionKind, str],
        routing_key: RoutingKey,
        handler: Callable,
        description: str = None,
        scopes: Iterable[Scope] = (),
        expected_duration: float = None,
        pattern: bool = False,
    ) -> HandlerRegistration:
        """Register a handler. Raises CollisionError on a duplicate exact key."""
        registration = HandlerRegistration.create(
            kind, routing_key, handler,
            description=description,
            scopes=scopes,
            expected_duration=expected_duration,
            pattern=pattern,
        )
        return self.registry.register(registration)

    def deregister(self, routing_key: RoutingKey, kind: Union[InteractionKind, str] = None) -> int:
        return self.registry.deregister(routing_key, kind)

    @property
    def required_scopes(self) -> FrozenSet[Scope]:
        return self.registry.required_scopes

    def _decorator(self, kind: InteractionKind, routing_key: RoutingKey, **options) -> Callable:
        def decorator(func: Callable) -> Callable:
            self.register(kind, routing_key, func, **options)
            return func
        return decorator

    def command(self, name: RoutingKey, **options) -> Callable:
        """
        Register a command handler.

        Usage:
            @app.command("config set", description="Change a setting")
            def handle_config_set(interaction, ctx):
                ...
        """
        return self._decorator(InteractionKind.COMMAND, name, **options)

    def component(self, custom_id: RoutingKey, **options) -> Callable:
        return self._decorator(InteractionKind.COMPONENT, custom_id, **options)

    def form(self, custom_id: RoutingKey, **options) -> Callable:
        return self._decorator(InteractionKind.FORM_SUBMIT, custom_id, **options)

    def autocomplete(self, name: RoutingKey, **options) -> Callable:
        return self._decorator(InteractionKind.AUTOCOMPLETE, name, **options)

    # =========================================================================
    # DISPATCH
    # =========================================================================
    async def dispatch(self, interaction: Interaction) -> DispatchOutcome:
        """Dispatch an interaction that did not come through a strategy."""
        return await self.router.dispatch(interaction)

    def add_strategy(self, strategy: DeliveryStrategy) -> DeliveryStrategy:
        self.strategies.append(strategy)
        return strategy

    # =========================================================================
    # LIFECYCLE
    # =========================================================================
    async def start(self, config: StrategyConfig = None) -> List[DeliveryStrategy]:
        """
        Set up every strategy. A strategy that fails setup is logged and
        skipped; the rest keep running. Returns the active strategies.
        """
        self.active = []
        for strategy in self.strategies:
            try:
                await strategy.setup(config)
            except SetupError as e:
                logger.error(f"Skipping {strategy.name} strategy: {e}")
                continue
            self.active.append(strategy)

        if self.settings.session_sweep_interval > 0 and self._sweeper is None:
            self._sweeper = self.store.start_sweeper(self.settings.session_sweep_interval, self.lifecycle)

        logger.info(f"Started strategies: {[s.name for s in self.active]}")
        return self.active

    async def shutdown(self, grace: float = None) -> Dict[str, int]:
        """
        Stop transports, give in-flight dispatches ``grace`` seconds, then
        release pending replies and tracked resources.
        """
        grace = self.settings.shutdown_grace if grace is None else grace

        for strategy in self.active:
            try:
                await strategy.teardown()
            except Exception as e:
                logger.exception(f"Teardown of {strategy.name} failed: {e}")

        cancelled = await self.router.shutdown(grace)

        dropped = 0
        for strategy in self.active:
            dropped += await strategy.drain()

        released = self.lifecycle.dispose_all()
        self._sweeper = None
        self.active = []

        summary = {"cancelled": cancelled, "droppedReplies": dropped, "released": released}
        logger.info(f"Shutdown complete: {summary}")
        return summary
