# =============================================================================
# Delivery Strategy Contract
# =============================================================================
# A delivery strategy owns one transport. It turns transport-native payloads
# into Interactions, hands them to the router and turns the resulting
# DispatchOutcome back into whatever the transport expects.
# =============================================================================

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from src.delivery.normalize import DEFAULT_FALLBACK_MESSAGES, normalize_interaction
from src.interactions.model import DispatchOutcome, Interaction, InteractionSource, OutcomeKind
from src.interactions.router import DispatchRouter
from src.runtime.constraints import ConstraintProfile

logger = logging.getLogger(__name__)


@dataclass
class StrategyConfig:
    """
    Options shared by delivery strategies.

    Attributes:
        fallback_messages: User-facing text per non-handled outcome kind
        drain_timeout: Seconds teardown waits for pending replies
    """
    fallback_messages: Dict[OutcomeKind, str] = field(
        default_factory=lambda: dict(DEFAULT_FALLBACK_MESSAGES)
    )
    drain_timeout: float = 5.0


class DeliveryStrategy(ABC):
    """Transport adapter between raw events and the dispatch router."""

    name = "strategy"
    source = InteractionSource.DIRECT

    def __init__(self, router: DispatchRouter, profile: ConstraintProfile = None,
                 clock: Callable[[], float] = time.time):
        self.router = router
        self.profile = profile or router.profile
        self.config = StrategyConfig()
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    @abstractmethod
    async def setup(self, config: Optional[StrategyConfig] = None) -> None:
        """Initialize the transport. Raises SetupError."""

    def normalize(self, raw_event: Dict[str, Any]) -> Interaction:
        """Build an Interaction from a raw platform payload."""
        return normalize_interaction(raw_event, source=self.source, received_at=self._clock())

    @abstractmethod
    def denormalize(self, outcome: DispatchOutcome, interaction: Interaction) -> Any:
        """Build the transport reply for an outcome."""

    @abstractmethod
    async def teardown(self) -> None:
        """Stop taking new events."""

    def _spawn(self, coro) -> asyncio.Task:
        """Run background work that teardown/drain will wait for."""
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: float = None) -> int:
        """Wait for pending replies; returns how many were still running."""
        pending = set(self._pending)
        if not pending:
            return 0
        timeout = self.config.drain_timeout if timeout is None else timeout
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"{self.name}: dropped {len(still_running)} pending replies on drain")
        return len(still_running)
