# =============================================================================
# Dispatch Router
# =============================================================================
# Single entry point for interaction dispatch, whichever transport the
# interaction arrived on.
#
# Per interaction:
#   Received -> Resolving -> Executing -> Succeeded | Failed
#                         -> Unmatched
#                         -> Rejected (constraint)
#
# Exactly one DispatchOutcome is produced per interaction id; a repeated
# dispatch of the same id returns the first outcome without re-running the
# handler.
# =============================================================================

import asyncio
import functools
import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from src.interactions.context_store import ContextSession, ContextStore
from src.interactions.errors import ContextStoreError, ShutdownError
from src.interactions.lifecycle import LifecycleManager
from src.interactions.model import (
    ConstraintViolated,
    DispatchOutcome,
    Handled,
    HandlerFailed,
    Interaction,
    NoMatch,
    coerce_response,
)
from src.interactions.registry import HandlerRegistration, HandlerRegistry
from src.runtime.constraints import PERMISSIVE_PROFILE, ConstraintProfile

logger = logging.getLogger(__name__)

# Completed dispatches remembered for duplicate detection
DEFAULT_DEDUPE_CAPACITY = 4096


class DispatchState(str, Enum):
    RECEIVED = "received"
    RESOLVING = "resolving"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"


# =============================================================================
# HANDLER CONTEXT
# =============================================================================
@dataclass
class HandlerContext:
    """
    Second argument passed to every handler.

    Sync handlers run in the default executor. A thread cannot be cancelled,
    so a sync handler that overruns its budget keeps running after its
    outcome has been settled as ConstraintViolated; its reply is discarded.

    Usage:
        async def handle_feedback(interaction, ctx):
            ctx.start_session(topic=interaction.get("topic"))
            return Response.form("feedback-form", "Feedback")
    """
    interaction: Interaction
    registration: HandlerRegistration
    store: ContextStore
    lifecycle: LifecycleManager
    session: Optional[ContextSession] = None
    loop: Optional[asyncio.AbstractEventLoop] = None

    def start_session(self, ttl: float = None, **data) -> ContextSession:
        """Create a session for this interaction's chain and link it."""
        correlation_id = self.store.create_session(self.interaction.origin_user, ttl=ttl, data=data)
        self.store.link_child(self.interaction.id, correlation_id)
        self.session = self.store.get(correlation_id)
        return self.session

    def remember(self, **data) -> ContextSession:
        """Merge data into the current session, starting one if needed."""
        if self.session is None:
            return self.start_session(**data)
        merged = self.store.merge(self.session.correlation_id, data)
        if merged is None:
            return self.start_session(**data)
        self.session = merged
        return merged

    def clear_session(self) -> bool:
        if self.session is None:
            return False
        cleared = self.store.clear(self.session.correlation_id)
        self.session = None
        return cleared

    def call_later(self, delay: float, callback: Callable, *args) -> asyncio.TimerHandle:
        """Schedule a callback owned by this handler (released on deregister).

        Call from async handlers; the loop is not thread-safe for sync ones.
        """
        return self.lifecycle.call_later(self.registration.instance, delay, callback, *args, loop=self.loop)


# =============================================================================
# DURATION ESTIMATES
# =============================================================================
class DurationEstimator:
    """Exponentially weighted average of handler run times."""

    def __init__(self, alpha: float = 0.3):
        self.alpha = alpha
        self._estimates: Dict[int, float] = {}

    def record(self, registration: HandlerRegistration, seconds: float) -> None:
        key = id(registration)
        previous = self._estimates.get(key)
        if previous is None:
            self._estimates[key] = seconds
        else:
            self._estimates[key] = self.alpha * seconds + (1 - self.alpha) * previous

    def estimate(self, registration: HandlerRegistration) -> Optional[float]:
        if registration.expected_duration is not None:
            return registration.expected_duration
        return self._estimates.get(id(registration))


# =============================================================================
# ROUTER
# =============================================================================
class DispatchRouter:
    """
    Matches interactions to handlers and runs them under a constraint profile.

    Args:
        registry: Handler registry
        store: Context store for multi-step sessions
        profile: Host constraint profile (read-only)
        lifecycle: Lifecycle manager (defaults to the registry's)
        clock: Time source returning epoch seconds
        dedupe_capacity: Finished dispatches remembered for duplicate
            detection. Once an id has been evicted a redelivery of it runs
            the handler again.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        store: ContextStore = None,
        profile: ConstraintProfile = None,
        lifecycle: LifecycleManager = None,
        clock: Callable[[], float] = time.time,
        dedupe_capacity: int = DEFAULT_DEDUPE_CAPACITY,
    ):
        self.registry = registry
        self.store = store or ContextStore()
        self.profile = profile or PERMISSIVE_PROFILE
        self.lifecycle = lifecycle or registry.lifecycle
        self.estimator = DurationEstimator()
        self._clock = clock
        self._dedupe_capacity = dedupe_capacity
        self._dispatches: "OrderedDict[str, asyncio.Future]" = OrderedDict()
        self._in_flight: Set[asyncio.Task] = set()
        self._closing = False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def dispatch(self, interaction: Interaction, deadline: float = None) -> DispatchOutcome:
        """
        Dispatch an interaction to its handler.

        Returns the single outcome for this interaction id. Context store
        failures propagate; handler failures never do.

        Args:
            interaction: Normalized interaction
            deadline: Epoch time by which the outcome must be settled, for
                callers that cannot wait past it. The handler is cut off
                there and the outcome recorded for the id is
                ConstraintViolated. A duplicate dispatch ignores it.
        """
        existing = self._dispatches.get(interaction.id)
        if existing is not None:
            logger.warning(f"Duplicate dispatch for interaction {interaction.id}; returning first outcome")
            return await asyncio.shield(existing)

        if self._closing:
            return HandlerFailed(interaction.id, error=ShutdownError("router is shutting down"))

        task = asyncio.get_running_loop().create_task(self._run(interaction, deadline))
        self._dispatches[interaction.id] = task
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        self._trim_dispatches()
        return await asyncio.shield(task)

    def _trim_dispatches(self) -> None:
        while len(self._dispatches) > self._dedupe_capacity:
            oldest_id, oldest = next(iter(self._dispatches.items()))
            if not oldest.done():
                break
            del self._dispatches[oldest_id]

    def _transition(self, interaction: Interaction, state: DispatchState) -> None:
        logger.debug(f"Interaction {interaction.id} ({interaction.kind.value} '{interaction.routing_key}') -> {state.value}")

    async def _run(self, interaction: Interaction, deadline: Optional[float] = None) -> DispatchOutcome:
        self._transition(interaction, DispatchState.RECEIVED)

        # 1. Resolve handler
        self._transition(interaction, DispatchState.RESOLVING)
        registration = self.registry.resolve(interaction.kind, interaction.routing_key)
        if registration is None:
            self._transition(interaction, DispatchState.UNMATCHED)
            logger.info(f"No handler for {interaction.kind.value} '{interaction.routing_key}'")
            return NoMatch(interaction.id, routing_key=interaction.routing_key)

        # 2. Resolve session for follow-up steps
        session = self._resolve_session(interaction)

        # 3. Constraint pre-check
        expected = self.estimator.estimate(registration)
        if (expected is not None
                and expected > self.profile.max_execution_time
                and not self.profile.supports_background_execution):
            self._transition(interaction, DispatchState.REJECTED)
            reason = (f"expected duration {expected:.3f}s exceeds host limit "
                      f"{self.profile.max_execution_time:.3f}s")
            logger.warning(f"Rejected interaction {interaction.id}: {reason}")
            return ConstraintViolated(interaction.id, reason=reason)

        # 4. Invoke
        ctx = HandlerContext(
            interaction=interaction,
            registration=registration,
            store=self.store,
            lifecycle=self.lifecycle,
            session=session,
            loop=asyncio.get_running_loop(),
        )
        return await self._invoke(interaction, registration, ctx, deadline)

    def _resolve_session(self, interaction: Interaction) -> Optional[ContextSession]:
        if not interaction.parent_interaction_id:
            return None
        try:
            session = self.store.resolve_interaction(interaction.parent_interaction_id)
            if session is None:
                correlation_id = self.store.create_session(interaction.origin_user)
                self.store.link_child(interaction.parent_interaction_id, correlation_id)
                session = self.store.get(correlation_id)
                logger.info(
                    f"No session for parent {interaction.parent_interaction_id}; "
                    f"started empty session {correlation_id}"
                )
            self.store.link_child(interaction.id, session.correlation_id)
            return session
        except ContextStoreError:
            raise
        except Exception as e:
            raise ContextStoreError(f"Session lookup failed for {interaction.id}: {e}") from e

    def _time_budget(self, interaction: Interaction, deadline: Optional[float] = None) -> Optional[float]:
        """Seconds the handler may run; None = unbounded."""
        budgets = []
        if deadline is not None:
            budgets.append(deadline - self._clock())
        if self.profile.is_time_limited:
            budgets.append(self.profile.max_execution_time)
        if not self.profile.supports_background_execution:
            budgets.append(interaction.ack_deadline - self._clock())
        return min(budgets) if budgets else None

    async def _call_handler(self, registration: HandlerRegistration, interaction: Interaction,
                            ctx: HandlerContext) -> Any:
        handler = registration.instance
        if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(getattr(handler, "__call__", None)):
            return await handler(interaction, ctx)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, functools.partial(handler, interaction, ctx))
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _invoke(self, interaction: Interaction, registration: HandlerRegistration,
                      ctx: HandlerContext, deadline: Optional[float] = None) -> DispatchOutcome:
        self._transition(interaction, DispatchState.EXECUTING)
        budget = self._time_budget(interaction, deadline)
        if budget is not None and budget <= 0:
            self._transition(interaction, DispatchState.REJECTED)
            return ConstraintViolated(interaction.id, reason="ack deadline passed before execution")

        started = time.monotonic()
        handler_task = asyncio.ensure_future(self._call_handler(registration, interaction, ctx))

        # Race the handler against its budget; wait() drops its timer once the handler finishes
        try:
            done, _ = await asyncio.wait({handler_task}, timeout=budget)
        except asyncio.CancelledError:
            handler_task.cancel()
            if not self._closing:
                raise
            self._transition(interaction, DispatchState.FAILED)
            logger.warning(f"Interaction {interaction.id} cancelled by shutdown")
            return HandlerFailed(interaction.id, error=ShutdownError("cancelled during shutdown"))

        if not done:
            # Sync handlers keep running in the executor thread; only the wait ends
            handler_task.cancel()
            self.estimator.record(registration, time.monotonic() - started)
            self._transition(interaction, DispatchState.REJECTED)
            reason = f"handler '{registration.key}' exceeded {budget:.3f}s execution budget"
            logger.warning(f"Interaction {interaction.id}: {reason}")
            return ConstraintViolated(interaction.id, reason=reason)

        try:
            response = coerce_response(handler_task.result())
        except Exception as e:
            self.estimator.record(registration, time.monotonic() - started)
            self._transition(interaction, DispatchState.FAILED)
            logger.exception(f"Handler error for {interaction.kind.value} '{interaction.routing_key}': {e}")
            return HandlerFailed(interaction.id, error=e)

        self.estimator.record(registration, time.monotonic() - started)
        self._transition(interaction, DispatchState.SUCCEEDED)
        return Handled(interaction.id, response=response)

    # =========================================================================
    # SHUTDOWN
    # =========================================================================
    async def shutdown(self, grace: float = 10.0) -> int:
        """
        Stop accepting dispatches, let in-flight ones finish within ``grace``
        seconds, then cancel the rest. Returns the number cancelled.
        """
        self._closing = True
        pending = set(self._in_flight)
        if not pending:
            return 0

        logger.info(f"Waiting up to {grace}s for {len(pending)} in-flight dispatches")
        done, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)
            logger.warning(f"Cancelled {len(still_running)} dispatches after grace period")
        return len(still_running)
