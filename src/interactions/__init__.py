# =============================================================================
# Interactions Package - Registration & Dispatch Core
# =============================================================================
# Canonical interaction model, handler registry, context sessions,
# lifecycle tracking and the dispatch router.
# =============================================================================

from src.interactions.context_store import ContextSession, ContextStore, MemorySessionBackend
from src.interactions.errors import (
    CollisionError,
    ContextStoreError,
    DispatchError,
    SetupError,
    ShutdownError,
)
from src.interactions.lifecycle import LifecycleManager
from src.interactions.model import (
    ACK_DEADLINE_SECONDS,
    ConstraintViolated,
    DispatchOutcome,
    Handled,
    HandlerFailed,
    Interaction,
    InteractionKind,
    InteractionSource,
    NoMatch,
    OriginScope,
    OutcomeKind,
    Response,
    ResponseType,
)
from src.interactions.registry import HandlerRegistration, HandlerRegistry
from src.interactions.router import DispatchRouter, HandlerContext
from src.interactions.scopes import Scope

__all__ = [
    "ContextSession",
    "ContextStore",
    "MemorySessionBackend",
    "CollisionError",
    "ContextStoreError",
    "DispatchError",
    "SetupError",
    "ShutdownError",
    "LifecycleManager",
    "ACK_DEADLINE_SECONDS",
    "ConstraintViolated",
    "DispatchOutcome",
    "Handled",
    "HandlerFailed",
    "Interaction",
    "InteractionKind",
    "InteractionSource",
    "NoMatch",
    "OriginScope",
    "OutcomeKind",
    "Response",
    "ResponseType",
    "HandlerRegistration",
    "HandlerRegistry",
    "DispatchRouter",
    "HandlerContext",
    "Scope",
]
