# =============================================================================
# Dispatch Errors
# =============================================================================
# Exceptions raised by the dispatch core. NoMatch, HandlerFailed and
# ConstraintViolated are outcomes (see model.py), not exceptions.
# =============================================================================

from typing import Any


class DispatchError(Exception):
    """Base class for dispatch core errors."""


class CollisionError(DispatchError):
    """An exact routing key is already registered for the same kind."""

    def __init__(self, kind: Any, routing_key: str):
        self.kind = kind
        self.routing_key = routing_key
        kind_value = getattr(kind, "value", kind)
        super().__init__(f"Handler already registered for {kind_value} '{routing_key}'")


class SetupError(DispatchError):
    """A delivery strategy failed to initialize."""

    def __init__(self, strategy: str, reason: str):
        self.strategy = strategy
        self.reason = reason
        super().__init__(f"{strategy} setup failed: {reason}")


class ContextStoreError(DispatchError):
    """The context store is unusable; not recoverable by the router."""


class ShutdownError(DispatchError):
    """The dispatch was cut short by process shutdown."""
