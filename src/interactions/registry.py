# =============================================================================
# Handler Registry
# =============================================================================
# Routable handlers keyed by (kind, routing key). Exact keys must be unique
# per kind; regex keys are matched in registration order after exact keys.
#
# Usage:
#     registry = HandlerRegistry(lifecycle)
#     registry.register(HandlerRegistration.create("command", "ping", handle_ping))
#     registration = registry.resolve(InteractionKind.COMMAND, "ping")
# =============================================================================

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Pattern, Union

from src.interactions.errors import CollisionError
from src.interactions.lifecycle import LifecycleManager
from src.interactions.locks import ReadWriteLock
from src.interactions.model import CONTEXT_SEPARATOR, InteractionKind
from src.interactions.scopes import Scope, infer_scopes, scopes_to_bitmask, union_scopes

logger = logging.getLogger(__name__)

RoutingKey = Union[str, Pattern]
HandlerFunc = Callable[..., Any]


@dataclass(frozen=True)
class HandlerRegistration:
    """
    A routable handler.

    Attributes:
        routing_key: Exact string or compiled regex
        kind: Interaction kind this handler answers
        required_scopes: Push-channel scopes the handler needs
        instance: The handler callable, invoked as handler(interaction, ctx)
        description: Human readable summary
        expected_duration: Declared run time in seconds, if known
    """
    routing_key: RoutingKey
    kind: InteractionKind
    required_scopes: FrozenSet[Scope]
    instance: HandlerFunc
    description: str = ""
    expected_duration: Optional[float] = None

    @property
    def is_pattern(self) -> bool:
        return isinstance(self.routing_key, re.Pattern)

    @property
    def key(self) -> str:
        """Routing key as a string (pattern source for regex keys)."""
        return self.routing_key.pattern if self.is_pattern else self.routing_key

    def matches(self, routing_key: str) -> bool:
        if self.is_pattern:
            return self.routing_key.fullmatch(routing_key) is not None
        return self.routing_key == routing_key

    @classmethod
    def create(
        cls,
        kind: Union[InteractionKind, str],
        routing_key: RoutingKey,
        handler: HandlerFunc,
        description: str = None,
        scopes: Iterable[Scope] = (),
        expected_duration: float = None,
        pattern: bool = False,
    ) -> "HandlerRegistration":
        """Build a registration, inferring its required scopes."""
        kind = InteractionKind(kind)
        if (kind in (InteractionKind.COMPONENT, InteractionKind.FORM_SUBMIT)
                and not pattern and isinstance(routing_key, str)
                and CONTEXT_SEPARATOR in routing_key):
            raise ValueError(
                f"{kind.value} key '{routing_key}' may not contain '{CONTEXT_SEPARATOR}' "
                f"(reserved for the parent interaction id)"
            )
        if pattern and isinstance(routing_key, str):
            routing_key = re.compile(routing_key)

        desc = description
        if not desc and handler.__doc__:
            desc = handler.__doc__.split("\n")[0].strip()
        if not desc:
            key = routing_key.pattern if isinstance(routing_key, re.Pattern) else routing_key
            desc = f"Handle {kind.value} {key}"

        return cls(
            routing_key=routing_key,
            kind=kind,
            required_scopes=infer_scopes(kind, routing_key, scopes),
            instance=handler,
            description=desc,
            expected_duration=expected_duration,
        )


class HandlerRegistry:
    """Registry of handlers shared by the router and delivery strategies."""

    def __init__(self, lifecycle: LifecycleManager = None):
        self.lifecycle = lifecycle or LifecycleManager()
        self._lock = ReadWriteLock()
        self._exact: Dict[InteractionKind, Dict[str, HandlerRegistration]] = {k: {} for k in InteractionKind}
        self._patterns: Dict[InteractionKind, List[HandlerRegistration]] = {k: [] for k in InteractionKind}
        self._required_scopes: FrozenSet[Scope] = frozenset()

    # =========================================================================
    # MUTATIONS
    # =========================================================================
    def register(self, registration: HandlerRegistration) -> HandlerRegistration:
        """
        Add a registration.

        Raises:
            CollisionError: an exact key is already registered for the kind
        """
        with self._lock.write():
            if registration.is_pattern:
                self._warn_overlaps(registration)
                self._patterns[registration.kind].append(registration)
            else:
                exact = self._exact[registration.kind]
                if registration.routing_key in exact:
                    logger.error(f"Routing key collision: {registration.kind.value} '{registration.routing_key}'")
                    raise CollisionError(registration.kind, registration.routing_key)
                exact[registration.routing_key] = registration
            self._recompute_scopes()

        logger.info(f"Registered {registration.kind.value} handler '{registration.key}'")
        return registration

    def deregister(self, routing_key: RoutingKey, kind: Union[InteractionKind, str] = None) -> int:
        """
        Remove registrations for a routing key and release their resources.

        Returns the number of registrations removed.
        """
        key = routing_key.pattern if isinstance(routing_key, re.Pattern) else routing_key
        kinds = [InteractionKind(kind)] if kind else list(InteractionKind)
        removed: List[HandlerRegistration] = []

        with self._lock.write():
            for k in kinds:
                registration = self._exact[k].pop(key, None)
                if registration is not None:
                    removed.append(registration)
                kept = []
                for registration in self._patterns[k]:
                    if registration.key == key:
                        removed.append(registration)
                    else:
                        kept.append(registration)
                self._patterns[k] = kept
            if removed:
                self._recompute_scopes()

        for registration in removed:
            self.lifecycle.dispose(registration.instance)
            logger.info(f"Deregistered {registration.kind.value} handler '{registration.key}'")
        return len(removed)

    def _warn_overlaps(self, registration: HandlerRegistration) -> None:
        for existing in self._patterns[registration.kind]:
            if existing.key == registration.key:
                logger.warning(
                    f"Pattern '{registration.key}' already registered for {registration.kind.value}; "
                    f"the earlier registration wins"
                )
        for exact_key in self._exact[registration.kind]:
            if registration.matches(exact_key):
                logger.warning(
                    f"Pattern '{registration.key}' overlaps exact key '{exact_key}'; exact match wins"
                )

    def _recompute_scopes(self) -> None:
        regs = [r for by_key in self._exact.values() for r in by_key.values()]
        regs.extend(r for patterns in self._patterns.values() for r in patterns)
        self._required_scopes = union_scopes(r.required_scopes for r in regs)

    # =========================================================================
    # LOOKUPS
    # =========================================================================
    def resolve(self, kind: Union[InteractionKind, str], routing_key: str) -> Optional[HandlerRegistration]:
        """Exact match first, then the first matching pattern, else None."""
        kind = InteractionKind(kind)
        with self._lock.read():
            registration = self._exact[kind].get(routing_key)
            if registration is not None:
                return registration
            for registration in self._patterns[kind]:
                if registration.matches(routing_key):
                    return registration
        return None

    @property
    def required_scopes(self) -> FrozenSet[Scope]:
        """Union of every registration's scopes."""
        return self._required_scopes

    @property
    def scope_bitmask(self) -> int:
        return scopes_to_bitmask(self._required_scopes)

    def registrations(self) -> List[HandlerRegistration]:
        with self._lock.read():
            result = []
            for kind in InteractionKind:
                result.extend(self._exact[kind].values())
                result.extend(self._patterns[kind])
            return result

    def list_handlers(self) -> Dict[str, str]:
        """List all handlers with descriptions, keyed '<kind>:<routing key>'."""
        return {f"{r.kind.value}:{r.key}": r.description for r in self.registrations()}

    def get_handlers_by_kind(self) -> Dict[str, List[str]]:
        kinds: Dict[str, List[str]] = {}
        for registration in self.registrations():
            kinds.setdefault(registration.kind.value, []).append(registration.key)
        return kinds

    def __len__(self) -> int:
        return len(self.registrations())
