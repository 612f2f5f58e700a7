# =============================================================================
# Subscription Scopes
# =============================================================================
# The push channel only delivers event families the connector subscribed to.
# Each registration infers the scopes it needs; the registry keeps the union
# so the connector can request exactly that set at connect time.
# =============================================================================

import re
from enum import Enum
from typing import FrozenSet, Iterable, Pattern, Union


class Scope(str, Enum):
    """Push-channel event families (gateway intents)."""
    GUILDS = "guilds"
    GUILD_MEMBERS = "guild_members"
    GUILD_MESSAGES = "guild_messages"
    GUILD_MESSAGE_REACTIONS = "guild_message_reactions"
    DIRECT_MESSAGES = "direct_messages"
    MESSAGE_CONTENT = "message_content"


SCOPE_BITS = {
    Scope.GUILDS: 1 << 0,
    Scope.GUILD_MEMBERS: 1 << 1,
    Scope.GUILD_MESSAGES: 1 << 9,
    Scope.GUILD_MESSAGE_REACTIONS: 1 << 10,
    Scope.DIRECT_MESSAGES: 1 << 12,
    Scope.MESSAGE_CONTENT: 1 << 15,
}

# Components live on messages, so their handlers need message events
_BASE_SCOPES = {
    "command": frozenset({Scope.GUILDS}),
    "autocomplete": frozenset({Scope.GUILDS}),
    "component": frozenset({Scope.GUILDS, Scope.GUILD_MESSAGES}),
    "form_submit": frozenset({Scope.GUILDS}),
}

# Routing-key prefixes that imply extra scopes
_PREFIX_SCOPES = {
    "dm:": frozenset({Scope.DIRECT_MESSAGES}),
    "member:": frozenset({Scope.GUILD_MEMBERS}),
    "reaction:": frozenset({Scope.GUILD_MESSAGE_REACTIONS}),
}


def infer_scopes(kind, routing_key: Union[str, Pattern],
                 extra: Iterable[Scope] = ()) -> FrozenSet[Scope]:
    """Scopes a handler of this kind and routing key needs."""
    kind_value = getattr(kind, "value", kind)
    scopes = set(_BASE_SCOPES.get(kind_value, frozenset({Scope.GUILDS})))

    key = routing_key.pattern if isinstance(routing_key, re.Pattern) else routing_key
    for prefix, implied in _PREFIX_SCOPES.items():
        if key.startswith(prefix):
            scopes |= implied

    scopes.update(Scope(s) for s in extra)
    return frozenset(scopes)


def union_scopes(scope_sets: Iterable[FrozenSet[Scope]]) -> FrozenSet[Scope]:
    result = set()
    for scopes in scope_sets:
        result |= scopes
    return frozenset(result)


def scopes_to_bitmask(scopes: Iterable[Scope]) -> int:
    mask = 0
    for scope in scopes:
        mask |= SCOPE_BITS[scope]
    return mask
