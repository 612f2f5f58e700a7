# =============================================================================
# Canonical Interaction Model
# =============================================================================
# Every inbound event (push channel, webhook, direct call) is normalized
# into an Interaction. Handlers answer with a Response and the router wraps
# the result in exactly one DispatchOutcome.
# =============================================================================

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Fixed by the outer protocol: a reply must be issued within 3 seconds
ACK_DEADLINE_SECONDS = 3.0

# Joins a component or form custom id to the id of the interaction that
# produced it; reserved in those routing keys
CONTEXT_SEPARATOR = "|"


class InteractionKind(str, Enum):
    """Types of interactions that can be routed."""
    COMMAND = "command"
    COMPONENT = "component"
    FORM_SUBMIT = "form_submit"
    AUTOCOMPLETE = "autocomplete"


class InteractionSource(str, Enum):
    """Transport an interaction arrived on."""
    PUSH = "push"
    WEBHOOK = "webhook"
    DIRECT = "direct"


@dataclass(frozen=True)
class OriginScope:
    """Where an interaction happened (both parts optional for DMs)."""
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class Interaction:
    """
    Normalized inbound event requiring a response.

    Attributes:
        id: Platform-unique interaction id
        kind: Interaction type (command, component, form_submit, autocomplete)
        routing_key: Command name or custom component/form identifier
        payload: Kind-specific data (options, values, focused option...)
        origin_user: Id of the invoking user
        origin_scope: Guild/channel the interaction came from
        received_at: Epoch seconds when the interaction was built
        ack_deadline: Epoch seconds by which a response must be produced
        parent_interaction_id: Prior interaction this one continues
        token: Callback token for out-of-band replies
        application_id: Application the interaction targets
        source: Transport the interaction arrived on
    """
    id: str
    kind: InteractionKind
    routing_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    origin_user: str = ""
    origin_scope: Optional[OriginScope] = None
    received_at: float = field(default_factory=time.time)
    ack_deadline: float = 0.0
    parent_interaction_id: Optional[str] = None
    token: str = ""
    application_id: str = ""
    source: InteractionSource = InteractionSource.DIRECT

    def __post_init__(self):
        if not self.ack_deadline:
            object.__setattr__(self, "ack_deadline", self.received_at + ACK_DEADLINE_SECONDS)

    def remaining(self, now: float = None) -> float:
        """Seconds left until the ack deadline (negative once passed)."""
        return self.ack_deadline - (time.time() if now is None else now)

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from payload."""
        return self.payload.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "routingKey": self.routing_key,
            "payload": self.payload,
            "originUser": self.origin_user,
            "guildId": self.origin_scope.guild_id if self.origin_scope else None,
            "channelId": self.origin_scope.channel_id if self.origin_scope else None,
            "receivedAt": self.received_at,
            "ackDeadline": self.ack_deadline,
            "parentInteractionId": self.parent_interaction_id,
            "source": self.source.value,
        }

    @classmethod
    def create(
        cls,
        kind: Union[InteractionKind, str],
        routing_key: str,
        payload: Dict[str, Any] = None,
        origin_user: str = "",
        interaction_id: str = None,
        parent_interaction_id: str = None,
        origin_scope: OriginScope = None,
        received_at: float = None,
    ) -> "Interaction":
        """Create an interaction directly (tests, CLI, internal jobs)."""
        return cls(
            id=interaction_id or str(uuid.uuid4()),
            kind=InteractionKind(kind),
            routing_key=routing_key,
            payload=payload or {},
            origin_user=origin_user,
            origin_scope=origin_scope,
            received_at=time.time() if received_at is None else received_at,
            parent_interaction_id=parent_interaction_id,
            source=InteractionSource.DIRECT,
        )


# =============================================================================
# RESPONSES
# =============================================================================
class ResponseType(str, Enum):
    """Canonical reply types."""
    MESSAGE = "message"                  # new message in the channel
    UPDATE = "update"                    # edit the message a component sits on
    FORM = "form"                        # open a form (modal)
    CHOICES = "choices"                  # autocomplete suggestions
    DEFERRED = "deferred"                # "thinking..." placeholder, real reply follows
    DEFERRED_UPDATE = "deferred_update"  # acknowledge a component, edit follows
    ACK = "ack"                          # acknowledge without visible output


@dataclass(frozen=True)
class Response:
    """Canonical handler response."""
    type: ResponseType
    content: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    ephemeral: bool = False
    custom_id: Optional[str] = None
    title: Optional[str] = None
    components: List[Any] = field(default_factory=list)
    choices: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def message(cls, content: str = None, ephemeral: bool = False,
                components: List[Any] = None, **data) -> "Response":
        return cls(ResponseType.MESSAGE, content=content, ephemeral=ephemeral,
                   components=components or [], data=data)

    @classmethod
    def update(cls, content: str = None, components: List[Any] = None, **data) -> "Response":
        return cls(ResponseType.UPDATE, content=content, components=components or [], data=data)

    @classmethod
    def form(cls, custom_id: str, title: str, components: List[Any] = None) -> "Response":
        return cls(ResponseType.FORM, custom_id=custom_id, title=title, components=components or [])

    @classmethod
    def autocomplete(cls, choices: List[Any]) -> "Response":
        normalized = [
            c if isinstance(c, dict) else {"name": str(c), "value": c}
            for c in choices
        ]
        return cls(ResponseType.CHOICES, choices=normalized)

    @classmethod
    def deferred(cls, ephemeral: bool = False) -> "Response":
        return cls(ResponseType.DEFERRED, ephemeral=ephemeral)

    @classmethod
    def deferred_update(cls) -> "Response":
        return cls(ResponseType.DEFERRED_UPDATE)

    @classmethod
    def ack(cls) -> "Response":
        return cls(ResponseType.ACK)


def coerce_response(result: Any) -> Response:
    """Turn a handler return value into a Response."""
    if isinstance(result, Response):
        return result
    if result is None:
        return Response.ack()
    if isinstance(result, str):
        return Response.message(result)
    if isinstance(result, dict):
        data = dict(result)
        content = data.pop("content", None)
        ephemeral = bool(data.pop("ephemeral", False))
        components = data.pop("components", None)
        return Response.message(content, ephemeral=ephemeral, components=components, **data)
    raise TypeError(f"Handler returned unsupported type {type(result).__name__}")


# =============================================================================
# DISPATCH OUTCOMES
# =============================================================================
class OutcomeKind(str, Enum):
    HANDLED = "handled"
    NO_MATCH = "no_match"
    HANDLER_FAILED = "handler_failed"
    CONSTRAINT_VIOLATED = "constraint_violated"


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of dispatching one interaction."""
    interaction_id: str

    kind = None  # set by each variant

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.HANDLED

    def to_dict(self) -> Dict[str, Any]:
        return {"interactionId": self.interaction_id, "outcome": self.kind.value}


@dataclass(frozen=True)
class Handled(DispatchOutcome):
    response: Response = field(default_factory=Response.ack)
    kind = OutcomeKind.HANDLED


@dataclass(frozen=True)
class NoMatch(DispatchOutcome):
    routing_key: str = ""
    kind = OutcomeKind.NO_MATCH

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "routingKey": self.routing_key}


@dataclass(frozen=True)
class HandlerFailed(DispatchOutcome):
    error: Optional[BaseException] = None
    kind = OutcomeKind.HANDLER_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "error": repr(self.error)}


@dataclass(frozen=True)
class ConstraintViolated(DispatchOutcome):
    reason: str = ""
    kind = OutcomeKind.CONSTRAINT_VIOLATED

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason}
