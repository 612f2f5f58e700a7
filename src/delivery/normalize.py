# =============================================================================
# Interaction Normalizer
# =============================================================================
# Translates platform interaction payloads into canonical Interactions and
# canonical responses back into callback bodies. Both delivery strategies
# share it; only how the body travels differs.
#
# Custom ids of forms and components are suffixed with the id of the
# interaction that produced them ("feedback|123"), so the follow-up
# interaction carries its parent without handlers tracking ids.
# =============================================================================

import logging
import time
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

from src.interactions.model import (
    ACK_DEADLINE_SECONDS,
    CONTEXT_SEPARATOR,
    DispatchOutcome,
    Interaction,
    InteractionKind,
    InteractionSource,
    OriginScope,
    OutcomeKind,
    Response,
    ResponseType,
)

logger = logging.getLogger(__name__)

EPHEMERAL_FLAG = 1 << 6
MAX_CUSTOM_ID_LENGTH = 100


class RawInteractionType(IntEnum):
    PING = 1
    APPLICATION_COMMAND = 2
    MESSAGE_COMPONENT = 3
    APPLICATION_COMMAND_AUTOCOMPLETE = 4
    MODAL_SUBMIT = 5


class CallbackType(IntEnum):
    PONG = 1
    CHANNEL_MESSAGE_WITH_SOURCE = 4
    DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE = 5
    DEFERRED_UPDATE_MESSAGE = 6
    UPDATE_MESSAGE = 7
    APPLICATION_COMMAND_AUTOCOMPLETE_RESULT = 8
    MODAL = 9


# Option types that nest further options
_SUB_COMMAND = 1
_SUB_COMMAND_GROUP = 2

_KIND_BY_TYPE = {
    RawInteractionType.APPLICATION_COMMAND: InteractionKind.COMMAND,
    RawInteractionType.MESSAGE_COMPONENT: InteractionKind.COMPONENT,
    RawInteractionType.APPLICATION_COMMAND_AUTOCOMPLETE: InteractionKind.AUTOCOMPLETE,
    RawInteractionType.MODAL_SUBMIT: InteractionKind.FORM_SUBMIT,
}

DEFAULT_FALLBACK_MESSAGES = {
    OutcomeKind.NO_MATCH: "This interaction is no longer available.",
    OutcomeKind.HANDLER_FAILED: "Something went wrong while handling this interaction.",
    OutcomeKind.CONSTRAINT_VIOLATED: "This is taking too long to process. Please try again.",
}


class NormalizationError(ValueError):
    """Raw payload cannot be turned into an Interaction."""


# =============================================================================
# INBOUND
# =============================================================================
def is_ping(raw: Dict[str, Any]) -> bool:
    return raw.get("type") == RawInteractionType.PING


def split_custom_id(custom_id: str) -> Tuple[str, Optional[str]]:
    """Split 'key|parent-id' into (key, parent id); the last separator wins."""
    if CONTEXT_SEPARATOR in custom_id:
        key, _, parent = custom_id.rpartition(CONTEXT_SEPARATOR)
        return key, parent or None
    return custom_id, None


def attach_context(custom_id: str, interaction_id: str) -> str:
    """Append the producing interaction id to a custom id."""
    key, _ = split_custom_id(custom_id)
    tagged = f"{key}{CONTEXT_SEPARATOR}{interaction_id}"
    if len(tagged) > MAX_CUSTOM_ID_LENGTH:
        logger.warning(f"Custom id '{key}' too long to carry context; sending without it")
        return key
    return tagged


def _flatten_options(options: List[Dict[str, Any]]) -> Tuple[List[str], Dict[str, Any], Optional[str]]:
    """Walk subcommand nesting; returns (path, option values, focused option)."""
    path: List[str] = []
    values: Dict[str, Any] = {}
    focused = None
    current = options or []
    while current:
        nested = next((o for o in current if o.get("type") in (_SUB_COMMAND, _SUB_COMMAND_GROUP)), None)
        if nested is None:
            for option in current:
                values[option.get("name")] = option.get("value")
                if option.get("focused"):
                    focused = option.get("name")
            break
        path.append(nested.get("name", ""))
        current = nested.get("options") or []
    return path, values, focused


def _form_fields(components: List[Dict[str, Any]]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for component in components or []:
        if "components" in component:
            fields.update(_form_fields(component["components"]))
        elif component.get("custom_id"):
            fields[component["custom_id"]] = component.get("value", component.get("values"))
    return fields


def _origin_user(raw: Dict[str, Any]) -> str:
    member = raw.get("member") or {}
    user = member.get("user") or raw.get("user") or {}
    return str(user.get("id", ""))


def _message_parent(raw: Dict[str, Any]) -> Optional[str]:
    message = raw.get("message") or {}
    metadata = message.get("interaction_metadata") or message.get("interaction") or {}
    parent = metadata.get("id")
    return str(parent) if parent else None


def normalize_interaction(raw: Dict[str, Any], source: InteractionSource = InteractionSource.WEBHOOK,
                          received_at: float = None) -> Interaction:
    """
    Build an Interaction from a platform interaction payload.

    Raises:
        NormalizationError: unsupported type or missing fields
    """
    if not isinstance(raw, dict):
        raise NormalizationError("Interaction payload must be an object")

    try:
        raw_type = RawInteractionType(raw.get("type"))
    except ValueError:
        raise NormalizationError(f"Unsupported interaction type: {raw.get('type')!r}")

    kind = _KIND_BY_TYPE.get(raw_type)
    if kind is None:
        raise NormalizationError(f"Interaction type {raw_type.name} is not routable")

    interaction_id = raw.get("id")
    if not interaction_id:
        raise NormalizationError("Interaction payload has no id")

    data = raw.get("data") or {}
    parent_id = None

    if kind in (InteractionKind.COMMAND, InteractionKind.AUTOCOMPLETE):
        name = data.get("name")
        if not name:
            raise NormalizationError("Command interaction has no name")
        path, options, focused = _flatten_options(data.get("options") or [])
        routing_key = " ".join([name, *path])
        payload = {
            "commandId": data.get("id"),
            "commandType": data.get("type", 1),
            "options": options,
            "resolved": data.get("resolved", {}),
        }
        if kind == InteractionKind.AUTOCOMPLETE:
            payload["focused"] = focused
    else:
        custom_id = data.get("custom_id")
        if not custom_id:
            raise NormalizationError(f"{kind.value} interaction has no custom_id")
        routing_key, parent_id = split_custom_id(custom_id)
        if kind == InteractionKind.COMPONENT:
            payload = {
                "componentType": data.get("component_type"),
                "values": data.get("values", []),
                "messageId": (raw.get("message") or {}).get("id"),
            }
        else:
            payload = {"fields": _form_fields(data.get("components") or [])}
        parent_id = parent_id or _message_parent(raw)

    received = time.time() if received_at is None else received_at
    guild_id = raw.get("guild_id")
    channel_id = raw.get("channel_id") or (raw.get("channel") or {}).get("id")

    return Interaction(
        id=str(interaction_id),
        kind=kind,
        routing_key=routing_key,
        payload=payload,
        origin_user=_origin_user(raw),
        origin_scope=OriginScope(guild_id=guild_id, channel_id=channel_id) if (guild_id or channel_id) else None,
        received_at=received,
        ack_deadline=received + ACK_DEADLINE_SECONDS,
        parent_interaction_id=parent_id,
        token=raw.get("token", ""),
        application_id=str(raw.get("application_id", "")),
        source=source,
    )


# =============================================================================
# OUTBOUND
# =============================================================================
def _tag_components(components: List[Any], interaction_id: str) -> List[Any]:
    tagged = []
    for component in components:
        if isinstance(component, dict):
            component = dict(component)
            if "components" in component:
                component["components"] = _tag_components(component["components"], interaction_id)
            if component.get("custom_id"):
                component["custom_id"] = attach_context(component["custom_id"], interaction_id)
        tagged.append(component)
    return tagged


def build_message_data(response: Response, interaction: Interaction) -> Dict[str, Any]:
    """Message body for callbacks, follow-ups and edits."""
    body: Dict[str, Any] = dict(response.data)
    if response.content is not None:
        body["content"] = response.content
    if response.components:
        body["components"] = _tag_components(response.components, interaction.id)
    if response.ephemeral:
        body["flags"] = body.get("flags", 0) | EPHEMERAL_FLAG
    return body


def build_callback(response: Response, interaction: Interaction) -> Dict[str, Any]:
    """Interaction callback body for a canonical response."""
    rtype = response.type

    if rtype == ResponseType.MESSAGE:
        return {"type": CallbackType.CHANNEL_MESSAGE_WITH_SOURCE, "data": build_message_data(response, interaction)}
    if rtype == ResponseType.UPDATE:
        return {"type": CallbackType.UPDATE_MESSAGE, "data": build_message_data(response, interaction)}
    if rtype == ResponseType.FORM:
        return {
            "type": CallbackType.MODAL,
            "data": {
                "custom_id": attach_context(response.custom_id or "", interaction.id),
                "title": response.title or "",
                "components": response.components,
            },
        }
    if rtype == ResponseType.CHOICES:
        return {"type": CallbackType.APPLICATION_COMMAND_AUTOCOMPLETE_RESULT, "data": {"choices": response.choices}}
    if rtype == ResponseType.DEFERRED_UPDATE:
        return {"type": CallbackType.DEFERRED_UPDATE_MESSAGE}
    if rtype == ResponseType.ACK and interaction.kind == InteractionKind.COMPONENT:
        return {"type": CallbackType.DEFERRED_UPDATE_MESSAGE}

    # DEFERRED, or ACK of a command/form
    body: Dict[str, Any] = {"type": CallbackType.DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE}
    if response.ephemeral:
        body["data"] = {"flags": EPHEMERAL_FLAG}
    return body


def deferred_callback(interaction: Interaction) -> Dict[str, Any]:
    """Placeholder sent when the real outcome misses the ack deadline."""
    if interaction.kind == InteractionKind.COMPONENT:
        return build_callback(Response.deferred_update(), interaction)
    return build_callback(Response.deferred(), interaction)


def fallback_response(outcome: DispatchOutcome, interaction: Interaction,
                      messages: Dict[OutcomeKind, str] = None) -> Response:
    """User-facing response for outcomes other than Handled."""
    if interaction.kind == InteractionKind.AUTOCOMPLETE:
        return Response.autocomplete([])
    messages = messages or DEFAULT_FALLBACK_MESSAGES
    return Response.message(messages.get(outcome.kind, DEFAULT_FALLBACK_MESSAGES[OutcomeKind.HANDLER_FAILED]),
                            ephemeral=True)


def outcome_response(outcome: DispatchOutcome, interaction: Interaction,
                     messages: Dict[OutcomeKind, str] = None) -> Response:
    if outcome.kind == OutcomeKind.HANDLED:
        return outcome.response
    return fallback_response(outcome, interaction, messages)


def outcome_callback(outcome: DispatchOutcome, interaction: Interaction,
                     messages: Dict[OutcomeKind, str] = None) -> Dict[str, Any]:
    return build_callback(outcome_response(outcome, interaction, messages), interaction)


def outcome_followup(outcome: DispatchOutcome, interaction: Interaction,
                     messages: Dict[OutcomeKind, str] = None) -> Optional[Dict[str, Any]]:
    """Message body that replaces a deferred placeholder, or None if nothing can."""
    response = outcome_response(outcome, interaction, messages)
    if response.type in (ResponseType.MESSAGE, ResponseType.UPDATE):
        return build_message_data(response, interaction)
    if response.type == ResponseType.FORM:
        logger.warning(f"Interaction {interaction.id}: a form cannot follow a deferred reply")
        text = (messages or DEFAULT_FALLBACK_MESSAGES).get(
            OutcomeKind.CONSTRAINT_VIOLATED, DEFAULT_FALLBACK_MESSAGES[OutcomeKind.CONSTRAINT_VIOLATED]
        )
        return build_message_data(Response.message(text, ephemeral=True), interaction)
    return None
