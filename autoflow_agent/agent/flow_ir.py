"""Flow IR — typed, immutable description of one automation.

A flow is one trigger plus an ordered, possibly branching, list of actions:

  Trigger (exactly one)
    ScheduleTrigger    — cron expression + timezone
    PieceEventTrigger  — an event emitted by a catalog piece
    WebhookTrigger     — an inbound HTTP catch hook

  Action (recursive)
    PieceCall  — call one operation of a catalog piece
    CodeBlock  — inline JavaScript step
    Branch     — conditions + two owned child sequences (true / false)

The IR producer emits the wire form (camelCase JSON, `type` discriminators
"SCHEDULE" | "PIECE_TRIGGER" | "WEBHOOK" and "PIECE" | "CODE" | "BRANCH").
parse_flow() performs the structural pass: it either returns a FlowDescriptor
or the list of structural problems, never both. Semantic rules live in
validation.py.

Instances are frozen. Repair produces a new FlowDescriptor; nothing edits one
in place.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterator, Mapping, Union

from autoflow_agent.errors import ProviderError

SCHEDULE_PIECE = "@activepieces/piece-schedule"
WEBHOOK_PIECE = "@activepieces/piece-webhook"

MAX_BRANCH_DEPTH: int = 10

TRIGGER_KINDS: tuple[str, ...] = ("SCHEDULE", "PIECE_TRIGGER", "WEBHOOK")
ACTION_KINDS: tuple[str, ...] = ("PIECE", "CODE", "BRANCH")


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScheduleTrigger:
    """Fire on a cron schedule.

    cron_expression: 5 or 6 whitespace-separated fields; empty when the
                     producer omitted it (a blocking validation error).
    timezone:        IANA zone; None means "use the configured default".
    """

    kind: ClassVar[str] = "SCHEDULE"

    cron_expression: str = ""
    timezone: str | None = None
    display_name: str = "Schedule"
    trigger_name: str = "cron_expression"

    @property
    def piece_id(self) -> str:
        return SCHEDULE_PIECE

    @property
    def event_id(self) -> str:
        return self.trigger_name


@dataclass(frozen=True)
class PieceEventTrigger:
    """Fire when a catalog piece emits `event_id`."""

    kind: ClassVar[str] = "PIECE_TRIGGER"

    piece_id: str = ""
    event_id: str = ""
    input: Mapping[str, Any] = field(default_factory=dict)
    display_name: str = "Trigger"


@dataclass(frozen=True)
class WebhookTrigger:
    """Fire on an inbound HTTP request to the flow's catch URL."""

    kind: ClassVar[str] = "WEBHOOK"

    input: Mapping[str, Any] = field(default_factory=dict)
    display_name: str = "Catch Webhook"


Trigger = Union[ScheduleTrigger, PieceEventTrigger, WebhookTrigger]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PieceCall:
    """Call `operation_id` on catalog piece `piece_id` with `input`."""

    kind: ClassVar[str] = "PIECE"

    piece_id: str = ""
    operation_id: str = ""
    input: Mapping[str, Any] = field(default_factory=dict)
    display_name: str = "Action"


@dataclass(frozen=True)
class CodeBlock:
    """Inline code step. Empty source compiles to a placeholder."""

    kind: ClassVar[str] = "CODE"

    source_text: str = ""
    input: Mapping[str, Any] = field(default_factory=dict)
    display_name: str = "Code"


@dataclass(frozen=True)
class Branch:
    """Conditional split.

    conditions: Activepieces condition groups (OR of AND-lists), passed through
                to the engine unchanged. Must be non-empty.
    on_true:    actions attached to the true side, in order.
    on_false:   actions attached to the false side, in order.
    """

    kind: ClassVar[str] = "BRANCH"

    conditions: tuple[Any, ...] = ()
    on_true: tuple[Action, ...] = ()
    on_false: tuple[Action, ...] = ()
    display_name: str = "Branch"


Action = Union[PieceCall, CodeBlock, Branch]


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlowDescriptor:
    """Root of the IR.

    error:              producer-declared refusal ("this request is impossible").
    explanation:        short human explanation emitted by the producer.
    connections_needed: piece names whose app connections the user must create.
    """

    display_name: str
    trigger: Trigger
    actions: tuple[Action, ...]
    error: str | None = None
    explanation: str = ""
    connections_needed: tuple[str, ...] = ()


def iter_actions(
    actions: tuple[Action, ...], prefix: str = "actions",
) -> Iterator[tuple[str, Action]]:
    """Yield (path, action) for every action, depth-first, in source order.

    Paths read like "actions[2]" and "actions[2].onSuccessActions[0]".
    """
    for i, action in enumerate(actions):
        path = f"{prefix}[{i}]"
        yield path, action
        if isinstance(action, Branch):
            yield from iter_actions(action.on_true, f"{path}.onSuccessActions")
            yield from iter_actions(action.on_false, f"{path}.onFailureActions")


# ---------------------------------------------------------------------------
# Structural pass: wire dict -> FlowDescriptor
# ---------------------------------------------------------------------------


def _first(d: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = d.get(key)
        if value is not None:
            return value
    return None


def _opt_str(
    d: Mapping[str, Any], keys: tuple[str, ...], where: str, errors: list[str],
) -> str:
    value = _first(d, *keys)
    if value is None:
        return ""
    if not isinstance(value, str):
        errors.append(f"{where}.{keys[0]} must be a string")
        return ""
    return value.strip()


def _input_of(d: Mapping[str, Any], where: str, errors: list[str]) -> dict[str, Any]:
    value = d.get("input")
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{where}.input must be an object")
        return {}
    return dict(value)


def _label(d: Mapping[str, Any], default: str) -> str:
    value = d.get("displayName")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _parse_trigger(raw: Any, errors: list[str]) -> Trigger | None:
    if not isinstance(raw, dict):
        errors.append("trigger is required and must be an object")
        return None

    kind = raw.get("type")
    if kind not in TRIGGER_KINDS:
        errors.append(f"trigger.type must be one of: {', '.join(TRIGGER_KINDS)}")
        return None

    n_errors = len(errors)
    inputs = _input_of(raw, "trigger", errors)

    if kind == "SCHEDULE":
        cron = _first(inputs, "cronExpression") or _first(raw, "cronExpression") or ""
        tz = _first(inputs, "timezone") or _first(raw, "timezone")
        if not isinstance(cron, str):
            errors.append("trigger.input.cronExpression must be a string")
            cron = ""
        if tz is not None and not isinstance(tz, str):
            errors.append("trigger.input.timezone must be a string")
            tz = None
        trigger_name = _opt_str(raw, ("triggerName", "eventId"), "trigger", errors)
        result: Trigger = ScheduleTrigger(
            cron_expression=cron.strip(),
            timezone=tz or None,
            display_name=_label(raw, "Schedule"),
            trigger_name=trigger_name or "cron_expression",
        )
    elif kind == "PIECE_TRIGGER":
        result = PieceEventTrigger(
            piece_id=_opt_str(raw, ("pieceName", "pieceId"), "trigger", errors),
            event_id=_opt_str(raw, ("triggerName", "eventId"), "trigger", errors),
            input=inputs,
            display_name=_label(raw, "Trigger"),
        )
    else:
        result = WebhookTrigger(input=inputs, display_name=_label(raw, "Catch Webhook"))

    return result if len(errors) == n_errors else None


def _parse_actions(
    raw: Any, where: str, depth: int, errors: list[str], required: bool,
) -> tuple[Action, ...]:
    if raw is None and not required:
        return ()
    if not isinstance(raw, list) or (required and not raw):
        if required:
            errors.append(f"{where} is required and must be a non-empty array")
        else:
            errors.append(f"{where} must be an array")
        return ()

    parsed: list[Action] = []
    for i, item in enumerate(raw):
        action = _parse_action(item, f"{where}[{i}]", depth, errors)
        if action is not None:
            parsed.append(action)
    return tuple(parsed)


def _parse_action(raw: Any, where: str, depth: int, errors: list[str]) -> Action | None:
    if not isinstance(raw, dict):
        errors.append(f"{where} must be an object")
        return None

    kind = raw.get("type")
    if kind not in ACTION_KINDS:
        errors.append(f"{where}.type must be one of: {', '.join(ACTION_KINDS)}")
        return None

    n_errors = len(errors)
    inputs = _input_of(raw, where, errors)

    if kind == "PIECE":
        action: Action = PieceCall(
            piece_id=_opt_str(raw, ("pieceName", "pieceId"), where, errors),
            operation_id=_opt_str(raw, ("actionName", "operationId"), where, errors),
            input=inputs,
            display_name=_label(raw, "Action"),
        )
    elif kind == "CODE":
        source = _first(raw, "code", "sourceText") or inputs.pop("code", None) or ""
        if not isinstance(source, str):
            errors.append(f"{where}.code must be a string")
            source = ""
        inputs.pop("code", None)
        action = CodeBlock(source_text=source, input=inputs, display_name=_label(raw, "Code"))
    else:
        if depth >= MAX_BRANCH_DEPTH:
            errors.append(
                f"{where}: branches nested deeper than {MAX_BRANCH_DEPTH} levels"
            )
            return None
        conditions = raw.get("conditions")
        if conditions is None:
            conditions = []
        if not isinstance(conditions, list):
            errors.append(f"{where}.conditions must be an array")
            conditions = []
        on_true = _parse_actions(
            _first(raw, "onSuccessActions", "onTrue"),
            f"{where}.onSuccessActions", depth + 1, errors, required=False,
        )
        on_false = _parse_actions(
            _first(raw, "onFailureActions", "onFalse"),
            f"{where}.onFailureActions", depth + 1, errors, required=False,
        )
        action = Branch(
            conditions=tuple(conditions),
            on_true=on_true,
            on_false=on_false,
            display_name=_label(raw, "Branch"),
        )

    return action if len(errors) == n_errors else None


def parse_flow(raw: Any) -> tuple[FlowDescriptor | None, list[str]]:
    """Structural pass. Returns (flow, []) or (None, errors)."""
    errors: list[str] = []
    if not isinstance(raw, dict):
        return None, ["flow must be a JSON object"]

    name = raw.get("displayName")
    if not isinstance(name, str) or not name.strip():
        errors.append("displayName is required and must be a non-empty string")

    trigger = _parse_trigger(raw.get("trigger"), errors)
    actions = _parse_actions(raw.get("actions"), "actions", 0, errors, required=True)

    if errors or trigger is None:
        return None, errors

    producer_error = raw.get("error")
    needed = raw.get("connections_needed") or raw.get("connectionsNeeded") or []
    explanation = raw.get("explanation") or raw.get("explanation_ar") or ""

    return FlowDescriptor(
        display_name=name.strip(),
        trigger=trigger,
        actions=actions,
        error=str(producer_error) if producer_error else None,
        explanation=explanation if isinstance(explanation, str) else "",
        connections_needed=tuple(str(n) for n in needed) if isinstance(needed, list) else (),
    ), []


# ---------------------------------------------------------------------------
# Serialization: FlowDescriptor -> wire dict
# ---------------------------------------------------------------------------


def trigger_to_dict(trigger: Trigger) -> dict[str, Any]:
    if isinstance(trigger, ScheduleTrigger):
        inputs: dict[str, Any] = {"cronExpression": trigger.cron_expression}
        if trigger.timezone:
            inputs["timezone"] = trigger.timezone
        return {
            "type": trigger.kind,
            "pieceName": SCHEDULE_PIECE,
            "triggerName": trigger.trigger_name,
            "displayName": trigger.display_name,
            "input": inputs,
        }
    if isinstance(trigger, PieceEventTrigger):
        return {
            "type": trigger.kind,
            "pieceName": trigger.piece_id,
            "triggerName": trigger.event_id,
            "displayName": trigger.display_name,
            "input": dict(trigger.input),
        }
    return {
        "type": trigger.kind,
        "displayName": trigger.display_name,
        "input": dict(trigger.input),
    }


def action_to_dict(action: Action) -> dict[str, Any]:
    if isinstance(action, PieceCall):
        return {
            "type": action.kind,
            "pieceName": action.piece_id,
            "actionName": action.operation_id,
            "displayName": action.display_name,
            "input": dict(action.input),
        }
    if isinstance(action, CodeBlock):
        return {
            "type": action.kind,
            "displayName": action.display_name,
            "code": action.source_text,
            "input": dict(action.input),
        }
    return {
        "type": action.kind,
        "displayName": action.display_name,
        "conditions": list(action.conditions),
        "onSuccessActions": [action_to_dict(a) for a in action.on_true],
        "onFailureActions": [action_to_dict(a) for a in action.on_false],
    }


def flow_to_dict(flow: FlowDescriptor) -> dict[str, Any]:
    """Serialize a FlowDescriptor back to the producer's wire shape."""
    d: dict[str, Any] = {
        "displayName": flow.display_name,
        "trigger": trigger_to_dict(flow.trigger),
        "actions": [action_to_dict(a) for a in flow.actions],
        "connections_needed": list(flow.connections_needed),
    }
    if flow.explanation:
        d["explanation"] = flow.explanation
    if flow.error:
        d["error"] = flow.error
    return d


# ---------------------------------------------------------------------------
# Producer output -> JSON object
# ---------------------------------------------------------------------------

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def extract_flow_json(text: str) -> dict[str, Any]:
    """Pull the outermost JSON object out of free-form producer text.

    Tolerates surrounding prose and ```json fences, and one malformation class:
    trailing commas before a closing brace or bracket. Raises ProviderError
    (INVALID_RESPONSE when no object is present, PARSE_ERROR otherwise).
    """
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        raise ProviderError(
            "IR producer did not return a JSON object",
            ProviderError.INVALID_RESPONSE,
            text,
        )
    candidate = match.group(0)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        try:
            parsed = json.loads(_TRAILING_COMMA_RE.sub(r"\1", candidate))
        except json.JSONDecodeError as e:
            raise ProviderError(
                f"JSON parsing failed: {e}", ProviderError.PARSE_ERROR, text,
            ) from e
    if not isinstance(parsed, dict):
        raise ProviderError(
            "IR producer output is not a JSON object",
            ProviderError.INVALID_RESPONSE,
            text,
        )
    return parsed
