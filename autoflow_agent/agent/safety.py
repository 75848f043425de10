"""Safety guard — catalog-independent policy checks run after validation.

Blocks prevent compilation entirely; warnings are passed through to the caller
alongside the compiled result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from autoflow_agent.agent.flow_ir import (
    Branch,
    FlowDescriptor,
    PieceCall,
    ScheduleTrigger,
    WebhookTrigger,
    iter_actions,
)

MAX_ACTIONS: int = 30
MIN_INTERVAL_MINUTES: int = 5

_STEP_RE = re.compile(r"^\*/(\d+)$")
_LOOP_MARKERS: tuple[str, ...] = ("http", "webhook")


@dataclass(frozen=True)
class SafetyResult:
    blocks: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def safe(self) -> bool:
        return not self.blocks


def _check_schedule(cron: str, blocks: list[str], warnings: list[str]) -> None:
    fields = cron.split()
    if not fields:
        return
    if len(fields) == 6:
        seconds, minutes = fields[0], fields[1]
        if seconds == "*" or _STEP_RE.match(seconds):
            warnings.append("Schedule fires more than once per minute; this may overload the server")
    else:
        minutes = fields[0]

    if minutes in ("*", "*/1"):
        warnings.append("Schedule fires every minute; this may overload the server")
    step = _STEP_RE.match(minutes)
    if step and int(step.group(1)) < MIN_INTERVAL_MINUTES:
        blocks.append(
            f"Schedule interval of {step.group(1)} minute(s) is below the "
            f"{MIN_INTERVAL_MINUTES}-minute minimum"
        )


def guard(flow: FlowDescriptor, max_actions: int = MAX_ACTIONS) -> SafetyResult:
    """Apply the policy checks to an already-validated flow.

    max_actions: ceiling on every action list, top-level and inside branches.
    """
    blocks: list[str] = []
    warnings: list[str] = []

    if isinstance(flow.trigger, ScheduleTrigger):
        _check_schedule(flow.trigger.cron_expression, blocks, warnings)

    if isinstance(flow.trigger, WebhookTrigger):
        calls_out = any(
            isinstance(action, PieceCall)
            and any(marker in action.piece_id.lower() for marker in _LOOP_MARKERS)
            for _, action in iter_actions(flow.actions)
        )
        if calls_out:
            warnings.append(
                "Flow receives a webhook and sends HTTP/webhook requests; "
                "make sure it cannot trigger itself"
            )

    if len(flow.actions) > max_actions:
        blocks.append(f"Flow has {len(flow.actions)} steps; the maximum is {max_actions}")
    for path, action in iter_actions(flow.actions):
        if not isinstance(action, Branch):
            continue
        for side, children in (("onSuccessActions", action.on_true), ("onFailureActions", action.on_false)):
            if len(children) > max_actions:
                blocks.append(
                    f"{path}.{side} has {len(children)} steps; the maximum is {max_actions}"
                )

    return SafetyResult(blocks=blocks, warnings=warnings)
