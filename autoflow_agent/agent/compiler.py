"""Graph compiler — materializes a FlowDescriptor on the Activepieces engine.

The engine has no multi-step transactional create, so compilation is a saga:

  1. create flow shell          POST /flows                   → flow_id  (commit point)
  2. update trigger             POST /flows/{id} UPDATE_TRIGGER
  3. one ADD_ACTION per step    POST /flows/{id} ADD_ACTION   (depth-first, source order)
  4. optional publish           POST /flows/{id} LOCK_AND_PUBLISH

Calls are issued strictly in that order, one at a time: a step can only be
appended to a parent that already exists remotely. If anything after step 1
fails, including cancellation by a caller-imposed timeout, the shell is
deleted once, best-effort, and the original failure is re-raised. A failed
delete is logged and never masks the original error.

Step naming is deterministic and unique within a flow:

  step_1, step_2, ...                    top-level actions
  step_2_true_1, step_2_true_2, ...      children of branch step_2, true side
  step_2_false_1_true_1                  nested branches extend the path

Insertion rule for a child sequence: the first child is attached to the branch
with INSIDE_TRUE_BRANCH / INSIDE_FALSE_BRANCH; each later child goes AFTER the
previous child. A branch's children never leak into the outer sequence: the
next outer sibling goes AFTER the branch step itself.

Wire shape of one ADD_ACTION request:
  {
    "parentStep": "step_1",
    "stepLocationRelativeToParent": "AFTER",
    "action": {
      "name": "step_2",
      "type": "PIECE",
      "displayName": "Send Email",
      "settings": {
        "pieceName": "@activepieces/piece-gmail",
        "pieceVersion": "~0.0.0",
        "pieceType": "OFFICIAL",
        "packageType": "REGISTRY",
        "actionName": "send-email",
        "input": {...},
        "inputUiInfo": {},
        "propertySettings": {}
      },
      "valid": true
    }
  }
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from autoflow_agent.agent.flow_ir import (
    WEBHOOK_PIECE,
    Action,
    Branch,
    CodeBlock,
    FlowDescriptor,
    PieceCall,
    PieceEventTrigger,
    ScheduleTrigger,
    Trigger,
)
from autoflow_agent.errors import AuthError, EngineError

logger = logging.getLogger("autoflow_agent.agent.compiler")

TRIGGER_STEP = "trigger"
CODE_PLACEHOLDER = "// Add your code here"
_PIECE_VERSION = "~0.0.0"


class BranchSlot(str, Enum):
    NONE = "none"
    TRUE = "true"
    FALSE = "false"


_LOCATION: dict[BranchSlot, str] = {
    BranchSlot.NONE: "AFTER",
    BranchSlot.TRUE: "INSIDE_TRUE_BRANCH",
    BranchSlot.FALSE: "INSIDE_FALSE_BRANCH",
}


@dataclass(frozen=True)
class StepCursor:
    """Where the next step attaches: after `parent`, or inside one of its slots."""

    parent: str
    slot: BranchSlot = BranchSlot.NONE


@dataclass(frozen=True)
class CompiledStep:
    name: str
    parent_name: str
    branch_slot: BranchSlot
    kind: str


@dataclass(frozen=True)
class CompiledFlow:
    """Result of a successful compile.

    step_count counts every materialized action step, branch children included.
    """

    flow_id: str
    url: str
    step_count: int
    status: str


@dataclass
class _Build:
    """State owned by one in-flight compilation. Never shared between builds."""

    flow_id: str
    steps: list[CompiledStep] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Settings translation (IR → engine wire shapes)
# ---------------------------------------------------------------------------


def _piece_settings(piece_name: str, input: Any, **names: str) -> dict[str, Any]:
    return {
        "pieceName": piece_name,
        "pieceVersion": _PIECE_VERSION,
        "pieceType": "OFFICIAL",
        "packageType": "REGISTRY",
        **names,
        "input": dict(input or {}),
        "inputUiInfo": {},
        "propertySettings": {},
    }


def trigger_request(trigger: Trigger, default_timezone: str) -> dict[str, Any]:
    """Build the UPDATE_TRIGGER request. Every trigger kind is piece-based on the wire."""
    if isinstance(trigger, ScheduleTrigger):
        settings = _piece_settings(
            trigger.piece_id,
            {
                "cronExpression": trigger.cron_expression,
                "timezone": trigger.timezone or default_timezone,
            },
            triggerName=trigger.trigger_name,
        )
    elif isinstance(trigger, PieceEventTrigger):
        settings = _piece_settings(trigger.piece_id, trigger.input, triggerName=trigger.event_id)
    else:
        settings = _piece_settings(WEBHOOK_PIECE, trigger.input, triggerName="catch_request")

    return {
        "name": TRIGGER_STEP,
        "type": "PIECE_TRIGGER",
        "displayName": trigger.display_name,
        "settings": settings,
        "valid": True,
    }


def action_settings(action: Action) -> dict[str, Any]:
    if isinstance(action, PieceCall):
        return _piece_settings(action.piece_id, action.input, actionName=action.operation_id)
    if isinstance(action, CodeBlock):
        return {
            "input": {**dict(action.input), "code": action.source_text or CODE_PLACEHOLDER},
            "inputUiInfo": {},
            "propertySettings": {},
        }
    return {"conditions": list(action.conditions)}


def add_action_request(action: Action, name: str, cursor: StepCursor) -> dict[str, Any]:
    request: dict[str, Any] = {
        "parentStep": cursor.parent,
        "stepLocationRelativeToParent": _LOCATION[cursor.slot],
        "action": {
            "name": name,
            "type": action.kind,
            "displayName": action.display_name,
            "settings": action_settings(action),
            "valid": True,
        },
    }
    if cursor.slot is not BranchSlot.NONE:
        request["branchIndex"] = 0
    return request


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------


class GraphCompiler:
    """Issues the ordered mutation sequence for one flow against `client`.

    client: any object exposing the ActivepiecesClient flow methods
            (create_flow, update_trigger, add_action, publish_flow, delete_flow,
            flow_url).
    """

    def __init__(self, client: Any, default_timezone: str = "UTC") -> None:
        self._client = client
        self._default_timezone = default_timezone

    async def compile(
        self,
        flow: FlowDescriptor,
        auto_publish: bool = False,
        folder_id: str | None = None,
    ) -> CompiledFlow:
        logger.info("Compiling flow %r (%d top-level actions)", flow.display_name, len(flow.actions))

        shell = await self._client.create_flow(flow.display_name, folder_id)
        flow_id = shell.get("id") if isinstance(shell, dict) else None
        if not flow_id:
            raise EngineError(
                "Flow creation returned no id",
                response_body=str(shell)[:500],
                path="/flows",
            )

        build = _Build(flow_id=flow_id)
        try:
            await self._client.update_trigger(
                flow_id, trigger_request(flow.trigger, self._default_timezone),
            )
            await self._emit_sequence(
                build, flow.actions, StepCursor(TRIGGER_STEP), lambda i: f"step_{i}",
            )
            if auto_publish:
                await self._client.publish_flow(flow_id)
        except asyncio.CancelledError:
            logger.warning("Compilation of flow %s cancelled; rolling back", flow_id)
            await self._compensate(flow_id)
            raise
        except (EngineError, AuthError) as e:
            logger.warning("Compilation of flow %s failed: %s; rolling back", flow_id, e)
            await self._compensate(flow_id)
            raise
        except Exception as e:
            logger.warning("Compilation of flow %s failed: %s; rolling back", flow_id, e)
            await self._compensate(flow_id)
            raise EngineError(
                f"Compilation failed: {e}", path=f"/flows/{flow_id}",
            ) from e

        logger.info("Flow %s built with %d steps", flow_id, len(build.steps))
        return CompiledFlow(
            flow_id=flow_id,
            url=self._client.flow_url(flow_id),
            step_count=len(build.steps),
            status="PUBLISHED" if auto_publish else "DRAFT",
        )

    async def _emit_sequence(
        self,
        build: _Build,
        actions: tuple[Action, ...],
        cursor: StepCursor,
        name_for: Callable[[int], str],
    ) -> None:
        for index, action in enumerate(actions, start=1):
            name = name_for(index)
            await self._client.add_action(build.flow_id, add_action_request(action, name, cursor))
            build.steps.append(CompiledStep(
                name=name, parent_name=cursor.parent, branch_slot=cursor.slot, kind=action.kind,
            ))

            if isinstance(action, Branch):
                await self._emit_sequence(
                    build, action.on_true, StepCursor(name, BranchSlot.TRUE),
                    lambda i, base=name: f"{base}_true_{i}",
                )
                await self._emit_sequence(
                    build, action.on_false, StepCursor(name, BranchSlot.FALSE),
                    lambda i, base=name: f"{base}_false_{i}",
                )

            cursor = StepCursor(name)

    async def _compensate(self, flow_id: str) -> None:
        """Best-effort delete of the shell. Failures are logged, never raised."""
        try:
            await asyncio.shield(self._client.delete_flow(flow_id))
            logger.info("Rolled back partially built flow %s", flow_id)
        except Exception as e:
            logger.error("Cleanup of flow %s failed: %s", flow_id, e)
