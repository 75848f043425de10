"""Flow validation: structural pass, then semantic pass against the catalog.

validate() never raises. It returns a ValidationResult whose findings are a
single ordered sequence of Blocking / Advisory values:

  Blocking — the flow cannot be materialized (cannot form a valid call).
  Advisory — the flow can still be built; the affected element may be stale or
             degraded (unknown piece, odd cron, empty code block, long flow).

Structural failures short-circuit: when the wire shape is wrong no semantic
rule runs, and the result carries only blocking findings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Union

from autoflow_agent.agent.flow_ir import (
    Branch,
    CodeBlock,
    FlowDescriptor,
    PieceCall,
    PieceEventTrigger,
    ScheduleTrigger,
    flow_to_dict,
    iter_actions,
    parse_flow,
)
from autoflow_agent.knowledge.catalog import Catalog

logger = logging.getLogger("autoflow_agent.agent.validation")

STEP_WARNING_THRESHOLD: int = 20


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Blocking:
    reason: str


@dataclass(frozen=True)
class Advisory:
    reason: str


Finding = Union[Blocking, Advisory]


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validate().

    flow:          the parsed FlowDescriptor, or None when the structural pass failed.
    findings:      ordered Blocking / Advisory findings.
    is_user_error: True when the producer itself declared the request impossible;
                   such results must not be sent for repair.
    """

    flow: FlowDescriptor | None
    findings: tuple[Finding, ...] = ()
    is_user_error: bool = False

    @property
    def errors(self) -> list[str]:
        return [f.reason for f in self.findings if isinstance(f, Blocking)]

    @property
    def warnings(self) -> list[str]:
        return [f.reason for f in self.findings if isinstance(f, Advisory)]

    @property
    def ok(self) -> bool:
        """True when there are no blocking findings."""
        return not any(isinstance(f, Blocking) for f in self.findings)


def is_plausible_cron(expression: str) -> bool:
    """Lightweight shape check: 5 or 6 whitespace-separated fields."""
    return 5 <= len(expression.split()) <= 6


# ---------------------------------------------------------------------------
# validate()
# ---------------------------------------------------------------------------


def validate(
    candidate: FlowDescriptor | Mapping[str, Any],
    catalog: Catalog | None = None,
) -> ValidationResult:
    """Validate a candidate flow (FlowDescriptor or raw wire dict).

    catalog: snapshot used for unknown-piece checks. None skips them.
    """
    raw = flow_to_dict(candidate) if isinstance(candidate, FlowDescriptor) else candidate
    flow, structural = parse_flow(raw)
    if flow is None:
        return ValidationResult(
            flow=None, findings=tuple(Blocking(e) for e in structural),
        )

    if flow.error:
        return ValidationResult(
            flow=flow, findings=(Blocking(flow.error),), is_user_error=True,
        )

    findings: list[Finding] = []
    _check_trigger(flow, catalog, findings)
    _check_actions(flow, catalog, findings)

    if len(flow.actions) >= STEP_WARNING_THRESHOLD:
        findings.append(Advisory(
            f"Flow has {len(flow.actions)} steps (threshold {STEP_WARNING_THRESHOLD}); "
            "consider splitting it into smaller flows"
        ))

    result = ValidationResult(flow=flow, findings=tuple(findings))
    logger.debug(
        "validated %r: %d errors, %d warnings",
        flow.display_name, len(result.errors), len(result.warnings),
    )
    return result


def _check_trigger(
    flow: FlowDescriptor, catalog: Catalog | None, findings: list[Finding],
) -> None:
    trigger = flow.trigger

    if isinstance(trigger, ScheduleTrigger):
        if not trigger.cron_expression:
            findings.append(Blocking("Schedule trigger requires input.cronExpression"))
        elif not is_plausible_cron(trigger.cron_expression):
            findings.append(Advisory(
                f'Cron expression "{trigger.cron_expression}" may be invalid '
                "(expected 5 or 6 fields)"
            ))

    if isinstance(trigger, PieceEventTrigger):
        if not trigger.piece_id:
            findings.append(Blocking("Trigger requires pieceName"))
            return
        if not trigger.event_id:
            findings.append(Blocking("Trigger requires triggerName"))
            return

    if isinstance(trigger, (ScheduleTrigger, PieceEventTrigger)) and catalog is not None:
        check = catalog.check(trigger.piece_id, trigger.event_id, kind="trigger")
        if not check.ok:
            findings.append(Advisory(f"Trigger: {check.reason} (ignored during validation)"))


def _check_actions(
    flow: FlowDescriptor, catalog: Catalog | None, findings: list[Finding],
) -> None:
    for path, action in iter_actions(flow.actions):
        prefix = f"{path} ({action.display_name})"

        if isinstance(action, PieceCall):
            if not action.piece_id:
                findings.append(Blocking(f"{prefix}: requires pieceName"))
            elif not action.operation_id:
                findings.append(Blocking(f"{prefix}: requires actionName"))
            elif catalog is not None:
                check = catalog.check(action.piece_id, action.operation_id, kind="action")
                if not check.ok:
                    findings.append(Advisory(
                        f"{prefix}: {check.reason} (ignored during validation)"
                    ))

        elif isinstance(action, Branch):
            if not action.conditions:
                findings.append(Blocking(f"{prefix}: branch requires at least one condition"))

        elif isinstance(action, CodeBlock):
            if not action.source_text.strip():
                findings.append(Advisory(
                    f"{prefix}: code step has no source; a placeholder will be created"
                ))
