"""Bounded repair loop, expressed as a small LangGraph state machine.

    START → validate ──ok──────────────→ accept → END
               │  ├──user error / already repaired──→ reject → END
               │  └──blocking errors──→ repair ─┐
               └────────────────────────────────┘

The producer is invoked at most once per run (the repair node). A candidate
that still fails its second validation is rejected and its errors are
returned verbatim; there is no third attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, TypedDict

from langgraph.graph import END, START, StateGraph

from autoflow_agent.agent.flow_ir import FlowDescriptor, extract_flow_json, flow_to_dict
from autoflow_agent.agent.prompts import build_repair_message
from autoflow_agent.agent.validation import ValidationResult, validate
from autoflow_agent.errors import ProviderError
from autoflow_agent.knowledge.catalog import Catalog

logger = logging.getLogger("autoflow_agent.agent.repair")

ACCEPTED = "accepted"
REJECTED = "rejected"

REPAIRED_WARNING = "Flow was regenerated after correcting validation errors"


class IRProducer(Protocol):
    """External generator of candidate IR text."""

    async def generate(
        self,
        system_prompt: str,
        context: list[dict[str, str]],
        user_message: str,
        temperature: float | None = None,
    ) -> str:
        ...


class RepairState(TypedDict, total=False):
    request: str
    system_prompt: str
    catalog: Catalog | None
    candidate: Any
    result: ValidationResult
    repaired: bool
    producer_calls: int
    status: str


@dataclass(frozen=True)
class RepairOutcome:
    """Terminal state of one repair-loop run.

    producer_calls counts invocations made by the loop itself (0 or 1).
    """

    status: str
    flow: FlowDescriptor | None
    candidate: Any
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    is_user_error: bool = False
    repaired: bool = False
    producer_calls: int = 0

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_after_validate(state: RepairState) -> str:
    result = state["result"]
    if result.ok:
        return "accept"
    if result.is_user_error or state.get("repaired"):
        return "reject"
    return "repair"


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


def build_repair_graph(producer: IRProducer):
    """Construct and compile the validate/repair graph around `producer`."""

    async def validate_node(state: RepairState) -> dict[str, Any]:
        result = validate(state["candidate"], state.get("catalog"))
        logger.info(
            "Validation pass %d: %d errors, %d warnings",
            2 if state.get("repaired") else 1, len(result.errors), len(result.warnings),
        )
        return {"result": result}

    async def repair_node(state: RepairState) -> dict[str, Any]:
        candidate = state["candidate"]
        if isinstance(candidate, FlowDescriptor):
            candidate = flow_to_dict(candidate)
        message = build_repair_message(
            state.get("request", ""), candidate, state["result"].errors,
        )
        logger.info("Requesting repair for %d blocking errors", len(state["result"].errors))

        text = await producer.generate(state.get("system_prompt", ""), [], message, temperature=0.0)
        try:
            repaired = extract_flow_json(text)
        except ProviderError as e:
            raise ProviderError(
                f"Repair attempt failed: {e}", ProviderError.RETRY_FAILED, text,
            ) from e

        return {
            "candidate": repaired,
            "repaired": True,
            "producer_calls": state.get("producer_calls", 0) + 1,
        }

    def accept_node(state: RepairState) -> dict[str, Any]:
        return {"status": ACCEPTED}

    def reject_node(state: RepairState) -> dict[str, Any]:
        logger.info("Candidate rejected: %s", "; ".join(state["result"].errors))
        return {"status": REJECTED}

    builder = StateGraph(RepairState)
    builder.add_node("validate", validate_node)
    builder.add_node("repair", repair_node)
    builder.add_node("accept", accept_node)
    builder.add_node("reject", reject_node)

    builder.add_edge(START, "validate")
    builder.add_conditional_edges(
        "validate",
        _route_after_validate,
        {"accept": "accept", "repair": "repair", "reject": "reject"},
    )
    builder.add_edge("repair", "validate")
    builder.add_edge("accept", END)
    builder.add_edge("reject", END)

    return builder.compile()


class RepairLoop:
    """Validate a candidate; repair it at most once through the producer."""

    def __init__(self, producer: IRProducer) -> None:
        self._graph = build_repair_graph(producer)

    async def run(
        self,
        candidate: Any,
        request: str = "",
        catalog: Catalog | None = None,
        system_prompt: str = "",
    ) -> RepairOutcome:
        state: RepairState = {
            "request": request,
            "system_prompt": system_prompt,
            "catalog": catalog,
            "candidate": candidate,
            "repaired": False,
            "producer_calls": 0,
        }
        final = await self._graph.ainvoke(state)

        result: ValidationResult = final["result"]
        repaired = bool(final.get("repaired"))
        warnings = list(result.warnings)
        if repaired and final["status"] == ACCEPTED:
            warnings.append(REPAIRED_WARNING)

        return RepairOutcome(
            status=final["status"],
            flow=result.flow,
            candidate=final["candidate"],
            errors=result.errors,
            warnings=warnings,
            is_user_error=result.is_user_error,
            repaired=repaired,
            producer_calls=final.get("producer_calls", 0),
        )
