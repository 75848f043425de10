"""Flow IR, validation, safety policy, repair loop and the graph compiler.

Entry points:
    validate(candidate, catalog)      → ValidationResult
    guard(flow)                       → SafetyResult
    GraphCompiler(client).compile()   → CompiledFlow
    RepairLoop(producer).run()        → RepairOutcome
    create_services(settings, reasoning_settings) → Services
"""

from autoflow_agent.agent.compiler import CompiledFlow, CompiledStep, GraphCompiler
from autoflow_agent.agent.flow_ir import (
    Branch,
    CodeBlock,
    FlowDescriptor,
    PieceCall,
    PieceEventTrigger,
    ScheduleTrigger,
    WebhookTrigger,
    extract_flow_json,
    flow_to_dict,
    parse_flow,
)
from autoflow_agent.agent.pipeline import FlowPipeline, Services, create_services
from autoflow_agent.agent.repair import RepairLoop, RepairOutcome
from autoflow_agent.agent.safety import SafetyResult, guard
from autoflow_agent.agent.validation import Advisory, Blocking, ValidationResult, validate

__all__ = [
    # IR
    "FlowDescriptor",
    "ScheduleTrigger",
    "PieceEventTrigger",
    "WebhookTrigger",
    "PieceCall",
    "CodeBlock",
    "Branch",
    "parse_flow",
    "flow_to_dict",
    "extract_flow_json",
    # Checks
    "validate",
    "ValidationResult",
    "Blocking",
    "Advisory",
    "guard",
    "SafetyResult",
    # Compilation
    "GraphCompiler",
    "CompiledFlow",
    "CompiledStep",
    # Orchestration
    "RepairLoop",
    "RepairOutcome",
    "FlowPipeline",
    "Services",
    "create_services",
]
