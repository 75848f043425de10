"""FlowPipeline — orchestration from user request to deployed flow.

    generate:  producer → extract JSON → RepairLoop → SafetyGuard → preview
    modify:    same, seeded with the current flow and a change request
    deploy:    Validator → SafetyGuard → GraphCompiler (under the compile timeout)

Blocking outcomes are raised: SchemaError for validation, SafetyBlock for
policy. Advisory findings ride along on the result objects.

One catalog snapshot is read per call and used for every check in that call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from autoflow_agent.agent.compiler import CompiledFlow, GraphCompiler
from autoflow_agent.agent.flow_ir import FlowDescriptor, extract_flow_json, flow_to_dict
from autoflow_agent.agent.prompts import (
    EXPLAIN_SYSTEM,
    build_explain_message,
    build_modify_message,
    build_system_prompt,
)
from autoflow_agent.agent.repair import IRProducer, RepairLoop
from autoflow_agent.agent.safety import MAX_ACTIONS, guard
from autoflow_agent.agent.validation import validate
from autoflow_agent.errors import EngineError, SafetyBlock, SchemaError
from autoflow_agent.knowledge.catalog import Catalog, PiecesRegistry

logger = logging.getLogger("autoflow_agent.agent.pipeline")


@dataclass(frozen=True)
class GenerateResult:
    """An accepted, policy-checked flow ready for preview or deploy.

    producer_calls counts every producer invocation for this request
    (initial generation plus at most one repair).
    """

    flow: FlowDescriptor
    warnings: list[str] = field(default_factory=list)
    repaired: bool = False
    producer_calls: int = 1

    @property
    def flow_json(self) -> dict[str, Any]:
        return flow_to_dict(self.flow)

    @property
    def explanation(self) -> str:
        return self.flow.explanation

    @property
    def connections_needed(self) -> list[str]:
        return list(self.flow.connections_needed)


@dataclass(frozen=True)
class DeployResult:
    compiled: CompiledFlow
    warnings: list[str] = field(default_factory=list)


class FlowPipeline:
    def __init__(
        self,
        producer: IRProducer,
        registry: PiecesRegistry,
        compiler: GraphCompiler,
        client: Any,
        compile_timeout: float = 120.0,
        max_actions: int = MAX_ACTIONS,
    ) -> None:
        self._producer = producer
        self._registry = registry
        self._compiler = compiler
        self._client = client
        self._compile_timeout = compile_timeout
        self._max_actions = max_actions
        self._repair = RepairLoop(producer)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self, message: str, history: list[dict[str, str]] | None = None,
    ) -> GenerateResult:
        """Turn a natural-language request into an accepted FlowDescriptor."""
        catalog = await self._registry.ensure_loaded()
        system_prompt = build_system_prompt(catalog)

        logger.info("Generating flow for request: %.100s", message)
        text = await self._producer.generate(system_prompt, list(history or []), message)
        candidate = extract_flow_json(text)
        return await self._accept(candidate, message, catalog, system_prompt)

    async def modify(
        self, flow: FlowDescriptor | dict[str, Any], instruction: str,
    ) -> GenerateResult:
        """Ask the producer for a modified copy of `flow`. The input is never edited."""
        catalog = await self._registry.ensure_loaded()
        system_prompt = build_system_prompt(catalog)
        current = flow_to_dict(flow) if isinstance(flow, FlowDescriptor) else dict(flow)

        request = build_modify_message(current, instruction)
        text = await self._producer.generate(system_prompt, [], request)
        candidate = extract_flow_json(text)
        return await self._accept(candidate, request, catalog, system_prompt)

    async def explain(self, flow: FlowDescriptor | dict[str, Any]) -> str:
        current = flow_to_dict(flow) if isinstance(flow, FlowDescriptor) else dict(flow)
        return await self._producer.generate(
            EXPLAIN_SYSTEM, [], build_explain_message(current), temperature=0.3,
        )

    async def _accept(
        self, candidate: Any, request: str, catalog: Catalog, system_prompt: str,
    ) -> GenerateResult:
        outcome = await self._repair.run(candidate, request, catalog, system_prompt)
        if not outcome.accepted:
            raise SchemaError(outcome.errors, outcome.warnings, is_user_error=outcome.is_user_error)

        safety = guard(outcome.flow, self._max_actions)
        if not safety.safe:
            raise SafetyBlock(safety.blocks, outcome.warnings + safety.warnings)

        return GenerateResult(
            flow=outcome.flow,
            warnings=outcome.warnings + safety.warnings,
            repaired=outcome.repaired,
            producer_calls=1 + outcome.producer_calls,
        )

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def deploy(
        self,
        flow: FlowDescriptor | dict[str, Any],
        auto_publish: bool = False,
        folder_id: str | None = None,
    ) -> DeployResult:
        """Re-validate, guard and compile `flow` on the engine.

        Raises SchemaError / SafetyBlock before any remote call, EngineError or
        AuthError from the compiler. A timeout cancels the compile, which
        deletes the partially built flow before EngineError is raised here.
        """
        result = validate(flow, self._registry.catalog)
        if not result.ok:
            raise SchemaError(result.errors, result.warnings, is_user_error=result.is_user_error)

        safety = guard(result.flow, self._max_actions)
        if not safety.safe:
            raise SafetyBlock(safety.blocks, result.warnings + safety.warnings)

        try:
            compiled = await asyncio.wait_for(
                self._compiler.compile(result.flow, auto_publish=auto_publish, folder_id=folder_id),
                timeout=self._compile_timeout,
            )
        except asyncio.TimeoutError as e:
            raise EngineError(
                f"Compilation timed out after {self._compile_timeout:g}s",
            ) from e

        return DeployResult(compiled=compiled, warnings=result.warnings + safety.warnings)

    async def check_connections(self, needed: list[str]) -> dict[str, Any]:
        """Report which of the `needed` piece names have no app connection yet."""
        body = await self._client.list_connections()
        items = body.get("data", []) if isinstance(body, dict) else (body or [])
        existing = [str(c.get("pieceName") or "") for c in items if isinstance(c, dict)]
        missing = [name for name in needed if not any(name in e for e in existing)]
        return {"allConnected": not missing, "missing": missing, "existing": existing}


# ---------------------------------------------------------------------------
# Convenience factory
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Everything one process needs to generate and deploy flows."""

    pipeline: FlowPipeline
    client: Any
    auth: Any
    registry: PiecesRegistry

    async def close(self) -> None:
        await self.registry.stop()
        await self.client.close()
        await self.auth.close()


def create_services(settings, reasoning_settings) -> Services:
    """Wire the pipeline from Settings + ReasoningSettings.

    The catalog starts empty; call registry.refresh() (or let the first
    generate() load it) before relying on catalog checks.
    """
    from autoflow_agent.client import ActivepiecesClient, AuthTokenProvider
    from autoflow_agent.reasoning import ReasoningProducer, create_engine

    auth = AuthTokenProvider(settings)
    client = ActivepiecesClient(settings, auth)
    registry = PiecesRegistry(client)
    producer = ReasoningProducer(create_engine(reasoning_settings), reasoning_settings.temperature)
    compiler = GraphCompiler(client, default_timezone=settings.default_timezone)
    pipeline = FlowPipeline(
        producer, registry, compiler, client, compile_timeout=settings.compile_timeout,
        max_actions=settings.max_actions,
    )
    return Services(pipeline=pipeline, client=client, auth=auth, registry=registry)
