"""RepairLoop: bounded single repair, user-error short-circuit, parse failures."""

import json

import pytest

from autoflow_agent.agent.repair import ACCEPTED, REJECTED, REPAIRED_WARNING, RepairLoop
from autoflow_agent.errors import ProviderError
from autoflow_agent.knowledge.catalog import fallback_catalog

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedProducer:
    """Returns queued responses in order and records every call."""

    def __init__(self, *responses: str) -> None:
        self._responses = list(responses)
        self.calls: list[dict] = []

    async def generate(self, system_prompt, context, user_message, temperature=None):
        self.calls.append({
            "system_prompt": system_prompt,
            "context": context,
            "user_message": user_message,
            "temperature": temperature,
        })
        return self._responses.pop(0)


_GOOD = {
    "displayName": "Daily mail",
    "trigger": {"type": "SCHEDULE", "input": {"cronExpression": "0 8 * * *"}},
    "actions": [{
        "type": "PIECE", "pieceName": "@activepieces/piece-gmail",
        "actionName": "send-email", "input": {"to": "a@b.c"},
    }],
}

_BAD = {
    "displayName": "Daily mail",
    "trigger": {"type": "SCHEDULE", "input": {"cronExpression": "0 8 * * *"}},
    "actions": [{"type": "BRANCH", "conditions": []}],
}


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestRepairLoop:
    @pytest.mark.asyncio
    async def test_valid_candidate_needs_no_producer_call(self):
        producer = ScriptedProducer()
        outcome = await RepairLoop(producer).run(_GOOD, "mail me", fallback_catalog())

        assert outcome.status == ACCEPTED
        assert outcome.accepted
        assert outcome.producer_calls == 0
        assert not outcome.repaired
        assert producer.calls == []

    @pytest.mark.asyncio
    async def test_one_repair_then_accept(self):
        producer = ScriptedProducer(f"Fixed:\n```json\n{json.dumps(_GOOD)}\n```")
        outcome = await RepairLoop(producer).run(
            _BAD, "mail me", fallback_catalog(), system_prompt="SYS",
        )

        assert outcome.accepted
        assert outcome.repaired
        assert outcome.producer_calls == 1
        assert REPAIRED_WARNING in outcome.warnings
        assert outcome.flow.actions[0].operation_id == "send-email"

        call = producer.calls[0]
        assert call["system_prompt"] == "SYS"
        assert call["temperature"] == 0.0
        assert "mail me" in call["user_message"]
        assert "actions[0]" in call["user_message"]

    @pytest.mark.asyncio
    async def test_second_failure_is_rejected_without_third_call(self):
        producer = ScriptedProducer(json.dumps(_BAD), json.dumps(_GOOD))
        outcome = await RepairLoop(producer).run(_BAD, "mail me", fallback_catalog())

        assert outcome.status == REJECTED
        assert len(producer.calls) == 1
        assert outcome.errors
        assert all("actions[0]" in e for e in outcome.errors)
        assert REPAIRED_WARNING not in outcome.warnings

    @pytest.mark.asyncio
    async def test_user_error_is_never_repaired(self):
        producer = ScriptedProducer(json.dumps(_GOOD))
        refused = dict(_GOOD, error="That service has no public API")
        outcome = await RepairLoop(producer).run(refused, "impossible", fallback_catalog())

        assert outcome.status == REJECTED
        assert outcome.is_user_error
        assert outcome.errors == ["That service has no public API"]
        assert producer.calls == []

    @pytest.mark.asyncio
    async def test_unparseable_repair_is_retry_failed(self):
        producer = ScriptedProducer("Sorry, I can't produce JSON right now.")

        with pytest.raises(ProviderError) as exc_info:
            await RepairLoop(producer).run(_BAD, "mail me", fallback_catalog())

        assert exc_info.value.code == ProviderError.RETRY_FAILED
        assert len(producer.calls) == 1

    @pytest.mark.asyncio
    async def test_warnings_survive_acceptance(self):
        unknown = dict(_GOOD, actions=[{
            "type": "PIECE", "pieceName": "@acme/piece-x", "actionName": "go",
        }])
        outcome = await RepairLoop(ScriptedProducer()).run(unknown, "", fallback_catalog())

        assert outcome.accepted
        assert any("@acme/piece-x" in w for w in outcome.warnings)
