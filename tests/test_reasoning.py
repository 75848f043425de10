"""Reasoning settings, engine factory and the IR-producer adapter."""

import os
from unittest.mock import patch

import pytest

from autoflow_agent.errors import ProviderError
from autoflow_agent.reasoning import (
    Message,
    ReasoningEngine,
    ReasoningProducer,
    ReasoningSettings,
    create_engine,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class EchoEngine(ReasoningEngine):
    def __init__(self, reply="  {\"ok\": true}\n", error=None):
        self.reply = reply
        self.error = error
        self.seen: list[tuple[list[Message], str | None, float]] = []

    @property
    def model_id(self) -> str:
        return "fake/echo"

    async def complete(self, messages, system=None, temperature=0.1):
        self.seen.append((messages, system, temperature))
        if self.error:
            raise self.error
        return self.reply


# ---------------------------------------------------------------------------
# ReasoningSettings
# ---------------------------------------------------------------------------


class TestReasoningSettings:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            s = ReasoningSettings(_env_file=None)
        assert s.provider == "groq"
        assert s.model is None
        assert s.temperature == 0.1

    def test_env_overrides_and_clamping(self):
        env = {"AI_PROVIDER": "OpenRouter", "AI_MODEL": "", "AI_TEMPERATURE": "3"}
        with patch.dict(os.environ, env, clear=True):
            s = ReasoningSettings(_env_file=None)
        assert s.provider == "openrouter"
        assert s.model is None
        assert s.temperature == 1.0

    def test_api_key_falls_back_to_provider_variable(self):
        with patch.dict(os.environ, {"AI_PROVIDER": "groq", "GROQ_API_KEY": "gsk-1"}, clear=True):
            s = ReasoningSettings(_env_file=None)
            assert s.resolved_api_key() == "gsk-1"

    def test_explicit_api_key_wins(self):
        env = {"AI_API_KEY": "explicit", "GROQ_API_KEY": "gsk-1"}
        with patch.dict(os.environ, env, clear=True):
            s = ReasoningSettings(_env_file=None)
            assert s.resolved_api_key() == "explicit"
        assert "explicit" not in repr(s)

    def test_unknown_provider_is_rejected(self):
        with patch.dict(os.environ, {"AI_PROVIDER": "mystery"}, clear=True):
            s = ReasoningSettings(_env_file=None)
        with pytest.raises(ValueError, match="Unknown AI provider"):
            create_engine(s)


# ---------------------------------------------------------------------------
# ReasoningProducer
# ---------------------------------------------------------------------------


class TestReasoningProducer:
    @pytest.mark.asyncio
    async def test_context_then_user_message(self):
        engine = EchoEngine()
        producer = ReasoningProducer(engine, temperature=0.2)

        text = await producer.generate(
            "SYS", [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}], "c",
        )

        assert text == '{"ok": true}'
        messages, system, temperature = engine.seen[0]
        assert [(m.role, m.content) for m in messages] == [
            ("user", "a"), ("assistant", "b"), ("user", "c"),
        ]
        assert system == "SYS"
        assert temperature == 0.2

    @pytest.mark.asyncio
    async def test_per_call_temperature_overrides_default(self):
        engine = EchoEngine()
        await ReasoningProducer(engine, temperature=0.2).generate("", [], "x", temperature=0.0)

        _, system, temperature = engine.seen[0]
        assert system is None
        assert temperature == 0.0

    @pytest.mark.asyncio
    async def test_engine_failure_is_provider_error(self):
        producer = ReasoningProducer(EchoEngine(error=RuntimeError("rate limited")))

        with pytest.raises(ProviderError) as exc_info:
            await producer.generate("SYS", [], "x")

        assert exc_info.value.code == ProviderError.AI_CALL_FAILED
        assert "rate limited" in str(exc_info.value)
