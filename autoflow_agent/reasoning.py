"""LLM abstraction layer — the IR producer behind the flow pipeline.

ReasoningEngine is the provider-agnostic interface; the pipeline only ever sees
ReasoningProducer, which adapts an engine to the
(system_prompt, context, user_message) -> text contract and turns provider
failures into ProviderError(AI_CALL_FAILED).

Providers:
  groq, openrouter, ollama, openai  — OpenAI-compatible chat completions
                                      (openai SDK with a base URL)
  anthropic                         — Anthropic messages API (anthropic SDK)
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autoflow_agent.errors import ProviderError

logger = logging.getLogger("autoflow_agent.reasoning")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single conversation turn. role: "user" | "assistant"."""

    role: str
    content: str


@dataclass(frozen=True)
class ProviderProfile:
    name: str
    base_url: str | None
    default_model: str
    api_key_env: str | None


PROVIDERS: dict[str, ProviderProfile] = {
    "groq": ProviderProfile(
        "Groq", "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile", "GROQ_API_KEY",
    ),
    "openrouter": ProviderProfile(
        "OpenRouter", "https://openrouter.ai/api/v1", "qwen/qwen-2.5-72b-instruct",
        "OPENROUTER_API_KEY",
    ),
    "ollama": ProviderProfile("Ollama", "http://localhost:11434/v1", "qwen2.5:14b", None),
    "openai": ProviderProfile("OpenAI", None, "gpt-4o", "OPENAI_API_KEY"),
    "anthropic": ProviderProfile(
        "Anthropic", None, "claude-sonnet-4-20250514", "ANTHROPIC_API_KEY",
    ),
}


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.1,
    ) -> str:
        """Send a conversation to the LLM and return the reply text."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Human-readable provider/model string for logging, e.g. 'groq/llama-3.3-70b'."""
        ...


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Reasoning engine backed by Anthropic's Claude API.

    Requires: pip install 'autoflow-agent[claude]'
    """

    def __init__(self, api_key: str, model: str) -> None:
        try:
            import anthropic as _anthropic
            self._anthropic = _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install 'autoflow-agent[claude]'"
            )
        if not api_key:
            raise ValueError(
                "AI_API_KEY (or ANTHROPIC_API_KEY) is required for the anthropic provider."
            )
        self._client = self._anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.1,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": 4096,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        logger.debug("ClaudeEngine.complete: %d messages", len(messages))
        response = await self._client.messages.create(**kwargs)
        return "".join(block.text for block in response.content if block.type == "text")


# ---------------------------------------------------------------------------
# OpenAI-compatible implementation (OpenAI, Groq, OpenRouter, Ollama)
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Reasoning engine for any OpenAI-compatible chat completions endpoint.

    Requires: pip install 'autoflow-agent[openai]'
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        provider: str = "openai",
    ) -> None:
        try:
            import openai as _openai
            self._openai = _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install 'autoflow-agent[openai]'"
            )
        self._client = self._openai.AsyncOpenAI(
            api_key=api_key or "not-needed", base_url=base_url,
        )
        self._model = model
        self._provider = provider
        logger.info("OpenAIEngine initialized: %s/%s", provider, model)

    @property
    def model_id(self) -> str:
        return f"{self._provider}/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.1,
    ) -> str:
        oai_messages: list[dict[str, Any]] = []
        if system:
            oai_messages.append({"role": "system", "content": system})
        oai_messages.extend({"role": m.role, "content": m.content} for m in messages)

        logger.debug("OpenAIEngine.complete: %d messages", len(messages))
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=oai_messages,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""


# ---------------------------------------------------------------------------
# Reasoning engine settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the swappable reasoning engine.

    Reads environment variables (or a .env file):
      AI_PROVIDER     — groq | openrouter | ollama | openai | anthropic (default: groq)
      AI_MODEL        — model override; unset means the provider default
      AI_BASE_URL     — endpoint override for OpenAI-compatible providers
      AI_API_KEY      — API key; falls back to the provider's own variable
                        (GROQ_API_KEY, OPENROUTER_API_KEY, ...)
      AI_TEMPERATURE  — sampling temperature 0.0–1.0 (default: 0.1)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="groq", validation_alias="AI_PROVIDER")
    model: str | None = Field(default=None, validation_alias="AI_MODEL")
    base_url: str | None = Field(default=None, validation_alias="AI_BASE_URL")
    api_key: SecretStr = Field(default=SecretStr(""), validation_alias="AI_API_KEY", repr=False)
    temperature: float = Field(default=0.1, validation_alias="AI_TEMPERATURE")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower()

    @field_validator("model", "base_url", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    def resolved_api_key(self) -> str:
        """AI_API_KEY, else the provider-specific environment variable."""
        key = self.api_key.get_secret_value()
        if key:
            return key
        profile = PROVIDERS.get(self.provider)
        if profile and profile.api_key_env:
            return os.getenv(profile.api_key_env, "")
        return ""


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine."""
    profile = PROVIDERS.get(settings.provider)
    if profile is None:
        raise ValueError(
            f"Unknown AI provider: {settings.provider!r}. "
            f"Valid options: {', '.join(PROVIDERS)}"
        )
    model = settings.model or profile.default_model
    if settings.provider == "anthropic":
        return ClaudeEngine(api_key=settings.resolved_api_key(), model=model)
    return OpenAIEngine(
        api_key=settings.resolved_api_key(),
        model=model,
        base_url=settings.base_url or profile.base_url,
        provider=settings.provider,
    )


# ---------------------------------------------------------------------------
# IR producer adapter
# ---------------------------------------------------------------------------


class ReasoningProducer:
    """Adapts a ReasoningEngine to the IR-producer contract used by the pipeline."""

    def __init__(self, engine: ReasoningEngine, temperature: float = 0.1) -> None:
        self._engine = engine
        self._temperature = temperature

    @property
    def model_id(self) -> str:
        return self._engine.model_id

    async def generate(
        self,
        system_prompt: str,
        context: list[dict[str, str]],
        user_message: str,
        temperature: float | None = None,
    ) -> str:
        messages = [Message(role=m["role"], content=m["content"]) for m in context]
        messages.append(Message(role="user", content=user_message))
        try:
            text = await self._engine.complete(
                messages,
                system=system_prompt or None,
                temperature=self._temperature if temperature is None else temperature,
            )
        except Exception as e:
            logger.error("AI call failed (%s): %s", self._engine.model_id, e)
            raise ProviderError(f"AI call failed: {e}", ProviderError.AI_CALL_FAILED) from e
        return (text or "").strip()
