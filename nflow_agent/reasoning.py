"""LLM abstraction layer — structured extraction for the orchestration graphs.

Every LLM touch-point in the graphs is a *structured extraction*: a node sends
a system prompt plus a short conversation and a set of tool schemas, and
expects the model to answer with exactly one tool call whose arguments match
one of the schemas. extract() is that contract; the engines underneath are
swappable and the graphs never know which provider answered.

Also owns ReasoningSettings (pydantic-settings) so that provider selection is
driven entirely by environment variables.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("nflow_agent.reasoning")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single message in a conversation log.

    role values:
      "user"        — the end user's request (or a focused restatement of it)
      "assistant"   — LLM turn or a progress note written by a graph node
    """

    role: str  # "user" | "assistant"
    content: str | None = None


@dataclass
class ToolCall:
    """A tool call requested by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolDef:
    """Definition of a tool the LLM may call.

    parameters follows JSON Schema format:
        {"type": "object", "properties": {...}, "required": [...]}
    """

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class EngineResponse:
    """Response from the reasoning engine.

    Either content is set (text reply) or tool_calls is non-empty (tool use),
    or both (Anthropic sometimes returns text alongside tool calls).
    """

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"  # "end_turn" | "tool_use" | "max_tokens"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ExtractionResult:
    """The single structured answer produced by extract()."""

    tool_name: str
    arguments: dict[str, Any]
    content: str | None = None


class ExtractionError(Exception):
    """Raised when the model produced no usable structured response."""


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM provider.

    Implement this to add a new provider. The graphs call extract(), which
    calls complete() without knowing which provider is underneath.
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.2,
        require_tool: bool = False,
    ) -> EngineResponse:
        """Send a conversation to the LLM and return its response.

        Args:
            messages:     Conversation history (user/assistant turns).
            system:       Optional system prompt injected before the conversation.
            tools:        Tools the LLM may call. Pass None if no tool use needed.
            temperature:  Sampling temperature (0.0–1.0). Lower = more focused.
            require_tool: Force the model to answer with a tool call.

        Returns:
            EngineResponse with either content text, tool_calls, or both.
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Human-readable provider/model string for logging, e.g. 'openai/gpt-4.1'."""
        ...


# ---------------------------------------------------------------------------
# Structured extraction
# ---------------------------------------------------------------------------


async def extract(
    engine: ReasoningEngine,
    system: str,
    messages: list[Message],
    tools: list[ToolDef],
    temperature: float = 0.0,
) -> ExtractionResult:
    """Ask the engine for exactly one structured tool call.

    Returns the first tool call whose name matches one of *tools*.

    Raises:
        ExtractionError: the model answered without a tool call, or named a
                         tool that was not offered.
    """
    response = await engine.complete(
        messages,
        system=system,
        tools=tools,
        temperature=temperature,
        require_tool=True,
    )
    if not response.has_tool_calls:
        raise ExtractionError("No tool calls found in LLM response")

    offered = {t.name for t in tools}
    for call in response.tool_calls:
        if call.name in offered:
            logger.debug("extract: %s answered with %s", engine.model_id, call.name)
            return ExtractionResult(
                tool_name=call.name,
                arguments=dict(call.arguments or {}),
                content=response.content,
            )

    names = ", ".join(c.name for c in response.tool_calls)
    raise ExtractionError(f"LLM called unknown tool(s): {names}")


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Reasoning engine backed by Anthropic's Claude API.

    Requires: pip install 'nflow-agent[claude]'
    """

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6") -> None:
        try:
            import anthropic as _anthropic
            self._anthropic = _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install 'nflow-agent[claude]'"
            )
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment or .env file."
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
        tools: list[ToolDef] | None = None,
        temperature: float = 0.2,
        require_tool: bool = False,
    ) -> EngineResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _to_anthropic_messages(messages),
            "max_tokens": 4096,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in tools
            ]
            if require_tool:
                kwargs["tool_choice"] = {"type": "any"}

        logger.debug(
            "ClaudeEngine.complete: %d messages, %d tools", len(messages), len(tools or [])
        )
        response = await self._client.messages.create(**kwargs)

        tool_calls: list[ToolCall] = []
        content_text: str | None = None

        for block in response.content:
            if block.type == "text":
                content_text = block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=block.input,
                ))

        return EngineResponse(
            content=content_text,
            tool_calls=tool_calls,
            stop_reason=response.stop_reason or "end_turn",
        )


def _to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert internal Message list to Anthropic API format (system is sent separately)."""
    return [{"role": m.role, "content": m.content or ""} for m in messages]


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Reasoning engine backed by the OpenAI API.

    Requires: pip install 'nflow-agent[openai]'
    """

    def __init__(self, api_key: str, model: str = "gpt-4.1") -> None:
        try:
            import openai as _openai
            self._openai = _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install 'nflow-agent[openai]'"
            )
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.2,
        require_tool: bool = False,
    ) -> EngineResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _to_openai_messages(messages, system),
            "temperature": temperature,
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
            kwargs["tool_choice"] = "required" if require_tool else "auto"

        logger.debug("OpenAIEngine.complete: %d messages, %d tools", len(messages), len(tools or []))
        response = await self._client.chat.completions.create(**kwargs)
        msg = response.choices[0].message

        tool_calls: list[ToolCall] = []
        if msg.tool_calls:
            for tc in msg.tool_calls:
                tool_calls.append(ToolCall(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=json.loads(tc.function.arguments),
                ))

        return EngineResponse(
            content=msg.content,
            tool_calls=tool_calls,
            stop_reason="tool_use" if tool_calls else "end_turn",
        )


def _to_openai_messages(messages: list[Message], system: str | None) -> list[dict[str, Any]]:
    """Convert internal Message list to OpenAI API format."""
    result: list[dict[str, Any]] = []

    if system:
        result.append({"role": "system", "content": system})

    result.extend({"role": m.role, "content": m.content or ""} for m in messages)
    return result


# ---------------------------------------------------------------------------
# Reasoning engine settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the swappable reasoning engine.

    Automatically reads from environment variables (or a .env file).

    Environment variables:
      REASONING_ENGINE      — LLM provider: "openai" | "claude" (default: "openai")
      REASONING_MODEL       — Model name override; leave unset for provider default
      ANTHROPIC_API_KEY     — Required when provider is "claude"
      OPENAI_API_KEY        — Required when provider is "openai"
      REASONING_TEMPERATURE — Sampling temperature 0.0–1.0 (default: 0.0)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="openai", validation_alias="REASONING_ENGINE")
    model: str | None = Field(default=None, validation_alias="REASONING_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.0, validation_alias="REASONING_TEMPERATURE")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower()

    @field_validator("model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        """Treat empty string REASONING_MODEL as unset (use provider default)."""
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @classmethod
    def from_env(cls) -> ReasoningSettings:
        return cls()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine from ReasoningSettings."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or "claude-sonnet-4-6",
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or "gpt-4.1",
            )
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai'"
            )
