"""
Base classes for LLM providers.

The agent loop only needs one contract from a model client: given the
message window (and optional tool definitions), stream text through
``on_chunk`` and return the full response with any tool calls and the
token usage. Providers translate their SDK failures into ``ModelCallError``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal

if TYPE_CHECKING:
    from ..cancellation import CancellationToken

Role = Literal["user", "assistant", "system", "tool"]

ChunkCallback = Callable[[str], None]


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the LLM.

    ``parse_error`` is set when the provider could not decode the arguments
    the model produced; such a call is answered with a validation error
    instead of being executed.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    parse_error: str | None = None


@dataclass
class Message:
    """A message in the conversation.

    ``id``, ``timestamp`` and ``turn_index`` are filled in by the message
    history when the message is appended.
    """

    role: Role
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    id: str = ""
    timestamp: str = ""
    turn_index: int | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the provider for one call (or a running total)."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    stop_reason: str | None = None
    raw_response: Any = None


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> LLMResponse:
        """Stream a response from the LLM, returning the assembled result."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass


def _as_mapping(value: Any) -> dict[str, Any] | None:
    if value is None or isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if hasattr(value, "__dict__"):
        return vars(value)
    return None


def extract_usage(raw: Any) -> TokenUsage | None:
    """Normalize a provider usage payload.

    Handles OpenAI (``prompt_tokens``/``completion_tokens``), Anthropic
    (``input_tokens``/``output_tokens``) and ``token_usage`` wrappers, given
    as dicts or as SDK objects.
    """
    raw = _as_mapping(raw)
    if not raw:
        return None

    usage = _as_mapping(raw.get("usage") or raw.get("token_usage")) or raw
    if not isinstance(usage, dict):
        return None

    input_tokens = usage.get("prompt_tokens", usage.get("input_tokens"))
    output_tokens = usage.get("completion_tokens", usage.get("output_tokens"))
    if input_tokens is None and output_tokens is None:
        return None

    return TokenUsage(input_tokens=int(input_tokens or 0), output_tokens=int(output_tokens or 0))
