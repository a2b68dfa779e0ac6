"""
Anthropic Claude LLM provider.
"""

from typing import TYPE_CHECKING, Any

import anthropic
import structlog

from ..errors import ErrorKind, ModelCallError
from .base import BaseLLM, ChunkCallback, LLMResponse, Message, TokenUsage, ToolCall, ToolDefinition, extract_usage

if TYPE_CHECKING:
    from ..cancellation import CancellationToken

logger = structlog.get_logger()


def _retry_after(error: anthropic.APIStatusError) -> float | None:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    try:
        return float(value) if value else None
    except ValueError:
        return None


def map_anthropic_error(error: Exception) -> ModelCallError:
    """Translate an Anthropic SDK exception into a ``ModelCallError``."""
    if isinstance(error, anthropic.AuthenticationError | anthropic.PermissionDeniedError):
        kind = ErrorKind.AUTHENTICATION_ERROR
    elif isinstance(error, anthropic.RateLimitError):
        return ModelCallError(
            ErrorKind.RATE_LIMITED,
            str(error),
            retry_after=_retry_after(error),
            status_code=error.status_code,
            provider="anthropic",
        )
    elif isinstance(error, anthropic.NotFoundError):
        kind = ErrorKind.MODEL_NOT_FOUND
    elif isinstance(error, anthropic.APITimeoutError):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, anthropic.APIConnectionError | anthropic.InternalServerError):
        kind = ErrorKind.NETWORK_ERROR
    elif isinstance(error, anthropic.BadRequestError):
        message = str(error).lower()
        kind = ErrorKind.CONTEXT_LENGTH_EXCEEDED if "too long" in message else ErrorKind.VALIDATION_ERROR
    else:
        kind = ErrorKind.UNKNOWN

    status_code = getattr(error, "status_code", None)
    return ModelCallError(kind, str(error), status_code=status_code, provider="anthropic")


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Messages to Anthropic format."""
        converted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                continue

            if msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }
                # Consecutive tool results belong in a single user turn
                previous = converted[-1] if converted else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and previous["content"]
                    and previous["content"][0].get("type") == "tool_result"
                ):
                    previous["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
            elif msg.role == "assistant" and msg.tool_calls:
                content: list[dict[str, Any]] = []
                if msg.content:
                    content.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                converted.append({"role": "assistant", "content": content})
            else:
                converted.append({
                    "role": msg.role,
                    "content": msg.content,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _extract_system_prompt(self, messages: list[Message]) -> str | None:
        """Extract system prompt from messages."""
        for msg in messages:
            if msg.role == "system":
                return msg.content
        return None

    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> LLMResponse:
        """Stream a response from Claude."""
        system = system_prompt or self._extract_system_prompt(messages)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": self._convert_messages(messages),
        }

        if system:
            kwargs["system"] = system

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        call = self._stream(kwargs, on_chunk)
        try:
            if cancel_token is not None:
                return await cancel_token.guard(call)
            return await call
        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise map_anthropic_error(e) from e

    async def _stream(self, kwargs: dict[str, Any], on_chunk: ChunkCallback | None) -> LLMResponse:
        async with self.client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if on_chunk is not None:
                    on_chunk(text)
            response = await stream.get_final_message()

        content = ""
        tool_calls = []

        for block in response.content:
            if block.type == "text":
                content += block.text
            elif block.type == "tool_use":
                call = ToolCall(id=block.id, name=block.name)
                if isinstance(block.input, dict):
                    call.arguments = dict(block.input)
                else:
                    call.parse_error = f"Arguments must be a JSON object, got {type(block.input).__name__}"
                    logger.warning("Malformed tool call arguments", tool=block.name, call_id=block.id)
                tool_calls.append(call)

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            usage=extract_usage(response.usage) or TokenUsage(),
            model=response.model,
            stop_reason=response.stop_reason,
            raw_response=response,
        )
