"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

import json
from typing import TYPE_CHECKING, Any

import openai
import structlog

from ..errors import ErrorKind, ModelCallError
from .base import BaseLLM, ChunkCallback, LLMResponse, Message, TokenUsage, ToolCall, ToolDefinition, extract_usage

if TYPE_CHECKING:
    from ..cancellation import CancellationToken

logger = structlog.get_logger()


def map_openai_error(error: Exception, provider: str = "openai") -> ModelCallError:
    """Translate an OpenAI SDK exception into a ``ModelCallError``."""
    retry_after = None
    if isinstance(error, openai.AuthenticationError | openai.PermissionDeniedError):
        kind = ErrorKind.AUTHENTICATION_ERROR
    elif isinstance(error, openai.RateLimitError):
        kind = ErrorKind.RATE_LIMITED
        header = error.response.headers.get("retry-after")
        try:
            retry_after = float(header) if header else None
        except ValueError:
            retry_after = None
    elif isinstance(error, openai.NotFoundError):
        kind = ErrorKind.MODEL_NOT_FOUND
    elif isinstance(error, openai.APITimeoutError):
        kind = ErrorKind.TIMEOUT
    elif isinstance(error, openai.APIConnectionError | openai.InternalServerError):
        kind = ErrorKind.NETWORK_ERROR
    elif isinstance(error, openai.BadRequestError):
        message = str(error).lower()
        kind = (
            ErrorKind.CONTEXT_LENGTH_EXCEEDED
            if "context length" in message or "maximum context" in message
            else ErrorKind.VALIDATION_ERROR
        )
    else:
        kind = ErrorKind.UNKNOWN

    return ModelCallError(
        kind,
        str(error),
        retry_after=retry_after,
        status_code=getattr(error, "status_code", None),
        provider=provider,
    )


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "openrouter" if self.base_url and "openrouter" in self.base_url else "openai"

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Messages to OpenAI format."""
        converted = []

        for msg in messages:
            if msg.role == "tool":
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == "assistant" and msg.tool_calls:
                tool_calls = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in msg.tool_calls
                ]
                converted.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": tool_calls,
                })
            else:
                converted.append({
                    "role": msg.role,
                    "content": msg.content,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> LLMResponse:
        """Stream a response from GPT."""
        converted_messages = self._convert_messages(messages)

        if system_prompt and not any(m["role"] == "system" for m in converted_messages):
            converted_messages.insert(0, {"role": "system", "content": system_prompt})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": converted_messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        call = self._stream(kwargs, on_chunk)
        try:
            if cancel_token is not None:
                return await cancel_token.guard(call)
            return await call
        except openai.APIError as e:
            logger.error("OpenAI API error", error=str(e))
            raise map_openai_error(e, self.provider_name) from e

    async def _stream(self, kwargs: dict[str, Any], on_chunk: ChunkCallback | None) -> LLMResponse:
        stream = await self.client.chat.completions.create(**kwargs)

        content_parts: list[str] = []
        partial_calls: dict[int, dict[str, str]] = {}
        usage = TokenUsage()
        model = self.model
        finish_reason = None

        async for chunk in stream:  # type: ignore
            model = chunk.model or model
            if chunk.usage:
                usage = extract_usage(chunk.usage) or usage
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            finish_reason = choice.finish_reason or finish_reason
            delta = choice.delta

            if delta.content:
                content_parts.append(delta.content)
                if on_chunk is not None:
                    on_chunk(delta.content)

            for tc in delta.tool_calls or []:
                entry = partial_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    entry["id"] = tc.id
                if tc.function and tc.function.name:
                    entry["name"] += tc.function.name
                if tc.function and tc.function.arguments:
                    entry["arguments"] += tc.function.arguments

        tool_calls = [self._build_tool_call(partial_calls[index]) for index in sorted(partial_calls)]

        return LLMResponse(
            content="".join(content_parts),
            tool_calls=tool_calls,
            usage=usage,
            model=model,
            stop_reason=finish_reason,
        )

    def _build_tool_call(self, entry: dict[str, str]) -> ToolCall:
        """Decode streamed arguments; undecodable ones are kept as a parse error."""
        call = ToolCall(id=entry["id"], name=entry["name"])
        if not entry["arguments"]:
            return call
        try:
            arguments = json.loads(entry["arguments"])
        except json.JSONDecodeError as e:
            call.parse_error = f"Arguments are not valid JSON ({e}): {entry['arguments'][:200]}"
        else:
            if isinstance(arguments, dict):
                call.arguments = arguments
            else:
                call.parse_error = f"Arguments must be a JSON object, got {type(arguments).__name__}"
        if call.parse_error:
            logger.warning("Malformed tool call arguments", tool=call.name, call_id=call.id, error=call.parse_error)
        return call
