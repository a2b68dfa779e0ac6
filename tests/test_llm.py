"""
Tests for LLM providers and the factory.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest

from agent_runtime.config import LLMConfig
from agent_runtime.errors import ErrorKind, ModelCallError
from agent_runtime.llm import AnthropicLLM, OpenAILLM, create_llm
from agent_runtime.llm.anthropic import map_anthropic_error
from agent_runtime.llm.base import Message, ToolCall

REQUEST = httpx.Request("POST", "https://api.example.com/v1/messages")


def conversation() -> list[Message]:
    return [
        Message(role="system", content="Be terse."),
        Message(role="user", content="What files are there?"),
        Message(role="assistant", content="", tool_calls=[
            ToolCall(id="c1", name="glob", arguments={"pattern": "*.py"}),
            ToolCall(id="c2", name="read", arguments={"path": "a.py"}),
        ]),
        Message(role="tool", content="a.py", tool_call_id="c1", name="glob"),
        Message(role="tool", content="print(1)", tool_call_id="c2", name="read"),
    ]


def test_create_llm_routes_providers():
    """Test the factory picks the SDK per provider."""
    claude = create_llm(LLMConfig(provider="anthropic", api_key="k", model="claude-x"))
    gpt = create_llm(LLMConfig(provider="openai", api_key="k", model="gpt-x"))
    router = create_llm(LLMConfig(provider="openrouter", api_key="k", model="a/b"))

    assert isinstance(claude, AnthropicLLM)
    assert isinstance(gpt, OpenAILLM)
    assert gpt.provider_name == "openai"
    assert router.provider_name == "openrouter"
    assert router.base_url == "https://openrouter.ai/api/v1"


def test_create_llm_without_key():
    """Test a missing API key is reported as PROVIDER_NOT_CONFIGURED."""
    with pytest.raises(ModelCallError) as exc_info:
        create_llm(LLMConfig(provider="openai", api_key=""))

    assert exc_info.value.kind is ErrorKind.PROVIDER_NOT_CONFIGURED


def test_anthropic_groups_tool_results():
    """Test consecutive tool results travel in one user turn."""
    llm = AnthropicLLM(api_key="k")

    converted = llm._convert_messages(conversation())

    assert [m["role"] for m in converted] == ["user", "assistant", "user"]
    assert [block["type"] for block in converted[1]["content"]] == ["tool_use", "tool_use"]
    assert [block["tool_use_id"] for block in converted[2]["content"]] == ["c1", "c2"]
    assert llm._extract_system_prompt(conversation()) == "Be terse."


def test_anthropic_error_mapping():
    """Test SDK exceptions map to error kinds with retry hints."""
    limited = anthropic.RateLimitError(
        "rate limited",
        response=httpx.Response(429, headers={"retry-after": "7"}, request=REQUEST),
        body=None,
    )
    timeout = anthropic.APITimeoutError(request=REQUEST)
    auth = anthropic.AuthenticationError(
        "bad key", response=httpx.Response(401, request=REQUEST), body=None,
    )

    mapped = map_anthropic_error(limited)
    assert mapped.kind is ErrorKind.RATE_LIMITED
    assert mapped.retry_after == 7.0
    assert mapped.status_code == 429
    assert map_anthropic_error(timeout).kind is ErrorKind.TIMEOUT
    assert map_anthropic_error(auth).kind is ErrorKind.AUTHENTICATION_ERROR


def test_openai_message_conversion():
    """Test tool calls and results use the OpenAI function format."""
    llm = OpenAILLM(api_key="k")

    converted = llm._convert_messages(conversation())

    assert converted[0] == {"role": "system", "content": "Be terse."}
    assert converted[2]["content"] is None
    assert converted[2]["tool_calls"][0]["function"] == {"name": "glob", "arguments": '{"pattern": "*.py"}'}
    assert converted[3] == {"role": "tool", "tool_call_id": "c1", "content": "a.py"}


def chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    choices = [] if content is None and tool_calls is None and finish_reason is None else [
        SimpleNamespace(
            delta=SimpleNamespace(content=content, tool_calls=tool_calls),
            finish_reason=finish_reason,
        )
    ]
    return SimpleNamespace(model="gpt-test", choices=choices, usage=usage)


def tool_delta(index, call_id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


async def stream_of(*chunks):
    for item in chunks:
        yield item


@pytest.mark.asyncio
async def test_openai_stream_assembly():
    """Test streamed text and fragmented tool call arguments are assembled."""
    llm = OpenAILLM(api_key="k")
    llm.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=AsyncMock(
        return_value=stream_of(
            chunk(content="Let me "),
            chunk(content="look."),
            chunk(tool_calls=[tool_delta(0, "call_1", "read", '{"pa')]),
            chunk(tool_calls=[tool_delta(0, arguments='th": "a.py"}')]),
            chunk(finish_reason="tool_calls"),
            chunk(usage=SimpleNamespace(prompt_tokens=12, completion_tokens=4)),
        )
    ))))
    chunks = []

    response = await llm.generate([Message(role="user", content="hi")], on_chunk=chunks.append)

    assert chunks == ["Let me ", "look."]
    assert response.content == "Let me look."
    assert response.tool_calls == [ToolCall(id="call_1", name="read", arguments={"path": "a.py"})]
    assert response.usage.input_tokens == 12
    assert response.usage.output_tokens == 4
    assert response.stop_reason == "tool_calls"


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments, expected", [
    ('{"pattern": ', "not valid JSON"),
    ("[1, 2]", "must be a JSON object"),
])
async def test_openai_malformed_tool_arguments(arguments, expected):
    """Test undecodable tool arguments are kept on the call instead of failing the response."""
    llm = OpenAILLM(api_key="k")
    llm.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=AsyncMock(
        return_value=stream_of(
            chunk(tool_calls=[tool_delta(0, "call_1", "glob", arguments)]),
            chunk(tool_calls=[tool_delta(1, "call_2", "read", '{"path": "a.py"}')]),
            chunk(finish_reason="tool_calls"),
        ),
    ))))

    response = await llm.generate([Message(role="user", content="hi")])

    broken, valid = response.tool_calls
    assert broken.name == "glob"
    assert broken.arguments == {}
    assert expected in broken.parse_error
    assert valid.arguments == {"path": "a.py"}
    assert valid.parse_error is None


def test_create_llm_uses_openrouter_endpoint_default():
    """Test OpenRouter gets its endpoint even when the config leaves it empty."""
    router = create_llm(LLMConfig(provider="openrouter", api_key="k", model="a/b", base_url=None))
    custom = create_llm(LLMConfig(provider="openai", api_key="k", base_url="http://localhost:8000/v1"))

    assert router.base_url == "https://openrouter.ai/api/v1"
    assert custom.base_url == "http://localhost:8000/v1"
    assert custom.provider_name == "openai"
