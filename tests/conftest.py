"""
Shared fixtures for agent-runtime tests.
"""

import asyncio
from typing import Any

import pytest

from agent_runtime.config import AgentConfig
from agent_runtime.llm.base import BaseLLM, LLMResponse, Message, TokenUsage, ToolCall


class ScriptedLLM(BaseLLM):
    """LLM double that replays a fixed list of steps.

    A step is an ``LLMResponse`` to return, an exception to raise, or an
    async callable producing a response.
    """

    def __init__(self, steps: list[Any]):
        super().__init__(api_key="test-key", model="fake-model")
        self.steps = list(steps)
        self.calls: list[list[Message]] = []
        self.system_prompts: list[str | None] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    async def generate(self, messages, tools=None, system_prompt=None, on_chunk=None, cancel_token=None):
        self.calls.append(list(messages))
        self.system_prompts.append(system_prompt)
        if not self.steps:
            raise AssertionError("ScriptedLLM ran out of steps")
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step = await step()
        if on_chunk and step.content:
            on_chunk(step.content)
        return step


def reply(text: str, input_tokens: int = 10, output_tokens: int = 5) -> LLMResponse:
    return LLMResponse(content=text, usage=TokenUsage(input_tokens, output_tokens), stop_reason="end_turn")


def tool_calls(*calls: tuple[str, str, dict]) -> LLMResponse:
    return LLMResponse(
        content="",
        tool_calls=[ToolCall(id=call_id, name=name, arguments=args) for call_id, name, args in calls],
        usage=TokenUsage(10, 5),
        stop_reason="tool_use",
    )


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def agent_config() -> AgentConfig:
    return AgentConfig(max_retries=3, base_delay=1.0, max_delay=10.0, jitter_factor=0.2, auto_save=False)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
