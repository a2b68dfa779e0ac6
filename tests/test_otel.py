"""
Tests for OpenTelemetry span export.
"""

import pytest
from conftest import ScriptedLLM, reply, tool_calls
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from agent_runtime.agent import Agent
from agent_runtime.errors import ErrorKind, ModelCallError
from agent_runtime.telemetry.otel import OpenTelemetryCallbacks, create_exporter, create_tracer_provider
from agent_runtime.tools import Tool, ToolParameter, ToolRegistry, ToolResult


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def otel_callbacks(exporter) -> OpenTelemetryCallbacks:
    provider = create_tracer_provider(exporter, batch=False)
    return OpenTelemetryCallbacks(provider, provider_name="fake", model="fake-model")


def read_registry() -> ToolRegistry:
    async def read(path: str) -> ToolResult:
        return ToolResult.ok(path, "print(1)")

    registry = ToolRegistry()
    registry.register(Tool(name="read", description="Read a file", handler=read,
                           parameters=[ToolParameter("path", "string", "File path")]))
    return registry


def by_name(spans):
    return {span.name: span for span in spans}


@pytest.mark.asyncio
async def test_turn_exported_with_runtime_ids(agent_config, exporter, otel_callbacks):
    """Test the turn, model calls and tool call become spans sharing the runtime's ids."""
    llm = ScriptedLLM([tool_calls(("call_1", "read", {"path": "a.py"})), reply("Done.")])
    agent = Agent(llm=llm, tool_registry=read_registry(), config=agent_config, callbacks=otel_callbacks)

    result = await agent.run_turn("show a.py")

    spans = exporter.get_finished_spans()
    assert len(spans) == 4
    named = by_name(spans)
    root = named["invoke_agent"]
    tool = named["execute_tool read"]
    chats = [span for span in spans if span.name == "chat fake-model"]

    assert format(root.context.trace_id, "032x") == result.span.trace_id
    assert format(root.context.span_id, "016x") == result.span.span_id
    assert root.parent is None
    assert {span.context.trace_id for span in spans} == {root.context.trace_id}
    assert all(span.parent.span_id == root.context.span_id for span in chats + [tool])

    assert root.attributes["gen_ai.operation.name"] == "invoke_agent"
    assert root.attributes["gen_ai.usage.input_tokens"] == 20
    assert root.status.status_code is StatusCode.OK
    assert chats[0].attributes["gen_ai.provider.name"] == "fake"
    assert chats[0].attributes["gen_ai.request.model"] == "fake-model"
    assert chats[0].attributes["gen_ai.usage.output_tokens"] == 5
    assert tool.attributes["gen_ai.tool.name"] == "read"
    assert tool.attributes["gen_ai.tool.call.id"] == "call_1"
    assert otel_callbacks.open_spans == 0


@pytest.mark.asyncio
async def test_failed_tool_and_turn_marked_as_errors(agent_config, recording_sleep, exporter, otel_callbacks):
    """Test tool failures and a failed model call set error.type and an error status."""
    llm = ScriptedLLM([
        tool_calls(("call_1", "missing", {})),
        ModelCallError(ErrorKind.AUTHENTICATION_ERROR, "bad key"),
    ])
    agent = Agent(llm=llm, tool_registry=read_registry(), config=agent_config,
                  callbacks=otel_callbacks, sleep=recording_sleep)

    await agent.run_turn("go")

    spans = exporter.get_finished_spans()
    named = by_name(spans)
    failed_chat = [span for span in spans if span.name == "chat fake-model"][-1]

    assert named["execute_tool missing"].attributes["error.type"] == "NOT_FOUND"
    assert failed_chat.attributes["error.type"] == "AUTHENTICATION_ERROR"
    assert failed_chat.status.status_code is StatusCode.ERROR
    assert named["invoke_agent"].attributes["error.type"] == "AUTHENTICATION_ERROR"
    assert named["invoke_agent"].status.status_code is StatusCode.ERROR
    assert otel_callbacks.open_spans == 0


@pytest.mark.asyncio
async def test_retries_recorded_as_events(agent_config, recording_sleep, exporter, otel_callbacks):
    """Test each retry adds an event to the model call span."""
    llm = ScriptedLLM([ModelCallError(ErrorKind.TIMEOUT, "slow"), reply("ok")])
    agent = Agent(llm=llm, tool_registry=ToolRegistry(), config=agent_config,
                  callbacks=otel_callbacks, sleep=recording_sleep)

    await agent.run_turn("hi")

    chat = by_name(exporter.get_finished_spans())["chat fake-model"]
    assert [event.name for event in chat.events] == ["retry"]
    assert chat.events[0].attributes["error.type"] == "TIMEOUT"


def test_create_exporter():
    """Test exporter selection by name."""
    assert create_exporter("none") is None
    assert create_exporter("console") is not None
    with pytest.raises(ValueError):
        create_exporter("carrier-pigeon")
