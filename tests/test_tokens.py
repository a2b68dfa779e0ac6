"""
Tests for token estimation and usage accounting.
"""

from types import SimpleNamespace

from agent_runtime.agent.tokens import (
    MESSAGE_OVERHEAD_TOKENS,
    TokenUsageTracker,
    estimate_message_tokens,
    estimate_text_tokens,
    estimate_tokens,
    extract_usage,
)
from agent_runtime.llm.base import Message, TokenUsage, ToolCall


def test_estimate_text_tokens():
    """Test the four-characters-per-token heuristic rounds up."""
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("abcde") == 2


def test_estimate_message_tokens_counts_tool_calls():
    """Test tool call names and arguments add to the estimate."""
    plain = Message(role="assistant", content="")
    with_call = Message(
        role="assistant",
        content="",
        tool_calls=[ToolCall(id="c1", name="read", arguments={"path": "src/main.py"})],
    )

    assert estimate_message_tokens(plain) == MESSAGE_OVERHEAD_TOKENS
    assert estimate_message_tokens(with_call) > estimate_message_tokens(plain)


def test_estimate_tokens_sums_messages():
    """Test the list estimate is the sum of message estimates."""
    messages = [Message(role="user", content="x" * 40), Message(role="assistant", content="y" * 8)]

    assert estimate_tokens(messages) == (4 + 10) + (4 + 2)


def test_extract_usage_formats():
    """Test OpenAI, Anthropic and wrapped usage payloads."""
    assert extract_usage({"usage": {"prompt_tokens": 12, "completion_tokens": 3}}) == TokenUsage(12, 3)
    assert extract_usage({"input_tokens": 7, "output_tokens": 2}) == TokenUsage(7, 2)
    assert extract_usage({"token_usage": {"input_tokens": 1}}) == TokenUsage(1, 0)
    assert extract_usage({"usage": {}}) is None
    assert extract_usage(None) is None


def test_extract_usage_from_sdk_objects():
    """Test usage objects with attributes are read like dicts."""
    openai_usage = SimpleNamespace(prompt_tokens=20, completion_tokens=6, total_tokens=26)
    anthropic_response = SimpleNamespace(usage=SimpleNamespace(input_tokens=9, output_tokens=4))

    assert extract_usage(openai_usage) == TokenUsage(20, 6)
    assert extract_usage(anthropic_response) == TokenUsage(9, 4)


def test_usage_tracker_accumulates():
    """Test the tracker adds calls onto its initial total."""
    tracker = TokenUsageTracker(initial=TokenUsage(100, 50))

    tracker.record(TokenUsage(10, 5))
    total = tracker.record(TokenUsage(1, 1))

    assert total == TokenUsage(111, 56)
    assert tracker.total.total_tokens == 167
    assert tracker.call_count == 2
    assert tracker.calls == (TokenUsage(10, 5), TokenUsage(1, 1))
