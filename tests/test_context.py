"""
Tests for context window selection.
"""

from agent_runtime.agent.context import (
    SUMMARY_INDEX,
    SUMMARY_PREFIX,
    ContextManager,
    ContextPolicy,
    heuristic_summary,
)
from agent_runtime.agent.history import MessageHistory
from agent_runtime.config import AgentConfig
from agent_runtime.llm.base import Message, ToolCall


def build_history() -> MessageHistory:
    """Groups: [0] 14 tokens, [1, 2] 20 tokens, [3] 14 tokens."""
    history = MessageHistory()
    history.add_user_message("a" * 40)
    history.add_assistant_message("", tool_calls=[ToolCall(id="c1", name="glob", arguments={})])
    history.add_tool_result("c1", "r" * 40, "glob")
    history.add_assistant_message("b" * 40)
    return history


def test_everything_fits():
    """Test a large budget keeps all messages in order."""
    history = build_history()
    window = ContextManager(budget=1000).build_window(history)

    assert window.message_indices == [0, 1, 2, 3]
    assert not window.truncated
    assert window.dropped_count == 0
    assert window.token_estimate == history.token_estimate


def test_budget_respected_and_groups_not_split():
    """Test a tool call group is dropped whole rather than split."""
    history = build_history()
    window = ContextManager(budget=30).build_window(history)

    # [2, 3] would fit (28 tokens) but would orphan the tool result
    assert window.message_indices == [3]
    assert window.token_estimate <= 30
    assert window.truncated
    assert window.dropped_count == 3


def test_system_prompt_is_charged():
    """Test the system prompt counts against the budget."""
    history = build_history()
    without = ContextManager(budget=40).build_window(history)
    with_prompt = ContextManager(budget=40).build_window(history, system_prompt="s" * 40)

    assert without.message_indices == [1, 2, 3]
    assert with_prompt.message_indices == [3]
    assert with_prompt.system_tokens == 14
    assert with_prompt.token_estimate <= 40


def test_system_prompt_overflow():
    """Test a system prompt larger than the budget yields an empty, flagged window."""
    history = build_history()
    window = ContextManager(budget=30).build_window(history, system_prompt="s" * 400)

    assert window.overflow
    assert window.pointers == []
    assert window.dropped_count == 4


def test_summarize_places_summary_first():
    """Test the summary pointer leads the window and covers the dropped messages."""
    history = build_history()
    seen: list[list[Message]] = []

    def summarizer(messages):
        seen.append(messages)
        return "short"

    manager = ContextManager(budget=30, policy=ContextPolicy.SUMMARIZE, summarizer=summarizer)
    window = manager.build_window(history)

    assert window.pointers[0].index == SUMMARY_INDEX
    assert window.pointers[0].is_summary
    assert window.message_indices == [3]
    assert window.token_estimate <= 30
    assert len(seen[-1]) == 3

    resolved = window.resolve(history, system_prompt="be brief")
    assert [m.role for m in resolved] == ["system", "user", "assistant"]
    assert resolved[1].content == f"{SUMMARY_PREFIX}short"


def test_summary_that_does_not_fit_is_skipped():
    """Test an oversized summary falls back to plain dropping."""
    history = build_history()
    manager = ContextManager(budget=30, policy="summarize", summarizer=lambda messages: "z" * 400)
    window = manager.build_window(history)

    assert window.message_indices == [3]
    assert not any(p.is_summary for p in window.pointers)
    assert window.token_estimate <= 30


def test_no_summary_without_truncation():
    """Test the summarize policy adds nothing when all messages fit."""
    history = build_history()
    manager = ContextManager(budget=1000, policy=ContextPolicy.SUMMARIZE)

    window = manager.build_window(history)

    assert not any(p.is_summary for p in window.pointers)


def test_window_after_eviction_uses_absolute_indices():
    """Test pointers keep absolute positions once history is evicted."""
    history = build_history()
    history.evict(35)

    window = ContextManager(budget=1000).build_window(history)

    assert window.message_indices == [1, 2, 3]
    assert window.resolve(history)[0].tool_calls


def test_from_config():
    """Test the manager takes budget and policy from AgentConfig."""
    config = AgentConfig(context_window_tokens=5000, reserved_completion_tokens=1000, context_policy="summarize")
    manager = ContextManager.from_config(config)

    assert manager.budget == 4000
    assert manager.policy is ContextPolicy.SUMMARIZE


def test_heuristic_summary_mentions_facts():
    """Test the default summarizer keeps stated facts and counts."""
    summary = heuristic_summary([
        Message(role="user", content="My name is Ada, remember that"),
        Message(role="assistant", content="Noted"),
        Message(role="tool", content="file list", name="glob"),
    ])

    assert "My name is Ada" in summary
    assert "[1 user messages, 1 assistant responses, 1 tool results summarized]" in summary
