"""
Tests for message history.
"""

import pytest

from agent_runtime.agent.history import MessageHistory
from agent_runtime.llm.base import Message, ToolCall


def build_history(**kwargs) -> MessageHistory:
    """user(14) / assistant tool call(6) + tool result(14) / assistant(14)."""
    history = MessageHistory(**kwargs)
    history.add_user_message("a" * 40)
    history.add_assistant_message("", tool_calls=[ToolCall(id="c1", name="glob", arguments={})])
    history.add_tool_result("c1", "r" * 40, "glob")
    history.add_assistant_message("b" * 40)
    return history


def test_append_assigns_identity():
    """Test appended messages get an id, timestamp and turn number."""
    history = MessageHistory()
    history.begin_turn()
    message = history.add_user_message("Hello!")

    assert message.id
    assert message.timestamp
    assert message.turn_index == 1
    assert history.get_by_id(message.id) is message
    assert history.index_of(message.id) == 0


def test_duplicate_consecutive_messages_skipped():
    """Test identical back-to-back user messages are stored once."""
    history = MessageHistory()
    first = history.add_user_message("hi")
    second = history.add_user_message("hi")

    assert second is first
    assert len(history) == 1

    history.add_assistant_message("hello")
    history.add_user_message("hi")
    assert len(history) == 3


def test_groups_keep_tool_results_with_call():
    """Test an assistant tool call and its results form one group."""
    history = build_history()

    assert history.groups() == [(0, 1), (1, 3), (3, 4)]


def test_evict_drops_whole_groups():
    """Test eviction never separates a tool call from its result."""
    history = build_history()
    assert history.token_estimate == 48

    evicted = history.evict(35)

    assert evicted == 1
    assert history.first_index == 1
    assert history.messages[0].tool_calls
    assert history.messages[1].role == "tool"

    evicted = history.evict(30)

    assert evicted == 2
    assert history.first_index == 3
    assert [m.content for m in history.messages] == ["b" * 40]


def test_evict_keeps_most_recent_group():
    """Test the newest group survives even when it alone exceeds the ceiling."""
    history = build_history()

    history.evict(1)

    assert len(history) == 1
    assert history.first_index == 3


def test_evicted_index_raises():
    """Test reading an evicted position raises IndexError."""
    history = build_history()
    evicted_id = history.messages[0].id
    history.evict(35)

    with pytest.raises(IndexError):
        history.get(0)
    assert history.get(1).role == "assistant"
    assert history.get_by_id(evicted_id) is None
    with pytest.raises(IndexError):
        history.get(history.next_index)


def test_token_ceiling_applied_on_append():
    """Test a ceiling evicts automatically as messages arrive."""
    history = build_history(token_ceiling=30)

    assert history.token_estimate <= 30
    assert history.first_index == 3


def test_history_limit_trims_oldest():
    """Test the message count limit trims old groups."""
    history = MessageHistory(history_limit=3)
    for i in range(5):
        history.add_user_message(f"Message {i}")

    assert len(history) == 3
    assert history.messages[0].content == "Message 2"
    assert history.first_index == 2


def test_read_range_is_clamped():
    """Test ranges outside the retained window are clamped."""
    history = build_history()
    history.evict(35)

    assert [m.role for m in history.read_range(0, 3)] == ["assistant", "tool"]
    assert history.read_range(10, 20) == []


def test_from_messages_preserves_positions():
    """Test rebuilding a history keeps ids and absolute indices."""
    original = build_history()
    original.evict(35)

    rebuilt = MessageHistory.from_messages(original.messages, first_index=original.first_index)

    assert rebuilt.first_index == 1
    assert rebuilt.next_index == 4
    assert rebuilt.get(3).content == "b" * 40
    assert rebuilt.index_of(original.messages[0].id) == 1


@pytest.mark.asyncio
async def test_snapshot_is_a_copy():
    """Test snapshots are unaffected by later appends."""
    history = MessageHistory()
    history.add_user_message("one")

    first_index, messages = await history.snapshot()
    await history.append_async(Message(role="assistant", content="two"))

    assert first_index == 0
    assert len(messages) == 1
    assert len(history) == 2


def test_last_user_message():
    """Test the newest user message is found behind assistant and tool messages."""
    history = build_history()
    assert history.last_user_message().content == "a" * 40

    history.add_user_message("follow up")
    history.add_assistant_message("done")

    assert history.last_user_message().content == "follow up"
    assert MessageHistory().last_user_message() is None
