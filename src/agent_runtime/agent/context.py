"""
Context window selection.

For every LLM call the context manager picks the slice of history that fits
the model's budget. It works on pointers (absolute history positions plus an
estimated cost) and only resolves them to full messages when the window is
serialized for the model call.

Truncation policies:
- drop_oldest: messages that do not fit are omitted
- summarize: a synthetic summary of the omitted messages is placed at the
  start of the window, built by a pluggable summarizer (a deterministic
  heuristic by default)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import structlog

from ..config import AgentConfig
from ..llm.base import Message
from .history import MessageHistory
from .tokens import estimate_message_tokens, estimate_text_tokens

logger = structlog.get_logger()

SUMMARY_INDEX = -1
SUMMARY_PREFIX = "[Previous conversation summary]: "

Summarizer = Callable[[list[Message]], str]


class ContextPolicy(str, Enum):
    """What to do with messages that no longer fit the window."""

    DROP_OLDEST = "drop_oldest"
    SUMMARIZE = "summarize"


@dataclass(frozen=True)
class ContextPointer:
    """Reference to a history message (or a synthetic summary) with its cost."""

    index: int
    token_cost: int
    summary: str | None = None

    @property
    def is_summary(self) -> bool:
        return self.index == SUMMARY_INDEX

    def to_dict(self) -> dict:
        return {"index": self.index, "token_cost": self.token_cost, "summary": self.summary}


@dataclass
class ContextWindow:
    """The selection made for one LLM call."""

    pointers: list[ContextPointer] = field(default_factory=list)
    budget: int = 0
    system_tokens: int = 0
    truncated: bool = False
    dropped_count: int = 0
    overflow: bool = False

    @property
    def token_estimate(self) -> int:
        return self.system_tokens + sum(p.token_cost for p in self.pointers)

    @property
    def message_indices(self) -> list[int]:
        return [p.index for p in self.pointers if not p.is_summary]

    def resolve(self, history: MessageHistory, system_prompt: str | None = None) -> list[Message]:
        """Materialize the window as messages for the model call."""
        messages: list[Message] = []
        if system_prompt:
            messages.append(Message(role="system", content=system_prompt))
        for pointer in self.pointers:
            if pointer.is_summary:
                messages.append(summary_message(pointer.summary or ""))
            else:
                messages.append(history.get(pointer.index))
        return messages


def summary_message(summary: str) -> Message:
    return Message(role="user", content=f"{SUMMARY_PREFIX}{summary}")


def _extract_key_facts(messages: list[Message]) -> list[str]:
    """Extract key facts and information from messages for the summary."""
    facts = []

    for msg in messages:
        content = msg.content

        if msg.role == "tool" and content.strip():
            facts.append(f"[Tool result{f' {msg.name}' if msg.name else ''}]: {content[:200]}")

        if msg.role == "user":
            content_lower = content.lower()
            if any(phrase in content_lower for phrase in [
                "my name is", "i work", "i prefer", "remember that",
                "don't forget", "important:", "must", "always", "never",
            ]):
                facts.append(f"[User stated]: {content[:200]}")

    return facts[:10]


def heuristic_summary(messages: list[Message]) -> str:
    """Deterministic summary of dropped messages, no model call involved."""
    parts = ["Earlier in this conversation:"]

    key_facts = _extract_key_facts(messages)
    if key_facts:
        parts.append("\nKey information:")
        for fact in key_facts:
            parts.append(f"  - {fact}")

    user_count = sum(1 for m in messages if m.role == "user")
    assistant_count = sum(1 for m in messages if m.role == "assistant")
    tool_count = sum(1 for m in messages if m.role == "tool")

    parts.append(
        f"\n[{user_count} user messages, {assistant_count} assistant responses, "
        f"{tool_count} tool results summarized]"
    )

    user_messages = [m for m in messages if m.role == "user"]
    if user_messages:
        parts.append(f"\nFirst topic: {user_messages[0].content[:150]}")
        if len(user_messages) > 1:
            parts.append(f"Last topic before this: {user_messages[-1].content[:150]}")

    return "\n".join(parts)


class ContextManager:
    """Builds token-bounded context windows over a message history."""

    def __init__(
        self,
        budget: int,
        policy: ContextPolicy | str = ContextPolicy.DROP_OLDEST,
        summarizer: Summarizer | None = None,
    ):
        self.budget = budget
        self.policy = ContextPolicy(policy)
        self.summarizer = summarizer or heuristic_summary

    @classmethod
    def from_config(cls, config: AgentConfig, summarizer: Summarizer | None = None) -> "ContextManager":
        return cls(budget=config.context_budget, policy=config.context_policy, summarizer=summarizer)

    def build_window(self, history: MessageHistory, system_prompt: str = "") -> ContextWindow:
        """Select the newest message groups that fit the budget.

        The system prompt is charged first. Groups are taken newest first and
        never split, so a tool-call message always travels with its results.
        """
        system_tokens = (
            estimate_message_tokens(Message(role="system", content=system_prompt))
            if system_prompt else 0
        )
        window = ContextWindow(budget=self.budget, system_tokens=system_tokens)

        if system_tokens > self.budget:
            window.overflow = True
            window.truncated = len(history) > 0
            window.dropped_count = len(history)
            logger.warning("System prompt exceeds context budget",
                           system_tokens=system_tokens, budget=self.budget)
            return window

        remaining = self.budget - system_tokens
        selected: list[tuple[int, int, int]] = []
        for start, stop in reversed(history.groups()):
            cost = sum(history.cost(i) for i in range(start, stop))
            if cost > remaining:
                break
            selected.append((start, stop, cost))
            remaining -= cost
        selected.reverse()

        first_kept = selected[0][0] if selected else history.next_index
        window.dropped_count = first_kept - history.first_index
        window.truncated = window.dropped_count > 0
        if not selected and len(history):
            window.overflow = True

        summary_pointer = None
        if window.truncated and self.policy is ContextPolicy.SUMMARIZE:
            summary_pointer, selected = self._fit_summary(history, selected, remaining)
            first_kept = selected[0][0] if selected else history.next_index
            window.dropped_count = first_kept - history.first_index

        if summary_pointer is not None:
            window.pointers.append(summary_pointer)
        for start, stop, _ in selected:
            window.pointers.extend(
                ContextPointer(index=i, token_cost=history.cost(i)) for i in range(start, stop)
            )

        if window.truncated:
            logger.info(
                "Context window truncated",
                policy=self.policy.value,
                dropped=window.dropped_count,
                kept=len(window.message_indices),
                estimated_tokens=window.token_estimate,
                budget=self.budget,
            )
        return window

    def _fit_summary(
        self,
        history: MessageHistory,
        selected: list[tuple[int, int, int]],
        remaining: int,
    ) -> tuple[ContextPointer | None, list[tuple[int, int, int]]]:
        """Make room for a summary pointer by giving up the oldest kept groups."""
        selected = list(selected)
        while True:
            first_kept = selected[0][0] if selected else history.next_index
            dropped = history.read_range(history.first_index, first_kept)
            summary = self.summarizer(dropped)
            cost = estimate_message_tokens(summary_message(summary))
            if cost <= remaining:
                return ContextPointer(index=SUMMARY_INDEX, token_cost=cost, summary=summary), selected
            if len(selected) <= 1:
                logger.debug("Summary does not fit the budget, dropping without it",
                             summary_tokens=estimate_text_tokens(summary), remaining=remaining)
                return None, selected
            _, _, freed = selected.pop(0)
            remaining += freed
