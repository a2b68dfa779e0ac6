"""
Token estimation and usage accounting.

Estimation is a cheap character heuristic used before a model call to size
the context window. Accounting accumulates the exact figures the provider
reports after each call.
"""

import json
import math
from typing import Iterable

from ..llm.base import Message, TokenUsage, extract_usage

__all__ = [
    "CHARS_PER_TOKEN",
    "TokenUsageTracker",
    "estimate_message_tokens",
    "estimate_text_tokens",
    "estimate_tokens",
    "extract_usage",
]

# Approximate characters per token (conservative estimate)
CHARS_PER_TOKEN = 4

# Role markers and formatting added by providers around every message
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_text_tokens(text: str) -> int:
    """Estimate token count for a text blob."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Estimate token count for a single message, including tool call payloads."""
    tokens = MESSAGE_OVERHEAD_TOKENS + estimate_text_tokens(message.content)
    for call in message.tool_calls or []:
        tokens += estimate_text_tokens(call.name)
        tokens += estimate_text_tokens(json.dumps(call.arguments, sort_keys=True, default=str))
    return tokens


def estimate_tokens(messages: Iterable[Message]) -> int:
    """Estimate token count for a list of messages."""
    return sum(estimate_message_tokens(m) for m in messages)


class TokenUsageTracker:
    """Session-scoped running totals of provider-reported usage.

    Append-only: callers can record new usage and read the totals, but
    recorded entries are never changed or removed.
    """

    def __init__(self, initial: TokenUsage | None = None):
        self._calls: list[TokenUsage] = []
        self._total = initial or TokenUsage()

    def record(self, usage: TokenUsage) -> TokenUsage:
        """Add one call's usage and return the new total."""
        self._calls.append(usage)
        self._total = self._total + usage
        return self._total

    @property
    def total(self) -> TokenUsage:
        return self._total

    @property
    def calls(self) -> tuple[TokenUsage, ...]:
        return tuple(self._calls)

    @property
    def call_count(self) -> int:
        return len(self._calls)
