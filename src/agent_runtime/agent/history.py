"""
Message history for one conversation.

An append-only log addressed by absolute position. Evicting old messages
advances ``first_index`` instead of renumbering, so positions handed out
earlier (context pointers, session snapshots) stay meaningful. Eviction
treats an assistant tool-call message and its tool results as one unit.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Iterable

import structlog

from ..llm.base import Message, ToolCall
from .tokens import estimate_message_tokens

logger = structlog.get_logger()

DEFAULT_HISTORY_LIMIT = 1000


class MessageHistory:
    """Ordered conversation log with group-aware eviction."""

    def __init__(
        self,
        history_limit: int | None = DEFAULT_HISTORY_LIMIT,
        token_ceiling: int | None = None,
        first_index: int = 0,
    ):
        self.history_limit = history_limit
        self.token_ceiling = token_ceiling
        self._messages: list[Message] = []
        self._costs: list[int] = []
        self._offset = first_index
        self._ids: dict[str, int] = {}
        self._turn = 0
        self._lock = asyncio.Lock()

    @classmethod
    def from_messages(
        cls,
        messages: Iterable[Message],
        first_index: int = 0,
        history_limit: int | None = DEFAULT_HISTORY_LIMIT,
        token_ceiling: int | None = None,
    ) -> "MessageHistory":
        """Rebuild a history from stored messages, keeping their ids and positions."""
        history = cls(history_limit=history_limit, token_ceiling=token_ceiling, first_index=first_index)
        for message in messages:
            history._store(message)
            if message.turn_index is not None:
                history._turn = max(history._turn, message.turn_index)
        return history

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def first_index(self) -> int:
        """Absolute index of the oldest retained message."""
        return self._offset

    @property
    def next_index(self) -> int:
        """Absolute index the next appended message will get."""
        return self._offset + len(self._messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def token_estimate(self) -> int:
        return sum(self._costs)

    @property
    def current_turn(self) -> int:
        return self._turn

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(tuple(self._messages))

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------

    def begin_turn(self) -> int:
        """Start a new conversation turn; appended messages carry its number."""
        self._turn += 1
        return self._turn

    def append(self, message: Message) -> Message:
        """Append a message and return the stored instance.

        A user or assistant message identical to the previous one is not
        stored twice; the existing message is returned instead.
        """
        if self._messages and message.role in ("user", "assistant") and not message.tool_calls:
            last = self._messages[-1]
            if last.role == message.role and last.content == message.content and not last.tool_calls:
                logger.debug("Skipping duplicate consecutive message", role=message.role)
                return last

        if not message.id:
            message.id = uuid.uuid4().hex
        if not message.timestamp:
            message.timestamp = datetime.now(timezone.utc).isoformat()
        if message.turn_index is None and self._turn:
            message.turn_index = self._turn

        self._store(message)
        self._enforce_limits()
        return message

    def extend(self, messages: Iterable[Message]) -> list[Message]:
        return [self.append(m) for m in messages]

    async def append_async(self, message: Message) -> Message:
        async with self._lock:
            return self.append(message)

    def add_user_message(self, content: str) -> Message:
        return self.append(Message(role="user", content=content))

    def add_assistant_message(self, content: str, tool_calls: list[ToolCall] | None = None) -> Message:
        return self.append(Message(role="assistant", content=content, tool_calls=tool_calls or None))

    def add_tool_result(self, tool_call_id: str, result: str, tool_name: str = "") -> Message:
        return self.append(Message(role="tool", content=result, tool_call_id=tool_call_id, name=tool_name))

    def _store(self, message: Message) -> None:
        if message.id:
            self._ids[message.id] = self.next_index
        self._messages.append(message)
        self._costs.append(estimate_message_tokens(message))

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get(self, index: int) -> Message:
        """Return the message at absolute ``index``."""
        if index < self._offset or index >= self.next_index:
            raise IndexError(f"Message index {index} is not retained "
                             f"(retained range {self._offset}..{self.next_index - 1})")
        return self._messages[index - self._offset]

    def get_by_id(self, message_id: str) -> Message | None:
        index = self._ids.get(message_id)
        if index is None or index < self._offset:
            return None
        return self._messages[index - self._offset]

    def index_of(self, message_id: str) -> int | None:
        index = self._ids.get(message_id)
        if index is None or index < self._offset:
            return None
        return index

    def cost(self, index: int) -> int:
        """Estimated tokens for the message at absolute ``index``."""
        self.get(index)
        return self._costs[index - self._offset]

    def read_range(self, start: int | None = None, stop: int | None = None) -> list[Message]:
        """Messages with absolute indices in ``[start, stop)``, clamped to what is retained."""
        start = self._offset if start is None else max(start, self._offset)
        stop = self.next_index if stop is None else min(stop, self.next_index)
        if start >= stop:
            return []
        return self._messages[start - self._offset:stop - self._offset]

    async def snapshot(self) -> tuple[int, list[Message]]:
        """Consistent copy of ``(first_index, messages)`` taken under the lock."""
        async with self._lock:
            return self._offset, list(self._messages)

    def last_user_message(self) -> Message | None:
        for message in reversed(self._messages):
            if message.role == "user":
                return message
        return None

    def groups(self) -> list[tuple[int, int]]:
        """Partition retained messages into ``(start, stop)`` absolute ranges.

        An assistant message with tool calls forms one group together with
        the tool results that directly follow it; every other message is a
        group of its own.
        """
        groups: list[tuple[int, int]] = []
        i = 0
        count = len(self._messages)
        while i < count:
            message = self._messages[i]
            j = i + 1
            if message.role == "assistant" and message.tool_calls:
                call_ids = {call.id for call in message.tool_calls}
                while (
                    j < count
                    and self._messages[j].role == "tool"
                    and self._messages[j].tool_call_id in call_ids
                ):
                    j += 1
            groups.append((self._offset + i, self._offset + j))
            i = j
        return groups

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict(self, token_ceiling: int | None = None) -> int:
        """Drop the oldest groups while the estimate exceeds the ceiling.

        The most recent group is always retained. Returns the number of
        messages evicted.
        """
        ceiling = self.token_ceiling if token_ceiling is None else token_ceiling
        if ceiling is None:
            return 0

        total = self.token_estimate
        groups = self.groups()
        evicted = 0
        while total > ceiling and len(groups) > 1:
            start, stop = groups.pop(0)
            total -= sum(self._costs[start - self._offset:stop - self._offset])
            evicted += stop - start

        if evicted:
            self._drop(evicted)
            logger.info("History evicted", removed=evicted, remaining=len(self._messages),
                        estimated_tokens=total, ceiling=ceiling)
        return evicted

    def _enforce_limits(self) -> None:
        if self.history_limit is not None and len(self._messages) > self.history_limit:
            overflow = len(self._messages) - self.history_limit
            removed = 0
            for start, stop in self.groups()[:-1]:
                if removed >= overflow:
                    break
                removed += stop - start
            if removed:
                self._drop(removed)
                logger.debug("History trimmed", removed=removed, remaining=len(self._messages))

        if self.token_ceiling is not None:
            self.evict()

    def _drop(self, count: int) -> None:
        for message in self._messages[:count]:
            self._ids.pop(message.id, None)
        del self._messages[:count]
        del self._costs[:count]
        self._offset += count
