"""
Core agent implementation.

This is the brain of the system. For each user query it:
1. Builds a token-bounded context window over the message history
2. Streams a model response, retrying transient provider failures
3. Runs requested tool calls concurrently and feeds the results back
4. Repeats until the model gives a final answer, the iteration cap is hit,
   the turn fails or it is cancelled
5. Saves the session when auto-save is enabled

Every turn gets a root span; each LLM call and each tool call gets a child
span, bound into the structlog context while it runs.
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

import structlog
from structlog.contextvars import bound_contextvars

from ..cancellation import CancellationToken
from ..config import AgentConfig, Settings, get_settings
from ..errors import AgentError, AgentRuntimeError, ErrorKind, SessionError
from ..llm import BaseLLM, LLMResponse, Message, TokenUsage, ToolCall, ToolDefinition, create_llm
from ..telemetry import SpanContext, new_child_span, new_root_span
from ..tools import ToolContext, ToolRegistry, ToolResult, get_tool_registry
from .callbacks import AgentCallbacks
from .context import ContextManager, ContextWindow, Summarizer
from .history import MessageHistory
from .retry import RetryPolicy, call_with_retry
from .session import SessionManager, SessionMetadata, StoredSession
from .stream import StreamChannel, StreamEvent
from .tokens import TokenUsageTracker

logger = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = """You are a helpful software engineering agent working in the user's workspace.

You have access to tools that help you accomplish tasks:
- **glob**: Find files by name pattern
- **read**: Read the contents of a file
- **bash**: Run shell commands in the workspace

Guidelines:
1. Be helpful, accurate, and concise
2. Use tools to look at the workspace instead of guessing
3. Independent tool calls may be issued together; they run concurrently
4. If one step depends on another's result, issue it in a later turn
5. If you're unsure, say so"""


class AgentState(str, Enum):
    """States of one agent turn."""

    IDLE = "idle"
    DISPATCHING_LLM = "dispatching_llm"
    DISPATCHING_TOOLS = "dispatching_tools"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (AgentState.COMPLETED, AgentState.FAILED, AgentState.CANCELLED)


@dataclass
class TurnResult:
    """Outcome of one turn. ``error`` is set for failed and cancelled turns."""

    state: AgentState = AgentState.IDLE
    answer: str = ""
    error: AgentError | None = None
    span: SpanContext | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    llm_calls: int = 0
    tool_calls: int = 0

    @property
    def success(self) -> bool:
        return self.state is AgentState.COMPLETED


class Agent:
    """Runs conversation turns against an LLM with tool support.

    One agent owns one conversation (message history, usage totals and an
    optional session id). Turns on the same agent run one at a time.
    """

    def __init__(
        self,
        llm: BaseLLM | None = None,
        tool_registry: ToolRegistry | None = None,
        config: AgentConfig | None = None,
        callbacks: AgentCallbacks | None = None,
        session_manager: SessionManager | None = None,
        system_prompt: str | None = None,
        session_id: str | None = None,
        settings: Settings | None = None,
        summarizer: Summarizer | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        if llm is None or config is None:
            settings = settings or get_settings()
        self.llm = llm or create_llm(settings=settings)
        self.tool_registry = tool_registry if tool_registry is not None else get_tool_registry()
        self.config = config or settings.get_agent_config()
        self.callbacks = callbacks or AgentCallbacks()
        self.session_manager = session_manager
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.session_id = session_id
        self.session_name: str | None = None

        self.history = MessageHistory(token_ceiling=self.config.history_token_ceiling)
        self.context_manager = ContextManager.from_config(self.config, summarizer)
        self.retry_policy = RetryPolicy.from_config(self.config)
        self.usage = TokenUsageTracker()
        self.state = AgentState.IDLE
        self.last_window: ContextWindow | None = None

        self._rng = rng
        self._sleep = sleep
        self._resume_summary: str | None = None
        self._active_token: CancellationToken | None = None
        self._turn_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        query: str,
        cancel_token: CancellationToken | None = None,
        stream: StreamChannel | None = None,
    ) -> TurnResult:
        """Run one full turn. Failures are reported in the result, never raised."""
        async with self._turn_lock:
            token = cancel_token or CancellationToken()
            self._active_token = token
            span = new_root_span()
            result = TurnResult(span=span)

            with bound_contextvars(**span.as_log_context(), session_id=self.session_id):
                self._emit("on_turn_start", span, query)
                try:
                    self.history.begin_turn()
                    await self.history.append_async(Message(role="user", content=query))
                    result.answer = await self._loop(span, token, result, stream)
                    result.state = AgentState.COMPLETED
                except asyncio.CancelledError:
                    token.cancel("Turn task cancelled")
                    self._finish_failed(result, AgentError(ErrorKind.CANCELLED, "Turn task cancelled", span))
                    self._finish_turn(result, stream)
                    raise
                except Exception as e:
                    self._finish_failed(result, AgentError.from_exception(e, span))
                finally:
                    self._active_token = None

                if result.state is AgentState.COMPLETED and self.config.auto_save and self.session_manager:
                    await self._auto_save()

                self._finish_turn(result, stream)
            return result

    async def stream_turn(
        self,
        query: str,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run a turn, yielding text chunks as they arrive.

        The last event is ``DONE`` (carrying the ``TurnResult``) or ``ERROR``.
        Leaving the loop early cancels the turn.
        """
        channel = StreamChannel()
        task = asyncio.create_task(self.run_turn(query, cancel_token, stream=channel))
        try:
            async for event in channel.events():
                yield event
        finally:
            if not task.done():
                self.cancel("Stream consumer stopped")
            await task

    async def process_message(self, query: str, cancel_token: CancellationToken | None = None) -> str:
        """Process a user message and return the response text."""
        result = await self.run_turn(query, cancel_token)
        if result.success:
            return result.answer
        return result.error.user_message() if result.error else "An unexpected error occurred."

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        """Cancel the turn in progress, if any."""
        if self._active_token is None:
            return False
        self._active_token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def build_session(self) -> StoredSession:
        """Snapshot the conversation as a session record."""
        first_index, messages = await self.history.snapshot()
        stop = first_index + len(messages)
        pointers = []
        if self.last_window is not None:
            pointers = [
                p for p in self.last_window.pointers
                if p.is_summary or first_index <= p.index < stop
            ]
        total = self.usage.total
        return StoredSession(
            metadata=SessionMetadata(
                id=self.session_id or "",
                name=self.session_name or "",
                provider=self.llm.provider_name,
                model=self.llm.model,
                input_tokens=total.input_tokens,
                output_tokens=total.output_tokens,
            ),
            first_index=first_index,
            messages=messages,
            context_pointers=pointers,
        )

    async def save_session(self, name: str | None = None) -> SessionMetadata:
        if self.session_manager is None:
            raise SessionError(ErrorKind.IO_ERROR, "No session manager configured")
        metadata = await self.session_manager.save(await self.build_session(), name=name)
        self.session_id = metadata.id
        self.session_name = metadata.name
        return metadata

    async def resume_session(self, session_id: str) -> StoredSession:
        """Replace this agent's conversation with a stored session."""
        if self.session_manager is None:
            raise SessionError(ErrorKind.IO_ERROR, "No session manager configured")
        stored = await self.session_manager.resume(session_id)

        self.history = MessageHistory.from_messages(
            stored.messages,
            first_index=stored.first_index,
            token_ceiling=self.config.history_token_ceiling,
        )
        self.usage = TokenUsageTracker(initial=TokenUsage(
            input_tokens=stored.metadata.input_tokens,
            output_tokens=stored.metadata.output_tokens,
        ))
        self.last_window = ContextWindow(pointers=list(stored.context_pointers))
        self.session_id = stored.metadata.id
        self.session_name = stored.metadata.name
        self._resume_summary = stored.context_summary
        logger.info("Session resumed", session_id=session_id, messages=len(stored.messages))
        return stored

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _effective_system_prompt(self) -> str:
        if self._resume_summary:
            return f"{self.system_prompt}\n\n{self._resume_summary}"
        return self.system_prompt

    def _set_state(self, state: AgentState) -> None:
        logger.debug("Agent state", state=state.value)
        self.state = state

    async def _loop(
        self,
        span: SpanContext,
        token: CancellationToken,
        result: TurnResult,
        stream: StreamChannel | None,
    ) -> str:
        tools = self.tool_registry.get_definitions() or None

        for iteration in range(1, self.config.max_iterations + 1):
            token.raise_if_cancelled()
            self._set_state(AgentState.DISPATCHING_LLM)
            response = await self._call_llm(span, token, result, iteration, tools, stream)

            if response.tool_calls:
                await self.history.append_async(Message(
                    role="assistant",
                    content=response.content,
                    tool_calls=response.tool_calls,
                ))
                self._set_state(AgentState.DISPATCHING_TOOLS)
                await self._run_tools(span, token, response.tool_calls, result)
                token.raise_if_cancelled()
                continue

            await self.history.append_async(Message(role="assistant", content=response.content))
            return response.content

        raise AgentRuntimeError(
            ErrorKind.ITERATION_LIMIT_EXCEEDED,
            f"No final answer after {self.config.max_iterations} model calls",
            {"max_iterations": self.config.max_iterations},
        )

    async def _call_llm(
        self,
        span: SpanContext,
        token: CancellationToken,
        result: TurnResult,
        iteration: int,
        tools: list[ToolDefinition] | None,
        stream: StreamChannel | None,
    ) -> LLMResponse:
        llm_span = new_child_span(span)
        system_prompt = self._effective_system_prompt()
        window = self.context_manager.build_window(self.history, system_prompt)
        self.last_window = window
        if window.overflow:
            raise AgentRuntimeError(
                ErrorKind.CONTEXT_LENGTH_EXCEEDED,
                "The latest message does not fit the context window",
                {"budget": window.budget, "system_tokens": window.system_tokens, "span_id": llm_span.span_id},
            )
        messages = window.resolve(self.history)

        def on_chunk(text: str) -> None:
            if stream is not None:
                stream.send(text, llm_span)
            self._emit("on_llm_stream", llm_span, text)

        def on_retry(attempt: int, delay: float, error) -> None:
            self._emit("on_retry", llm_span, attempt, delay, error)

        def generate() -> Awaitable[LLMResponse]:
            return token.guard(self.llm.generate(
                messages=messages,
                tools=tools,
                system_prompt=system_prompt,
                on_chunk=on_chunk,
                cancel_token=token,
            ))

        with bound_contextvars(**llm_span.as_log_context()):
            logger.info("LLM call", iteration=iteration, messages=len(messages),
                        estimated_tokens=window.token_estimate, truncated=window.truncated)
            self._emit("on_llm_start", llm_span, iteration, len(messages))
            self._emit("on_spinner_start", llm_span, "Thinking...")
            try:
                response = await call_with_retry(
                    generate,
                    self.retry_policy,
                    sleep=self._sleep or token.sleep,
                    rng=self._rng,
                    on_retry=on_retry,
                )
            except AgentRuntimeError as e:
                e.details.setdefault("span_id", llm_span.span_id)
                raise
            finally:
                self._emit("on_spinner_stop", llm_span)

            result.llm_calls += 1
            result.usage = result.usage + response.usage
            self.usage.record(response.usage)
            self._emit("on_llm_end", llm_span, response)
            return response

    async def _run_tools(
        self,
        span: SpanContext,
        token: CancellationToken,
        calls: list[ToolCall],
        result: TurnResult,
    ) -> None:
        """Run all tool calls of one model turn concurrently.

        Results are appended in the order the model requested the calls,
        whatever order they finish in.
        """
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_tools))

        async def run_one(call: ToolCall) -> ToolResult:
            tool_span = new_child_span(span)
            async with semaphore:
                with bound_contextvars(**tool_span.as_log_context(), tool=call.name):
                    self._emit("on_tool_start", tool_span, call)
                    context = ToolContext(
                        session_id=self.session_id or "",
                        turn_id=span.span_id,
                        call_id=call.id,
                        span=tool_span,
                        cancel_token=token,
                        on_metadata=lambda update: self._emit("on_tool_metadata", tool_span, call, update),
                    )
                    if token.cancelled:
                        tool_result = ToolResult.cancelled(call.name)
                    elif call.parse_error:
                        tool_result = ToolResult.error(ErrorKind.VALIDATION_ERROR, call.parse_error, title=call.name)
                    else:
                        tool_result = await self.tool_registry.execute(call.name, call.arguments, context)
                    self._emit("on_tool_end", tool_span, call, tool_result)
                    return tool_result

        results = await asyncio.gather(*(run_one(call) for call in calls))

        for call, tool_result in zip(calls, results):
            await self.history.append_async(Message(
                role="tool",
                content=tool_result.to_message_content(),
                tool_call_id=call.id,
                name=call.name,
            ))
        result.tool_calls += len(calls)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish_failed(self, result: TurnResult, error: AgentError) -> None:
        result.error = error
        result.state = AgentState.CANCELLED if error.kind is ErrorKind.CANCELLED else AgentState.FAILED
        logger.warning("Turn ended", state=result.state.value, kind=error.kind.value, error=error.message)
        self._emit("on_error", error)

    def _finish_turn(self, result: TurnResult, stream: StreamChannel | None) -> None:
        self._set_state(result.state)
        if stream is not None:
            if result.error is None:
                stream.close(result)
            else:
                stream.fail(result.error, result)
        self._emit("on_turn_end", result.span, result)

    async def _auto_save(self) -> None:
        """Save after a completed turn; a persistence failure is logged, not raised."""
        try:
            await self.save_session()
        except SessionError as e:
            logger.warning("Auto-save failed", kind=e.kind.value, error=e.message)
        except OSError as e:
            logger.warning("Auto-save failed", kind=ErrorKind.IO_ERROR.value, error=str(e))

    def _emit(self, event: str, *args) -> None:
        """Invoke a lifecycle callback; a failing callback never breaks the turn."""
        try:
            getattr(self.callbacks, event)(*args)
        except Exception as e:
            logger.warning("Callback failed", callback=event, error=str(e))
