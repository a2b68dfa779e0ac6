"""
Lifecycle callbacks for UI and telemetry.

Subclass ``AgentCallbacks`` and override only the events you care about;
every method defaults to a no-op. Events that belong to an operation receive
that operation's SpanContext so consumers can correlate them.
"""

from typing import TYPE_CHECKING, Any

import structlog

from ..errors import AgentError, ModelCallError
from ..llm.base import LLMResponse, ToolCall
from ..telemetry import SpanContext

if TYPE_CHECKING:
    from ..tools.base import ToolResult
    from .core import TurnResult

logger = structlog.get_logger()


class AgentCallbacks:
    """No-op handlers for every agent loop event."""

    def on_turn_start(self, span: SpanContext, query: str) -> None:
        pass

    def on_turn_end(self, span: SpanContext, result: "TurnResult") -> None:
        pass

    def on_llm_start(self, span: SpanContext, iteration: int, message_count: int) -> None:
        pass

    def on_llm_stream(self, span: SpanContext, chunk: str) -> None:
        pass

    def on_llm_end(self, span: SpanContext, response: LLMResponse) -> None:
        pass

    def on_tool_start(self, span: SpanContext, call: ToolCall) -> None:
        pass

    def on_tool_end(self, span: SpanContext, call: ToolCall, result: "ToolResult") -> None:
        pass

    def on_tool_metadata(self, span: SpanContext, call: ToolCall, update: dict[str, Any]) -> None:
        pass

    def on_spinner_start(self, span: SpanContext, message: str) -> None:
        pass

    def on_spinner_stop(self, span: SpanContext) -> None:
        pass

    def on_retry(self, span: SpanContext, attempt: int, delay: float, error: ModelCallError) -> None:
        pass

    def on_error(self, error: AgentError) -> None:
        pass


class CallbackGroup(AgentCallbacks):
    """Fan every event out to several handlers.

    A handler that raises is logged and skipped; the others still run.
    """

    def __init__(self, *handlers: AgentCallbacks):
        self.handlers = list(handlers)

    def add(self, handler: AgentCallbacks) -> None:
        self.handlers.append(handler)

    def _dispatch(self, event: str, *args: Any) -> None:
        for handler in self.handlers:
            try:
                getattr(handler, event)(*args)
            except Exception as e:
                logger.warning("Callback failed", callback=event,
                               handler=type(handler).__name__, error=str(e))

    def on_turn_start(self, span, query):
        self._dispatch("on_turn_start", span, query)

    def on_turn_end(self, span, result):
        self._dispatch("on_turn_end", span, result)

    def on_llm_start(self, span, iteration, message_count):
        self._dispatch("on_llm_start", span, iteration, message_count)

    def on_llm_stream(self, span, chunk):
        self._dispatch("on_llm_stream", span, chunk)

    def on_llm_end(self, span, response):
        self._dispatch("on_llm_end", span, response)

    def on_tool_start(self, span, call):
        self._dispatch("on_tool_start", span, call)

    def on_tool_end(self, span, call, result):
        self._dispatch("on_tool_end", span, call, result)

    def on_tool_metadata(self, span, call, update):
        self._dispatch("on_tool_metadata", span, call, update)

    def on_spinner_start(self, span, message):
        self._dispatch("on_spinner_start", span, message)

    def on_spinner_stop(self, span):
        self._dispatch("on_spinner_stop", span)

    def on_retry(self, span, attempt, delay, error):
        self._dispatch("on_retry", span, attempt, delay, error)

    def on_error(self, error):
        self._dispatch("on_error", error)


class LoggingCallbacks(AgentCallbacks):
    """Emit a structured log event for each lifecycle event."""

    def on_turn_start(self, span, query):
        logger.info("Turn started", **span.as_log_context(), query_length=len(query))

    def on_turn_end(self, span, result):
        logger.info(
            "Turn finished",
            **span.as_log_context(),
            state=result.state.value,
            llm_calls=result.llm_calls,
            tool_calls=result.tool_calls,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
        )

    def on_llm_end(self, span, response):
        logger.debug("LLM call finished", **span.as_log_context(),
                     tool_calls=len(response.tool_calls), stop_reason=response.stop_reason)

    def on_tool_end(self, span, call, result):
        logger.debug("Tool call finished", **span.as_log_context(),
                     tool=call.name, status=result.status.value)

    def on_retry(self, span, attempt, delay, error):
        logger.warning("Retrying model call", **span.as_log_context(),
                       attempt=attempt, delay=round(delay, 3), kind=error.kind.value)

    def on_error(self, error):
        context = error.span.as_log_context() if error.span else {}
        logger.error("Turn failed", **context, kind=error.kind.value, error=error.message)
