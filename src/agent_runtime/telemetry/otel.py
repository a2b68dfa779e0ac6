"""
OpenTelemetry export of agent spans.

``OpenTelemetryCallbacks`` turns agent lifecycle events into OTel spans: one
``invoke_agent`` span per turn with ``chat`` and ``execute_tool`` children.
Attributes follow the GenAI semantic conventions
(https://opentelemetry.io/docs/specs/semconv/gen-ai/).

With a provider built by ``create_tracer_provider`` the exported trace and
span ids are the runtime's own ``SpanContext`` ids, so log events and traces
can be joined on ``trace_id``/``span_id``.

Requires the ``otel`` extra (opentelemetry-api, opentelemetry-sdk; the OTLP
exporter additionally needs opentelemetry-exporter-otlp-proto-http).
"""

import contextvars
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.sdk.trace.id_generator import IdGenerator, RandomIdGenerator
from opentelemetry.trace import SpanKind, Status, StatusCode

from ..agent.callbacks import AgentCallbacks
from .spans import SpanContext

logger = structlog.get_logger()

# GenAI semantic convention attributes
ATTR_OPERATION_NAME = "gen_ai.operation.name"
ATTR_PROVIDER_NAME = "gen_ai.provider.name"
ATTR_REQUEST_MODEL = "gen_ai.request.model"
ATTR_RESPONSE_MODEL = "gen_ai.response.model"
ATTR_USAGE_INPUT_TOKENS = "gen_ai.usage.input_tokens"
ATTR_USAGE_OUTPUT_TOKENS = "gen_ai.usage.output_tokens"
ATTR_RESPONSE_FINISH_REASONS = "gen_ai.response.finish_reasons"
ATTR_TOOL_NAME = "gen_ai.tool.name"
ATTR_TOOL_CALL_ID = "gen_ai.tool.call.id"
ATTR_ERROR_TYPE = "error.type"

OPERATION_INVOKE_AGENT = "invoke_agent"
OPERATION_CHAT = "chat"
OPERATION_EXECUTE_TOOL = "execute_tool"

_pending_span: contextvars.ContextVar[SpanContext | None] = contextvars.ContextVar(
    "agent_runtime_pending_span", default=None
)


class SpanContextIdGenerator(IdGenerator):
    """Hand out the ids of the span being started, random ids otherwise."""

    def __init__(self):
        self._fallback = RandomIdGenerator()

    def generate_span_id(self) -> int:
        pending = _pending_span.get()
        return int(pending.span_id, 16) if pending else self._fallback.generate_span_id()

    def generate_trace_id(self) -> int:
        pending = _pending_span.get()
        return int(pending.trace_id, 16) if pending else self._fallback.generate_trace_id()


def create_exporter(kind: str, endpoint: str | None = None) -> SpanExporter | None:
    """Build a span exporter: ``console``, ``otlp`` or ``none``."""
    if kind == "none":
        return None
    if kind == "console":
        return ConsoleSpanExporter()
    if kind == "otlp":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        return OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
    raise ValueError(f"Unknown span exporter: {kind}")


def create_tracer_provider(
    exporter: SpanExporter | None = None,
    service_name: str = "agent-runtime",
    batch: bool = True,
) -> TracerProvider:
    """Tracer provider whose span ids match the runtime's ``SpanContext`` ids."""
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name}),
        id_generator=SpanContextIdGenerator(),
    )
    if exporter is not None:
        processor = BatchSpanProcessor(exporter) if batch else SimpleSpanProcessor(exporter)
        provider.add_span_processor(processor)
    return provider


class OpenTelemetryCallbacks(AgentCallbacks):
    """Export each turn, LLM call and tool call as an OpenTelemetry span.

    Spans still open when their turn ends (a failed or cancelled LLM call)
    are ended with the turn's error.
    """

    def __init__(
        self,
        tracer_provider: trace.TracerProvider | None = None,
        provider_name: str | None = None,
        model: str | None = None,
    ):
        provider = tracer_provider or trace.get_tracer_provider()
        self.tracer = provider.get_tracer("agent_runtime")
        self.provider_name = provider_name
        self.model = model
        self._spans: dict[str, tuple[str, trace.Span]] = {}

    @property
    def open_spans(self) -> int:
        return len(self._spans)

    def _model_attributes(self) -> dict[str, Any]:
        attributes = {}
        if self.provider_name:
            attributes[ATTR_PROVIDER_NAME] = self.provider_name
        if self.model:
            attributes[ATTR_REQUEST_MODEL] = self.model
        return attributes

    def _start(self, span: SpanContext, name: str, kind: SpanKind, attributes: dict[str, Any]) -> trace.Span:
        if span.parent_span_id is None:
            parent = Context()
        else:
            entry = self._spans.get(span.parent_span_id)
            if entry is not None:
                parent_span = entry[1]
            else:
                parent_span = trace.NonRecordingSpan(trace.SpanContext(
                    trace_id=int(span.trace_id, 16),
                    span_id=int(span.parent_span_id, 16),
                    is_remote=False,
                    trace_flags=trace.TraceFlags(trace.TraceFlags.SAMPLED),
                ))
            parent = trace.set_span_in_context(parent_span, Context())

        token = _pending_span.set(span)
        try:
            otel_span = self.tracer.start_span(name, context=parent, kind=kind, attributes=attributes)
        finally:
            _pending_span.reset(token)
        self._spans[span.span_id] = (span.trace_id, otel_span)
        return otel_span

    def _get(self, span_id: str | None) -> trace.Span | None:
        entry = self._spans.get(span_id) if span_id else None
        return entry[1] if entry else None

    def _end(self, span_id: str) -> trace.Span | None:
        entry = self._spans.pop(span_id, None)
        if entry is None:
            return None
        entry[1].end()
        return entry[1]

    @staticmethod
    def _mark_error(otel_span: trace.Span, error_type: str, description: str) -> None:
        otel_span.set_attribute(ATTR_ERROR_TYPE, error_type)
        otel_span.set_status(Status(StatusCode.ERROR, description[:200]))

    # -- turn ---------------------------------------------------------------

    def on_turn_start(self, span, query):
        attributes = {ATTR_OPERATION_NAME: OPERATION_INVOKE_AGENT, **self._model_attributes()}
        self._start(span, OPERATION_INVOKE_AGENT, SpanKind.INTERNAL, attributes)

    def on_turn_end(self, span, result):
        for span_id, (trace_id, otel_span) in list(self._spans.items()):
            if trace_id == span.trace_id and span_id != span.span_id:
                if result.error is not None:
                    self._mark_error(otel_span, result.error.kind.value, result.error.message)
                self._end(span_id)

        root = self._get(span.span_id)
        if root is None:
            return
        root.set_attribute(ATTR_USAGE_INPUT_TOKENS, result.usage.input_tokens)
        root.set_attribute(ATTR_USAGE_OUTPUT_TOKENS, result.usage.output_tokens)
        root.set_attribute("agent_runtime.turn.state", result.state.value)
        root.set_attribute("agent_runtime.turn.llm_calls", result.llm_calls)
        root.set_attribute("agent_runtime.turn.tool_calls", result.tool_calls)
        if result.error is not None:
            self._mark_error(root, result.error.kind.value, result.error.message)
        else:
            root.set_status(Status(StatusCode.OK))
        self._end(span.span_id)

    def on_error(self, error):
        otel_span = self._get(error.details.get("span_id"))
        if otel_span is not None:
            self._mark_error(otel_span, error.kind.value, error.message)

    # -- LLM ----------------------------------------------------------------

    def on_llm_start(self, span, iteration, message_count):
        name = f"{OPERATION_CHAT} {self.model}" if self.model else OPERATION_CHAT
        attributes = {
            ATTR_OPERATION_NAME: OPERATION_CHAT,
            **self._model_attributes(),
            "agent_runtime.llm.iteration": iteration,
            "agent_runtime.llm.message_count": message_count,
        }
        self._start(span, name, SpanKind.CLIENT, attributes)

    def on_llm_end(self, span, response):
        otel_span = self._get(span.span_id)
        if otel_span is None:
            return
        if response.model:
            otel_span.set_attribute(ATTR_RESPONSE_MODEL, response.model)
        otel_span.set_attribute(ATTR_USAGE_INPUT_TOKENS, response.usage.input_tokens)
        otel_span.set_attribute(ATTR_USAGE_OUTPUT_TOKENS, response.usage.output_tokens)
        if response.stop_reason:
            otel_span.set_attribute(ATTR_RESPONSE_FINISH_REASONS, (response.stop_reason,))
        self._end(span.span_id)

    def on_retry(self, span, attempt, delay, error):
        otel_span = self._get(span.span_id)
        if otel_span is not None:
            otel_span.add_event("retry", {
                "attempt": attempt,
                "delay_seconds": delay,
                ATTR_ERROR_TYPE: error.kind.value,
            })

    # -- tools --------------------------------------------------------------

    def on_tool_start(self, span, call):
        attributes = {
            ATTR_OPERATION_NAME: OPERATION_EXECUTE_TOOL,
            ATTR_TOOL_NAME: call.name,
            ATTR_TOOL_CALL_ID: call.id,
        }
        self._start(span, f"{OPERATION_EXECUTE_TOOL} {call.name}", SpanKind.INTERNAL, attributes)

    def on_tool_end(self, span, call, result):
        otel_span = self._get(span.span_id)
        if otel_span is None:
            return
        if not result.success:
            kind = result.error_kind.value if result.error_kind else result.status.value
            self._mark_error(otel_span, kind, result.output)
        self._end(span.span_id)
