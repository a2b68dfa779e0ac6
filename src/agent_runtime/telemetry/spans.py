"""
Span contexts for telemetry correlation.

Every logical operation (agent turn, LLM call, tool call) gets its own span.
Spans that belong to the same turn share a trace id, and a child points at
its parent through ``parent_span_id``. Ids follow OpenTelemetry widths:
128-bit trace ids and 64-bit span ids, rendered as lowercase hex.
"""

import secrets
from dataclasses import dataclass
from typing import Any

TRACE_ID_BYTES = 16
SPAN_ID_BYTES = 8


@dataclass(frozen=True)
class SpanContext:
    """Immutable correlation identifiers for one operation."""

    trace_id: str
    span_id: str
    parent_span_id: str | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_span_id is None

    def as_log_context(self) -> dict[str, Any]:
        """Key/value pairs to bind onto structured log events."""
        context = {"trace_id": self.trace_id, "span_id": self.span_id}
        if self.parent_span_id is not None:
            context["parent_span_id"] = self.parent_span_id
        return context

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
        }


def new_root_span() -> SpanContext:
    """Create a span that starts a new trace."""
    return SpanContext(
        trace_id=secrets.token_hex(TRACE_ID_BYTES),
        span_id=secrets.token_hex(SPAN_ID_BYTES),
    )


def new_child_span(parent: SpanContext) -> SpanContext:
    """Create a span nested under ``parent`` in the same trace."""
    return SpanContext(
        trace_id=parent.trace_id,
        span_id=secrets.token_hex(SPAN_ID_BYTES),
        parent_span_id=parent.span_id,
    )
