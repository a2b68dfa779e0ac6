"""
Telemetry correlation primitives.
"""

from .spans import SpanContext, new_child_span, new_root_span

__all__ = [
    "SpanContext",
    "new_child_span",
    "new_root_span",
]
