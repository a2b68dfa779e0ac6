"""
Structured errors for the agent runtime.

Errors are classified into a small set of kinds. Tool and validation errors
are recovered inside a turn (they become messages the model can read);
provider errors are retried according to policy; everything that ends a turn
is reported as an ``AgentError`` through the lifecycle callbacks.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .telemetry import SpanContext


class ErrorKind(str, Enum):
    """Error taxonomy shared by tools, model calls and session storage."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    CONTEXT_LENGTH_EXCEEDED = "CONTEXT_LENGTH_EXCEEDED"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    CANCELLED = "CANCELLED"
    ITERATION_LIMIT_EXCEEDED = "ITERATION_LIMIT_EXCEEDED"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
    IO_ERROR = "IO_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN = "UNKNOWN"


TRANSIENT_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    ErrorKind.RATE_LIMITED,
    ErrorKind.TIMEOUT,
})


def is_transient(kind: ErrorKind) -> bool:
    """Whether a failure of this kind is worth retrying."""
    return kind in TRANSIENT_KINDS


class AgentRuntimeError(Exception):
    """Base exception carrying an error kind."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}


class ModelCallError(AgentRuntimeError):
    """A model invocation failed."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        retry_after: float | None = None,
        status_code: int | None = None,
        provider: str | None = None,
    ):
        details: dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(kind, message, details)
        self.retry_after = retry_after
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return is_transient(self.kind)


class SessionError(AgentRuntimeError):
    """Session persistence failed (``NOT_FOUND`` or ``IO_ERROR``)."""


class OperationCancelled(AgentRuntimeError):
    """Raised at a suspension point once the turn's token is cancelled."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(ErrorKind.CANCELLED, message)


@dataclass(frozen=True)
class AgentError:
    """Terminal error delivered through ``AgentCallbacks.on_error``."""

    kind: ErrorKind
    message: str
    span: SpanContext | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        span: SpanContext | None = None,
    ) -> "AgentError":
        if isinstance(exc, AgentRuntimeError):
            return cls(kind=exc.kind, message=exc.message, span=span, details=dict(exc.details))
        return cls(kind=classify_exception(exc), message=str(exc) or type(exc).__name__, span=span)

    def user_message(self) -> str:
        return get_user_friendly_message(self.kind, self.details)


_KEYWORD_RULES: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (ErrorKind.AUTHENTICATION_ERROR, ("api key", "authentication", "unauthorized", "401")),
    (ErrorKind.RATE_LIMITED, ("rate limit", "429", "too many requests")),
    (ErrorKind.CONTEXT_LENGTH_EXCEEDED, ("context length", "too long", "token limit")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
    (ErrorKind.NETWORK_ERROR, (
        "network", "econnrefused", "econnreset", "connection refused",
        "connection reset", "dns", "socket", "fetch failed",
        "500", "502", "503", "internal server error", "bad gateway",
        "service unavailable",
    )),
]


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an arbitrary exception to an error kind.

    Typed errors keep their kind; builtin timeout/connection errors are
    recognised by type; everything else falls back to keyword matching on
    the message.
    """
    if isinstance(exc, AgentRuntimeError):
        return exc.kind
    if isinstance(exc, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK_ERROR

    message = str(exc).lower()
    if "model" in message and "not found" in message:
        return ErrorKind.MODEL_NOT_FOUND
    for kind, keywords in _KEYWORD_RULES:
        if any(keyword in message for keyword in keywords):
            return kind
    return ErrorKind.UNKNOWN


def get_user_friendly_message(kind: ErrorKind, details: dict[str, Any] | None = None) -> str:
    """Render a short message suitable for showing to a user."""
    details = details or {}
    provider = details.get("provider") or "the provider"

    messages = {
        ErrorKind.AUTHENTICATION_ERROR: f"Authentication failed with {provider}. Please check your API key.",
        ErrorKind.RATE_LIMITED: f"Rate limited by {provider}. Please wait before retrying.",
        ErrorKind.MODEL_NOT_FOUND: f"The requested model was not found on {provider}.",
        ErrorKind.CONTEXT_LENGTH_EXCEEDED: f"Input exceeds the context length limit for {provider}.",
        ErrorKind.NETWORK_ERROR: f"Network error connecting to {provider}. Please check your connection.",
        ErrorKind.TIMEOUT: f"Request to {provider} timed out. Please try again.",
        ErrorKind.PROVIDER_NOT_CONFIGURED: f"Provider '{provider}' is not configured. Please check your configuration.",
        ErrorKind.INVALID_RESPONSE: f"Received an invalid response from {provider}.",
        ErrorKind.ITERATION_LIMIT_EXCEEDED: "Maximum iterations exceeded. The query may be too complex.",
        ErrorKind.RETRIES_EXHAUSTED: f"Gave up after repeated failures talking to {provider}.",
        ErrorKind.TOOL_EXECUTION_FAILED: "A tool failed to execute. Please check the tool configuration.",
        ErrorKind.VALIDATION_ERROR: "Invalid input parameters provided.",
        ErrorKind.CANCELLED: "The request was cancelled.",
        ErrorKind.IO_ERROR: "An I/O error occurred while processing your request.",
        ErrorKind.NOT_FOUND: "The requested resource was not found.",
    }
    return messages.get(kind, "An unexpected error occurred.")
