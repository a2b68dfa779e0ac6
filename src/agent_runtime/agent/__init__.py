"""
Agent module - the brain of the system.

Includes:
- Agent: the turn loop with LLM calls, concurrent tools, retry and cancellation
- MessageHistory / ContextManager: token-aware conversation state
- SessionManager: persistent, resumable sessions
- AgentCallbacks: lifecycle events for UI and telemetry
"""

from .callbacks import AgentCallbacks, CallbackGroup, LoggingCallbacks
from .context import ContextManager, ContextPointer, ContextPolicy, ContextWindow
from .core import Agent, AgentState, TurnResult
from .history import MessageHistory
from .retry import RetryPolicy, call_with_retry
from .session import (
    FileSessionStore,
    SessionManager,
    SessionMetadata,
    SqlSessionStore,
    StoredSession,
)
from .stream import StreamChannel, StreamEvent, StreamEventType
from .tokens import TokenUsageTracker, estimate_tokens

__all__ = [
    "Agent",
    "AgentState",
    "TurnResult",
    "AgentCallbacks",
    "CallbackGroup",
    "LoggingCallbacks",
    "ContextManager",
    "ContextPointer",
    "ContextPolicy",
    "ContextWindow",
    "MessageHistory",
    "RetryPolicy",
    "call_with_retry",
    "FileSessionStore",
    "SessionManager",
    "SessionMetadata",
    "SqlSessionStore",
    "StoredSession",
    "StreamChannel",
    "StreamEvent",
    "StreamEventType",
    "TokenUsageTracker",
    "estimate_tokens",
]
