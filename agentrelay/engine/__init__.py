"""Relay engine: configuration and error types shared by every layer."""
from .config import RelayConfig
from .errors import (
    AgentNotAvailableError,
    AgentProcessError,
    CompletionConflictError,
    NoCompletionRunningError,
    QuestionCancelledError,
    RelayError,
    SessionNotFoundError,
    UnknownChunkTypeError,
    is_cancellation,
)

__all__ = [
    "RelayConfig",
    "RelayError",
    "AgentNotAvailableError",
    "AgentProcessError",
    "CompletionConflictError",
    "NoCompletionRunningError",
    "QuestionCancelledError",
    "SessionNotFoundError",
    "UnknownChunkTypeError",
    "is_cancellation",
]
