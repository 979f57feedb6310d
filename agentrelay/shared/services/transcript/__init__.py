"""Reading the Claude CLI's JSONL session logs."""

from .log_reader import (
    SessionData,
    SessionLogInfo,
    SessionMetadata,
    discover_sessions,
    get_last_message_error,
    last_message_error,
    load_full_session_data,
    load_session_messages,
    reconstruct,
)

__all__ = [
    "SessionData",
    "SessionLogInfo",
    "SessionMetadata",
    "discover_sessions",
    "get_last_message_error",
    "last_message_error",
    "load_full_session_data",
    "load_session_messages",
    "reconstruct",
]
