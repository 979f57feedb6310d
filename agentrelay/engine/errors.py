"""Exception hierarchy for the relay.

Specific exceptions for each failure mode. HTTP handlers translate
these into structured responses; the completion runner turns anything
else into a terminal error chunk.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class CompletionConflictError(RelayError):
    """A completion was started while another one is still running."""
    def __init__(self, active_completion_id: str):
        self.active_completion_id = active_completion_id
        super().__init__(
            f"Completion {active_completion_id} is already in progress"
        )


class NoCompletionRunningError(RelayError):
    """Cancel was requested but nothing is running."""
    def __init__(self) -> None:
        super().__init__("No completion is running")


class QuestionCancelledError(RelayError):
    """A pending AskUserQuestion was rejected without an answer.

    The message always contains ``cancelled`` so that callers can tell a
    clean stop apart from a genuine failure (see ``is_cancellation``).
    """
    def __init__(self, tool_use_id: str, reason: str):
        self.tool_use_id = tool_use_id
        self.reason = reason
        super().__init__(reason)


class AgentNotAvailableError(RelayError):
    """The Claude CLI binary could not be located."""
    def __init__(self, searched: list[str]):
        self.searched = searched
        super().__init__(
            "Claude CLI not found. Install it or set CLAUDE_CLI_PATH "
            f"(searched {len(searched)} locations)"
        )


class SessionNotFoundError(RelayError):
    """Requested session does not exist."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class UnknownChunkTypeError(RelayError):
    """A serialized chunk carried a type tag we do not know."""
    def __init__(self, chunk_type: str):
        self.chunk_type = chunk_type
        super().__init__(f"Unknown chunk type: {chunk_type!r}")


class AgentProcessError(RelayError):
    """The agent process ended a turn abnormally."""
    def __init__(self, message: str, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(message)


def is_cancellation(exc: BaseException) -> bool:
    """True when *exc* is a benign question-channel cancellation."""
    if isinstance(exc, QuestionCancelledError):
        return True
    return "cancelled" in str(exc).lower()
