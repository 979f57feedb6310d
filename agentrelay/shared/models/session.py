"""Per-conversation state owned by the agent client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from agentrelay.shared.models.message import LogicalMessage
from agentrelay.shared.services.session_cache import DiskBackedSession

if TYPE_CHECKING:
    from agentrelay.adapters.question import QuestionChannel
    from agentrelay.adapters.stream_state import StreamState


@dataclass
class Session:
    """A conversation: our id, the CLI's id, its cached history and
    its question channel.

    ``stream_state`` exists only while a turn is being translated.
    """
    session_id: str
    cwd: str
    history: DiskBackedSession
    questions: QuestionChannel
    external_session_id: str | None = None
    stream_state: StreamState | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def log_session_id(self) -> str:
        """Name of the CLI log file holding this conversation."""
        return self.external_session_id or self.session_id

    def load(self) -> None:
        self.history.load(self.log_session_id)

    def reload(self) -> None:
        self.history.reload(self.log_session_id)

    def get_messages(self) -> list[LogicalMessage]:
        if not self.history.is_loaded:
            self.load()
        return self.history.get_messages()

    def clear(self) -> None:
        """Forget the conversation; the next turn starts a fresh CLI session."""
        self.questions.clear()
        self.external_session_id = None
        self.stream_state = None
        self.history.clear_messages()
