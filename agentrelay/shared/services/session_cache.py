"""Read-through message cache over the agent's on-disk log.

The Claude CLI owns persistence; this cache only reads. During a live
turn, changes go to an in-memory dirty map so the hot path never
touches disk. ``get_messages`` overlays that map on the cached array
(replace by id, else append). Invalidate the cache once the CLI has
written the turn, and the next ``load`` re-reads the log.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

from agentrelay.shared.models.message import LogicalMessage, MessageRole
from agentrelay.shared.services.transcript.log_reader import load_session_messages

logger = logging.getLogger(__name__)


class DiskBackedSession:
    """Cached messages of one conversation plus live-turn overrides."""

    def __init__(
        self,
        session_id: str,
        cwd: str | Path,
        projects_dir: str | Path | None = None,
    ) -> None:
        self.id = session_id
        self._cwd = str(cwd)
        self._projects_dir = projects_dir
        self._cached: list[LogicalMessage] | None = None
        self._dirty: dict[str, LogicalMessage] = {}

    @property
    def is_loaded(self) -> bool:
        return self._cached is not None

    def load(self, external_session_id: str | None = None) -> None:
        """Populate the cache from disk unless it is already populated.

        *external_session_id* names the log file when the CLI's session
        id differs from ours.
        """
        if self._cached is not None:
            return
        log_id = external_session_id or self.id
        self._cached = load_session_messages(log_id, self._cwd, self._projects_dir)
        logger.debug(
            "Loaded %d messages for session=%s from log=%s",
            len(self._cached), self.id, log_id,
        )

    def get_messages(self) -> list[LogicalMessage]:
        if self._cached is None:
            logger.warning("get_messages called before load() on session %s", self.id)
            return []
        return self._merged()

    def _merged(self) -> list[LogicalMessage]:
        result = list(self._cached or [])
        for message_id, dirty in self._dirty.items():
            for index, message in enumerate(result):
                if message.id == message_id:
                    result[index] = dirty
                    break
            else:
                result.append(dirty)
        return result

    def add_message(self, message: LogicalMessage) -> None:
        self._dirty[message.id] = message

    def update_message(self, message_id: str, **changes: Any) -> None:
        current = self._dirty.get(message_id)
        if current is None and self._cached is not None:
            current = next((m for m in self._cached if m.id == message_id), None)
        if current is None:
            logger.warning("update_message called for unknown message id=%s", message_id)
            return
        self._dirty[message_id] = dataclasses.replace(current, **changes)

    def get_last_assistant_message(self) -> LogicalMessage | None:
        for message in reversed(self._merged()):
            if message.role is MessageRole.ASSISTANT:
                return message
        return None

    def clear_messages(self) -> None:
        self._cached = []
        self._dirty.clear()

    def invalidate_cache(self) -> None:
        self._cached = None

    def clear_dirty(self) -> None:
        self._dirty.clear()

    def reload(self, external_session_id: str | None = None) -> None:
        """Drop the cache and read the log again."""
        self.invalidate_cache()
        self.load(external_session_id)
