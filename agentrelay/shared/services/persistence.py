"""Persistence of the local <-> Claude session id mapping.

Storage layout:
    $RELAY_SESSION_FILE  (default ~/.config/agentrelay/agent-session.json)

    {
      "sessionId": "default",
      "cwd": "/workspace/project",
      "createdAt": "2026-01-01T00:00:00+00:00",
      "externalSessionId": "5f0c..."
    }

The Claude CLI names its log after its own session id, which it only
reveals in the first ``system/init`` message of a turn. Keeping the
mapping on disk lets a restarted relay find the right log again.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class StoredSession:
    session_id: str
    cwd: str
    created_at: str
    external_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "sessionId": self.session_id,
            "cwd": self.cwd,
            "createdAt": self.created_at,
        }
        if self.external_session_id:
            d["externalSessionId"] = self.external_session_id
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredSession:
        return cls(
            session_id=str(data["sessionId"]),
            cwd=str(data.get("cwd") or ""),
            created_at=str(data.get("createdAt") or ""),
            # claudeSessionId is the key older relay versions wrote.
            external_session_id=(
                data.get("externalSessionId") or data.get("claudeSessionId")
            ),
        )


def _fsync_dir(dir_path: Path) -> None:
    try:
        fd = os.open(str(dir_path), os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Not every filesystem supports directory fsync.
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Write JSON to a temp file beside *path* and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class SessionStore:
    """Load, save and clear the persisted session mapping."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._current: StoredSession | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def current(self) -> StoredSession | None:
        return self._current

    def load(self) -> StoredSession | None:
        """Read the mapping from disk; a missing or corrupt file reads as None."""
        if not self._path.exists():
            self._current = None
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._current = StoredSession.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, OSError) as exc:
            logger.warning("Failed to load session file %s: %s", self._path, exc)
            self._current = None
        return self._current

    def save(self, session_id: str, cwd: str, external_session_id: str | None) -> StoredSession:
        """Persist the mapping, keeping createdAt of an existing entry."""
        existing = self._current if self._current is not None else self.load()
        created_at = (
            existing.created_at
            if existing is not None and existing.session_id == session_id
            else datetime.now(timezone.utc).isoformat()
        )
        stored = StoredSession(
            session_id=session_id,
            cwd=cwd,
            created_at=created_at,
            external_session_id=external_session_id,
        )
        atomic_write_json(self._path, stored.to_dict())
        self._current = stored
        logger.info(
            "Persisted session mapping %s -> %s at %s",
            session_id, external_session_id, self._path,
        )
        return stored

    def clear(self) -> None:
        self._current = None
        try:
            self._path.unlink()
        except FileNotFoundError:
            return
        logger.info("Cleared session file %s", self._path)
