from __future__ import annotations

import json
from pathlib import Path
from tempfile import TemporaryDirectory

from agentrelay.shared.services.persistence import SessionStore, StoredSession, atomic_write_json


def test_save_and_load_round_trip() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "nested" / "agent-session.json"
        store = SessionStore(path)

        stored = store.save("default", "/work/project", "cli-abc")

        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["sessionId"] == "default"
        assert payload["cwd"] == "/work/project"
        assert payload["externalSessionId"] == "cli-abc"
        assert payload["createdAt"] == stored.created_at

        loaded = SessionStore(path).load()
        assert loaded == stored


def test_save_keeps_created_at_for_same_session() -> None:
    with TemporaryDirectory() as tmpdir:
        store = SessionStore(Path(tmpdir) / "s.json")
        first = store.save("default", "/w", "cli-1")
        second = store.save("default", "/w", "cli-2")
        assert second.created_at == first.created_at
        assert second.external_session_id == "cli-2"


def test_missing_external_id_is_not_written() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "s.json"
        SessionStore(path).save("default", "/w", None)
        assert "externalSessionId" not in json.loads(path.read_text(encoding="utf-8"))


def test_legacy_key_is_accepted() -> None:
    stored = StoredSession.from_dict({
        "sessionId": "default",
        "cwd": "/w",
        "createdAt": "2026-01-01T00:00:00+00:00",
        "claudeSessionId": "cli-old",
    })
    assert stored.external_session_id == "cli-old"


def test_corrupt_or_missing_file_loads_as_none() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "s.json"
        store = SessionStore(path)
        assert store.load() is None

        path.write_text("{broken", encoding="utf-8")
        assert store.load() is None

        path.write_text(json.dumps({"cwd": "/w"}), encoding="utf-8")
        assert store.load() is None


def test_clear_removes_file_and_tolerates_absence() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "s.json"
        store = SessionStore(path)
        store.save("default", "/w", "cli-1")

        store.clear()
        assert not path.exists()
        assert store.current is None
        store.clear()


def test_atomic_write_leaves_no_temp_files() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "out.json"
        atomic_write_json(path, {"a": 1})
        atomic_write_json(path, {"a": 2})
        assert json.loads(path.read_text(encoding="utf-8")) == {"a": 2}
        assert [p.name for p in Path(tmpdir).iterdir()] == ["out.json"]
