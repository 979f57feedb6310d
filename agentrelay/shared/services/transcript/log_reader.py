"""Rebuild a conversation from the Claude CLI's on-disk JSONL log.

The CLI appends one JSON object per line to
``<projects_dir>/<encoded cwd>/<session id>.jsonl``. Lines are never
rewritten. ``reconstruct`` turns those lines into the same logical
messages the live stream produces:

* consecutive assistant records form one assistant turn; records that
  share an upstream message id form one step, and a step-start part
  separates steps;
* a user record with text ends the turn and becomes a user message;
* a user record holding only tool results adds nothing itself; its
  results are attached to the matching tool parts (pass 1).

Malformed lines are skipped with a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from agentrelay.shared.models.message import (
    LogicalMessage,
    MessageRole,
    Part,
    ReasoningPart,
    SessionLogEntry,
    StepStartPart,
    TextPart,
    ToolCallRecord,
    ToolPart,
)
from agentrelay.shared.services.transcript.normalize import (
    content_blocks,
    has_text_content,
    parse_json_object,
    parse_timestamp,
    text_blocks,
    tool_result_blocks,
    tool_result_error_text,
    tool_result_output,
)

logger = logging.getLogger(__name__)

_TOOL_USE_TYPES = {"tool_use", "server_tool_use", "mcp_tool_use"}
_ERROR_PATTERNS = ("error:", "exception:", "failed:", "crash", "invalid api key")


@dataclass
class SessionLogInfo:
    """A log file found on disk."""
    session_id: str
    file_path: Path
    cwd: str
    last_modified: datetime
    record_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "filePath": str(self.file_path),
            "cwd": self.cwd,
            "lastModified": self.last_modified.isoformat(),
            "messageCount": self.record_count,
        }


@dataclass
class SessionMetadata:
    cwd: str
    git_branch: str | None
    version: str | None
    message_count: int
    record_count: int
    last_modified: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "cwd": self.cwd,
            "gitBranch": self.git_branch,
            "version": self.version,
            "messageCount": self.message_count,
            "recordCount": self.record_count,
            "lastModified": self.last_modified.isoformat(),
        }


@dataclass
class SessionData:
    session_id: str
    messages: list[LogicalMessage] = field(default_factory=list)
    metadata: SessionMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


# ── Paths ──


def default_projects_dir() -> Path:
    return Path.home() / ".claude" / "projects"


def encode_cwd(cwd: str | Path) -> str:
    """Directory name the CLI uses for *cwd*: every "/" becomes "-".

    The leading separator is kept, so ``/home/u/p`` maps to ``-home-u-p``.
    """
    return str(cwd).replace("/", "-")


def session_directory_for_cwd(cwd: str | Path, projects_dir: str | Path | None = None) -> Path:
    root = Path(projects_dir).expanduser() if projects_dir else default_projects_dir()
    return root / encode_cwd(cwd)


def session_log_path(
    session_id: str, cwd: str | Path, projects_dir: str | Path | None = None,
) -> Path:
    return session_directory_for_cwd(cwd, projects_dir) / f"{session_id}.jsonl"


def read_log_lines(path: Path) -> list[str]:
    """Lines of a log file; a missing file reads as empty."""
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        return []


# ── Parsing ──


def parse_entries(lines: Iterable[str | dict[str, Any]]) -> list[SessionLogEntry]:
    """Parse log lines leniently into entries, skipping malformed ones."""
    entries: list[SessionLogEntry] = []
    for line_no, raw in enumerate(lines, start=1):
        if isinstance(raw, dict):
            row: dict[str, Any] | None = raw
        else:
            if not raw or not raw.strip():
                continue
            row = parse_json_object(raw)
        if row is None:
            logger.warning("Skipping malformed log line %d", line_no)
            continue
        entry_type = row.get("type")
        if not isinstance(entry_type, str):
            logger.debug("Skipping log line %d without a type", line_no)
            continue
        message = row.get("message")
        entries.append(SessionLogEntry(
            type=entry_type,
            uuid=row.get("uuid"),
            message=message if isinstance(message, dict) else {},
            git_branch=row.get("gitBranch"),
            version=row.get("version"),
            timestamp=parse_timestamp(row.get("timestamp")),
            line_no=line_no,
            raw=row,
        ))
    return entries


def collect_tool_results(entries: Iterable[SessionLogEntry]) -> dict[str, ToolCallRecord]:
    """Pass 1: correlate every tool call id with its invocation and result."""
    records: dict[str, ToolCallRecord] = {}
    for entry in entries:
        if entry.type == "assistant":
            for block in content_blocks(entry.content):
                if block.get("type") not in _TOOL_USE_TYPES or not block.get("id"):
                    continue
                record = records.setdefault(block["id"], ToolCallRecord(id=block["id"]))
                if record.name is None:
                    record.name = block.get("name")
                    record.input = block.get("input")
        elif entry.type == "user":
            for block in tool_result_blocks(entry.content):
                tool_call_id = block["tool_use_id"]
                record = records.setdefault(tool_call_id, ToolCallRecord(id=tool_call_id))
                if record.has_result:
                    continue
                record.has_result = True
                record.is_error = bool(block.get("is_error"))
                record.result = block.get("content")
    return records


def _tool_part(block: dict[str, Any], records: dict[str, ToolCallRecord]) -> ToolPart:
    part = ToolPart(
        tool_call_id=block["id"],
        tool_name=block.get("name") or "unknown",
        input=block.get("input") if block.get("input") is not None else {},
    )
    record = records.get(block["id"])
    if record is not None and record.has_result:
        if record.is_error:
            part.state = "output-error"
            part.error_text = tool_result_error_text(record.result)
        else:
            part.state = "output-available"
            part.output = tool_result_output(record.result)
    return part


def _step_blocks(step: list[SessionLogEntry]) -> list[dict[str, Any]]:
    """Blocks of one step, dropping the repeated prefix of cumulative snapshots.

    A record counts as a cumulative snapshot only when it strictly extends
    the previous record; records of equal length are concatenated.
    """
    blocks: list[dict[str, Any]] = []
    previous: list[dict[str, Any]] = []
    for entry in step:
        current = content_blocks(entry.content)
        if previous and len(current) > len(previous) and current[:len(previous)] == previous:
            blocks.extend(current[len(previous):])
        else:
            blocks.extend(current)
        previous = current
    return blocks


def _split_steps(group: list[SessionLogEntry]) -> list[list[SessionLogEntry]]:
    steps: list[list[SessionLogEntry]] = []
    last_key: str | None = None
    for entry in group:
        key = entry.message_id or f"line-{entry.line_no}"
        if steps and key == last_key:
            steps[-1].append(entry)
        else:
            steps.append([entry])
        last_key = key
    return steps


def _flush_assistant_group(
    group: list[SessionLogEntry], records: dict[str, ToolCallRecord],
) -> LogicalMessage | None:
    """Consolidate one turn's assistant records into a single message."""
    if not group:
        return None
    parts: list[Part] = []
    seen_tools: set[str] = set()
    for step_index, step in enumerate(_split_steps(group)):
        if step_index > 0:
            parts.append(StepStartPart())
        for block in _step_blocks(step):
            block_type = block.get("type")
            if block_type == "text":
                parts.append(TextPart(text=str(block.get("text") or "")))
            elif block_type == "thinking":
                parts.append(ReasoningPart(text=str(block.get("thinking") or "")))
            elif block_type in _TOOL_USE_TYPES and block.get("id"):
                if block["id"] in seen_tools:
                    logger.debug(
                        "Duplicate tool call id=%s in assistant turn; keeping first",
                        block["id"],
                    )
                    continue
                seen_tools.add(block["id"])
                parts.append(_tool_part(block, records))

    if not any(not isinstance(p, StepStartPart) for p in parts):
        return None
    first = group[0]
    message_id = first.message_id or first.uuid or f"assistant-{first.line_no}"
    return LogicalMessage(role=MessageRole.ASSISTANT, parts=parts, id=message_id)


def _user_message(entry: SessionLogEntry) -> LogicalMessage:
    parts: list[Part] = [TextPart(text=text) for text in text_blocks(entry.content)]
    return LogicalMessage(
        role=MessageRole.USER,
        parts=parts,
        id=entry.uuid or f"user-{entry.line_no}",
    )


def reconstruct(lines: Iterable[str | dict[str, Any]]) -> list[LogicalMessage]:
    """Rebuild the ordered logical messages of a log. Pure and deterministic."""
    entries = parse_entries(lines)
    records = collect_tool_results(entries)

    messages: list[LogicalMessage] = []
    group: list[SessionLogEntry] = []

    def flush() -> None:
        message = _flush_assistant_group(group, records)
        if message is not None:
            messages.append(message)
        group.clear()

    for entry in entries:
        if entry.type == "assistant":
            group.append(entry)
        elif entry.type == "user" and has_text_content(entry.content):
            flush()
            messages.append(_user_message(entry))
        # Tool-result-only user records were merged in pass 1; system and
        # bookkeeping records carry nothing for the client.
    flush()
    return messages


# ── Error probe ──


def last_message_error(lines: Iterable[str]) -> str | None:
    """User-facing error text from the final log line, or None.

    Only the last non-empty line is inspected, and only assistant
    records count: the CLI writes fatal API errors as assistant records.
    """
    last_line = None
    for raw in lines:
        if raw and raw.strip():
            last_line = raw
    if last_line is None:
        return None
    row = parse_json_object(last_line)
    if row is None or row.get("type") != "assistant":
        return None

    message = row.get("message") if isinstance(row.get("message"), dict) else {}
    texts = text_blocks(message.get("content"))
    if row.get("error") or row.get("isApiErrorMessage"):
        if texts:
            return texts[0]
        if row.get("error"):
            return str(row["error"])
    for text in texts:
        lowered = text.lower()
        if any(pattern in lowered for pattern in _ERROR_PATTERNS):
            return text
    if row.get("errorMessage"):
        return str(row["errorMessage"])
    if message.get("error"):
        return str(message["error"])
    return None


# ── File-level helpers ──


def load_session_messages(
    session_id: str, cwd: str | Path, projects_dir: str | Path | None = None,
) -> list[LogicalMessage]:
    return reconstruct(read_log_lines(session_log_path(session_id, cwd, projects_dir)))


def get_last_message_error(
    session_id: str, cwd: str | Path, projects_dir: str | Path | None = None,
) -> str | None:
    return last_message_error(read_log_lines(session_log_path(session_id, cwd, projects_dir)))


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


def get_session_metadata(
    session_id: str, cwd: str | Path, projects_dir: str | Path | None = None,
) -> SessionLogInfo | None:
    path = session_log_path(session_id, cwd, projects_dir)
    try:
        lines = [line for line in read_log_lines(path) if line.strip()]
        return SessionLogInfo(
            session_id=session_id,
            file_path=path,
            cwd=str(cwd),
            last_modified=_mtime(path),
            record_count=len(lines),
        )
    except OSError:
        return None


def discover_sessions(
    cwd: str | Path, projects_dir: str | Path | None = None,
) -> list[SessionLogInfo]:
    """All logs for *cwd*, most recently modified first."""
    session_dir = session_directory_for_cwd(cwd, projects_dir)
    if not session_dir.is_dir():
        return []
    sessions: list[SessionLogInfo] = []
    for path in session_dir.glob("*.jsonl"):
        if not path.is_file():
            continue
        try:
            record_count = sum(1 for line in read_log_lines(path) if line.strip())
            sessions.append(SessionLogInfo(
                session_id=path.stem,
                file_path=path,
                cwd=str(cwd),
                last_modified=_mtime(path),
                record_count=record_count,
            ))
        except OSError as exc:
            logger.warning("Failed to read session file %s: %s", path, exc)
    sessions.sort(key=lambda s: s.last_modified, reverse=True)
    return sessions


def load_full_session_data(
    session_id: str, cwd: str | Path, projects_dir: str | Path | None = None,
) -> SessionData | None:
    """Messages plus branch/version metadata, or None when the log is missing."""
    path = session_log_path(session_id, cwd, projects_dir)
    if not path.is_file():
        return None
    lines = read_log_lines(path)
    entries = parse_entries(lines)
    git_branch = next((e.git_branch for e in entries if e.git_branch), None)
    version = next((e.version for e in entries if e.version), None)
    messages = reconstruct(lines)
    return SessionData(
        session_id=session_id,
        messages=messages,
        metadata=SessionMetadata(
            cwd=str(cwd),
            git_branch=git_branch,
            version=version,
            message_count=len(messages),
            record_count=sum(1 for line in lines if line.strip()),
            last_modified=_mtime(path),
        ),
    )
