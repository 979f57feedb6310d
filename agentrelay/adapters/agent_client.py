"""Agent client: drives the Claude CLI through claude-agent-sdk.

One ``query()`` call per turn. Messages from the SDK are converted to
plain stream-json records, translated into chunks and yielded to the
completion runner. The conversation itself lives in the CLI's JSONL
log; the client only remembers which CLI session belongs to which of
our session ids.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import re
import uuid
from typing import Any, AsyncIterator, Callable

from agentrelay.adapters.chunks import Chunk, is_terminal
from agentrelay.adapters.question import QuestionChannel
from agentrelay.adapters.stream_state import StreamState
from agentrelay.adapters.translator import create_error_chunks, translate
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import (
    AgentNotAvailableError,
    AgentProcessError,
    QuestionCancelledError,
    SessionNotFoundError,
    is_cancellation,
)
from agentrelay.shared.models.message import FilePart, LogicalMessage, TextPart
from agentrelay.shared.models.session import Session
from agentrelay.shared.services.persistence import SessionStore
from agentrelay.shared.services.session_cache import DiskBackedSession
from agentrelay.shared.services.transcript.log_reader import (
    SessionData,
    SessionLogInfo,
    discover_sessions,
    get_last_message_error,
    load_full_session_data,
)

logger = logging.getLogger(__name__)

ASK_USER_QUESTION = "AskUserQuestion"

_COMMON_CLI_PATHS = (
    "~/.local/bin/claude",
    "/usr/bin/claude",
    "/usr/local/bin/claude",
    "/opt/homebrew/bin/claude",
)
_IMAGE_MEDIA_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}
_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.*)$", re.DOTALL)

QueryFn = Callable[..., AsyncIterator[Any]]


# ── CLI discovery ──


def find_claude_cli(configured: str | None = None) -> str:
    """Locate the Claude CLI binary.

    An explicitly configured path wins. Otherwise every PATH entry and
    then the usual install locations are probed for an executable
    ``claude``. Raises AgentNotAvailableError when nothing is found.
    """
    if configured:
        logger.info("Using configured Claude CLI: %s", configured)
        return configured

    candidates: list[str] = []
    for directory in os.environ.get("PATH", "").split(os.pathsep):
        if directory:
            candidates.append(os.path.join(directory, "claude"))
    for common in _COMMON_CLI_PATHS:
        path = os.path.expanduser(common)
        if path not in candidates:
            candidates.append(path)

    for path in candidates:
        if os.path.isfile(path) and os.access(path, os.X_OK):
            logger.info("Found Claude CLI at %s", path)
            return path

    logger.warning(
        "Could not find Claude CLI (searched %d locations). "
        "Set CLAUDE_CLI_PATH or put 'claude' on PATH.",
        len(candidates),
    )
    raise AgentNotAvailableError(candidates)


# ── Prompt building ──


def parse_data_url(url: str) -> tuple[str, str] | None:
    """(media type, base64 payload) of a ``data:`` URL, else None."""
    match = _DATA_URL_RE.match(url)
    if not match:
        return None
    return match.group(1), match.group(2)


def message_to_prompt(message: LogicalMessage) -> str:
    return "\n".join(p.text for p in message.parts if isinstance(p, TextPart))


def message_to_content_blocks(message: LogicalMessage) -> list[dict[str, Any]]:
    """Text parts and inline images as Anthropic content blocks."""
    blocks: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, FilePart) and part.media_type.startswith("image/"):
            parsed = parse_data_url(part.url)
            if parsed is None or parsed[0] not in _IMAGE_MEDIA_TYPES:
                logger.warning(
                    "Skipping unsupported attachment media_type=%s", part.media_type,
                )
                continue
            media_type, data = parsed
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            })
    return blocks


# ── SDK message conversion ──


def _block_to_dict(block: Any) -> dict[str, Any] | None:
    if isinstance(block, dict):
        return block
    if hasattr(block, "tool_use_id"):
        content = getattr(block, "content", None)
        if isinstance(content, list):
            content = [_block_to_dict(b) or b for b in content]
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": content,
            "is_error": bool(getattr(block, "is_error", False)),
        }
    if hasattr(block, "thinking"):
        return {"type": "thinking", "thinking": block.thinking or ""}
    if hasattr(block, "name") and hasattr(block, "input") and hasattr(block, "id"):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if hasattr(block, "text"):
        return {"type": "text", "text": block.text or ""}
    logger.debug("Unknown SDK content block %s", type(block).__name__)
    return None


def _content_to_list(content: Any) -> Any:
    if isinstance(content, list):
        return [d for d in (_block_to_dict(b) for b in content) if d is not None]
    return content


def sdk_message_to_record(message: Any) -> dict[str, Any] | None:
    """Convert a claude_agent_sdk message object to a stream-json record.

    Plain dicts pass through. Returns None for anything unrecognized.
    """
    if isinstance(message, dict):
        return message

    kind = type(message).__name__
    if kind == "StreamEvent":
        return {
            "type": "stream_event",
            "uuid": getattr(message, "uuid", None),
            "session_id": getattr(message, "session_id", None),
            "event": getattr(message, "event", None) or {},
        }
    if kind == "SystemMessage":
        data = getattr(message, "data", None) or {}
        return {**data, "type": "system", "subtype": getattr(message, "subtype", None)}
    if kind == "ResultMessage":
        record = {"type": "result"}
        if dataclasses.is_dataclass(message):
            record.update(dataclasses.asdict(message))
        else:
            for attr in ("subtype", "is_error", "result", "session_id"):
                record[attr] = getattr(message, attr, None)
        record["type"] = "result"
        return record
    if kind == "AssistantMessage":
        assistant: dict[str, Any] = {
            "role": "assistant",
            "content": _content_to_list(getattr(message, "content", [])),
        }
        model = getattr(message, "model", None)
        if model:
            assistant["model"] = model
        return {"type": "assistant", "message": assistant}
    if kind == "UserMessage":
        return {
            "type": "user",
            "message": {
                "role": "user",
                "content": _content_to_list(getattr(message, "content", "")),
            },
        }
    logger.debug("Ignoring SDK message type %s", kind)
    return None


def _exit_code(exc: BaseException) -> int | None:
    code = getattr(exc, "exit_code", None)
    return code if isinstance(code, int) else None


# ── Client ──


class AgentClient:
    """Sessions plus one SDK query per turn.

    *query_fn* defaults to ``claude_agent_sdk.query``; it is a parameter
    so a different driver can stand in.
    """

    def __init__(
        self,
        config: RelayConfig,
        store: SessionStore | None = None,
        query_fn: QueryFn | None = None,
    ) -> None:
        self._config = config
        self._cwd = config.resolved_cwd
        self._projects_dir = config.claude_projects_dir
        self._store = store or SessionStore(config.session_file)
        self._query_fn = query_fn
        self._sessions: dict[str, Session] = {}
        self._current_session_id: str | None = None
        self._cli_path: str | None = None
        self._connected = False
        self._stderr_lines: list[str] = []

    @property
    def cwd(self) -> str:
        return self._cwd

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def default_session_id(self) -> str:
        return self._config.default_session_id

    def connect(self) -> None:
        """Resolve the CLI binary. Raises AgentNotAvailableError."""
        self._cli_path = find_claude_cli(self._config.cli_path)
        self._connected = True

    def disconnect(self) -> None:
        for session in self._sessions.values():
            session.questions.cancel_all()
        self._sessions.clear()
        self._connected = False

    # ── Sessions ──

    def _new_session(self, session_id: str, external_session_id: str | None = None) -> Session:
        session = Session(
            session_id=session_id,
            cwd=self._cwd,
            history=DiskBackedSession(session_id, self._cwd, self._projects_dir),
            questions=QuestionChannel(),
            external_session_id=external_session_id,
        )
        self._sessions[session_id] = session
        return session

    def ensure_session(self, session_id: str | None = None) -> str:
        """Return the id of an existing or newly created session.

        For the default id with no session in memory, a single CLI log
        for the working directory is adopted as-is. Otherwise the stored
        mapping, if it belongs to this id, restores the CLI session id.
        """
        sid = session_id or self.default_session_id
        session = self._sessions.get(sid)
        if session is None and sid == self.default_session_id:
            available = self.discover_sessions()
            if len(available) == 1:
                existing_id = available[0].session_id
                session = self._sessions.get(existing_id)
                if session is None:
                    logger.info(
                        "Default session not found, adopting CLI session %s", existing_id,
                    )
                    session = self._new_session(existing_id, external_session_id=existing_id)
                    session.load()
                self._current_session_id = existing_id
                return existing_id

        if session is None:
            session = self._new_session(sid)
            self._restore_mapping(session)

        self._current_session_id = sid
        return sid

    def _restore_mapping(self, session: Session) -> None:
        stored = self._store.load()
        if stored is None or stored.session_id != session.session_id:
            return
        if not stored.external_session_id:
            return
        session.external_session_id = stored.external_session_id
        session.load()
        logger.info(
            "Restored session mapping %s -> %s",
            session.session_id, session.external_session_id,
        )

    def _persist_mapping(self, session: Session) -> None:
        try:
            self._store.save(session.session_id, self._cwd, session.external_session_id)
        except OSError as exc:
            logger.error(
                "Failed to persist session mapping %s -> %s: %s",
                session.session_id, session.external_session_id, exc,
            )

    def get_session(self, session_id: str | None = None) -> Session | None:
        sid = session_id or self._current_session_id or self.default_session_id
        return self._sessions.get(sid)

    def require_session(self, session_id: str | None = None) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id or self.default_session_id)
        return session

    def list_sessions(self) -> list[str]:
        return list(self._sessions)

    def get_messages(self, session_id: str | None = None) -> list[LogicalMessage]:
        sid = self.ensure_session(session_id)
        return self._sessions[sid].get_messages()

    def discover_sessions(self) -> list[SessionLogInfo]:
        return discover_sessions(self._cwd, self._projects_dir)

    def load_full_session(self, session_id: str) -> SessionData | None:
        return load_full_session_data(session_id, self._cwd, self._projects_dir)

    def cancel(self, session_id: str | None = None) -> None:
        """Reject the session's pending question so the SDK callback returns."""
        session = self.get_session(session_id)
        if session is not None:
            session.questions.cancel_all()

    def clear_session(self, session_id: str | None = None) -> None:
        session = self.get_session(session_id)
        if session is not None:
            session.clear()
            logger.info("Cleared session %s", session.session_id)
        self._store.clear()

    # ── Turns ──

    def _build_options(self, session: Session) -> Any:
        from claude_agent_sdk import ClaudeAgentOptions

        self._stderr_lines = []

        def _capture_stderr(line: str) -> None:
            self._stderr_lines.append(line)
            logger.debug("claude stderr: %s", line.rstrip())

        async def _can_use_tool(tool_name: str, tool_input: dict, context: object = None):
            return await self._check_tool(session, tool_name, tool_input, context)

        options_kwargs: dict[str, Any] = dict(
            cwd=self._cwd,
            model=self._config.model,
            resume=session.external_session_id,
            include_partial_messages=True,
            system_prompt={"type": "preset", "preset": "claude_code"},
            setting_sources=["user", "project"],
            max_thinking_tokens=self._config.max_thinking_tokens,
            can_use_tool=_can_use_tool,
            stderr=_capture_stderr,
        )
        if self._cli_path:
            options_kwargs["cli_path"] = self._cli_path
        logger.info(
            "Starting query session=%s resume=%s model=%s cwd=%s cli=%s",
            session.session_id,
            session.external_session_id or "<new>",
            self._config.model or "<default>",
            self._cwd,
            self._cli_path or "<sdk-bundled>",
        )
        return ClaudeAgentOptions(**options_kwargs)

    def _query(self) -> QueryFn:
        if self._query_fn is not None:
            return self._query_fn
        from claude_agent_sdk import query
        return query

    async def _check_tool(
        self, session: Session, tool_name: str, tool_input: dict, context: object = None,
    ):
        """can_use_tool callback: allow everything, but route questions
        through the session's question channel."""
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        if tool_name != ASK_USER_QUESTION:
            return PermissionResultAllow(updated_input=tool_input)

        tool_use_id = self._question_tool_use_id(session, context)
        questions = tool_input.get("questions") if isinstance(tool_input, dict) else None
        try:
            answers = await session.questions.ask(tool_use_id, list(questions or []))
        except QuestionCancelledError as exc:
            return PermissionResultDeny(message=str(exc), interrupt=True)
        return PermissionResultAllow(updated_input={**(tool_input or {}), "answers": answers})

    @staticmethod
    def _question_tool_use_id(session: Session, context: object) -> str:
        """Call id of the AskUserQuestion the CLI is waiting on.

        Taken from the permission context when the SDK provides it,
        else from the newest unanswered AskUserQuestion in the stream.
        """
        tool_use_id = getattr(context, "tool_use_id", None)
        if isinstance(tool_use_id, str) and tool_use_id:
            return tool_use_id
        state = session.stream_state
        if state is not None:
            for tracking in reversed(list(state.tools.values())):
                if tracking.tool_name == ASK_USER_QUESTION and not tracking.state.is_terminal:
                    return tracking.tool_call_id
        return f"question-{uuid.uuid4().hex[:12]}"

    def _translate(self, session: Session, record: dict[str, Any] | None) -> list[Chunk]:
        if record is None:
            return []
        if record.get("type") == "system" and record.get("subtype") == "init":
            external_id = record.get("session_id")
            if external_id and external_id != session.external_session_id:
                session.external_session_id = external_id
                self._persist_mapping(session)
            return []

        if session.stream_state is None:
            session.stream_state = StreamState()
        chunks = translate(record, session.stream_state)
        if record.get("type") == "result":
            session.stream_state = None
        return chunks

    def _failure_message(self, session: Session, exc: BaseException) -> str:
        log_error = get_last_message_error(
            session.log_session_id, self._cwd, self._projects_dir,
        )
        if log_error:
            return log_error
        code = _exit_code(exc)
        if code is not None:
            return f"Agent process exited with code {code}"
        return str(exc) or type(exc).__name__

    async def _prompt_stream(self, content: list[dict[str, Any]]):
        yield {
            "type": "user",
            "message": {"role": "user", "content": content},
        }

    async def prompt(
        self, message: LogicalMessage, session_id: str | None = None,
    ) -> AsyncIterator[Chunk]:
        """Run one turn and yield its chunks.

        Upstream failures are reported as error + finish chunks and then
        raised as AgentProcessError so the runner records the error.
        """
        if not self._connected:
            self.connect()
        sid = self.ensure_session(session_id)
        session = self._sessions[sid]

        if session.external_session_id:
            session.reload()
        # Only this turn's prompt may be overlaid; an earlier turn that
        # died before init never reached the log.
        session.history.clear_dirty()
        session.history.add_message(message)
        session.stream_state = None

        options = self._build_options(session)
        query = self._query()
        finished = False
        try:
            async for sdk_message in query(
                prompt=self._prompt_stream(message_to_content_blocks(message)),
                options=options,
            ):
                for chunk in self._translate(session, sdk_message_to_record(sdk_message)):
                    finished = finished or is_terminal(chunk)
                    yield chunk
        except Exception as exc:
            if is_cancellation(exc):
                raise
            error_text = self._failure_message(session, exc)
            logger.error("Turn failed session=%s: %s", sid, error_text)
            if self._stderr_lines:
                logger.error("claude stderr tail:\n%s", "\n".join(self._stderr_lines[-10:]))
            state = session.stream_state or StreamState()
            session.stream_state = None
            # A failure after the terminal result only sets the status error.
            if not finished:
                for chunk in create_error_chunks(state, error_text):
                    yield chunk
            raise AgentProcessError(error_text, _exit_code(exc)) from exc
        finally:
            session.stream_state = None
            if session.external_session_id:
                session.reload()
                session.history.clear_dirty()
