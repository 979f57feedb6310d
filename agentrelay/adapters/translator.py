"""Upstream agent events -> normalized chunks.

``translate(record, state)`` is the only entry point the agent client
uses. It is pure apart from mutating *state* and understands two
upstream dialects:

* Claude stream-json records (``assistant``, ``stream_event``, ``user``,
  ``result``, ``system``) as produced by the CLI or converted from
  ``claude_agent_sdk`` message objects.
* ACP session updates (``{"sessionUpdate": ...}``) which report tool
  progress as pending / in_progress / completed / failed statuses.

Block ordering rules enforced here:

* a text or reasoning delta closes the other block kind first;
* any tool activity closes both;
* every tool call gets exactly one input-available before its single
  output chunk, synthesized from the last known input when the agent
  skipped the in-progress status;
* the finish-step for a step is held back until that step's tool
  results have been emitted.
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from agentrelay.adapters.chunks import (
    FINISH_REASONS,
    Chunk,
    ErrorChunk,
    FinishStep,
    MessageFinish,
    MessageStart,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StepStart,
    TextDelta,
    TextEnd,
    TextStart,
    ToolInputAvailable,
    ToolInputDelta,
    ToolInputStart,
    ToolOutputAvailable,
    ToolOutputError,
)
from agentrelay.adapters.stream_state import (
    BlockKind,
    PendingAction,
    StreamState,
    ToolState,
    ToolTracking,
    can_transition,
)
from agentrelay.shared.services.transcript.normalize import (
    TOOL_FAILED_TEXT,
    coerce_text,
    content_blocks,
    tool_result_blocks,
    tool_result_error_text,
    tool_result_output,
)

logger = logging.getLogger(__name__)

_TOOL_BLOCK_TYPES = {"tool_use", "server_tool_use", "mcp_tool_use"}

_ACP_STATUS: dict[str, ToolState] = {
    "pending": ToolState.INPUT_STREAMING,
    "in_progress": ToolState.INPUT_AVAILABLE,
    "completed": ToolState.OUTPUT_AVAILABLE,
    "failed": ToolState.OUTPUT_ERROR,
}

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "model_context_window_exceeded": "length",
    "tool_use": "tool-calls",
}


def map_finish_reason(
    stop_reason: str | None = None,
    *,
    subtype: str | None = None,
    is_error: bool = False,
) -> str:
    """Map an upstream stop reason / result subtype to a finish reason."""
    if subtype == "error_max_turns":
        return "length"
    if is_error or (subtype or "").startswith("error"):
        return "error"
    if stop_reason is None:
        return "stop"
    if stop_reason in FINISH_REASONS:
        return stop_reason
    return _STOP_REASONS.get(stop_reason, "other")


def _new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


# ── Block helpers ──


def _close_text(state: StreamState, chunks: list[Chunk]) -> None:
    if state.open_text_id is not None:
        chunks.append(TextEnd(id=state.open_text_id))
        state.open_text_id = None


def _close_reasoning(state: StreamState, chunks: list[Chunk]) -> None:
    if state.open_reasoning_id is not None:
        chunks.append(ReasoningEnd(id=state.open_reasoning_id))
        state.open_reasoning_id = None


def _close_open_blocks(state: StreamState, chunks: list[Chunk]) -> None:
    _close_text(state, chunks)
    _close_reasoning(state, chunks)


def _open_text(state: StreamState, chunks: list[Chunk]) -> str:
    _close_reasoning(state, chunks)
    if state.open_text_id is None:
        state.open_text_id = state.next_block_id(BlockKind.TEXT)
        chunks.append(TextStart(id=state.open_text_id))
    return state.open_text_id


def _open_reasoning(state: StreamState, chunks: list[Chunk]) -> str:
    _close_text(state, chunks)
    if state.open_reasoning_id is None:
        state.open_reasoning_id = state.next_block_id(BlockKind.REASONING)
        chunks.append(ReasoningStart(id=state.open_reasoning_id))
    return state.open_reasoning_id


def _text_delta(state: StreamState, text: str, chunks: list[Chunk]) -> None:
    if not text:
        return
    block = _open_text(state, chunks)
    chunks.append(TextDelta(id=block, delta=text))


def _reasoning_delta(state: StreamState, text: str, chunks: list[Chunk]) -> None:
    if not text:
        return
    block = _open_reasoning(state, chunks)
    chunks.append(ReasoningDelta(id=block, delta=text))


# ── Step helpers ──


def _flush_pending(state: StreamState, chunks: list[Chunk]) -> None:
    if state.pending is PendingAction.FINISH_STEP:
        state.pending = None
        if state.step_open:
            chunks.append(FinishStep())
            state.step_open = False


def _begin_step(state: StreamState, upstream_id: str | None, chunks: list[Chunk]) -> None:
    """Open the first step of a turn (start) or a later one (start-step)."""
    upstream_id = upstream_id or state.message_id or _new_message_id()
    if not state.turn_started:
        state.message_id = state.message_id or upstream_id
        state.step_message_id = upstream_id
        state.turn_started = True
        state.step_open = True
        chunks.append(MessageStart(message_id=state.message_id))
        return

    _flush_pending(state, chunks)
    _close_open_blocks(state, chunks)
    if state.step_open:
        chunks.append(FinishStep())
    state.reset_step()
    state.step_message_id = upstream_id
    state.step_open = True
    chunks.append(StepStart())


def _ensure_turn(state: StreamState, chunks: list[Chunk]) -> None:
    if not state.turn_started:
        _begin_step(state, None, chunks)


# ── Tool helpers ──


def _start_tool(
    state: StreamState,
    tool_call_id: str,
    tool_name: str,
    chunks: list[Chunk],
    *,
    title: str | None = None,
    tool_input: Any = None,
    provider_metadata: dict[str, Any] | None = None,
) -> ToolTracking:
    tracking = state.tools.get(tool_call_id)
    if tracking is not None:
        if tool_input is not None:
            tracking.last_input = tool_input
        if title is not None:
            tracking.last_title = title
        return tracking

    _close_open_blocks(state, chunks)
    tracking = ToolTracking(
        tool_call_id=tool_call_id,
        tool_name=tool_name,
        last_input=tool_input,
        last_title=title,
        provider_metadata=provider_metadata,
    )
    state.tools[tool_call_id] = tracking
    chunks.append(ToolInputStart(
        tool_call_id=tool_call_id,
        tool_name=tool_name,
        title=title,
        provider_metadata=provider_metadata,
    ))
    return tracking


def _emit_input_available(tracking: ToolTracking, chunks: list[Chunk]) -> None:
    chunks.append(ToolInputAvailable(
        tool_call_id=tracking.tool_call_id,
        tool_name=tracking.tool_name,
        input=tracking.last_input if tracking.last_input is not None else {},
        title=tracking.last_title,
        provider_metadata=tracking.provider_metadata,
    ))
    tracking.input_available_sent = True
    if can_transition(tracking.state, ToolState.INPUT_AVAILABLE):
        tracking.state = ToolState.INPUT_AVAILABLE


def _emit_output(
    tracking: ToolTracking,
    chunks: list[Chunk],
    *,
    is_error: bool,
    output: Any = None,
    error_text: str | None = None,
) -> None:
    if tracking.state.is_terminal:
        logger.debug(
            "Ignoring repeated result for tool=%s id=%s (already %s)",
            tracking.tool_name, tracking.tool_call_id, tracking.state.value,
        )
        return
    if not tracking.input_available_sent:
        _emit_input_available(tracking, chunks)
    if is_error:
        chunks.append(ToolOutputError(
            tool_call_id=tracking.tool_call_id,
            error_text=error_text or TOOL_FAILED_TEXT,
        ))
        tracking.state = ToolState.OUTPUT_ERROR
    else:
        chunks.append(ToolOutputAvailable(
            tool_call_id=tracking.tool_call_id,
            output=output,
        ))
        tracking.state = ToolState.OUTPUT_AVAILABLE


def _apply_tool_results(
    state: StreamState, content: Any, chunks: list[Chunk],
) -> None:
    for block in tool_result_blocks(content):
        tool_call_id = block["tool_use_id"]
        tracking = state.tools.get(tool_call_id)
        if tracking is None:
            logger.warning(
                "Tool result for unknown tool call id=%s; skipping",
                tool_call_id,
            )
            continue
        is_error = bool(block.get("is_error"))
        raw = block.get("content")
        _emit_output(
            tracking,
            chunks,
            is_error=is_error,
            output=None if is_error else tool_result_output(raw),
            error_text=tool_result_error_text(raw) if is_error else None,
        )


# ── Claude stream-json records ──


def _on_message_start(record: dict, event: dict, state: StreamState, chunks: list[Chunk]) -> None:
    message = event.get("message") or {}
    _begin_step(state, message.get("id") or record.get("uuid"), chunks)
    state.streamed_steps.add(state.step_message_id)


def _on_block_start(event: dict, state: StreamState, chunks: list[Chunk]) -> None:
    _ensure_turn(state, chunks)
    index = event.get("index", 0)
    block = event.get("content_block") or {}
    block_type = block.get("type")

    if block_type == "text":
        _close_open_blocks(state, chunks)
        block_id = _open_text(state, chunks)
        state.block_kinds[index] = BlockKind.TEXT
        if block.get("text"):
            chunks.append(TextDelta(id=block_id, delta=block["text"]))
    elif block_type == "thinking":
        _close_open_blocks(state, chunks)
        block_id = _open_reasoning(state, chunks)
        state.block_kinds[index] = BlockKind.REASONING
        if block.get("thinking"):
            chunks.append(ReasoningDelta(id=block_id, delta=block["thinking"]))
    elif block_type in _TOOL_BLOCK_TYPES:
        tool_call_id = block.get("id")
        if not tool_call_id:
            logger.warning("tool_use block without id at index=%s; skipping", index)
            return
        _start_tool(
            state,
            tool_call_id,
            block.get("name") or "unknown",
            chunks,
            tool_input=block.get("input") or None,
        )
        state.block_kinds[index] = BlockKind.TOOL
        state.block_tools[index] = tool_call_id
    else:
        logger.debug("Ignoring content block type=%s index=%s", block_type, index)


def _on_block_delta(event: dict, state: StreamState, chunks: list[Chunk]) -> None:
    index = event.get("index", 0)
    delta = event.get("delta") or {}
    delta_type = delta.get("type")

    if delta_type == "text_delta":
        _ensure_turn(state, chunks)
        _text_delta(state, delta.get("text") or "", chunks)
    elif delta_type == "thinking_delta":
        _ensure_turn(state, chunks)
        _reasoning_delta(state, delta.get("thinking") or "", chunks)
    elif delta_type == "input_json_delta":
        tool_call_id = state.block_tools.get(index)
        tracking = state.tools.get(tool_call_id) if tool_call_id else None
        partial = delta.get("partial_json") or ""
        if tracking is None:
            logger.debug("input_json_delta for untracked block index=%s", index)
            return
        if not partial:
            return
        tracking.input_json_buffer += partial
        chunks.append(ToolInputDelta(
            tool_call_id=tracking.tool_call_id,
            input_text_delta=partial,
        ))
        try:
            tracking.last_input = json.loads(tracking.input_json_buffer)
        except json.JSONDecodeError:
            pass  # incomplete JSON; keep accumulating


def _on_block_stop(event: dict, state: StreamState, chunks: list[Chunk]) -> None:
    index = event.get("index", 0)
    kind = state.block_kinds.pop(index, None)
    if kind is BlockKind.TEXT:
        _close_text(state, chunks)
    elif kind is BlockKind.REASONING:
        _close_reasoning(state, chunks)
    elif kind is BlockKind.TOOL:
        tracking = state.tools.get(state.block_tools.pop(index, ""))
        if tracking is not None and not tracking.input_available_sent:
            _emit_input_available(tracking, chunks)


def _translate_stream_event(record: dict, state: StreamState) -> list[Chunk]:
    event = record.get("event") or {}
    event_type = event.get("type")
    chunks: list[Chunk] = []

    if event_type == "message_start":
        _on_message_start(record, event, state, chunks)
    elif event_type == "content_block_start":
        _on_block_start(event, state, chunks)
    elif event_type == "content_block_delta":
        _on_block_delta(event, state, chunks)
    elif event_type == "content_block_stop":
        _on_block_stop(event, state, chunks)
    elif event_type == "message_delta":
        stop_reason = (event.get("delta") or {}).get("stop_reason")
        if stop_reason:
            state.stop_reason = stop_reason
    elif event_type == "message_stop":
        _close_open_blocks(state, chunks)
        state.pending = PendingAction.FINISH_STEP
    return chunks


def _emit_snapshot_blocks(message: dict, state: StreamState, chunks: list[Chunk]) -> None:
    """Emit chunks for every block of a complete assistant message."""
    for block in content_blocks(message.get("content")):
        block_type = block.get("type")
        if block_type == "text":
            _close_open_blocks(state, chunks)
            block_id = _open_text(state, chunks)
            if block.get("text"):
                chunks.append(TextDelta(id=block_id, delta=block["text"]))
            _close_text(state, chunks)
        elif block_type == "thinking":
            _close_open_blocks(state, chunks)
            block_id = _open_reasoning(state, chunks)
            if block.get("thinking"):
                chunks.append(ReasoningDelta(id=block_id, delta=block["thinking"]))
            _close_reasoning(state, chunks)
        elif block_type in _TOOL_BLOCK_TYPES and block.get("id"):
            tracking = _start_tool(
                state,
                block["id"],
                block.get("name") or "unknown",
                chunks,
                tool_input=block.get("input"),
            )
            if not tracking.input_available_sent:
                _emit_input_available(tracking, chunks)
        elif block_type == "tool_result":
            _apply_tool_results(state, [block], chunks)


def _translate_assistant(record: dict, state: StreamState) -> list[Chunk]:
    message = record.get("message") or {}
    step_id = message.get("id") or record.get("uuid")
    # Already delivered through partial stream events. SDK message
    # objects carry no id, so those belong to the current step.
    if step_id and step_id in state.streamed_steps:
        return []
    if not step_id and state.step_message_id in state.streamed_steps:
        return []

    chunks: list[Chunk] = []
    if not state.turn_started or (step_id and step_id != state.step_message_id):
        _begin_step(state, step_id, chunks)
    _emit_snapshot_blocks(message, state, chunks)
    if message.get("stop_reason"):
        state.stop_reason = message["stop_reason"]
    return chunks


def _translate_user(record: dict, state: StreamState) -> list[Chunk]:
    message = record.get("message") or {}
    content = message.get("content")
    if not tool_result_blocks(content):
        return []
    chunks: list[Chunk] = []
    _apply_tool_results(state, content, chunks)
    # The step's finish is only released once its tool output is out.
    _flush_pending(state, chunks)
    return chunks


def _result_error_text(record: dict) -> str:
    errors = record.get("errors")
    if isinstance(errors, list) and errors:
        return "; ".join(coerce_text(e) for e in errors)
    result = record.get("result")
    if isinstance(result, str) and result.strip():
        return result
    return f"Agent turn failed ({record.get('subtype') or 'error'})"


def _translate_result(record: dict, state: StreamState) -> list[Chunk]:
    chunks: list[Chunk] = []
    _ensure_turn(state, chunks)
    _flush_pending(state, chunks)
    _close_open_blocks(state, chunks)
    if state.step_open:
        chunks.append(FinishStep())
        state.step_open = False

    subtype = record.get("subtype")
    is_error = bool(record.get("is_error")) or (subtype or "").startswith("error")
    if is_error:
        chunks.append(ErrorChunk(error_text=_result_error_text(record)))
    chunks.append(MessageFinish(finish_reason=map_finish_reason(
        record.get("stop_reason") or state.stop_reason,
        subtype=subtype,
        is_error=is_error,
    )))
    state.finished = True
    return chunks


def _translate_ignored(record: dict, state: StreamState) -> list[Chunk]:
    return []


_RECORD_HANDLERS = {
    "assistant": _translate_assistant,
    "stream_event": _translate_stream_event,
    "user": _translate_user,
    "result": _translate_result,
    "system": _translate_ignored,
}


# ── ACP session updates ──


def claude_code_meta(meta: Any) -> dict[str, Any] | None:
    if not isinstance(meta, dict):
        return None
    claude_code = meta.get("claudeCode")
    return claude_code if isinstance(claude_code, dict) else None


def extract_tool_name(title: str | None, meta: Any) -> str:
    claude_code = claude_code_meta(meta) or {}
    return claude_code.get("toolName") or title or "unknown"


def extract_tool_output(raw_output: Any, content: Any, meta: Any) -> Any:
    """rawOutput, then _meta.claudeCode.toolResponse, then content text."""
    if raw_output is not None:
        return raw_output
    claude_code = claude_code_meta(meta) or {}
    if claude_code.get("toolResponse"):
        return claude_code["toolResponse"]
    if isinstance(content, list):
        texts = []
        for item in content:
            if not isinstance(item, dict) or item.get("type") != "content":
                continue
            inner = item.get("content")
            if isinstance(inner, dict) and isinstance(inner.get("text"), str):
                texts.append(inner["text"])
        if texts:
            return "\n".join(texts)
    return None


def _translate_tool_update(update: dict, state: StreamState, chunks: list[Chunk]) -> None:
    tool_call_id = update.get("toolCallId")
    if not tool_call_id:
        logger.warning("ACP tool update without toolCallId; skipping")
        return
    meta = update.get("_meta")
    title = update.get("title")
    claude_code = claude_code_meta(meta)

    _close_open_blocks(state, chunks)
    tracking = _start_tool(
        state,
        tool_call_id,
        extract_tool_name(title, meta),
        chunks,
        title=title,
        tool_input=update.get("rawInput"),
        provider_metadata={"claudeCode": claude_code} if claude_code else None,
    )

    status = update.get("status")
    target = _ACP_STATUS.get(status) if status else None
    if target is None:
        return
    if target is ToolState.INPUT_AVAILABLE:
        if not tracking.input_available_sent:
            _emit_input_available(tracking, chunks)
        return
    if target.is_terminal:
        output = extract_tool_output(update.get("rawOutput"), update.get("content"), meta)
        is_error = target is ToolState.OUTPUT_ERROR
        _emit_output(
            tracking,
            chunks,
            is_error=is_error,
            output=output,
            error_text=(coerce_text(output) or TOOL_FAILED_TEXT) if is_error else None,
        )


def _translate_plan(update: dict, state: StreamState, chunks: list[Chunk]) -> None:
    _close_open_blocks(state, chunks)
    tool_call_id = state.next_plan_id()
    tracking = _start_tool(state, tool_call_id, "TodoWrite", chunks, title="Plan", tool_input={})
    _emit_input_available(tracking, chunks)
    _emit_output(tracking, chunks, is_error=False, output=update.get("entries") or [])


def _translate_session_update(update: dict, state: StreamState) -> list[Chunk]:
    kind = update.get("sessionUpdate")
    chunks: list[Chunk] = []
    if kind in ("agent_message_chunk", "agent_thought_chunk"):
        content = update.get("content") or {}
        if content.get("type") != "text":
            return chunks
        _ensure_turn(state, chunks)
        if kind == "agent_message_chunk":
            _text_delta(state, content.get("text") or "", chunks)
        else:
            _reasoning_delta(state, content.get("text") or "", chunks)
    elif kind in ("tool_call", "tool_call_update"):
        _ensure_turn(state, chunks)
        _translate_tool_update(update, state, chunks)
    elif kind == "plan":
        _ensure_turn(state, chunks)
        _translate_plan(update, state, chunks)
    else:
        logger.debug("Ignoring ACP session update kind=%s", kind)
    return chunks


# ── Public API ──


def translate(record: dict[str, Any], state: StreamState) -> list[Chunk]:
    """Translate one upstream record into zero or more chunks."""
    if not isinstance(record, dict):
        logger.warning("Ignoring non-object upstream record: %r", type(record).__name__)
        return []
    if state.finished:
        logger.debug("Turn already finished; ignoring record type=%s", record.get("type"))
        return []
    if "sessionUpdate" in record:
        return _translate_session_update(record, state)

    handler = _RECORD_HANDLERS.get(record.get("type"))
    if handler is None:
        logger.debug("Ignoring upstream record type=%s", record.get("type"))
        return []
    return handler(record, state)


def translate_assistant_message(record: dict[str, Any]) -> list[Chunk]:
    """Full start..finish chunk sequence for one complete assistant record."""
    state = StreamState()
    message = record.get("message") or {}
    chunks: list[Chunk] = []
    _begin_step(state, message.get("id") or record.get("uuid"), chunks)
    _emit_snapshot_blocks(message, state, chunks)
    _close_open_blocks(state, chunks)
    chunks.append(MessageFinish(finish_reason=map_finish_reason(message.get("stop_reason"))))
    return chunks


def create_error_chunks(state: StreamState, error_text: str) -> list[Chunk]:
    """Terminal chunks for a turn that failed outside the agent's own result."""
    chunks: list[Chunk] = []
    if state.finished:
        return chunks
    _ensure_turn(state, chunks)
    _flush_pending(state, chunks)
    _close_open_blocks(state, chunks)
    if state.step_open:
        chunks.append(FinishStep())
        state.step_open = False
    chunks.append(ErrorChunk(error_text=error_text))
    chunks.append(MessageFinish(finish_reason="error"))
    state.finished = True
    return chunks
