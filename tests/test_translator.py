from __future__ import annotations

import json
import logging

from agentrelay.adapters.chunks import (
    ErrorChunk,
    FinishStep,
    MessageFinish,
    MessageStart,
    ReasoningDelta,
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
from agentrelay.adapters.stream_state import StreamState
from agentrelay.shared.models.message import ReasoningPart, StepStartPart, TextPart, ToolPart
from agentrelay.shared.services.transcript.log_reader import reconstruct
from agentrelay.adapters.translator import (
    create_error_chunks,
    extract_tool_name,
    extract_tool_output,
    map_finish_reason,
    translate,
    translate_assistant_message,
)


def _stream(event: dict) -> dict:
    return {"type": "stream_event", "event": event}


def _message_start(message_id: str) -> dict:
    return _stream({"type": "message_start", "message": {"id": message_id}})


def _block_start(index: int, block: dict) -> dict:
    return _stream({"type": "content_block_start", "index": index, "content_block": block})


def _text_delta(index: int, text: str) -> dict:
    return _stream({
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "text_delta", "text": text},
    })


def _json_delta(index: int, partial: str) -> dict:
    return _stream({
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "input_json_delta", "partial_json": partial},
    })


def _block_stop(index: int) -> dict:
    return _stream({"type": "content_block_stop", "index": index})


def _run(records: list[dict], state: StreamState | None = None) -> list:
    state = state or StreamState()
    chunks = []
    for record in records:
        chunks.extend(translate(record, state))
    return chunks


def _types(chunks: list) -> list[str]:
    return [c.chunk_type for c in chunks]


# ── Streaming (stream_event) ──


def test_streamed_text_turn_produces_balanced_sequence() -> None:
    chunks = _run([
        _message_start("msg-1"),
        _block_start(0, {"type": "text", "text": ""}),
        _text_delta(0, "Hello"),
        _text_delta(0, " world"),
        _block_stop(0),
        _stream({"type": "message_delta", "delta": {"stop_reason": "end_turn"}}),
        _stream({"type": "message_stop"}),
        {"type": "result", "subtype": "success", "is_error": False},
    ])

    assert _types(chunks) == [
        "start", "text-start", "text-delta", "text-delta", "text-end",
        "finish-step", "finish",
    ]
    assert chunks[0] == MessageStart(message_id="msg-1")
    assert chunks[1] == TextStart(id="text-msg-1-0")
    assert "".join(c.delta for c in chunks if isinstance(c, TextDelta)) == "Hello world"
    assert chunks[-1] == MessageFinish(finish_reason="stop")


def test_assistant_snapshot_after_stream_events_is_ignored() -> None:
    state = StreamState()
    _run([
        _message_start("msg-1"),
        _block_start(0, {"type": "text", "text": ""}),
        _text_delta(0, "Hi"),
        _block_stop(0),
    ], state)

    snapshot = {
        "type": "assistant",
        "message": {"id": "msg-1", "content": [{"type": "text", "text": "Hi"}]},
    }
    assert translate(snapshot, state) == []

    # SDK message objects carry no id; they belong to the streamed step.
    anonymous = {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}}
    assert translate(anonymous, state) == []


def test_multi_step_turn_with_tool_keeps_outputs_before_finish_step() -> None:
    chunks = _run([
        _message_start("msg-1"),
        _block_start(0, {"type": "text", "text": ""}),
        _text_delta(0, "Let me check"),
        _block_stop(0),
        _block_start(1, {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {}}),
        _json_delta(1, '{"command":'),
        _json_delta(1, ' "ls"}'),
        _block_stop(1),
        _stream({"type": "message_stop"}),
        {
            "type": "user",
            "message": {"content": [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": "file.txt"},
            ]},
        },
        _message_start("msg-2"),
        _block_start(0, {"type": "text", "text": ""}),
        _text_delta(0, "Done"),
        _block_stop(0),
        _stream({"type": "message_stop"}),
        {"type": "result", "subtype": "success", "is_error": False},
    ])

    assert _types(chunks) == [
        "start",
        "text-start", "text-delta", "text-end",
        "tool-input-start", "tool-input-delta", "tool-input-delta",
        "tool-input-available", "tool-output-available",
        "finish-step",
        "start-step",
        "text-start", "text-delta", "text-end",
        "finish-step",
        "finish",
    ]
    assert chunks[0] == MessageStart(message_id="msg-1")
    assert chunks[4] == ToolInputStart(tool_call_id="toolu_1", tool_name="Bash")
    assert chunks[5] == ToolInputDelta(tool_call_id="toolu_1", input_text_delta='{"command":')
    available = chunks[7]
    assert isinstance(available, ToolInputAvailable)
    assert available.input == {"command": "ls"}
    assert chunks[8] == ToolOutputAvailable(tool_call_id="toolu_1", output="file.txt")
    # Counters run across steps; ids carry the step's message id.
    assert chunks[11] == TextStart(id="text-msg-2-1")


def test_text_then_thinking_closes_the_text_block() -> None:
    chunks = _run([
        _message_start("msg-1"),
        _text_delta(0, "a"),
        _stream({
            "type": "content_block_delta",
            "index": 1,
            "delta": {"type": "thinking_delta", "thinking": "b"},
        }),
    ])
    assert _types(chunks) == [
        "start", "text-start", "text-delta", "text-end",
        "reasoning-start", "reasoning-delta",
    ]
    assert chunks[4] == ReasoningStart(id="reasoning-msg-1-0")


def test_empty_text_block_still_emits_start_and_end() -> None:
    chunks = _run([
        _message_start("msg-1"),
        _block_start(0, {"type": "text", "text": ""}),
        _block_stop(0),
    ])
    assert _types(chunks) == ["start", "text-start", "text-end"]


def test_empty_delta_emits_nothing() -> None:
    state = StreamState()
    _run([_message_start("msg-1")], state)
    assert translate(_text_delta(0, ""), state) == []


# ── Complete snapshots ──


def test_snapshot_only_turn_with_failed_tool_and_error_result() -> None:
    chunks = _run([
        {
            "type": "assistant",
            "message": {
                "id": "msg-a",
                "content": [
                    {"type": "text", "text": "Hi"},
                    {"type": "tool_use", "id": "t1", "name": "Read", "input": {"path": "x"}},
                ],
            },
        },
        {
            "type": "user",
            "message": {"content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "boom", "is_error": True},
            ]},
        },
        {"type": "result", "subtype": "error_during_execution", "is_error": True},
    ])

    assert _types(chunks) == [
        "start", "text-start", "text-delta", "text-end",
        "tool-input-start", "tool-input-available", "tool-output-error",
        "finish-step", "error", "finish",
    ]
    assert chunks[5].input == {"path": "x"}
    assert chunks[6] == ToolOutputError(tool_call_id="t1", error_text="boom")
    assert isinstance(chunks[8], ErrorChunk)
    assert "error_during_execution" in chunks[8].error_text
    assert chunks[-1] == MessageFinish(finish_reason="error")


def test_repeated_tool_result_emits_nothing() -> None:
    state = StreamState()
    _run([{
        "type": "assistant",
        "message": {
            "id": "msg-a",
            "content": [{"type": "tool_use", "id": "t1", "name": "Read", "input": {}}],
        },
    }], state)
    result = {
        "type": "user",
        "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}]},
    }
    assert _types(translate(result, state)) == ["tool-output-available"]
    assert translate(result, state) == []


def test_tool_result_for_unknown_call_is_skipped_with_warning(caplog) -> None:
    state = StreamState()
    _run([_message_start("msg-1")], state)
    record = {
        "type": "user",
        "message": {"content": [{"type": "tool_result", "tool_use_id": "ghost", "content": "x"}]},
    }
    with caplog.at_level(logging.WARNING, logger="agentrelay.adapters.translator"):
        assert translate(record, state) == []
    assert "ghost" in caplog.text


def test_records_after_result_are_ignored() -> None:
    state = StreamState()
    _run([
        _message_start("msg-1"),
        {"type": "result", "subtype": "success", "is_error": False},
    ], state)
    assert translate(_text_delta(0, "late"), state) == []


def test_system_and_unknown_records_emit_nothing() -> None:
    state = StreamState()
    assert translate({"type": "system", "subtype": "init", "session_id": "s"}, state) == []
    assert translate({"type": "keep_alive"}, state) == []
    assert not state.turn_started


# ── ACP session updates ──


def test_acp_text_and_thought_chunks_alternate_blocks() -> None:
    chunks = _run([
        {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "Hi"}},
        {"sessionUpdate": "agent_thought_chunk", "content": {"type": "text", "text": "hmm"}},
    ], StreamState(message_id="turn-1"))

    assert _types(chunks) == [
        "start", "text-start", "text-delta", "text-end",
        "reasoning-start", "reasoning-delta",
    ]
    assert chunks[0] == MessageStart(message_id="turn-1")
    assert chunks[1] == TextStart(id="text-turn-1-0")
    assert chunks[5] == ReasoningDelta(id="reasoning-turn-1-0", delta="hmm")


def test_acp_completed_without_in_progress_synthesizes_input_available() -> None:
    state = StreamState(message_id="turn-1")
    meta = {"claudeCode": {"toolName": "Bash"}}
    first = _run([{
        "sessionUpdate": "tool_call",
        "toolCallId": "c1",
        "title": "`ls`",
        "status": "pending",
        "rawInput": {"command": "ls"},
        "_meta": meta,
    }], state)
    assert _types(first) == ["start", "tool-input-start"]
    assert first[1] == ToolInputStart(
        tool_call_id="c1",
        tool_name="Bash",
        title="`ls`",
        provider_metadata={"claudeCode": {"toolName": "Bash"}},
    )

    completed = {
        "sessionUpdate": "tool_call_update",
        "toolCallId": "c1",
        "status": "completed",
        "rawOutput": "a.txt",
    }
    second = translate(completed, state)
    assert _types(second) == ["tool-input-available", "tool-output-available"]
    assert second[0].input == {"command": "ls"}
    assert second[0].title == "`ls`"
    assert second[1] == ToolOutputAvailable(tool_call_id="c1", output="a.txt")

    assert translate(completed, state) == []


def test_acp_in_progress_emits_input_available_once() -> None:
    state = StreamState(message_id="turn-1")
    update = {
        "sessionUpdate": "tool_call",
        "toolCallId": "c1",
        "title": "Read",
        "status": "in_progress",
        "rawInput": {"path": "a"},
    }
    assert _types(_run([update], state)) == [
        "start", "tool-input-start", "tool-input-available",
    ]
    assert translate({**update, "sessionUpdate": "tool_call_update"}, state) == []


def test_acp_failed_update_uses_content_text_as_error() -> None:
    state = StreamState(message_id="turn-1")
    chunks = _run([
        {"sessionUpdate": "tool_call", "toolCallId": "c1", "title": "Write", "status": "pending"},
        {
            "sessionUpdate": "tool_call_update",
            "toolCallId": "c1",
            "status": "failed",
            "content": [{"type": "content", "content": {"type": "text", "text": "denied"}}],
        },
    ], state)
    assert chunks[-1] == ToolOutputError(tool_call_id="c1", error_text="denied")


def test_acp_plan_becomes_synthetic_todo_tool() -> None:
    entries = [{"content": "write tests", "status": "pending", "priority": "high"}]
    chunks = _run(
        [{"sessionUpdate": "plan", "entries": entries}],
        StreamState(message_id="turn-1"),
    )
    assert _types(chunks) == [
        "start", "tool-input-start", "tool-input-available", "tool-output-available",
    ]
    assert chunks[1] == ToolInputStart(
        tool_call_id="plan-turn-1-0", tool_name="TodoWrite", title="Plan",
    )
    assert chunks[2].input == {}
    assert chunks[3] == ToolOutputAvailable(tool_call_id="plan-turn-1-0", output=entries)


def test_extract_tool_name_and_output_fallbacks() -> None:
    assert extract_tool_name("`ls`", {"claudeCode": {"toolName": "Bash"}}) == "Bash"
    assert extract_tool_name("`ls`", None) == "`ls`"
    assert extract_tool_name(None, {}) == "unknown"

    response = {"stdout": "ok", "stderr": ""}
    assert extract_tool_output("raw", None, None) == "raw"
    assert extract_tool_output(None, None, {"claudeCode": {"toolResponse": response}}) == response
    content = [
        {"type": "content", "content": {"type": "text", "text": "a"}},
        {"type": "content", "content": {"type": "text", "text": "b"}},
    ]
    assert extract_tool_output(None, content, None) == "a\nb"
    assert extract_tool_output(None, [], None) is None


# ── Helpers ──


def test_map_finish_reason() -> None:
    assert map_finish_reason("end_turn") == "stop"
    assert map_finish_reason("stop_sequence") == "stop"
    assert map_finish_reason(None) == "stop"
    assert map_finish_reason("max_tokens") == "length"
    assert map_finish_reason("tool_use") == "tool-calls"
    assert map_finish_reason("pause_turn") == "other"
    assert map_finish_reason(None, subtype="error_max_turns", is_error=True) == "length"
    assert map_finish_reason("end_turn", subtype="error_during_execution") == "error"
    assert map_finish_reason(None, is_error=True) == "error"


def test_translate_assistant_message_is_stateless() -> None:
    record = {
        "type": "assistant",
        "message": {"id": "m1", "content": [{"type": "text", "text": "hello"}]},
    }
    chunks = translate_assistant_message(record)
    assert chunks == [
        MessageStart(message_id="m1"),
        TextStart(id="text-m1-0"),
        TextDelta(id="text-m1-0", delta="hello"),
        TextEnd(id="text-m1-0"),
        MessageFinish(finish_reason="stop"),
    ]
    assert translate_assistant_message(record) == chunks


def test_translate_assistant_message_with_no_content() -> None:
    chunks = translate_assistant_message({"type": "assistant", "message": {"id": "m1", "content": []}})
    assert chunks == [MessageStart(message_id="m1"), MessageFinish(finish_reason="stop")]


def test_create_error_chunks_closes_open_block() -> None:
    state = StreamState(message_id="turn-1")
    _run([{"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": "partial"}}], state)
    chunks = create_error_chunks(state, "Agent process exited with code 1")
    assert chunks == [
        TextEnd(id="text-turn-1-0"),
        FinishStep(),
        ErrorChunk(error_text="Agent process exited with code 1"),
        MessageFinish(finish_reason="error"),
    ]
    assert state.finished


def test_finish_step_chunk_is_emitted_once_per_step() -> None:
    chunks = _run([
        _message_start("msg-1"),
        _stream({"type": "message_stop"}),
        _message_start("msg-2"),
        _stream({"type": "message_stop"}),
        {"type": "result", "subtype": "success", "is_error": False},
    ])
    assert _types(chunks) == ["start", "finish-step", "start-step", "finish-step", "finish"]
    assert chunks.count(FinishStep()) == 2
    assert StepStart() in chunks


def test_create_error_chunks_on_fresh_state_opens_the_turn() -> None:
    chunks = create_error_chunks(StreamState(message_id="turn-1"), "boom")
    assert chunks == [
        MessageStart(message_id="turn-1"),
        FinishStep(),
        ErrorChunk(error_text="boom"),
        MessageFinish(finish_reason="error"),
    ]


def test_create_error_chunks_after_finish_emits_nothing() -> None:
    state = StreamState()
    _run([{"type": "result", "subtype": "success", "is_error": False}], state)
    assert state.finished
    assert create_error_chunks(state, "late failure") == []


# ── Live stream vs. reloaded log ──


def _fold_parts(chunks: list) -> list:
    """Fold a chunk stream into message parts the way a client does."""
    parts: list = []
    open_blocks: dict = {}
    tools: dict = {}
    for chunk in chunks:
        if isinstance(chunk, StepStart):
            parts.append(StepStartPart())
        elif isinstance(chunk, TextStart):
            open_blocks[chunk.id] = TextPart(text="")
            parts.append(open_blocks[chunk.id])
        elif isinstance(chunk, ReasoningStart):
            open_blocks[chunk.id] = ReasoningPart(text="")
            parts.append(open_blocks[chunk.id])
        elif isinstance(chunk, (TextDelta, ReasoningDelta)):
            open_blocks[chunk.id].text += chunk.delta
        elif isinstance(chunk, ToolInputAvailable):
            tools[chunk.tool_call_id] = ToolPart(
                tool_call_id=chunk.tool_call_id,
                tool_name=chunk.tool_name,
                input=chunk.input,
            )
            parts.append(tools[chunk.tool_call_id])
        elif isinstance(chunk, ToolOutputAvailable):
            tools[chunk.tool_call_id].state = "output-available"
            tools[chunk.tool_call_id].output = chunk.output
        elif isinstance(chunk, ToolOutputError):
            tools[chunk.tool_call_id].state = "output-error"
            tools[chunk.tool_call_id].error_text = chunk.error_text
    return parts


def _tool_turn_records() -> list[dict]:
    return [
        _message_start("msg-1"),
        _block_start(0, {"type": "text", "text": ""}),
        _text_delta(0, "Let me check"),
        _block_stop(0),
        _block_start(1, {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {}}),
        _json_delta(1, '{"command": "ls"}'),
        _block_stop(1),
        _stream({"type": "message_stop"}),
        {
            "type": "user",
            "message": {"content": [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": "file.txt"},
            ]},
        },
        _message_start("msg-2"),
        _block_start(0, {"type": "text", "text": ""}),
        _text_delta(0, "Done"),
        _block_stop(0),
        _stream({"type": "message_stop"}),
        {"type": "result", "subtype": "success", "is_error": False},
    ]


def test_streamed_turn_matches_the_reloaded_log() -> None:
    chunks = _run(_tool_turn_records())
    log_lines = [
        json.dumps(record) for record in (
            {"type": "assistant", "message": {"id": "msg-1", "role": "assistant", "content": [
                {"type": "text", "text": "Let me check"},
            ]}},
            {"type": "assistant", "message": {"id": "msg-1", "role": "assistant", "content": [
                {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
            ]}},
            {"type": "user", "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": "file.txt"},
            ]}},
            {"type": "assistant", "message": {"id": "msg-2", "role": "assistant", "content": [
                {"type": "text", "text": "Done"},
            ]}},
        )
    ]

    [reloaded] = reconstruct(log_lines)

    assert chunks[0] == MessageStart(message_id=reloaded.id)
    assert [p.to_dict() for p in _fold_parts(chunks)] == [p.to_dict() for p in reloaded.parts]


def test_identical_records_translate_identically() -> None:
    records = _tool_turn_records()
    assert _run(records) == _run(records)
