"""Normalized chunks streamed to the web client.

Each chunk is an immutable dataclass; ``chunk_type`` is the wire tag.
``chunk_to_dict`` renders the camelCase JSON the client consumes and
``dict_to_chunk`` parses it back (used when replaying stored events).
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

from agentrelay.engine.errors import UnknownChunkTypeError

FINISH_REASONS = ("stop", "length", "tool-calls", "error", "other")


@dataclass(frozen=True)
class Chunk:
    """Base normalized chunk."""
    chunk_type: str = ""


@dataclass(frozen=True)
class MessageStart(Chunk):
    chunk_type: str = "start"
    message_id: str | None = None


@dataclass(frozen=True)
class StepStart(Chunk):
    chunk_type: str = "start-step"


@dataclass(frozen=True)
class FinishStep(Chunk):
    chunk_type: str = "finish-step"


@dataclass(frozen=True)
class TextStart(Chunk):
    chunk_type: str = "text-start"
    id: str = ""


@dataclass(frozen=True)
class TextDelta(Chunk):
    chunk_type: str = "text-delta"
    id: str = ""
    delta: str = ""


@dataclass(frozen=True)
class TextEnd(Chunk):
    chunk_type: str = "text-end"
    id: str = ""


@dataclass(frozen=True)
class ReasoningStart(Chunk):
    chunk_type: str = "reasoning-start"
    id: str = ""


@dataclass(frozen=True)
class ReasoningDelta(Chunk):
    chunk_type: str = "reasoning-delta"
    id: str = ""
    delta: str = ""


@dataclass(frozen=True)
class ReasoningEnd(Chunk):
    chunk_type: str = "reasoning-end"
    id: str = ""


@dataclass(frozen=True)
class ToolInputStart(Chunk):
    chunk_type: str = "tool-input-start"
    tool_call_id: str = ""
    tool_name: str = ""
    title: str | None = None
    provider_metadata: dict[str, Any] | None = None
    dynamic: bool = True


@dataclass(frozen=True)
class ToolInputDelta(Chunk):
    chunk_type: str = "tool-input-delta"
    tool_call_id: str = ""
    input_text_delta: str = ""


@dataclass(frozen=True)
class ToolInputAvailable(Chunk):
    chunk_type: str = "tool-input-available"
    tool_call_id: str = ""
    tool_name: str = ""
    input: Any = None
    title: str | None = None
    provider_metadata: dict[str, Any] | None = None
    dynamic: bool = True


@dataclass(frozen=True)
class ToolOutputAvailable(Chunk):
    chunk_type: str = "tool-output-available"
    tool_call_id: str = ""
    output: Any = None
    dynamic: bool = True


@dataclass(frozen=True)
class ToolOutputError(Chunk):
    chunk_type: str = "tool-output-error"
    tool_call_id: str = ""
    error_text: str = ""
    dynamic: bool = True


@dataclass(frozen=True)
class MessageFinish(Chunk):
    chunk_type: str = "finish"
    finish_reason: str | None = None


@dataclass(frozen=True)
class ErrorChunk(Chunk):
    chunk_type: str = "error"
    error_text: str = ""


_CHUNK_MAP: dict[str, type[Chunk]] = {
    "start": MessageStart,
    "start-step": StepStart,
    "finish-step": FinishStep,
    "text-start": TextStart,
    "text-delta": TextDelta,
    "text-end": TextEnd,
    "reasoning-start": ReasoningStart,
    "reasoning-delta": ReasoningDelta,
    "reasoning-end": ReasoningEnd,
    "tool-input-start": ToolInputStart,
    "tool-input-delta": ToolInputDelta,
    "tool-input-available": ToolInputAvailable,
    "tool-output-available": ToolOutputAvailable,
    "tool-output-error": ToolOutputError,
    "finish": MessageFinish,
    "error": ErrorChunk,
}

# Field name -> client wire key. Unlisted fields keep their name.
_WIRE_KEYS = {
    "message_id": "messageId",
    "tool_call_id": "toolCallId",
    "tool_name": "toolName",
    "input_text_delta": "inputTextDelta",
    "error_text": "errorText",
    "finish_reason": "finishReason",
    "provider_metadata": "providerMetadata",
}
_FIELD_NAMES = {wire: name for name, wire in _WIRE_KEYS.items()}

# Payload fields the client expects even when empty.
_ALWAYS_SENT = {"input", "output"}


def chunk_to_dict(chunk: Chunk) -> dict[str, Any]:
    """Convert a chunk to the client's JSON shape."""
    d: dict[str, Any] = {"type": chunk.chunk_type}
    for f in fields(chunk):
        if f.name == "chunk_type":
            continue
        val = getattr(chunk, f.name)
        if val is None and f.name not in _ALWAYS_SENT:
            continue
        d[_WIRE_KEYS.get(f.name, f.name)] = val
    return d


def dict_to_chunk(data: dict[str, Any]) -> Chunk:
    """Parse a client-shaped dict back into a chunk dataclass."""
    chunk_type = data.get("type", "")
    cls = _CHUNK_MAP.get(chunk_type)
    if cls is None:
        raise UnknownChunkTypeError(chunk_type)
    valid_fields = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = _FIELD_NAMES.get(key, key)
        if name in valid_fields and name != "chunk_type":
            kwargs[name] = value
    return cls(**kwargs)


def is_terminal(chunk: Chunk) -> bool:
    return isinstance(chunk, MessageFinish)
