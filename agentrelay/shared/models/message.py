"""Logical conversation messages exchanged with the web client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import uuid
from typing import Any, Union


def _gen_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class TextPart:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ReasoningPart:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "reasoning", "text": self.text}


@dataclass
class StepStartPart:
    """Boundary between two upstream steps of one assistant turn."""

    def to_dict(self) -> dict[str, Any]:
        return {"type": "step-start"}


@dataclass
class FilePart:
    """Attachment sent by the client, usually a data: URL image."""
    url: str
    media_type: str = ""
    filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": "file", "url": self.url, "mediaType": self.media_type}
        if self.filename:
            d["filename"] = self.filename
        return d


@dataclass
class ToolPart:
    """A tool invocation with its result merged in once known."""
    tool_call_id: str
    tool_name: str
    input: Any = None
    state: str = "input-available"
    output: Any = None
    error_text: str | None = None
    title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": "dynamic-tool",
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "state": self.state,
            "input": self.input,
        }
        if self.title is not None:
            d["title"] = self.title
        if self.state == "output-available":
            d["output"] = self.output
        elif self.state == "output-error":
            d["errorText"] = self.error_text
        return d


Part = Union[TextPart, ReasoningPart, StepStartPart, FilePart, ToolPart]


def part_from_dict(data: dict[str, Any]) -> Part | None:
    """Parse one client part; unknown part types return None."""
    part_type = data.get("type")
    if part_type == "text":
        return TextPart(text=str(data.get("text") or ""))
    if part_type == "reasoning":
        return ReasoningPart(text=str(data.get("text") or ""))
    if part_type == "step-start":
        return StepStartPart()
    if part_type == "file":
        return FilePart(
            url=str(data.get("url") or ""),
            media_type=str(data.get("mediaType") or ""),
            filename=data.get("filename"),
        )
    if part_type == "dynamic-tool" or (isinstance(part_type, str) and part_type.startswith("tool-")):
        return ToolPart(
            tool_call_id=str(data.get("toolCallId") or ""),
            tool_name=str(data.get("toolName") or part_type.removeprefix("tool-")),
            input=data.get("input"),
            state=str(data.get("state") or "input-available"),
            output=data.get("output"),
            error_text=data.get("errorText"),
            title=data.get("title"),
        )
    return None


@dataclass
class LogicalMessage:
    """One client-facing message: a user prompt or a whole assistant turn."""
    role: MessageRole
    parts: list[Part] = field(default_factory=list)
    id: str = field(default_factory=_gen_id)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    def tool_parts(self) -> list[ToolPart]:
        return [p for p in self.parts if isinstance(p, ToolPart)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "parts": [p.to_dict() for p in self.parts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogicalMessage:
        """Parse a client message. Raises ValueError on an unknown role."""
        role = MessageRole(data.get("role"))
        parts: list[Part] = []
        for raw in data.get("parts") or []:
            if isinstance(raw, dict):
                part = part_from_dict(raw)
                if part is not None:
                    parts.append(part)
        message_id = data.get("id")
        if message_id:
            return cls(role=role, parts=parts, id=str(message_id))
        return cls(role=role, parts=parts)


@dataclass
class ToolCallRecord:
    """A tool invocation correlated with its result, wherever each half
    appears in the log."""
    id: str
    name: str | None = None
    input: Any = None
    result: Any = None
    is_error: bool = False
    has_result: bool = False


@dataclass
class SessionLogEntry:
    """One append-only line of the agent's JSONL log."""
    type: str
    uuid: str | None = None
    message: dict[str, Any] = field(default_factory=dict)
    git_branch: str | None = None
    version: str | None = None
    timestamp: datetime | None = None
    line_no: int = 0
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def content(self) -> Any:
        return self.message.get("content")

    @property
    def message_id(self) -> str | None:
        return self.message.get("id")
