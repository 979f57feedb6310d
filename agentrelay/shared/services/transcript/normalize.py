"""Normalization helpers shared by the live translator and log reader.

Both paths must turn the same upstream payload into the same value, so
tool result rendering and text extraction live here rather than in
either consumer.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

TOOL_FAILED_TEXT = "Tool call failed"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 log timestamps into aware UTC datetimes."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def coerce_text(value: Any) -> str:
    """Render arbitrary values into stable text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(value)


def content_blocks(content: Any) -> list[dict[str, Any]]:
    """Return message content as a list of block dicts.

    String content becomes a single text block; anything that is not a
    dict inside a list is dropped.
    """
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def text_blocks(content: Any) -> list[str]:
    """Text of every text block in *content*, in order."""
    texts: list[str] = []
    for block in content_blocks(content):
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
    return texts


def has_text_content(content: Any) -> bool:
    """True when *content* carries user-visible (non-blank) text."""
    return any(text.strip() for text in text_blocks(content))


def tool_result_blocks(content: Any) -> list[dict[str, Any]]:
    return [
        block for block in content_blocks(content)
        if block.get("type") == "tool_result" and block.get("tool_use_id")
    ]


def tool_result_output(content: Any) -> Any:
    """Client-facing output for a ``tool_result`` block's content.

    Plain strings pass through. A list made only of text blocks is
    joined into one string; any other list (images, mixed) is kept as
    structured data.
    """
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        blocks = [b for b in content if isinstance(b, dict)]
        if blocks and all(b.get("type") == "text" for b in blocks):
            return "\n".join(str(b.get("text") or "") for b in blocks)
    return content


def tool_result_error_text(content: Any) -> str:
    text = coerce_text(tool_result_output(content))
    return text or TOOL_FAILED_TEXT


def parse_json_object(raw: str) -> dict[str, Any] | None:
    """Parse one JSONL line; None when it is blank, invalid or not an object."""
    if not raw or not raw.strip():
        return None
    try:
        row = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(row, dict):
        return None
    return row
