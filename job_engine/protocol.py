"""Stream protocol parser for the assistant CLI's ``stream-json`` output.

Each stdout line is one JSON object with a ``type`` discriminator.  Only
a handful of types matter to the engine; everything else (``system``,
``message_start``, ``message_stop`` ...) is reported as ``IGNORED`` so
new event types emitted by newer CLI versions never break a run.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any

from job_engine.errors import ProtocolError


class MessageKind(str, enum.Enum):
    TEXT = "text"        # incremental assistant text
    RESULT = "result"    # final text, used only when nothing was streamed
    ERROR = "error"      # explicit upstream error
    IGNORED = "ignored"  # recognised JSON, irrelevant type


@dataclass(frozen=True)
class StreamMessage:
    """One parsed stdout line."""

    kind: MessageKind
    text: str = ""
    event_type: str = ""


_DEFAULT_ERROR = "CLI error"


def parse_stream_line(line: str) -> StreamMessage:
    """Parse one complete stdout line.

    Raises
    ------
    ProtocolError
        When the line is not a JSON object with a string ``type``.
    """
    try:
        event = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(line, f"invalid JSON: {exc.msg}") from exc

    if not isinstance(event, dict):
        raise ProtocolError(line, f"expected a JSON object, got {type(event).__name__}")

    etype = event.get("type")
    if not isinstance(etype, str):
        raise ProtocolError(line, "missing 'type' discriminator")

    if etype == "content_block_delta":
        delta = event.get("delta") or {}
        text = delta.get("text") if isinstance(delta, dict) else None
        if isinstance(text, str) and text:
            return StreamMessage(MessageKind.TEXT, text, etype)
        return StreamMessage(MessageKind.IGNORED, event_type=etype)

    if etype == "assistant":
        text = _assistant_text(event.get("message"))
        if text:
            return StreamMessage(MessageKind.TEXT, text, etype)
        return StreamMessage(MessageKind.IGNORED, event_type=etype)

    if etype == "result":
        result = event.get("result")
        if event.get("is_error"):
            msg = result if isinstance(result, str) and result else _DEFAULT_ERROR
            return StreamMessage(MessageKind.ERROR, msg, etype)
        if isinstance(result, str) and result:
            return StreamMessage(MessageKind.RESULT, result, etype)
        return StreamMessage(MessageKind.IGNORED, event_type=etype)

    if etype == "error":
        error = event.get("error")
        msg = error.get("message") if isinstance(error, dict) else None
        return StreamMessage(MessageKind.ERROR, msg or _DEFAULT_ERROR, etype)

    return StreamMessage(MessageKind.IGNORED, event_type=etype)


def _assistant_text(message: Any) -> str:
    """Concatenate the text blocks of an ``assistant`` message."""
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                parts.append(text)
    return "".join(parts)
