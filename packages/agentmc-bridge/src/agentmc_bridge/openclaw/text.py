"""
Assistant text extraction.

OpenClaw reports replies in several shapes: plain strings, lists of typed
content blocks, and nested event envelopes. These helpers walk those shapes
and return the visible assistant text, skipping reasoning blocks and
stripping reply-control markers.
"""

import re
from typing import Any

_REPLY_TO_CURRENT = re.compile(r"^\s*\[\[\s*reply_to_current\s*\]\]\s*", re.IGNORECASE)
_REPLY_TO = re.compile(r"^\s*\[\[\s*reply_to\s*:\s*[^\]]+\]\]\s*", re.IGNORECASE)
_LEADING_FENCE = re.compile(r"^```(?:assistant|response|reply)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```$")
_ROLE_PREFIX = re.compile(r"^(assistant|response|reply)\s*[:>\-]\s*", re.IGNORECASE)
_LEADING_BACKTICKS = re.compile(r"^`+\s*")

_TEXT_KEYS = ("content", "text", "output_text", "final_text", "message", "response", "delta")
_VISIBLE_BLOCK_KEYS = ("text", "output_text", "final_text", "content", "value")
_VISIBLE_OBJECT_KEYS = (
    "text",
    "output_text",
    "final_text",
    "content",
    "value",
    "message",
    "response",
    "delta",
    "payload",
    "data",
    "event",
    "item",
    "entry",
)
_ENTRY_KEYS = (
    "payload",
    "data",
    "event",
    "item",
    "entry",
    "message",
    "response",
    "output",
    "content",
    "delta",
)
_MESSAGE_FALLBACK_KEYS = ("message", "text", "output", "output_text", "response", "delta")
_HIDDEN_BLOCK_MARKERS = ("thinking", "reasoning", "analysis", "debug")

FALLBACK_TIMEOUT_MESSAGE = "I'm still working on that. Please retry in a moment."
FALLBACK_ERROR_MESSAGE = "I hit an OpenClaw bridge error and could not produce assistant output."
FALLBACK_EMPTY_MESSAGE = "I finished the run, but no assistant text was found."


def sanitize_assistant_output_text(value: str | None) -> str:
    """Strip reply-control markers and wrapper noise from assistant text.

    Only ``[[reply_to_current]]`` and ``[[reply_to:<id>]]`` markers are
    removed; any other bracketed prefix is left as written.
    """
    if not value:
        return ""
    text = value.strip()
    if not text:
        return ""

    while True:
        stripped = _REPLY_TO.sub("", _REPLY_TO_CURRENT.sub("", text, count=1), count=1)
        if stripped == text:
            break
        text = stripped

    return _sanitize_reply(text)


def _sanitize_reply(value: str) -> str:
    text = value.strip()
    if not text:
        return ""
    text = _LEADING_FENCE.sub("", text, count=1)
    text = _TRAILING_FENCE.sub("", text, count=1)
    text = _ROLE_PREFIX.sub("", text, count=1)
    text = _LEADING_BACKTICKS.sub("", text, count=1)
    return text.strip()


def fallback_content_for_status(status: str) -> str:
    """Fixed user-facing text for runs that produced no usable reply."""
    if status == "timeout":
        return FALLBACK_TIMEOUT_MESSAGE
    if status == "error":
        return FALLBACK_ERROR_MESSAGE
    return FALLBACK_EMPTY_MESSAGE


def extract_text(value: Any, depth: int = 0) -> str | None:
    """Pull the first non-blank text out of an arbitrary JSON value."""
    if depth > 6 or value is None:
        return None

    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None

    if isinstance(value, list):
        parts = [part for part in (extract_text(entry, depth + 1) for entry in value) if part]
        return " ".join(parts) if parts else None

    if not isinstance(value, dict):
        return None

    for key in _TEXT_KEYS:
        found = extract_text(value.get(key), depth + 1)
        if found:
            return found

    for nested in value.values():
        found = extract_text(nested, depth + 1)
        if found:
            return found

    return None


def _is_hidden_block(block: dict[str, Any]) -> bool:
    raw = block.get("type")
    if raw is None:
        raw = block.get("kind")
    if raw is None:
        raw = block.get("block_type")
    block_type = raw.strip().lower() if isinstance(raw, str) else ""
    return any(marker in block_type for marker in _HIDDEN_BLOCK_MARKERS)


def extract_visible_assistant_text(value: Any, depth: int = 0) -> str | None:
    """Return user-visible text, skipping thinking/reasoning/analysis/debug blocks."""
    if depth > 8 or value is None:
        return None

    if isinstance(value, str):
        return sanitize_assistant_output_text(value) or None

    if isinstance(value, list):
        visible_parts: list[str] = []
        for entry in value:
            if not isinstance(entry, dict):
                inline = extract_visible_assistant_text(entry, depth + 1)
                if inline:
                    visible_parts.append(inline)
                continue
            if _is_hidden_block(entry):
                continue
            for key in _VISIBLE_BLOCK_KEYS:
                inline = extract_visible_assistant_text(entry.get(key), depth + 1)
                if inline:
                    visible_parts.append(inline)
                    break

        if visible_parts:
            return " ".join(visible_parts).strip()

        for entry in reversed(value):
            nested = extract_visible_assistant_text(entry, depth + 1)
            if nested:
                return nested
        return None

    if not isinstance(value, dict):
        return None

    if _is_hidden_block(value):
        return None

    for key in _VISIBLE_OBJECT_KEYS:
        nested = extract_visible_assistant_text(value.get(key), depth + 1)
        if nested:
            return nested

    return None


def _message_role(message: dict[str, Any]) -> str:
    role = message.get("role")
    if not isinstance(role, str) or not role:
        author = message.get("author")
        role = author.get("role") if isinstance(author, dict) else None
    if not isinstance(role, str) or not role:
        role = message.get("sender")
    return role.strip().lower() if isinstance(role, str) else ""


def assistant_text_from_message(message: dict[str, Any]) -> str | None:
    """Return the visible text of ``message`` if it is an assistant message."""
    if _message_role(message) != "assistant":
        return None

    visible = extract_visible_assistant_text(message.get("content"))
    if visible:
        return visible

    for key in _MESSAGE_FALLBACK_KEYS:
        visible = extract_visible_assistant_text(message.get(key))
        if visible:
            return visible

    for key in ("content", *_MESSAGE_FALLBACK_KEYS):
        text = extract_text(message.get(key))
        if text:
            return sanitize_assistant_output_text(text) or None

    return None


def extract_assistant_text_from_entry(entry: Any, depth: int = 0) -> str | None:
    """Find the newest assistant message text inside a transcript entry."""
    if depth > 8 or entry is None:
        return None

    if isinstance(entry, list):
        for item in reversed(entry):
            found = extract_assistant_text_from_entry(item, depth + 1)
            if found:
                return found
        return None

    if not isinstance(entry, dict):
        return None

    direct = assistant_text_from_message(entry)
    if direct:
        return direct

    for key in _ENTRY_KEYS:
        found = extract_assistant_text_from_entry(entry.get(key), depth + 1)
        if found:
            return found

    for nested in entry.values():
        found = extract_assistant_text_from_entry(nested, depth + 1)
        if found:
            return found

    return None
