"""
OpenClaw session transcript reader.

The sessions index (``sessions.json``) has appeared in several layouts over
OpenClaw releases: a bare list, ``{"sessions": [...]}``, ``{"sessions": {key: ...}}``,
``{"data": {"sessions": ...}}`` and a top-level map keyed by session key.
A session record carries its messages inline or points at a JSONL file via
``sessionFile``.
"""

import json
from pathlib import Path
from typing import Any

from ..coerce import non_empty_str
from ..log_config import get_logger
from .text import extract_assistant_text_from_entry

log = get_logger("transcript")

_KEY_FIELDS = ("key", "sessionKey", "session_key")
_MESSAGE_FIELDS = ("messages", "history", "events")


def sessions_from_store(raw_store: Any) -> list[dict[str, Any]]:
    """Normalize any known sessions index layout into a list of session records."""
    if isinstance(raw_store, list):
        return [entry for entry in raw_store if isinstance(entry, dict)]

    if not isinstance(raw_store, dict):
        return []

    sessions = raw_store.get("sessions")
    if isinstance(sessions, list):
        return [entry for entry in sessions if isinstance(entry, dict)]
    if isinstance(sessions, dict):
        return _sessions_from_object_map(sessions)

    data = raw_store.get("data")
    nested = data.get("sessions") if isinstance(data, dict) else None
    if isinstance(nested, list):
        return [entry for entry in nested if isinstance(entry, dict)]
    if isinstance(nested, dict):
        return _sessions_from_object_map(nested)

    return [
        _with_inferred_session_key(entry, key)
        for key, entry in raw_store.items()
        if isinstance(entry, dict) and _looks_like_session(entry)
    ]


def _sessions_from_object_map(mapping: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        _with_inferred_session_key(entry, key)
        for key, entry in mapping.items()
        if isinstance(entry, dict)
    ]


def _with_inferred_session_key(session: dict[str, Any], session_key: str) -> dict[str, Any]:
    key = session_key.strip()
    if not key:
        return session
    missing = [field for field in _KEY_FIELDS if not non_empty_str(session.get(field))]
    if not missing:
        return session
    return {**session, **{field: key for field in missing}}


def _looks_like_session(session: dict[str, Any]) -> bool:
    if any(isinstance(session.get(field), list) for field in _MESSAGE_FIELDS):
        return True
    if non_empty_str(session.get("sessionFile")) or non_empty_str(session.get("session_file")):
        return True
    if any(non_empty_str(session.get(field)) for field in _KEY_FIELDS):
        return True
    return bool(non_empty_str(session.get("sessionId")) or non_empty_str(session.get("session_id")))


def _session_key(session: dict[str, Any]) -> str:
    for field in _KEY_FIELDS:
        value = non_empty_str(session.get(field))
        if value:
            return value
    return ""


def messages_from_session(session: dict[str, Any]) -> list[Any]:
    for field in _MESSAGE_FIELDS:
        candidate = session.get(field)
        if isinstance(candidate, list):
            return candidate
    return []


def resolve_session_file_paths(session_file: str, sessions_path: str | Path) -> list[Path]:
    """Absolute paths are used as-is; relative ones are tried beside the index, then the cwd."""
    trimmed = session_file.strip()
    if not trimmed:
        return []
    path = Path(trimmed)
    if path.is_absolute():
        return [path]

    candidates: list[Path] = []
    for base in (Path(sessions_path).resolve().parent, Path.cwd()):
        resolved = (base / path).resolve()
        if resolved not in candidates:
            candidates.append(resolved)
    return candidates


def read_latest_assistant_text_from_jsonl(path: Path) -> str | None:
    """Scan a JSONL transcript from the newest line back, skipping malformed lines."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return None

    for line in reversed(raw.splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError:
            continue
        text = extract_assistant_text_from_entry(parsed)
        if text:
            return text
    return None


def read_latest_assistant_text(sessions_path: str | Path, session_key: str) -> str | None:
    """Return the newest visible assistant reply recorded for ``session_key``, if any.

    Never raises: an unreadable or unrecognized index yields None so the
    caller can pick its own fallback.
    """
    try:
        store = json.loads(Path(sessions_path).read_text(encoding="utf-8"))
        session = next(
            (candidate for candidate in sessions_from_store(store) if _session_key(candidate) == session_key),
            None,
        )
        if session is None:
            return None

        for message in reversed(messages_from_session(session)):
            text = extract_assistant_text_from_entry(message)
            if text:
                return text

        session_file = non_empty_str(session.get("sessionFile")) or non_empty_str(session.get("session_file"))
        if not session_file:
            return None

        for candidate in resolve_session_file_paths(session_file, sessions_path):
            text = read_latest_assistant_text_from_jsonl(candidate)
            if text:
                return text
    except (OSError, ValueError, TypeError) as e:
        log.debug("transcript.read_error", session_key=session_key, exc=e)
        return None

    return None
