"""
Prompt construction for agent runs.

Every message handed to the agent starts with an ``[AgentMC Context]`` block
of ``key=value`` lines so the agent can tell AgentMC-originated work apart
from a human typing into its own terminal.
"""

import json
import re
from typing import Any

from .coerce import as_bool, as_dict, as_positive_int, non_empty_str

CONTEXT_HEADER = "[AgentMC Context]"
ROUTING_HINT = "routing_hint=Treat actions with no external app specified as AgentMC operations."
ASSIGNMENT_HINT = (
    "assignment_hint=When the user says 'assign it to me', map 'me' to default_assignee_user_id."
)
RECURRING_SKILL_HINT = (
    "skill_hint=Follow the current AgentMC skill/rules files as the source of truth "
    "for supported capabilities and execution behavior."
)

PROMPT_JSON_MAX_CHARS = 10_000
CONTEXT_TOKEN_MAX_CHARS = 160
RECURRING_SUMMARY_MAX_CHARS = 4_000

_CONTEXT_BLOCK = re.compile(r"^\[AgentMC Context\]\s*$", re.MULTILINE)
_CONTROL_WHITESPACE = re.compile(r"[\r\n\t]+")
_WHITESPACE = re.compile(r"\s+")


def normalize_context_token(value: Any) -> str | None:
    """Flatten a header value onto one line, capped in length."""
    if not isinstance(value, str):
        return None
    normalized = _CONTROL_WHITESPACE.sub(" ", value).strip()
    return normalized[:CONTEXT_TOKEN_MAX_CHARS] or None


def first_positive_int(*values: Any) -> int:
    for value in values:
        resolved = as_positive_int(value)
        if resolved:
            return resolved
    return 0


def to_prompt_json(value: Any) -> str:
    serialized = json.dumps(value, indent=2, ensure_ascii=False, default=str)
    if len(serialized) <= PROMPT_JSON_MAX_CHARS:
        return serialized
    return f"{serialized[:PROMPT_JSON_MAX_CHARS]}\n... [truncated]"


def has_context_block(text: str) -> bool:
    return bool(_CONTEXT_BLOCK.search(text))


def build_agentmc_bridge_message(
    user_text: str, payload: dict[str, Any], session: dict[str, Any] | None = None
) -> str:
    """Prefix ``user_text`` with the AgentMC context derived from a chat or notification payload."""
    session = session or {}
    actor_user_id = first_positive_int(
        payload.get("actor_user_id"),
        payload.get("user_id"),
        payload.get("requested_by_user_id"),
        session.get("requested_by_user_id"),
    )
    default_assignee_user_id = first_positive_int(
        payload.get("default_assignee_user_id"),
        payload.get("assigned_to_user_id"),
        actor_user_id,
    )
    timezone = normalize_context_token(payload.get("timezone"))

    lines = [
        CONTEXT_HEADER,
        "app=AgentMC",
        f"source={normalize_context_token(payload.get('source')) or 'agentmc_chat'}",
        f"intent_scope={normalize_context_token(payload.get('intent_scope')) or 'agentmc'}",
    ]
    if timezone:
        lines.append(f"timezone={timezone}")
    if actor_user_id:
        lines.append(f"actor_user_id={actor_user_id}")
    if default_assignee_user_id:
        lines.append(f"default_assignee_user_id={default_assignee_user_id}")
    lines.extend([ROUTING_HINT, ASSIGNMENT_HINT, "", user_text])
    return "\n".join(lines)


def _lower(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def _id_text(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return non_empty_str(value)


def build_notification_bridge_payload(
    envelope: dict[str, Any], notification: dict[str, Any], notification_type: str | None
) -> dict[str, Any]:
    """Merge the signal envelope, its body and the notification into one context payload."""
    body = as_dict(envelope.get("payload")) or {}
    actor_user_id = first_positive_int(
        body.get("actor_user_id"),
        envelope.get("actor_user_id"),
        notification.get("actor_id") if _lower(notification.get("actor_type")) == "user" else None,
    )
    default_assignee_user_id = first_positive_int(
        body.get("default_assignee_user_id"),
        envelope.get("default_assignee_user_id"),
        notification.get("assignee_id") if _lower(notification.get("assignee_type")) == "user" else None,
        actor_user_id,
    )

    merged: dict[str, Any] = {
        **envelope,
        **body,
        "source": normalize_context_token(body.get("source"))
        or normalize_context_token(envelope.get("source"))
        or "agentmc_notification",
        "intent_scope": normalize_context_token(body.get("intent_scope"))
        or normalize_context_token(envelope.get("intent_scope"))
        or "agentmc_notification",
        "timezone": body.get("timezone") if isinstance(body.get("timezone"), str) else envelope.get("timezone"),
        "notification_type": _lower(notification_type)
        or _lower(notification.get("notification_type"))
        or "notification",
        "notification": notification,
    }
    if actor_user_id:
        merged["actor_user_id"] = actor_user_id
    if default_assignee_user_id:
        merged["default_assignee_user_id"] = default_assignee_user_id
    return merged


def build_notification_user_text(
    notification: dict[str, Any],
    notification_type: str | None,
    channel_type: str | None,
    signal_id: int,
) -> str:
    is_read = as_bool(notification.get("is_read"))
    subject_id = notification.get("subject_id")
    response_action = as_dict(notification.get("response_action"))

    lines = [
        "You received an AgentMC realtime notification.",
        "Treat it like an actionable request and execute AgentMC operations when needed.",
        "If response_action is present and valid, use it as the primary action path.",
        "If no action should be taken, explain why briefly.",
        "",
        "[Notification Context]",
        f"notification_id={_id_text(notification.get('id')) or 'unknown'}",
        "notification_type="
        + (_lower(notification_type) or _lower(notification.get("notification_type")) or "unknown"),
        f"channel_type={channel_type or 'unknown'}",
        f"signal_id={signal_id}",
        f"subject_type={non_empty_str(notification.get('subject_type')) or 'unknown'}",
        f"subject_id={_id_text(subject_id) or 'unknown'}",
        f"subject_label={non_empty_str(notification.get('subject_label')) or 'unknown'}",
        f"actor_name={non_empty_str(notification.get('actor_name')) or 'unknown'}",
        f"is_read={'unknown' if is_read is None else str(is_read).lower()}",
        "",
        "message:",
        non_empty_str(notification.get("message"))
        or non_empty_str(notification.get("comment"))
        or "(no notification message)",
    ]
    if response_action:
        lines.extend(["", "response_action JSON:", "```json", to_prompt_json(response_action), "```"])
    lines.extend(["", "notification JSON:", "```json", to_prompt_json(notification), "```"])
    return "\n".join(lines)


def build_recurring_task_message(prompt: str) -> str:
    """Wrap a recurring task prompt; prompts that already carry a context block pass through."""
    normalized = (prompt or "").strip()
    if not normalized or has_context_block(normalized):
        return normalized
    return "\n".join(
        [
            CONTEXT_HEADER,
            "app=AgentMC",
            "source=agentmc_recurring_task",
            "intent_scope=agentmc",
            "skill_reference=.agentmc/skills/skill.md",
            "rules_reference=.agentmc/skills/rules.md",
            ROUTING_HINT,
            RECURRING_SKILL_HINT,
            "",
            normalized,
        ]
    )


def summarize_run_text(value: Any, max_length: int = RECURRING_SUMMARY_MAX_CHARS) -> str | None:
    normalized = _WHITESPACE.sub(" ", str(value or "")).strip()
    if not normalized:
        return None
    if len(normalized) <= max_length:
        return normalized
    return f"{normalized[: max_length - 3]}..."


def truncate_utf8(value: str, max_bytes: int) -> tuple[str | None, int, bool]:
    """Trim ``value`` to at most ``max_bytes`` of UTF-8 without splitting a character.

    Returns ``(text, byte_length, truncated)``; blank input yields ``(None, 0, False)``.
    """
    normalized = (value or "").strip()
    if not normalized:
        return None, 0, False
    encoded = normalized.encode("utf-8")
    if len(encoded) <= max_bytes:
        return normalized, len(encoded), False
    candidate = encoded[:max_bytes].decode("utf-8", errors="ignore").rstrip()
    return candidate, len(candidate.encode("utf-8")), True
