"""
Signal envelope normalization and notification classification.

Signals arrive from the socket as JSON strings or objects and from the poll
endpoint as objects; both are funneled through :func:`normalize_signal` so
the rest of the runtime only ever sees :class:`~agentmc_bridge.types.Signal`.
"""

from typing import Any

from ..coerce import as_dict, as_positive_int, non_empty_str, parse_json_object, safe_token
from ..types import NotificationEvent, Sender, Signal

_NOTIFICATION_MARKER_FIELDS = ("notification_type", "subject_type", "response_action", "is_read")


def normalize_signal(raw: Any, fallback_session_id: int = 0) -> Signal | None:
    """Build a :class:`Signal` from a raw envelope; envelopes without a positive id are dropped."""
    data = parse_json_object(raw)
    signal_id = as_positive_int(data.get("id"))
    if signal_id is None:
        return None

    sender = non_empty_str(data.get("sender"))
    signal_type = non_empty_str(data.get("type"))
    created_at = data.get("created_at")
    return Signal(
        id=signal_id,
        session_id=as_positive_int(data.get("session_id")) or fallback_session_id,
        sender=sender.lower() if sender else Sender.SYSTEM.value,
        type=signal_type.lower() if signal_type else "message",
        payload=parse_json_object(data.get("payload")),
        created_at=created_at if isinstance(created_at, str) else None,
    )


def extract_notification(body: dict[str, Any], channel_type: str | None) -> dict[str, Any] | None:
    """Find the notification object carried by a signal body, if any."""
    nested = as_dict(body.get("notification"))
    if nested is not None:
        return nested
    if any(field in body for field in _NOTIFICATION_MARKER_FIELDS):
        return body
    if channel_type and "notification" in channel_type:
        return body
    return None


def notification_event_from_signal(signal: Signal) -> NotificationEvent | None:
    channel_type = signal.channel_type
    notification = extract_notification(signal.body, channel_type)
    if notification is None:
        return None
    raw_type = notification.get("notification_type")
    return NotificationEvent(
        signal=signal,
        notification=notification,
        notification_type=raw_type.strip().lower() if isinstance(raw_type, str) and raw_type.strip() else None,
        channel_type=channel_type,
    )


def notification_id(notification: dict[str, Any]) -> str | None:
    """Notification ids are usually strings (UUIDs) but numeric ids are accepted too."""
    value = notification.get("id")
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value) if value > 0 else None
    return non_empty_str(value)


def notification_version(notification: dict[str, Any]) -> str:
    for field in ("updated_at", "read_at", "created_at"):
        value = non_empty_str(notification.get(field))
        if value:
            return value
    return "unknown"


def notification_dedupe_key(notification: dict[str, Any], signal_id: int) -> str:
    """Key guarding the agent run for one notification version."""
    resolved_id = notification_id(notification)
    if resolved_id:
        return f"notification:id:{resolved_id}:v:{notification_version(notification)}"
    updated_at = non_empty_str(notification.get("updated_at"))
    if updated_at:
        return f"notification:signal:{signal_id}:updated_at:{updated_at}"
    return f"notification:signal:{signal_id}"


def notification_event_dedupe_key(
    notification: dict[str, Any], signal_id: int, channel_type: str | None
) -> str:
    """Key guarding event dispatch across the push and notification callbacks."""
    resolved_id = notification_id(notification)
    if resolved_id:
        channel = channel_type or "unknown"
        return f"notification:event:id:{resolved_id}:channel:{channel}:v:{notification_version(notification)}"
    return f"notification:event:signal:{max(1, signal_id)}"


def notification_request_id(notification: dict[str, Any], signal_id: int, session_id: int) -> str:
    resolved_id = notification_id(notification)
    if resolved_id:
        token = safe_token(resolved_id)
        if token:
            return f"notification-{token}"
    return f"notification-{session_id}-{max(1, signal_id)}"


def is_created_channel(channel_type: str | None) -> bool:
    """Only newly created notifications may start agent runs; updates never do.

    Signals without a channel type are treated as created, since bare
    notification payloads are only ever pushed on creation.
    """
    if not channel_type:
        return True
    return not channel_type.endswith(".updated")


def should_bridge_notification_type(allowed: list[str] | None, notification_type: str | None) -> bool:
    if not allowed:
        return True
    if not notification_type:
        return False
    return notification_type in allowed
