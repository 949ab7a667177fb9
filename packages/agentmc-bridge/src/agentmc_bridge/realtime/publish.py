"""
Outbound realtime publishing.

A channel message is one ``message`` signal whose payload is
``{"type": <channel type>, "payload": <body>}``. Bodies too large for the
service's signal limits are split into base64 chunk frames that the browser
reassembles by ``chunk_id``.
"""

import base64
import json
import re
import secrets
import time
from typing import Any, NamedTuple

from ..api.client import AgentMCApi
from ..coerce import as_dict, as_positive_int, non_empty_str
from ..errors import RealtimeError

DEFAULT_SIGNAL_TYPE = "message"
DEFAULT_MAX_PAYLOAD_BYTES = 9_000
DEFAULT_MAX_ENVELOPE_BYTES = 10_000
DEFAULT_CHUNK_FIELD = "chunk_data"
CHUNK_ENCODING = "base64json"
MIN_MAX_BYTES = 1_024
CHUNK_CONVERGENCE_ATTEMPTS = 6

# Placeholder values used when estimating the size of the stored envelope.
_ESTIMATE_SENDER = "agent"
_ESTIMATE_TIMESTAMP = "2026-01-01T00:00:00Z"
_CHUNK_FIELD_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


class PublishResult(NamedTuple):
    """Signals created for one published channel message."""

    signal_ids: list[int]
    chunked: bool
    chunk_count: int
    chunk_id: str | None
    signal_type: str
    channel_type: str


def compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def json_byte_length(value: Any) -> int:
    return len(compact_json(value).encode("utf-8"))


def build_message_payload(channel_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": channel_type, "payload": payload}


def estimate_envelope_bytes(signal_type: str, payload: dict[str, Any]) -> int:
    return json_byte_length(
        {
            "id": 0,
            "session_id": 0,
            "sender": _ESTIMATE_SENDER,
            "type": signal_type,
            "payload": payload,
            "created_at": _ESTIMATE_TIMESTAMP,
        }
    )


def fits_signal_limits(
    signal_type: str, payload: dict[str, Any], max_payload_bytes: int, max_envelope_bytes: int
) -> bool:
    if json_byte_length(payload) > max_payload_bytes:
        return False
    return estimate_envelope_bytes(signal_type, payload) <= max_envelope_bytes


def normalize_max_bytes(value: int | None, default: int) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= MIN_MAX_BYTES:
        return value
    return default


def normalize_chunk_field(value: str | None) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        return DEFAULT_CHUNK_FIELD
    if not _CHUNK_FIELD_PATTERN.match(trimmed):
        raise ValueError(
            "chunk_field must contain only letters, numbers, underscore, dot, or hyphen."
        )
    return trimmed


def generate_chunk_id() -> str:
    return f"chunk_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def build_chunk_payload(
    channel_type: str,
    chunk_id: str,
    chunk_field: str,
    chunk_index: int,
    chunk_total: int,
    data: str,
    request_id: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "chunk_id": chunk_id,
        "chunk_index": chunk_index,
        "chunk_total": chunk_total,
        "chunk_encoding": CHUNK_ENCODING,
        chunk_field: data,
    }
    if request_id:
        body["request_id"] = request_id
    return build_message_payload(channel_type, body)


def _chunk_data_budget(
    signal_type: str,
    channel_type: str,
    chunk_id: str,
    chunk_field: str,
    chunk_total: int,
    request_id: str | None,
    max_payload_bytes: int,
    max_envelope_bytes: int,
) -> int:
    # Size the skeleton with the widest index the chunk count can produce.
    widest_index = int("9" * len(str(chunk_total)))
    skeleton = build_chunk_payload(
        channel_type, chunk_id, chunk_field, widest_index, chunk_total, "", request_id
    )
    return min(
        max_payload_bytes - json_byte_length(skeleton),
        max_envelope_bytes - estimate_envelope_bytes(signal_type, skeleton),
    )


def build_chunk_frames(
    signal_type: str,
    channel_type: str,
    payload_base64: str,
    chunk_id: str,
    chunk_field: str = DEFAULT_CHUNK_FIELD,
    request_id: str | None = None,
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
    max_envelope_bytes: int = DEFAULT_MAX_ENVELOPE_BYTES,
) -> list[dict[str, Any]]:
    """Split an encoded body into frames that each fit the signal limits.

    The budget depends on how many digits the chunk count has, so the split is
    repeated until the count stops changing.
    """
    estimated_total = 1
    for _ in range(CHUNK_CONVERGENCE_ATTEMPTS):
        budget = _chunk_data_budget(
            signal_type,
            channel_type,
            chunk_id,
            chunk_field,
            estimated_total,
            request_id,
            max_payload_bytes,
            max_envelope_bytes,
        )
        if budget < 1:
            raise RealtimeError(
                "Realtime chunking failed: no available payload budget. "
                "Increase max_payload_bytes/max_envelope_bytes or reduce payload size."
            )

        segments = [
            payload_base64[offset : offset + budget] for offset in range(0, len(payload_base64), budget)
        ] or [""]
        if len(segments) != estimated_total:
            estimated_total = len(segments)
            continue

        frames = []
        for index, segment in enumerate(segments, start=1):
            frame = build_chunk_payload(
                channel_type, chunk_id, chunk_field, index, estimated_total, segment, request_id
            )
            if not fits_signal_limits(signal_type, frame, max_payload_bytes, max_envelope_bytes):
                raise RealtimeError(
                    f"Realtime chunk {index}/{estimated_total} still exceeds limits. "
                    "Increase max_payload_bytes/max_envelope_bytes."
                )
            frames.append(frame)
        return frames

    raise RealtimeError("Realtime chunking did not converge for this payload.")


async def create_realtime_signal(
    api: AgentMCApi, session_id: int, signal_type: str, payload: dict[str, Any]
) -> int:
    result = await api.create_signal(session_id, signal_type, payload)
    result.raise_for_error("createAgentRealtimeSignal")
    data = as_dict(result.data) or {}
    created = as_dict(data.get("data")) or {}
    return as_positive_int(created.get("id")) or 0


async def publish_realtime_message(
    api: AgentMCApi,
    session_id: int,
    channel_type: str,
    payload: dict[str, Any],
    request_id: str | None = None,
    signal_type: str | None = None,
    max_payload_bytes: int | None = None,
    max_envelope_bytes: int | None = None,
    chunk_field: str | None = None,
    chunk_id: str | None = None,
) -> PublishResult:
    """Publish one channel message, chunking it when it exceeds the signal limits.

    Failures of the underlying signal creation surface as redacted
    :class:`~agentmc_bridge.errors.OperationError` values.
    """
    if as_positive_int(session_id) is None:
        raise ValueError("session_id must be a positive integer.")
    resolved_channel = non_empty_str(channel_type)
    if not resolved_channel:
        raise ValueError("channel_type is required.")

    resolved_signal_type = non_empty_str(signal_type) or DEFAULT_SIGNAL_TYPE
    payload_limit = normalize_max_bytes(max_payload_bytes, DEFAULT_MAX_PAYLOAD_BYTES)
    envelope_limit = normalize_max_bytes(max_envelope_bytes, DEFAULT_MAX_ENVELOPE_BYTES)
    resolved_field = normalize_chunk_field(chunk_field)
    resolved_request_id = non_empty_str(request_id)

    single = build_message_payload(resolved_channel, payload)
    if fits_signal_limits(resolved_signal_type, single, payload_limit, envelope_limit):
        signal_id = await create_realtime_signal(api, session_id, resolved_signal_type, single)
        return PublishResult([signal_id], False, 1, None, resolved_signal_type, resolved_channel)

    encoded = base64.b64encode(compact_json(payload).encode("utf-8")).decode("ascii")
    resolved_chunk_id = non_empty_str(chunk_id) or generate_chunk_id()
    frames = build_chunk_frames(
        resolved_signal_type,
        resolved_channel,
        encoded,
        resolved_chunk_id,
        chunk_field=resolved_field,
        request_id=resolved_request_id,
        max_payload_bytes=payload_limit,
        max_envelope_bytes=envelope_limit,
    )

    signal_ids = []
    for frame in frames:
        signal_ids.append(await create_realtime_signal(api, session_id, resolved_signal_type, frame))
    return PublishResult(
        signal_ids, True, len(frames), resolved_chunk_id, resolved_signal_type, resolved_channel
    )

