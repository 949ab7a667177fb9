"""Tests for signal normalization, session cursors and the dedup cache."""

import json

import pytest

from agentmc_bridge.dedup import TtlKeyCache
from agentmc_bridge.realtime.signals import (
    is_created_channel,
    normalize_signal,
    notification_dedupe_key,
    notification_event_dedupe_key,
    notification_event_from_signal,
    notification_request_id,
    should_bridge_notification_type,
)
from agentmc_bridge.runtime.session import SessionState
from agentmc_bridge.types import ConnectionState, Signal


def signal(signal_id: int, sender: str = "browser", payload=None) -> Signal:
    return Signal(id=signal_id, session_id=3, sender=sender, type="message", payload=payload or {})


class TestNormalizeSignal:
    """Tests for normalize_signal."""

    def test_json_string_envelope(self):
        raw = json.dumps(
            {
                "id": "12",
                "session_id": 3,
                "sender": "Browser",
                "type": "MESSAGE",
                "payload": json.dumps({"type": "chat.user", "payload": {"content": "hi"}}),
            }
        )
        parsed = normalize_signal(raw)
        assert parsed is not None
        assert parsed.id == 12
        assert parsed.sender == "browser"
        assert parsed.type == "message"
        assert parsed.channel_type == "chat.user"
        assert parsed.body == {"content": "hi"}

    def test_defaults(self):
        parsed = normalize_signal({"id": 4}, fallback_session_id=9)
        assert parsed == Signal(id=4, session_id=9, sender="system", type="message", payload={})

    @pytest.mark.parametrize("raw", [{"id": 0}, {"id": "abc"}, {}, "not json", None])
    def test_rejects_envelopes_without_positive_id(self, raw):
        assert normalize_signal(raw) is None


class TestNotificationClassification:
    """Tests for notification extraction and dedup keys."""

    def test_nested_notification(self):
        event = notification_event_from_signal(
            signal(
                5,
                "system",
                {
                    "type": "notification.created",
                    "payload": {"notification": {"id": "n-1", "notification_type": " Mention "}},
                },
            )
        )
        assert event is not None
        assert event.notification == {"id": "n-1", "notification_type": " Mention "}
        assert event.notification_type == "mention"
        assert event.channel_type == "notification.created"

    def test_marker_fields_make_body_a_notification(self):
        event = notification_event_from_signal(signal(5, "system", {"type": "x", "payload": {"is_read": False}}))
        assert event is not None

    def test_plain_chat_is_not_a_notification(self):
        event = notification_event_from_signal(signal(5, payload={"type": "chat.user", "payload": {"content": "hi"}}))
        assert event is None

    def test_dedupe_keys(self):
        notification = {"id": "n-1", "updated_at": "2026-01-01T00:00:00Z"}
        assert notification_dedupe_key(notification, 5) == "notification:id:n-1:v:2026-01-01T00:00:00Z"
        assert notification_dedupe_key({}, 5) == "notification:signal:5"
        assert (
            notification_event_dedupe_key(notification, 5, "notification.created")
            == "notification:event:id:n-1:channel:notification.created:v:2026-01-01T00:00:00Z"
        )
        assert notification_event_dedupe_key({}, 0, None) == "notification:event:signal:1"

    def test_request_ids(self):
        assert notification_request_id({"id": "N 1/x"}, 5, 3) == "notification-n-1-x"
        assert notification_request_id({"id": 77}, 5, 3) == "notification-77"
        assert notification_request_id({}, 5, 3) == "notification-3-5"

    def test_channel_and_type_filters(self):
        assert is_created_channel("notification.created")
        assert is_created_channel(None)
        assert not is_created_channel("notification.updated")
        assert should_bridge_notification_type(None, None)
        assert should_bridge_notification_type(["mention"], "mention")
        assert not should_bridge_notification_type(["mention"], "digest")
        assert not should_bridge_notification_type(["mention"], None)


class TestSessionCursor:
    """The poll cursor only follows non-agent signals and never moves back."""

    def test_fresh_session_polls_backlog(self):
        assert SessionState(session_id=3).poll_after_id is None

    def test_agent_signal_does_not_hide_older_browser_signal(self):
        state = SessionState(session_id=3)
        assert state.accept_signal(signal(10, "agent"))
        assert state.poll_after_id is None
        assert state.accept_signal(signal(9, "browser"))
        assert state.poll_after_id == 9
        assert state.last_signal_id == 10

    def test_redelivery_is_rejected(self):
        state = SessionState(session_id=3)
        assert state.accept_signal(signal(10))
        assert not state.accept_signal(signal(10))
        assert not state.accept_signal(signal(8))
        assert state.poll_after_id == 10

    def test_fallback_states(self):
        state = SessionState(session_id=3)
        assert not state.in_fallback
        state.set_connection_state(ConnectionState.UNAVAILABLE)
        assert state.in_fallback
        previous = state.set_connection_state(ConnectionState.CONNECTED)
        assert previous == ConnectionState.UNAVAILABLE
        assert not state.in_fallback


class TestTtlKeyCache:
    """Tests for the time-windowed dedup cache."""

    def test_duplicate_inside_window(self):
        cache = TtlKeyCache(45_000)
        assert cache.should_process("a")
        assert not cache.should_process("a")
        assert cache.should_process("")

    def test_expired_keys_are_evicted(self, monkeypatch):
        now = [1_000.0]
        monkeypatch.setattr(TtlKeyCache, "_now_ms", staticmethod(lambda: now[0]))
        cache = TtlKeyCache(10_000)

        assert cache.should_process("a")
        now[0] += 10_001
        assert "a" not in cache
        assert cache.should_process("a")

    def test_bounded_size(self):
        cache = TtlKeyCache(45_000, max_entries=2)
        for key in ("a", "b", "c"):
            cache.should_process(key)
        assert len(cache) == 2
        assert "a" not in cache
