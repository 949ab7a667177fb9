"""Tests for outbound publishing and the websocket subscription protocol handling."""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import failed, ok

from agentmc_bridge import __version__
from agentmc_bridge.errors import OperationError, RealtimeError
from agentmc_bridge.realtime.publish import (
    compact_json,
    normalize_chunk_field,
    publish_realtime_message,
)
from agentmc_bridge.realtime.subscription import (
    RealtimeSubscription,
    SocketTarget,
    claim_session,
    extract_status_code,
    is_retryable_subscription_error,
    normalize_ready_timeout_ms,
    normalize_websocket_path,
    resubscribe_backoff_ms,
)
from agentmc_bridge.types import ConnectionState

CHANNEL = "private-agent-realtime-session.5"
SESSION = {
    "id": 5,
    "socket": {
        "channel": CHANNEL,
        "connection": {"key": "app-key", "host": "ws.agentmc.example", "scheme": "https"},
    },
}


class TestPublishRealtimeMessage:
    """Tests for single and chunked channel messages."""

    @pytest.mark.asyncio
    async def test_small_payload_is_one_signal(self, fake_api):
        result = await publish_realtime_message(
            fake_api, 5, "chat.agent.done", {"request_id": "r-1", "content": "hi"}, request_id="r-1"
        )

        assert not result.chunked
        assert result.signal_ids == [1]
        assert fake_api.created_signals == [
            {
                "session_id": 5,
                "type": "message",
                "payload": {"type": "chat.agent.done", "payload": {"request_id": "r-1", "content": "hi"}},
            }
        ]

    @pytest.mark.asyncio
    async def test_large_payload_is_chunked_and_reassembles(self, fake_api):
        body = {"request_id": "r-2", "content": "é" * 20_000}

        result = await publish_realtime_message(
            fake_api, 5, "snapshot.response", body, request_id="r-2", chunk_id="chunk-test"
        )

        assert result.chunked
        assert result.chunk_id == "chunk-test"
        frames = [entry["payload"] for entry in fake_api.created_signals]
        assert len(frames) == result.chunk_count > 1
        for index, frame in enumerate(frames, start=1):
            assert frame["type"] == "snapshot.response"
            assert len(compact_json(frame).encode("utf-8")) <= 9_000
            chunk = frame["payload"]
            assert chunk["chunk_index"] == index
            assert chunk["chunk_total"] == len(frames)
            assert chunk["chunk_encoding"] == "base64json"
            assert chunk["request_id"] == "r-2"

        encoded = "".join(frame["payload"]["chunk_data"] for frame in frames)
        assert json.loads(base64.b64decode(encoded).decode("utf-8")) == body

    @pytest.mark.asyncio
    async def test_custom_chunk_field(self, fake_api):
        await publish_realtime_message(
            fake_api, 5, "snapshot.response", {"content": "x" * 12_000}, chunk_field="part.data"
        )
        assert all("part.data" in entry["payload"]["payload"] for entry in fake_api.created_signals)

    @pytest.mark.parametrize("field", ["bad field", "a/b", "{x}"])
    def test_invalid_chunk_field(self, field):
        with pytest.raises(ValueError):
            normalize_chunk_field(field)

    def test_blank_chunk_field_uses_default(self):
        assert normalize_chunk_field("  ") == "chunk_data"

    @pytest.mark.asyncio
    async def test_create_failure_is_redacted(self, fake_api):
        fake_api.create_signal_result = failed(403, {"authorization": "Bearer leaked"})

        with pytest.raises(OperationError) as excinfo:
            await publish_realtime_message(fake_api, 5, "chat.agent.done", {"content": "hi"})

        assert str(excinfo.value) == "createAgentRealtimeSignal failed with status 403."

    @pytest.mark.asyncio
    async def test_rejects_invalid_session(self, fake_api):
        with pytest.raises(ValueError):
            await publish_realtime_message(fake_api, 0, "chat.agent.done", {})


class TestSubscriptionHelpers:
    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"status": 403}, 403),
            ({"data": {"status_code": "422 Unprocessable"}}, 422),
            ({"error": {"message": "HTTP 401 Unauthorized"}}, 401),
            ("Status: 404", 404),
            ({"message": "boom"}, None),
            ({"status": True}, None),
        ],
    )
    def test_extract_status_code(self, payload, expected):
        assert extract_status_code(payload) == expected

    def test_retryable_statuses(self):
        assert not is_retryable_subscription_error({"status": 403})
        assert is_retryable_subscription_error({"status": 500})
        assert is_retryable_subscription_error({"message": "unknown"})

    @pytest.mark.parametrize("attempt, expected", [(-1, 1_000), (0, 1_000), (1, 2_000), (3, 8_000), (4, 12_000)])
    def test_resubscribe_backoff(self, attempt, expected):
        assert resubscribe_backoff_ms(attempt) == expected

    def test_ready_timeout_and_path(self):
        assert normalize_ready_timeout_ms(500) == 45_000
        assert normalize_ready_timeout_ms(True) == 45_000
        assert normalize_ready_timeout_ms(2_000) == 2_000
        assert normalize_websocket_path("ws/") == "/ws"
        assert normalize_websocket_path(" ") == ""

    def test_socket_target_url(self):
        target = SocketTarget(SESSION)
        assert target.url == (
            "wss://ws.agentmc.example:443/app/app-key"
            f"?protocol=7&client=agentmc-python&version={__version__}"
        )
        assert target.event == "agent.realtime.signal"

    def test_socket_target_requires_metadata(self):
        with pytest.raises(RealtimeError, match="missing socket connection metadata"):
            SocketTarget({"id": 5})


class TestClaimSession:
    @pytest.mark.asyncio
    async def test_returns_session(self, fake_api):
        fake_api.claim_result = ok({"data": SESSION})
        assert await claim_session(fake_api, 5) == SESSION

    @pytest.mark.asyncio
    async def test_failure_and_missing_data(self, fake_api):
        fake_api.claim_result = failed(409)
        with pytest.raises(OperationError):
            await claim_session(fake_api, 5)

        fake_api.claim_result = ok({})
        with pytest.raises(RealtimeError):
            await claim_session(fake_api, 5)


def make_subscription(fake_api, **callbacks) -> RealtimeSubscription:
    subscription = RealtimeSubscription(fake_api, SESSION, **callbacks)
    subscription.ws = MagicMock()
    subscription.ws.send = AsyncMock()
    subscription.ws.close = AsyncMock()
    subscription.ready = asyncio.get_running_loop().create_future()
    return subscription


def sent_frames(subscription: RealtimeSubscription) -> list[dict]:
    return [json.loads(call.args[0]) for call in subscription.ws.send.call_args_list]


class TestSubscriptionFrames:
    """Frame handling against a fake socket; no network involved."""

    @pytest.mark.asyncio
    async def test_connection_established_authenticates_and_subscribes(self, fake_api):
        on_state = AsyncMock()
        subscription = make_subscription(fake_api, on_connection_state_change=on_state)

        await subscription._handle_frame(
            {"event": "pusher:connection_established", "data": json.dumps({"socket_id": "123.456"})}
        )

        assert fake_api.socket_auth_requests == [(5, "123.456", CHANNEL)]
        assert sent_frames(subscription) == [
            {"event": "pusher:subscribe", "data": {"auth": "app-key:signature", "channel": CHANNEL}}
        ]
        on_state.assert_awaited_once_with(ConnectionState.CONNECTED)

    @pytest.mark.asyncio
    async def test_subscription_succeeded_resolves_ready(self, fake_api):
        on_ready = AsyncMock()
        subscription = make_subscription(fake_api, on_ready=on_ready)

        await subscription._handle_frame({"event": "pusher_internal:subscription_succeeded", "channel": CHANNEL})

        assert subscription.ready.result() == SESSION
        on_ready.assert_awaited_once_with(SESSION)

    @pytest.mark.asyncio
    async def test_signal_event_forwards_signal_and_notification(self, fake_api):
        on_signal = AsyncMock()
        on_notification = AsyncMock()
        subscription = make_subscription(fake_api, on_signal=on_signal, on_notification=on_notification)
        data = json.dumps(
            {
                "id": 12,
                "session_id": 5,
                "sender": "system",
                "type": "message",
                "payload": {"type": "notification.created", "payload": {"notification": {"id": "n-1"}}},
            }
        )

        await subscription._handle_frame({"event": "agent.realtime.signal", "channel": CHANNEL, "data": data})
        await subscription._handle_frame({"event": "agent.realtime.signal", "channel": "other", "data": data})
        await asyncio.gather(*subscription._handler_tasks)

        on_signal.assert_awaited_once()
        assert on_signal.call_args.args[0].id == 12
        event = on_notification.call_args.args[0]
        assert event.notification == {"id": "n-1"}

    @pytest.mark.asyncio
    async def test_ping_gets_pong(self, fake_api):
        subscription = make_subscription(fake_api)
        await subscription._handle_frame({"event": "pusher:ping", "data": "{}"})
        assert sent_frames(subscription) == [{"event": "pusher:pong", "data": {}}]

    @pytest.mark.asyncio
    async def test_final_subscription_error_fails_ready(self, fake_api):
        on_error = AsyncMock()
        subscription = make_subscription(fake_api, on_error=on_error)
        ws = subscription.ws

        await subscription._handle_frame(
            {"event": "pusher:subscription_error", "channel": CHANNEL, "data": json.dumps({"status": 403})}
        )

        assert subscription.disconnected
        assert subscription.connection_state == ConnectionState.FAILED
        assert isinstance(subscription.ready.exception(), RealtimeError)
        ws.close.assert_awaited_once()
        on_error.assert_awaited()

    @pytest.mark.asyncio
    async def test_retryable_subscription_error_schedules_resubscribe(self, fake_api):
        subscription = make_subscription(fake_api)

        await subscription._handle_frame(
            {"event": "pusher:subscription_error", "channel": CHANNEL, "data": json.dumps({"status": 500})}
        )

        assert not subscription.disconnected
        assert subscription.connection_state == ConnectionState.CONNECTING
        task = subscription._resubscribe_task
        assert task is not None
        await subscription.disconnect()
        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_running_signal_handlers(self, fake_api):
        started = asyncio.Event()

        async def on_signal(signal):
            started.set()
            await asyncio.Event().wait()

        subscription = make_subscription(fake_api, on_signal=on_signal)
        data = json.dumps({"id": 12, "session_id": 5, "sender": "browser", "type": "message", "payload": {}})

        await subscription._handle_frame({"event": "agent.realtime.signal", "channel": CHANNEL, "data": data})
        await asyncio.wait_for(started.wait(), timeout=1)
        handlers = list(subscription._handler_tasks)

        await subscription.disconnect()

        assert len(handlers) == 1
        assert handlers[0].cancelled()
        assert not subscription._handler_tasks
