"""
Push delivery of realtime signals over the Pusher websocket protocol.

Claiming a session returns the socket metadata (app key, host, private
channel name). The subscription connects, authenticates the private channel
through the AgentMC API and forwards every signal event to the caller. Lost
connections are re-established with backoff; rejected channel subscriptions
are retried unless the rejection status is final.
"""

import asyncio
import contextlib
import json
import re
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar

import websockets
from websockets import ClientConnection
from websockets.exceptions import InvalidStatus

from .. import __version__
from ..api.client import AgentMCApi
from ..callbacks import ErrorHandler, call_error_handler, call_optional_handler
from ..coerce import as_dict, as_positive_int, as_str, non_empty_str, parse_json_object
from ..errors import RealtimeError, SubscriptionClosedError, create_operation_error
from ..log_config import get_logger
from ..types import ConnectionState, NotificationEvent, Signal
from .signals import normalize_signal, notification_event_from_signal

DEFAULT_SIGNAL_EVENT = "agent.realtime.signal"
DEFAULT_CLUSTER = "mt1"
PUSHER_PROTOCOL_VERSION = 7

_STATUS_TEXT_PATTERNS = (
    re.compile(r"\bstatus[^0-9]{0,6}(\d{3})\b", re.IGNORECASE),
    re.compile(r"\bhttp[^0-9]{0,6}(\d{3})\b", re.IGNORECASE),
    re.compile(r"\bcode[^0-9]{0,6}(\d{3})\b", re.IGNORECASE),
)
_STATUS_FIELDS = ("status", "status_code", "statusCode")
# Channel rejections with these statuses will not succeed on retry.
NON_RETRYABLE_STATUSES = frozenset({401, 403, 404, 422})


def _status_from_text(value: str | None) -> int | None:
    if not value:
        return None
    for pattern in _STATUS_TEXT_PATTERNS:
        match = pattern.search(value)
        if match:
            status = int(match.group(1))
            if status > 0:
                return status
    return None


def _normalize_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        match = re.match(r"^\s*(\d+)", value)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))
    return None


def extract_status_code(payload: Any) -> int | None:
    """Find an HTTP status in a subscription error payload, looking in fields then in text."""
    data = as_dict(payload)
    if data is None:
        return _status_from_text(as_str(payload))

    nested_error = as_dict(data.get("error"))
    nested_data = as_dict(data.get("data"))
    for source in (data, nested_error, nested_data):
        if source is None:
            continue
        for field in _STATUS_FIELDS:
            status = _normalize_status(source.get(field))
            if status is not None:
                return status

    texts = [
        as_str(data.get("message")),
        as_str(data.get("reason")),
        as_str(nested_error.get("message")) if nested_error else None,
        as_str(nested_error.get("reason")) if nested_error else None,
        as_str(data.get("error")),
    ]
    for text in texts:
        status = _status_from_text(text)
        if status is not None:
            return status
    return None


def is_retryable_subscription_error(payload: Any) -> bool:
    status = extract_status_code(payload)
    return status is None or status not in NON_RETRYABLE_STATUSES


def resubscribe_backoff_ms(attempt: int) -> int:
    safe_attempt = attempt if attempt > 0 else 0
    return min(
        RealtimeSubscription.RESUBSCRIBE_BACKOFF_MS * 2**safe_attempt,
        RealtimeSubscription.RESUBSCRIBE_MAX_BACKOFF_MS,
    )


def normalize_ready_timeout_ms(value: int | None) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1_000:
        return value
    return RealtimeSubscription.READY_TIMEOUT_MS


def normalize_websocket_path(value: str | None) -> str:
    trimmed = (value or "").strip().rstrip("/")
    if not trimmed:
        return ""
    return trimmed if trimmed.startswith("/") else f"/{trimmed}"


class SocketTarget:
    """Where and how to connect for one claimed session."""

    def __init__(self, session: dict[str, Any]):
        session_id = session.get("id")
        socket = as_dict(session.get("socket"))
        connection = as_dict(socket.get("connection")) if socket else None
        if socket is None or connection is None:
            raise RealtimeError(f"Realtime session {session_id} is missing socket connection metadata.")

        channel = non_empty_str(socket.get("channel"))
        if not channel:
            raise RealtimeError(f"Realtime session {session_id} did not include a socket channel name.")

        app_key = non_empty_str(connection.get("key"))
        host = non_empty_str(connection.get("host"))
        if not app_key or not host:
            raise RealtimeError(f"Realtime session {session_id} did not include a valid socket key/host.")

        scheme = (non_empty_str(connection.get("scheme")) or "https").lower()
        self.secure = scheme != "http"
        self.channel = channel
        self.event = non_empty_str(socket.get("event")) or DEFAULT_SIGNAL_EVENT
        self.app_key = app_key
        self.host = host
        self.port = as_positive_int(connection.get("port")) or (443 if self.secure else 80)
        self.path = normalize_websocket_path(as_str(connection.get("path")))
        self.cluster = non_empty_str(connection.get("cluster")) or DEFAULT_CLUSTER

    @property
    def url(self) -> str:
        scheme = "wss" if self.secure else "ws"
        return (
            f"{scheme}://{self.host}:{self.port}{self.path}/app/{self.app_key}"
            f"?protocol={PUSHER_PROTOCOL_VERSION}&client=agentmc-python&version={__version__}"
        )


class RealtimeSubscription:
    """Live push subscription for one claimed realtime session.

    ``ready`` resolves once the private channel subscription succeeds and
    fails when it is rejected for good, times out, or is torn down first.
    """

    RECONNECT_BACKOFF_BASE = 2.0
    RECONNECT_MAX_DELAY = 30.0
    RESUBSCRIBE_BACKOFF_MS = 1_000
    RESUBSCRIBE_MAX_BACKOFF_MS = 12_000
    READY_TIMEOUT_MS = 45_000
    # Connection rejections with these statuses end the subscription.
    FATAL_CONNECT_STATUSES: ClassVar[frozenset[int]] = frozenset({401, 403, 404, 410})

    def __init__(
        self,
        api: AgentMCApi,
        session: dict[str, Any],
        on_signal: Callable[[Signal], Awaitable[None] | None] | None = None,
        on_notification: Callable[[NotificationEvent], Awaitable[None] | None] | None = None,
        on_ready: Callable[[dict[str, Any]], Awaitable[None] | None] | None = None,
        on_connection_state_change: Callable[[ConnectionState], Awaitable[None] | None] | None = None,
        on_error: ErrorHandler | None = None,
        ready_timeout_ms: int | None = None,
        auto_close_session: bool = False,
        close_reason: str = "sdk_disconnect",
        close_status: str = "closed",
    ):
        self.api = api
        self.session = session
        self.session_id = as_positive_int(session.get("id")) or 0
        self.target = SocketTarget(session)
        self.on_signal = on_signal
        self.on_notification = on_notification
        self.on_ready = on_ready
        self.on_connection_state_change = on_connection_state_change
        self.on_error = on_error
        self.ready_timeout_ms = normalize_ready_timeout_ms(ready_timeout_ms)
        self.auto_close_session = auto_close_session
        self.close_reason = close_reason
        self.close_status = close_status

        self.log = get_logger("subscription", session_id=self.session_id, channel=self.target.channel)
        self.connection_state = ConnectionState.INITIALIZED
        self.ready: asyncio.Future[dict[str, Any]] | None = None
        self.ws: ClientConnection | None = None
        self.socket_id: str | None = None
        self.disconnected = False
        self._resubscribe_attempt = 0
        self._run_task: asyncio.Task[None] | None = None
        self._ready_timeout_task: asyncio.Task[None] | None = None
        self._resubscribe_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self.ready = loop.create_future()
        # Callers that never await ``ready`` must not trigger unretrieved-exception warnings.
        self.ready.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._run_task = asyncio.create_task(self._run())
        self._ready_timeout_task = asyncio.create_task(self._ready_timeout())

    def mark_ready(self) -> None:
        if self.ready is not None and not self.ready.done():
            self.ready.set_result(self.session)

    def mark_ready_error(self, error: BaseException) -> None:
        if self.ready is not None and not self.ready.done():
            self.ready.set_exception(error)

    async def disconnect(self) -> None:
        """Tear the subscription down; safe to call more than once."""
        if self.disconnected:
            return
        self.disconnected = True

        current = asyncio.current_task()
        for task in (self._ready_timeout_task, self._resubscribe_task, self._run_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        handlers = [task for task in self._handler_tasks if task is not current and not task.done()]
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)
        if self.ws is not None:
            with contextlib.suppress(Exception):
                await self.ws.close()
            self.ws = None

        self.mark_ready_error(
            SubscriptionClosedError("Realtime subscription disconnected before it was ready.")
        )

        if not self.auto_close_session:
            return

        result = await self.api.close_session(self.session_id, self.close_reason, self.close_status)
        if not result.ok:
            await call_error_handler(
                self.on_error,
                create_operation_error("closeAgentRealtimeSession", result.status, result.error),
            )

    async def _set_connection_state(self, state: ConnectionState) -> None:
        if state == self.connection_state:
            return
        self.connection_state = state
        self.log.debug("subscription.state", state=state.value)
        await call_optional_handler(self.on_connection_state_change, state, on_error=self.on_error)

    async def _ready_timeout(self) -> None:
        await asyncio.sleep(self.ready_timeout_ms / 1000)
        if self.ready is not None and not self.ready.done():
            error = RealtimeError(
                f"Realtime subscription was not ready after {self.ready_timeout_ms}ms "
                f"for session {self.session_id}."
            )
            self.mark_ready_error(error)
            await call_error_handler(self.on_error, error)

    async def _run(self) -> None:
        """Connection loop with reconnection handling."""
        reconnect_attempts = 0
        while not self.disconnected:
            try:
                await self._connect_and_listen()
                reconnect_attempts = 0
            except InvalidStatus as e:
                status = getattr(getattr(e, "response", None), "status_code", None)
                if status in self.FATAL_CONNECT_STATUSES:
                    self.log.error("subscription.rejected", http_status=status)
                    error = RealtimeError(f"Realtime socket connection rejected (HTTP {status}).")
                    self.mark_ready_error(error)
                    await self._set_connection_state(ConnectionState.FAILED)
                    await call_error_handler(self.on_error, error)
                    return
                self.log.warn("subscription.disconnect", reason="connect_rejected", http_status=status)
                await self._set_connection_state(ConnectionState.UNAVAILABLE)
            except websockets.ConnectionClosed as e:
                self.log.warn("subscription.disconnect", reason="connection_closed", ws_close_code=e.code)
            except asyncio.CancelledError:
                raise
            except OSError as e:
                self.log.warn("subscription.disconnect", reason="connection_error", exc=e)
                await self._set_connection_state(ConnectionState.UNAVAILABLE)
            except Exception as e:
                self.log.error("subscription.disconnect", reason="unexpected_error", exc=e)
                await call_error_handler(self.on_error, e)

            self.ws = None
            if self.disconnected:
                break
            if self.connection_state == ConnectionState.CONNECTED:
                await self._set_connection_state(ConnectionState.DISCONNECTED)

            reconnect_attempts += 1
            delay = min(self.RECONNECT_BACKOFF_BASE**reconnect_attempts, self.RECONNECT_MAX_DELAY)
            self.log.info("subscription.reconnect", attempt=reconnect_attempts, delay_s=round(delay, 1))
            await asyncio.sleep(delay)

    async def _connect_and_listen(self) -> None:
        await self._set_connection_state(ConnectionState.CONNECTING)
        async with websockets.connect(self.target.url, ping_interval=20, ping_timeout=10) as ws:
            self.ws = ws
            async for message in ws:
                if self.disconnected:
                    break
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError as e:
                    self.log.warn("subscription.invalid_message", exc=e)
                    continue
                if isinstance(frame, dict):
                    await self._handle_frame(frame)

    async def _send(self, event: str, data: dict[str, Any]) -> None:
        if self.ws is None:
            return
        await self.ws.send(json.dumps({"event": event, "data": data}))

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        event = as_str(frame.get("event")) or ""
        channel = as_str(frame.get("channel"))
        data = frame.get("data")

        if event == "pusher:connection_established":
            self.socket_id = non_empty_str(parse_json_object(data).get("socket_id"))
            self.log.info("subscription.connect", outcome="success")
            await self._set_connection_state(ConnectionState.CONNECTED)
            self._resubscribe_attempt = 0
            await self._subscribe()
        elif event == "pusher:ping":
            await self._send("pusher:pong", {})
        elif event == "pusher:error":
            error = RealtimeError("Realtime websocket connection error.")
            self.log.warn("subscription.socket_error", code=parse_json_object(data).get("code"))
            await call_error_handler(self.on_error, error)
        elif channel != self.target.channel:
            return
        elif event in ("pusher_internal:subscription_succeeded", "pusher:subscription_succeeded"):
            await self._on_subscription_succeeded()
        elif event == "pusher:subscription_error":
            await self._on_subscription_error(parse_json_object(data) or data)
        elif event == self.target.event:
            self._spawn(self._on_signal_event(data))

    def _spawn(self, coro: Awaitable[None]) -> None:
        # Signal handling may run agent turns; keep reading frames meanwhile.
        task = asyncio.ensure_future(coro)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _subscribe(self) -> None:
        if self.disconnected or not self.socket_id:
            return
        result = await self.api.authenticate_socket(self.session_id, self.socket_id, self.target.channel)
        auth = as_dict(result.data)
        if not result.ok or auth is None or not non_empty_str(auth.get("auth")):
            error = create_operation_error("authenticateAgentRealtimeSocket", result.status, result.error)
            await self._on_subscription_error({"status": result.status, "message": str(error)}, error)
            return

        data: dict[str, Any] = {"auth": auth["auth"], "channel": self.target.channel}
        if auth.get("channel_data") is not None:
            data["channel_data"] = auth["channel_data"]
        await self._send("pusher:subscribe", data)

    async def _on_subscription_succeeded(self) -> None:
        if self._ready_timeout_task is not None:
            self._ready_timeout_task.cancel()
        self._resubscribe_attempt = 0
        self.mark_ready()
        self.log.info("subscription.ready")
        await call_optional_handler(self.on_ready, self.session, on_error=self.on_error)

    async def _on_subscription_error(self, payload: Any, error: BaseException | None = None) -> None:
        error = error or RealtimeError("Realtime channel subscription failed.")
        await call_error_handler(self.on_error, error)
        if self.disconnected:
            return

        if not is_retryable_subscription_error(payload):
            self.log.error("subscription.failed", http_status=extract_status_code(payload))
            self.mark_ready_error(error)
            await self._set_connection_state(ConnectionState.FAILED)
            await self.disconnect()
            return

        delay_ms = resubscribe_backoff_ms(self._resubscribe_attempt)
        self._resubscribe_attempt += 1
        await self._set_connection_state(ConnectionState.CONNECTING)
        pending = self._resubscribe_task
        if pending is not None and pending is not asyncio.current_task():
            pending.cancel()
        self._resubscribe_task = asyncio.create_task(self._resubscribe_after(delay_ms))

    async def _resubscribe_after(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        if self.disconnected:
            return
        with contextlib.suppress(websockets.ConnectionClosed):
            await self._send("pusher:unsubscribe", {"channel": self.target.channel})
        await self._subscribe()

    async def _on_signal_event(self, data: Any) -> None:
        signal = normalize_signal(data, self.session_id)
        if signal is None:
            return
        await call_optional_handler(self.on_signal, signal, on_error=self.on_error)

        if self.on_notification is None:
            return
        event = notification_event_from_signal(signal)
        if event is not None:
            await call_optional_handler(self.on_notification, event, on_error=self.on_error)


async def claim_session(api: AgentMCApi, session_id: int) -> dict[str, Any]:
    result = await api.claim_session(session_id)
    result.raise_for_error("claimAgentRealtimeSession")
    session = as_dict((as_dict(result.data) or {}).get("data"))
    if session is None:
        raise RealtimeError(
            f"claimAgentRealtimeSession returned status {result.status} without session data."
        )
    return session


async def subscribe_to_realtime_notifications(
    api: AgentMCApi, session_id: int, **options: Any
) -> RealtimeSubscription:
    """Claim ``session_id`` and start its push subscription.

    Keyword options are passed to :class:`RealtimeSubscription`. The returned
    subscription is connecting; await ``subscription.ready`` to wait for the
    channel.
    """
    session = await claim_session(api, session_id)
    subscription = RealtimeSubscription(api, session, **options)
    await subscription.start()
    return subscription
