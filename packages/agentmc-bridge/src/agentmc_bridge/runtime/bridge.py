"""
Realtime runtime - keeps the local agent attached to AgentMC realtime sessions.

This module handles:
- Discovery of requested sessions and one loop per active session
- Push delivery (websocket) and HTTP polling feeding the same signal handler
- Chat turns, notification bridging, runtime doc editing and profile updates
- Self-healing of sessions whose connection or activity went stale
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from ..api.client import AgentMCApi
from ..callbacks import ErrorHandler, call_error_handler, call_optional_handler
from ..coerce import as_dict, as_list, as_positive_int, iso_now, non_empty_str, now_ms, to_base36
from ..config import RealtimeRuntimeConfig, normalize_doc_id
from ..errors import RealtimeError, create_operation_error
from ..log_config import get_logger
from ..openclaw.chat import ChatBridge, RunAgent
from ..openclaw.gateway import OpenClawGateway
from ..openclaw.profile import OpenClawProfileUpdater, ProfileUpdate
from ..openclaw.text import fallback_content_for_status, sanitize_assistant_output_text
from ..prompts import build_agentmc_bridge_message
from ..realtime.publish import publish_realtime_message
from ..realtime.signals import (
    normalize_signal,
    notification_event_dedupe_key,
    notification_event_from_signal,
)
from ..realtime.subscription import RealtimeSubscription, subscribe_to_realtime_notifications
from ..types import AgentRunInput, AgentRunResult, ChannelType, ConnectionState, NotificationEvent, Sender, Signal
from .docs import RuntimeDocStore
from .notifications import NotificationBridge
from .session import SessionState, monotonic_ms

Handler = Callable[..., Awaitable[None] | None]
UpdateProfile = Callable[[ProfileUpdate], Awaitable[dict[str, Any]]]
SubscribeFn = Callable[..., Awaitable[RealtimeSubscription]]

EMPTY_MESSAGE_REPLY = "I need a user message before I can respond."


class AgentRealtimeRuntime:
    """Serves every realtime session AgentMC requests for one agent."""

    LOOP_MIN_DELAY_MS = 150
    SESSION_TICK_SECONDS = 0.15
    ACTIVE_SESSIONS_REQUEST_POLL_FLOOR_MS = 3_000
    REQUESTED_RATE_LIMIT_BACKOFF_FLOOR_MS = 4_000
    SIGNAL_RATE_LIMIT_BACKOFF_FLOOR_MS = 2_500
    RATE_LIMIT_LOG_INTERVAL_MS = 5_000

    def __init__(
        self,
        api: AgentMCApi,
        config: RealtimeRuntimeConfig,
        run_agent: RunAgent | None = None,
        update_profile: UpdateProfile | None = None,
        subscribe: SubscribeFn | None = None,
        on_signal: Handler | None = None,
        on_notification: Handler | None = None,
        on_notification_bridge: Handler | None = None,
        on_unhandled_message: Handler | None = None,
        on_session_ready: Handler | None = None,
        on_session_closed: Handler | None = None,
        on_connection_state_change: Handler | None = None,
        on_error: ErrorHandler | None = None,
    ):
        self.api = api
        self.config = config
        self.on_signal = on_signal
        self.on_notification = on_notification
        self.on_unhandled_message = on_unhandled_message
        self.on_session_ready = on_session_ready
        self.on_session_closed = on_session_closed
        self.on_connection_state_change = on_connection_state_change
        self.on_error = on_error
        self.subscribe = subscribe or subscribe_to_realtime_notifications

        self.log = get_logger("runtime", service="agentmc", agent_id=config.agent_id)

        self.chat = ChatBridge(
            gateway=OpenClawGateway(config.openclaw_command, config.openclaw_max_buffer_bytes),
            openclaw_agent=config.openclaw_agent,
            sessions_path=config.openclaw_sessions_path or "",
            submit_timeout_ms=config.openclaw_submit_timeout_ms,
            wait_timeout_ms=config.openclaw_wait_timeout_ms,
            gateway_timeout_ms=config.openclaw_gateway_timeout_ms,
            run_agent=run_agent,
        )
        if update_profile is None and run_agent is None:
            update_profile = OpenClawProfileUpdater(config.openclaw_command, config.openclaw_agent)
        self.update_profile = update_profile

        self.docs = RuntimeDocStore(
            config.runtime_docs_directory,
            config.runtime_doc_ids,
            include_missing=config.include_missing_runtime_docs,
        )
        self.notifications = NotificationBridge(
            api,
            config,
            run_chat=self._run_chat,
            on_error=self.emit_error,
            on_bridge=on_notification_bridge,
        )

        self.sessions: dict[int, SessionState] = {}
        self.realtime_sessions_enabled = config.sessions_enabled(
            has_callbacks=any((on_signal, on_notification, on_notification_bridge, on_unhandled_message))
        )
        self._session_tasks: dict[int, asyncio.Task[None]] = {}
        self._run_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._next_requested_poll_at_ms = 0.0
        self._last_requested_rate_limit_log_at_ms = 0.0

    # Lifecycle

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._run_task is not None and not self._stop_event.is_set(),
            "active_sessions": sorted(self.sessions),
            "realtime_sessions_enabled": self.realtime_sessions_enabled,
            "chat_realtime_enabled": self.config.chat_realtime_enabled,
            "docs_realtime_enabled": self.config.docs_realtime_enabled,
            "notifications_realtime_enabled": self.config.notifications_realtime_enabled,
        }

    async def start(self) -> None:
        """Start the runtime in the background; returns immediately."""
        if self._run_task is not None:
            return
        self._stop_event.clear()
        self._next_requested_poll_at_ms = 0
        self._run_task = asyncio.create_task(self._run_loop())
        self._run_task.add_done_callback(self._clear_run_task)

    async def run(self) -> None:
        """Run until :meth:`stop` is called."""
        await self.start()
        if self._run_task is not None:
            await self._run_task

    def _clear_run_task(self, task: asyncio.Task[None]) -> None:
        if self._run_task is task:
            self._run_task = None

    async def stop(self) -> None:
        self._stop_event.set()
        self.log.info("runtime.stop", active_sessions=len(self.sessions))

        await asyncio.gather(
            *(self.close_session(state, self.config.close_reason, True) for state in list(self.sessions.values())),
            return_exceptions=True,
        )
        tasks = [task for task in self._session_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._run_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._run_task

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def emit_error(self, error: BaseException) -> None:
        await call_error_handler(self.on_error, error)

    # Requested sessions

    async def _run_loop(self) -> None:
        self.log.info("runtime.run_start", realtime_sessions_enabled=self.realtime_sessions_enabled)
        while not self.stop_requested:
            if self.realtime_sessions_enabled and monotonic_ms() >= self._next_requested_poll_at_ms:
                try:
                    await self.poll_requested_sessions()
                except Exception as e:
                    await self.emit_error(e)
            await self._sleep(self.resolve_loop_delay_ms() / 1000)

    def resolve_loop_delay_ms(self) -> float:
        fallback = self.config.request_poll_ms
        if self.sessions:
            fallback = max(fallback, self.ACTIVE_SESSIONS_REQUEST_POLL_FLOOR_MS)
        requested = (
            max(0.0, self._next_requested_poll_at_ms - monotonic_ms())
            if self.realtime_sessions_enabled
            else fallback
        )
        return max(self.LOOP_MIN_DELAY_MS, min(fallback, requested))

    async def poll_requested_sessions(self) -> None:
        result = await self.api.list_requested_sessions(self.config.requested_session_limit)
        if not result.ok:
            if result.status == 429:
                now = monotonic_ms()
                backoff_ms = max(self.config.request_poll_ms * 3, self.REQUESTED_RATE_LIMIT_BACKOFF_FLOOR_MS)
                self._next_requested_poll_at_ms = now + backoff_ms
                if now - self._last_requested_rate_limit_log_at_ms >= self.RATE_LIMIT_LOG_INTERVAL_MS:
                    self._last_requested_rate_limit_log_at_ms = now
                    self.log.warn("sessions.rate_limited", backoff_ms=backoff_ms)
                return
            raise create_operation_error("listAgentRealtimeRequestedSessions", result.status, result.error)

        self._next_requested_poll_at_ms = monotonic_ms() + self.config.request_poll_ms
        rows = as_list((as_dict(result.data) or {}).get("data")) or []
        session_ids = sorted(
            {as_positive_int(as_dict(row).get("id")) or 0 for row in rows if as_dict(row)}, reverse=True
        )
        for session_id in session_ids:
            if session_id > 0 and session_id not in self.sessions:
                self.start_session_loop(session_id)

    # Session loop

    def start_session_loop(self, session_id: int) -> SessionState:
        state = SessionState(session_id=session_id, duplicate_ttl_ms=self.config.duplicate_ttl_ms)
        self.sessions[session_id] = state
        self.log.info("session.start", session_id=session_id)
        task = asyncio.create_task(self._session_loop(state))
        self._session_tasks[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget_session_task(sid, t))
        return state

    def _forget_session_task(self, session_id: int, task: asyncio.Task[None]) -> None:
        if self._session_tasks.get(session_id) is task:
            del self._session_tasks[session_id]

    async def _session_loop(self, state: SessionState) -> None:
        try:
            state.subscription = await self.subscribe(
                self.api,
                state.session_id,
                on_ready=lambda session: self._on_session_ready(state, session),
                on_signal=lambda signal: self.handle_signal(state, signal, "websocket"),
                on_notification=lambda event: self.handle_subscription_notification(state, event),
                on_connection_state_change=lambda next_state: self._on_connection_state_change(
                    state, next_state
                ),
                on_error=self.emit_error,
            )
            try:
                await state.subscription.ready
            except Exception as e:
                state.set_connection_state(ConnectionState.UNAVAILABLE)
                state.touch()
                state.next_signal_poll_at_ms = 0
                self.log.warn("session.websocket_unavailable", session_id=state.session_id, error_type=type(e).__name__)
                await call_optional_handler(
                    self.on_connection_state_change,
                    {"session_id": state.session_id, "state": ConnectionState.UNAVAILABLE.value},
                    on_error=self.emit_error,
                )
                fallback_error = RealtimeError(
                    f"Realtime websocket startup failed for session {state.session_id}; "
                    "continuing with HTTP polling fallback."
                )
                fallback_error.__cause__ = e
                await self.emit_error(fallback_error)

            while not self.stop_requested and not state.closed:
                now = monotonic_ms()
                await self.maybe_self_heal_session(state, now)
                if state.closed or self.stop_requested:
                    break

                interval_ms = (
                    self.config.fallback_signal_poll_ms
                    if state.in_fallback
                    else self.config.catchup_signal_poll_ms
                )
                can_poll = now >= state.next_signal_poll_at_ms and (
                    state.last_signal_poll_at_ms <= 0 or now - state.last_signal_poll_at_ms >= interval_ms
                )
                if can_poll:
                    await self.poll_session_signals(state, "poll")
                    if state.closed or self.stop_requested:
                        break

                await self._sleep(self.SESSION_TICK_SECONDS)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.error("session.loop_error", session_id=state.session_id, exc=e)
            await self.emit_error(e)
        finally:
            await self.close_session(state, state.close_reason or "session_loop_ended", False)

    async def _on_session_ready(self, state: SessionState, session: dict[str, Any]) -> None:
        state.session = session
        state.set_connection_state(ConnectionState.CONNECTED)
        if self.config.include_initial_snapshot and self.config.docs_realtime_enabled:
            reason = "reconnected" if state.saw_connected_state else "session_ready"
            await self.send_initial_snapshot(state, reason)
        state.saw_connected_state = True
        self.log.info("session.ready", session_id=state.session_id)
        await call_optional_handler(self.on_session_ready, session, on_error=self.emit_error)

    async def _on_connection_state_change(self, state: SessionState, next_state: ConnectionState) -> None:
        previous = state.set_connection_state(next_state)
        if (
            self.config.include_initial_snapshot
            and self.config.docs_realtime_enabled
            and next_state == ConnectionState.CONNECTED
            and previous != ConnectionState.CONNECTED
            and state.saw_connected_state
        ):
            await self.send_initial_snapshot(state, "reconnected")
        if next_state == ConnectionState.CONNECTED:
            state.saw_connected_state = True

        await call_optional_handler(
            self.on_connection_state_change,
            {"session_id": state.session_id, "state": next_state.value},
            on_error=self.emit_error,
        )

    async def poll_session_signals(self, state: SessionState, source: str) -> None:
        """Backfill non-agent signals after the poll cursor and run them through the signal handler."""
        if state.closed:
            return

        state.last_signal_poll_at_ms = monotonic_ms()
        result = await self.api.list_signals(
            state.session_id,
            after_id=state.poll_after_id,
            exclude_sender=Sender.AGENT.value,
            limit=self.config.signal_poll_limit,
        )

        if not result.ok:
            if result.status in (404, 409, 422):
                state.close_reason = "session_poll_invalid" if result.status == 422 else "session_poll_closed"
                await self.close_session(state, state.close_reason, False)
                return
            if result.status == 429:
                now = monotonic_ms()
                backoff_ms = max(self.config.fallback_signal_poll_ms * 2, self.SIGNAL_RATE_LIMIT_BACKOFF_FLOOR_MS)
                state.next_signal_poll_at_ms = now + backoff_ms
                if now - state.last_signal_rate_limit_log_at_ms >= self.RATE_LIMIT_LOG_INTERVAL_MS:
                    state.last_signal_rate_limit_log_at_ms = now
                    self.log.warn("signals.rate_limited", session_id=state.session_id, backoff_ms=backoff_ms)
                return
            raise create_operation_error("listAgentRealtimeSignals", result.status, result.error)

        state.next_signal_poll_at_ms = 0
        state.touch()
        for raw in as_list((as_dict(result.data) or {}).get("data")) or []:
            signal = normalize_signal(raw, state.session_id)
            if signal is None:
                continue
            try:
                await self.handle_signal(state, signal, source)
            except Exception as e:
                # The cursor already moved past this signal; later ones still get handled.
                self.log.error("signal.handle_error", session_id=state.session_id, signal_id=signal.id, exc=e)
                await self.emit_error(e)
            if state.closed or self.stop_requested:
                break

    # Signal handling

    async def handle_signal(self, state: SessionState, signal: Signal, source: str) -> None:
        """Entry point for signals from either delivery path; re-delivery is a no-op."""
        if state.closed:
            return
        state.touch()
        if not state.accept_signal(signal):
            return

        await call_optional_handler(
            self.on_signal,
            {"session_id": state.session_id, "source": source, "signal": signal},
            on_error=self.emit_error,
        )

        if self.config.notifications_realtime_enabled:
            event = notification_event_from_signal(signal)
            if event is not None:
                await self.dispatch_notification_event(state, event, source)

        if signal.type == "close":
            state.close_reason = "session_closed"
            await self.close_session(state, state.close_reason, False)
            return

        if signal.sender != Sender.BROWSER.value or signal.type != "message":
            return

        channel_type = ChannelType.parse(signal.channel_type)
        envelope = signal.payload
        payload = as_dict(envelope.get("payload")) or {}

        if self.config.chat_realtime_enabled and channel_type in (ChannelType.CHAT_USER, ChannelType.CHAT_REQUEST):
            await self.handle_chat_user_signal(state, signal, envelope, payload)
        elif self.config.docs_realtime_enabled and channel_type == ChannelType.SNAPSHOT_REQUEST:
            await self.handle_snapshot_request(state, envelope, payload)
        elif self.config.docs_realtime_enabled and channel_type == ChannelType.DOC_SAVE:
            await self.handle_doc_save(state, envelope, payload)
        elif self.config.docs_realtime_enabled and channel_type == ChannelType.DOC_DELETE:
            await self.handle_doc_delete(state, envelope, payload)
        elif self.config.profile_realtime_enabled and channel_type == ChannelType.AGENT_PROFILE_UPDATE:
            await self.handle_profile_update(state, envelope, payload)
        else:
            await call_optional_handler(
                self.on_unhandled_message,
                {
                    "session_id": state.session_id,
                    "source": source,
                    "signal": signal,
                    "channel_type": signal.channel_type,
                    "payload": payload,
                },
                on_error=self.emit_error,
            )

    async def handle_subscription_notification(self, state: SessionState, event: NotificationEvent) -> None:
        if not self.config.notifications_realtime_enabled or state.closed:
            return
        state.touch()
        await self.dispatch_notification_event(state, event, "websocket")

    async def dispatch_notification_event(self, state: SessionState, event: NotificationEvent, source: str) -> None:
        key = notification_event_dedupe_key(event.notification, event.signal.id, event.channel_type)
        if not state.should_process_inbound(key):
            return

        if not self.stop_requested:
            await self.notifications.maybe_bridge(state, event, source)

        await call_optional_handler(
            self.on_notification,
            {
                "session_id": state.session_id,
                "source": source,
                "signal": event.signal,
                "notification": event.notification,
                "notification_type": event.notification_type,
                "channel_type": event.channel_type,
            },
            on_error=self.emit_error,
        )

    # Chat

    async def run_agent_chat(self, run_input: AgentRunInput) -> AgentRunResult:
        return await self.chat.run(run_input)

    async def _run_chat(self, run_input: AgentRunInput) -> AgentRunResult:
        try:
            return await self.run_agent_chat(run_input)
        except Exception as e:
            await self.emit_error(e)
            return ChatBridge.failure_result(run_input, e)

    async def handle_chat_user_signal(
        self, state: SessionState, signal: Signal, envelope: dict[str, Any], payload: dict[str, Any]
    ) -> None:
        request_id = (
            non_empty_str(payload.get("request_id"))
            or non_empty_str(envelope.get("request_id"))
            or f"req-{state.session_id}-{to_base36(now_ms())}"
        )
        message_id = as_positive_int(payload.get("message_id")) or 0
        dedupe_key = f"chat:message:{message_id}" if message_id else f"chat:request:{request_id}"
        if not state.should_process_inbound(dedupe_key):
            return

        message_ref = {"message_id": message_id} if message_id else {}
        user_text = non_empty_str(payload.get("content")) or non_empty_str(payload.get("message")) or ""
        if not user_text:
            await self.publish_channel_message(
                state.session_id,
                ChannelType.CHAT_AGENT_DONE.value,
                request_id,
                {
                    "content": EMPTY_MESSAGE_REPLY,
                    **message_ref,
                    "meta": self._reply_meta(
                        f"agentmc-{state.session_id}-{request_id}", "error", "error", signal.id
                    ),
                },
            )
            return

        if self.config.send_thinking_delta:
            await self.publish_channel_message(
                state.session_id,
                ChannelType.CHAT_AGENT_DELTA.value,
                request_id,
                {"delta": self.config.thinking_text, **message_ref},
            )

        self.log.info("chat.turn_start", session_id=state.session_id, request_id=request_id)
        result = await self._run_chat(
            AgentRunInput(
                session_id=state.session_id,
                request_id=request_id,
                user_text=build_agentmc_bridge_message(user_text, payload, state.session),
            )
        )
        content = sanitize_assistant_output_text(result.content) or fallback_content_for_status(result.status)
        self.log.info(
            "chat.turn_complete",
            session_id=state.session_id,
            request_id=request_id,
            status=result.status,
            text_source=result.text_source,
        )

        await self.publish_channel_message(
            state.session_id,
            ChannelType.CHAT_AGENT_DONE.value,
            request_id,
            {
                "content": content,
                **message_ref,
                "meta": self._reply_meta(result.run_id, result.status, result.text_source, signal.id),
            },
        )

    def _reply_meta(self, run_id: str, status: str, text_source: str, signal_id: int) -> dict[str, Any]:
        return {
            "source": self.config.runtime_source,
            "run_id": run_id,
            "status": status,
            "text_source": text_source,
            "signal_id": signal_id,
            "generated_at": iso_now(),
        }

    # Runtime docs

    async def handle_snapshot_request(
        self, state: SessionState, envelope: dict[str, Any], payload: dict[str, Any]
    ) -> None:
        request_id = (
            non_empty_str(payload.get("request_id"))
            or non_empty_str(envelope.get("request_id"))
            or f"snapshot-{state.session_id}-{to_base36(now_ms())}"
        )
        reason = non_empty_str(payload.get("reason")) or non_empty_str(envelope.get("reason")) or "snapshot_request"
        await self.send_snapshot_response(state.session_id, request_id, reason)

    async def send_initial_snapshot(self, state: SessionState, reason: str) -> None:
        request_id = f"snapshot-{state.session_id}-{to_base36(now_ms())}"
        await self.send_snapshot_response(state.session_id, request_id, reason)

    async def send_snapshot_response(self, session_id: int, request_id: str, reason: str) -> None:
        await self.publish_channel_message(
            session_id,
            ChannelType.SNAPSHOT_RESPONSE.value,
            request_id,
            {
                "reason": reason,
                "docs": [doc.to_dict() for doc in self.docs.read_all()],
                "generated_at": iso_now(),
            },
        )

    def _doc_request(
        self, state: SessionState, action: str, envelope: dict[str, Any], payload: dict[str, Any]
    ) -> tuple[str | None, str, str | None]:
        supplied = non_empty_str(payload.get("request_id")) or non_empty_str(envelope.get("request_id"))
        request_id = supplied or f"{action.replace('.', '-')}-{state.session_id}-{to_base36(now_ms())}"
        return supplied, request_id, normalize_doc_id(payload.get("doc_id"))

    async def _validate_doc_request(
        self,
        state: SessionState,
        error_channel: str,
        supplied_request_id: str | None,
        request_id: str,
        doc_id: str | None,
    ) -> bool:
        error: dict[str, Any] | None = None
        if not supplied_request_id:
            error = {"doc_id": doc_id or "", "code": "invalid_request", "error": "request_id is required"}
        elif not doc_id:
            error = {"doc_id": "", "code": "invalid_request", "error": "doc_id is required"}
        elif not self.docs.is_allowed(doc_id):
            error = {"doc_id": doc_id, "code": "invalid_doc_id", "error": "doc_id is not allowed for this runtime"}
        if error is None:
            return True
        await self.publish_channel_message(state.session_id, error_channel, request_id, error)
        return False

    async def handle_doc_save(self, state: SessionState, envelope: dict[str, Any], payload: dict[str, Any]) -> None:
        supplied, request_id, doc_id = self._doc_request(state, "doc.save", envelope, payload)
        if not state.should_process_inbound(f"doc.save:{request_id}:{doc_id or 'unknown'}"):
            return
        error_channel = ChannelType.DOC_SAVE_ERROR.value
        if not await self._validate_doc_request(state, error_channel, supplied, request_id, doc_id):
            return
        assert doc_id is not None

        base_hash = non_empty_str(payload.get("base_hash")) or ""
        body = payload.get("body_markdown") if isinstance(payload.get("body_markdown"), str) else ""
        current = self.docs.read(doc_id)
        if (current is not None and base_hash != current.base_hash) or (current is None and base_hash):
            await self.publish_channel_message(
                state.session_id,
                error_channel,
                request_id,
                {
                    "doc_id": doc_id,
                    "code": "conflict",
                    "error": "base_hash mismatch",
                    "current_hash": current.base_hash if current else None,
                },
            )
            return

        saved = self.docs.write(doc_id, body)
        self.log.info("doc.saved", session_id=state.session_id, doc_id=doc_id)
        await self.publish_channel_message(
            state.session_id,
            ChannelType.DOC_SAVE_OK.value,
            request_id,
            {
                "doc_id": doc_id,
                "doc": {
                    "id": doc_id,
                    "title": non_empty_str(payload.get("title")) or doc_id,
                    "body_markdown": saved.body_markdown,
                    "base_hash": saved.base_hash,
                },
            },
        )

    async def handle_doc_delete(self, state: SessionState, envelope: dict[str, Any], payload: dict[str, Any]) -> None:
        supplied, request_id, doc_id = self._doc_request(state, "doc.delete", envelope, payload)
        if not state.should_process_inbound(f"doc.delete:{request_id}:{doc_id or 'unknown'}"):
            return
        error_channel = ChannelType.DOC_DELETE_ERROR.value
        if not await self._validate_doc_request(state, error_channel, supplied, request_id, doc_id):
            return
        assert doc_id is not None

        current = self.docs.read(doc_id)
        if current is None:
            await self.publish_channel_message(
                state.session_id,
                error_channel,
                request_id,
                {"doc_id": doc_id, "code": "not_found", "error": "document not found"},
            )
            return

        if (non_empty_str(payload.get("base_hash")) or "") != current.base_hash:
            await self.publish_channel_message(
                state.session_id,
                error_channel,
                request_id,
                {
                    "doc_id": doc_id,
                    "code": "conflict",
                    "error": "base_hash mismatch",
                    "current_hash": current.base_hash,
                },
            )
            return

        self.docs.delete(doc_id)
        self.log.info("doc.deleted", session_id=state.session_id, doc_id=doc_id)
        await self.publish_channel_message(
            state.session_id, ChannelType.DOC_DELETE_OK.value, request_id, {"doc_id": doc_id}
        )

    # Agent profile

    async def handle_profile_update(
        self, state: SessionState, envelope: dict[str, Any], payload: dict[str, Any]
    ) -> None:
        supplied = non_empty_str(payload.get("request_id")) or non_empty_str(envelope.get("request_id"))
        request_id = supplied or f"profile-{state.session_id}-{to_base36(now_ms())}"
        error_channel = ChannelType.AGENT_PROFILE_ERROR.value
        if not state.should_process_inbound(f"agent.profile.update:{request_id}"):
            return

        if not supplied:
            await self.publish_channel_message(
                state.session_id,
                error_channel,
                request_id,
                {"code": "invalid_request", "error": "request_id is required"},
            )
            return

        update = ProfileUpdate.from_payload(payload)
        if update.is_empty:
            await self.publish_channel_message(
                state.session_id,
                error_channel,
                request_id,
                {"code": "invalid_request", "error": "name or emoji is required"},
            )
            return

        if self.update_profile is None:
            await self.publish_channel_message(
                state.session_id,
                error_channel,
                request_id,
                {"code": "unsupported", "error": "agent profile updates are not supported by this runtime"},
            )
            return

        try:
            result = await self.update_profile(update)
        except Exception as e:
            self.log.warn("agent.profile.update_failed", session_id=state.session_id, error_type=type(e).__name__)
            await self.emit_error(e)
            await self.publish_channel_message(
                state.session_id,
                error_channel,
                request_id,
                {"code": "update_failed", "error": "agent profile update failed"},
            )
            return

        self.log.info("agent.profile.updated", session_id=state.session_id, fields=sorted(update.to_dict()))
        await self.publish_channel_message(
            state.session_id, ChannelType.AGENT_PROFILE_UPDATED.value, request_id, result
        )

    # Publishing and teardown

    async def publish_channel_message(
        self, session_id: int, channel_type: str, request_id: str, payload: dict[str, Any]
    ) -> None:
        await publish_realtime_message(
            self.api,
            session_id,
            channel_type,
            {"request_id": request_id, **payload},
            request_id=request_id,
        )

    async def maybe_self_heal_session(self, state: SessionState, now: float) -> None:
        """Recycle a session whose socket or activity went stale so a fresh claim can replace it."""
        if not self.config.self_heal_enabled or state.closed:
            return
        if now - state.created_at_ms < self.config.self_heal_min_session_age_ms:
            return

        if state.in_fallback:
            fallback_ms = now - state.last_connection_state_change_at_ms
            health_stale_ms = now - state.last_health_activity_at_ms
            stale_ms = self.config.self_heal_connection_stale_ms
            if fallback_ms >= stale_ms and health_stale_ms >= stale_ms:
                reason = f"session_self_heal_{state.connection_state.value}_stale"
                self.log.warn(
                    "session.self_heal",
                    session_id=state.session_id,
                    reason=reason,
                    fallback_ms=int(fallback_ms),
                    health_stale_ms=int(health_stale_ms),
                )
                state.close_reason = reason
                await self.close_session(
                    state, reason, self.config.self_heal_close_remote, force_remote_close=True, close_status="failed"
                )
                return

        inactivity_ms = now - state.last_health_activity_at_ms
        if inactivity_ms < self.config.self_heal_activity_stale_ms:
            return

        reason = "session_self_heal_activity_stale"
        self.log.warn("session.self_heal", session_id=state.session_id, reason=reason, inactivity_ms=int(inactivity_ms))
        state.close_reason = reason
        await self.close_session(
            state, reason, self.config.self_heal_close_remote, force_remote_close=True, close_status="failed"
        )

    async def close_session(
        self,
        state: SessionState,
        reason: str,
        close_remote: bool,
        force_remote_close: bool = False,
        close_status: str | None = None,
    ) -> None:
        if state.closed:
            return
        state.closed = True
        state.close_reason = reason

        if state.subscription is not None:
            try:
                await state.subscription.disconnect()
            except Exception as e:
                self.log.warn("session.disconnect_error", session_id=state.session_id, exc=e)

        if close_remote and (self.config.close_session_on_stop or force_remote_close):
            result = await self.api.close_session(
                state.session_id, reason, close_status or self.config.close_status
            )
            if not result.ok:
                await self.emit_error(
                    create_operation_error("closeAgentRealtimeSession", result.status, result.error)
                )

        if self.sessions.get(state.session_id) is state:
            del self.sessions[state.session_id]
        state.processed_inbound_keys.clear()
        self.log.info("session.closed", session_id=state.session_id, reason=reason)
        await call_optional_handler(self.on_session_closed, state.session_id, reason, on_error=self.emit_error)
