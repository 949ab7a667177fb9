"""
Notification bridge: turns unread AgentMC notifications into agent runs.

A notification starts at most one run per version, whether it arrived via
the push callback, the notification callback, or a poll. The notification
is marked read only after a run that finished ``ok``, so a failed run leaves
it unread and a later delivery can retry.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from ..api.client import AgentMCApi
from ..callbacks import ErrorHandler, call_error_handler, call_optional_handler
from ..coerce import as_bool
from ..config import RealtimeRuntimeConfig
from ..dedup import TtlKeyCache
from ..errors import create_operation_error
from ..log_config import get_logger
from ..prompts import (
    build_agentmc_bridge_message,
    build_notification_bridge_payload,
    build_notification_user_text,
)
from ..realtime.signals import (
    is_created_channel,
    notification_dedupe_key,
    notification_id,
    notification_request_id,
    should_bridge_notification_type,
)
from ..types import AgentRunInput, AgentRunResult, NotificationEvent
from .session import SessionState

RunChat = Callable[[AgentRunInput], Awaitable[AgentRunResult]]


class NotificationBridge:
    """Decides which notifications reach the agent and closes the loop afterwards."""

    def __init__(
        self,
        api: AgentMCApi,
        config: RealtimeRuntimeConfig,
        run_chat: RunChat,
        on_error: ErrorHandler | None = None,
        on_bridge: Callable[[dict[str, Any]], Awaitable[None] | None] | None = None,
    ):
        self.api = api
        self.config = config
        self.run_chat = run_chat
        self.on_error = on_error
        self.on_bridge = on_bridge
        self.processed_keys = TtlKeyCache(config.duplicate_ttl_ms)
        self.log = get_logger("notification_bridge", agent_id=config.agent_id)

    def should_bridge(self, event: NotificationEvent) -> bool:
        if not self.config.bridge_notifications_to_ai:
            return False
        if not is_created_channel(event.channel_type):
            return False
        if not should_bridge_notification_type(
            self.config.bridge_notification_types, self.effective_type(event)
        ):
            return False
        if not self.config.bridge_read_notifications and as_bool(event.notification.get("is_read")) is True:
            return False
        return True

    @staticmethod
    def effective_type(event: NotificationEvent) -> str | None:
        if event.notification_type:
            return event.notification_type.strip().lower() or None
        raw = event.notification.get("notification_type")
        if not isinstance(raw, str):
            return None
        return raw.strip().lower() or None

    async def maybe_bridge(
        self, state: SessionState, event: NotificationEvent, source: str
    ) -> AgentRunResult | None:
        """Run the agent for ``event`` when it qualifies; returns the run result or None."""
        if state.closed or not self.should_bridge(event):
            return None

        signal = event.signal
        if not self.processed_keys.should_process(notification_dedupe_key(event.notification, signal.id)):
            return None

        notification_type = self.effective_type(event)
        request_id = notification_request_id(event.notification, signal.id, state.session_id)
        payload = build_notification_bridge_payload(signal.payload, event.notification, notification_type)
        user_text = build_notification_user_text(
            event.notification, notification_type, event.channel_type, signal.id
        )
        run_input = AgentRunInput(
            session_id=state.session_id,
            request_id=request_id,
            user_text=build_agentmc_bridge_message(user_text, payload, state.session),
        )

        self.log.info(
            "notification.bridge_start",
            session_id=state.session_id,
            request_id=request_id,
            notification_type=notification_type,
            source=source,
        )
        result = await self.run_chat(run_input)
        self.log.info(
            "notification.bridge_complete",
            session_id=state.session_id,
            request_id=request_id,
            status=result.status,
            text_source=result.text_source,
        )

        await self.mark_read_on_success(event.notification, result)
        await call_optional_handler(
            self.on_bridge,
            {
                "session_id": state.session_id,
                "source": source,
                "signal": signal,
                "notification": event.notification,
                "notification_type": notification_type,
                "channel_type": event.channel_type,
                "request_id": request_id,
                "run": result,
            },
            on_error=self.on_error,
        )
        return result

    async def mark_read_on_success(self, notification: dict[str, Any], result: AgentRunResult) -> None:
        if result.status != "ok":
            return
        if as_bool(notification.get("is_read")) is True:
            return
        resolved_id = notification_id(notification)
        if not resolved_id:
            return

        try:
            response = await self.api.mark_notification_read(resolved_id)
        except Exception as e:
            await call_error_handler(self.on_error, e)
            return
        if not response.ok:
            await call_error_handler(
                self.on_error,
                create_operation_error("markNotificationRead", response.status, response.error),
            )
