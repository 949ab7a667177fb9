"""Per-session ordering and dedup state shared by the push and poll paths."""

import time
from dataclasses import dataclass, field
from typing import Any

from ..dedup import TtlKeyCache
from ..realtime.subscription import RealtimeSubscription
from ..types import FALLBACK_CONNECTION_STATES, ConnectionState, Sender, Signal


def monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class SessionState:
    """Everything the runtime tracks for one bridged session.

    Two cursors are kept. ``last_signal_id`` follows every signal seen;
    ``last_non_agent_signal_id`` only follows system and browser signals
    and is the one polling resumes from, so an agent signal pushed ahead
    of an older browser signal cannot hide the browser signal from the poll.
    Both only ever move forward.
    """

    session_id: int
    duplicate_ttl_ms: int = 45_000
    session: dict[str, Any] | None = None
    subscription: RealtimeSubscription | None = None
    closed: bool = False
    close_reason: str | None = None
    last_signal_id: int = 0
    last_non_agent_signal_id: int = 0
    connection_state: ConnectionState = ConnectionState.CONNECTING
    last_signal_poll_at_ms: float = 0
    next_signal_poll_at_ms: float = 0
    last_signal_rate_limit_log_at_ms: float = 0
    saw_connected_state: bool = False
    created_at_ms: float = field(default_factory=monotonic_ms)
    last_health_activity_at_ms: float = field(default_factory=monotonic_ms)
    last_connection_state_change_at_ms: float = field(default_factory=monotonic_ms)
    processed_inbound_keys: TtlKeyCache = field(init=False)

    def __post_init__(self) -> None:
        self.processed_inbound_keys = TtlKeyCache(self.duplicate_ttl_ms)

    @property
    def poll_after_id(self) -> int | None:
        """Cursor for the next poll; None on a fresh session so the backlog is fetched."""
        return self.last_non_agent_signal_id if self.last_non_agent_signal_id > 0 else None

    @property
    def in_fallback(self) -> bool:
        return self.connection_state in FALLBACK_CONNECTION_STATES

    def accept_signal(self, signal: Signal) -> bool:
        """Advance the cursors for ``signal``; False means it was already handled."""
        if signal.id <= 0:
            return True
        if signal.sender == Sender.AGENT.value:
            if signal.id <= self.last_signal_id:
                return False
        else:
            if signal.id <= self.last_non_agent_signal_id:
                return False
            self.last_non_agent_signal_id = signal.id
        self.last_signal_id = max(self.last_signal_id, signal.id)
        return True

    def should_process_inbound(self, key: str) -> bool:
        return self.processed_inbound_keys.should_process(key)

    def touch(self) -> None:
        self.last_health_activity_at_ms = monotonic_ms()

    def set_connection_state(self, state: ConnectionState) -> ConnectionState:
        previous = self.connection_state
        now = monotonic_ms()
        self.connection_state = state
        self.last_connection_state_change_at_ms = now
        if state == ConnectionState.CONNECTED:
            self.last_health_activity_at_ms = now
        return previous
