"""Shared value types for the bridge runtime."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, NamedTuple


class Sender(str, Enum):
    AGENT = "agent"
    SYSTEM = "system"
    BROWSER = "browser"


class ConnectionState(str, Enum):
    """Realtime connection lifecycle states."""

    INITIALIZED = "initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"
    DISCONNECTED = "disconnected"

    @classmethod
    def parse(cls, value: Any) -> "ConnectionState | None":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# States in which the runtime leans on HTTP polling instead of the socket.
FALLBACK_CONNECTION_STATES = frozenset(
    {ConnectionState.FAILED, ConnectionState.DISCONNECTED, ConnectionState.UNAVAILABLE}
)


class ChannelType(str, Enum):
    """Recognized ``payload.type`` values on realtime message signals."""

    CHAT_USER = "chat.user"
    CHAT_REQUEST = "chat.request"
    CHAT_AGENT_DELTA = "chat.agent.delta"
    CHAT_AGENT_DONE = "chat.agent.done"
    NOTIFICATION_CREATED = "notification.created"
    NOTIFICATION_UPDATED = "notification.updated"
    SNAPSHOT_REQUEST = "snapshot.request"
    SNAPSHOT_RESPONSE = "snapshot.response"
    DOC_SAVE = "doc.save"
    DOC_SAVE_OK = "doc.save.ok"
    DOC_SAVE_ERROR = "doc.save.error"
    DOC_DELETE = "doc.delete"
    DOC_DELETE_OK = "doc.delete.ok"
    DOC_DELETE_ERROR = "doc.delete.error"
    AGENT_PROFILE_UPDATE = "agent.profile.update"
    AGENT_PROFILE_UPDATED = "agent.profile.updated"
    AGENT_PROFILE_ERROR = "agent.profile.error"

    @classmethod
    def parse(cls, value: Any) -> "ChannelType | None":
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class Signal:
    """One realtime signal envelope as delivered by push or poll."""

    id: int
    session_id: int
    sender: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None

    @property
    def channel_type(self) -> str | None:
        value = self.payload.get("type")
        return value.lower() if isinstance(value, str) else None

    @property
    def body(self) -> dict[str, Any]:
        inner = self.payload.get("payload")
        return inner if isinstance(inner, dict) else self.payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "sender": self.sender,
            "type": self.type,
            "payload": self.payload,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class NotificationEvent:
    """A notification extracted from a signal."""

    signal: Signal
    notification: dict[str, Any]
    notification_type: str | None
    channel_type: str | None


RunStatus = Literal["ok", "error", "timeout"]
TextSource = Literal["wait", "session_history", "fallback", "error", "external"]


class AgentRunInput(NamedTuple):
    session_id: int
    request_id: str
    user_text: str


class AgentRunResult(NamedTuple):
    """Outcome of one chat bridge invocation."""

    request_id: str
    run_id: str
    status: str
    text_source: str
    content: str


@dataclass
class RuntimeProvider:
    """Resolved descriptor for the locally available agent runtime.

    ``run_agent`` replaces the OpenClaw gateway chat path when set;
    ``identity_resolver`` reads the display name and emoji configured on the
    machine, if the runtime exposes them.
    """

    kind: Literal["external", "openclaw"]
    name: str
    version: str
    build: str | None = None
    mode: str = "external"
    models: list[str] = field(default_factory=list)
    command: str | None = None
    args: list[str] = field(default_factory=list)
    run_agent: Callable[[AgentRunInput], Awaitable[Any]] | None = None
    identity_resolver: Callable[..., Awaitable[Any]] | None = None


@dataclass
class AgentProfile:
    """The agent as reported in heartbeats; ``identity`` always carries ``name``."""

    id: int
    name: str
    type: str
    identity: dict[str, Any] = field(default_factory=dict)
    emoji: str | None = None
