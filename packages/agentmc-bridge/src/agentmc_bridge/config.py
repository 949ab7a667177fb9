"""
Runtime configuration.

Values resolve with a fixed precedence: an explicit constructor option wins,
then the matching environment variable, then a value discovered on the host
(OpenClaw CLI, workspace files), then the static default declared here.
Discovered values are applied by the resolvers in ``openclaw.provider`` and
``runtime.program``; this module only handles options, environment and
defaults.
"""

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from .errors import ConfigurationError

DEFAULT_API_BASE_URL = "https://agentmc.ai/api/v1"

DEFAULT_RUNTIME_DOC_IDS: tuple[str, ...] = (
    "AGENTS.md",
    "SOUL.md",
    "TOOLS.md",
    "IDENTITY.md",
    "USER.md",
    "HEARTBEAT.md",
    "BOOTSTRAP.md",
    "MEMORY.md",
)

_OPENCLAW_AGENT_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
_DOC_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_API_KEY_ENV_PATTERN = re.compile(r"^AGENTMC_API_KEY_(\d+)$")


def normalize_doc_id(value: Any) -> str | None:
    """Return a safe runtime doc file name, or None when it could escape the docs directory."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text or "/" in text or "\\" in text or not _DOC_ID_PATTERN.match(text):
        return None
    return text


def normalize_api_base_url(value: str) -> str:
    trimmed = value.strip().rstrip("/")
    if trimmed.endswith("/api/v1"):
        return trimmed
    return f"{trimmed}/api/v1"


def default_sessions_path(openclaw_agent: str) -> str:
    return str(Path.home() / ".openclaw" / "agents" / openclaw_agent / "sessions" / "sessions.json")


class RealtimeRuntimeConfig(BaseModel):
    """Knobs for the realtime session runtime."""

    model_config = ConfigDict(extra="forbid")

    agent_id: int = Field(gt=0)

    realtime_sessions_enabled: bool | None = None
    chat_realtime_enabled: bool = True
    docs_realtime_enabled: bool = True
    notifications_realtime_enabled: bool = True
    profile_realtime_enabled: bool = True

    requested_session_limit: int = Field(default=20, gt=0)
    request_poll_ms: int = Field(default=1_200, gt=0)
    fallback_signal_poll_ms: int = Field(default=1_000, gt=0)
    catchup_signal_poll_ms: int = Field(default=15_000, gt=0)
    signal_poll_limit: int = Field(default=100, gt=0)
    duplicate_ttl_ms: int = Field(default=45_000, gt=0)

    send_thinking_delta: bool = True
    thinking_text: str = "Thinking..."

    bridge_notifications_to_ai: bool = True
    bridge_read_notifications: bool = False
    bridge_notification_types: list[str] | None = None

    close_session_on_stop: bool = False
    close_reason: str = "runtime_stopped"
    close_status: Literal["closed", "failed"] = "closed"

    include_initial_snapshot: bool = True
    runtime_docs_directory: str = Field(default_factory=os.getcwd)
    runtime_doc_ids: list[str] = Field(default_factory=lambda: list(DEFAULT_RUNTIME_DOC_IDS))
    include_missing_runtime_docs: bool = False

    openclaw_command: str = "openclaw"
    openclaw_agent: str = "main"
    openclaw_sessions_path: str | None = None
    openclaw_gateway_timeout_ms: int = Field(default=120_000, gt=0)
    openclaw_submit_timeout_ms: int = Field(default=30_000, gt=0)
    openclaw_wait_timeout_ms: int = Field(default=90_000, gt=0)
    openclaw_max_buffer_bytes: int = Field(default=10 * 1024 * 1024, gt=0)

    self_heal_enabled: bool = True
    self_heal_connection_stale_ms: int = Field(default=45_000, gt=0)
    self_heal_activity_stale_ms: int = Field(default=120_000, gt=0)
    self_heal_min_session_age_ms: int = Field(default=20_000, gt=0)
    self_heal_close_remote: bool = True

    runtime_source: str = "agent-runtime"

    @field_validator("openclaw_agent", mode="before")
    @classmethod
    def _validate_openclaw_agent(cls, value: Any) -> str:
        text = value.strip() if isinstance(value, str) else ""
        text = text or "main"
        if not _OPENCLAW_AGENT_PATTERN.match(text):
            raise ValueError(
                "openclaw_agent may only include letters, numbers, underscore, dot, and hyphen."
            )
        return text

    @field_validator("thinking_text", "close_reason", "runtime_source", "openclaw_command", mode="before")
    @classmethod
    def _blank_to_default(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return cls.model_fields[info.field_name].default

    @field_validator("runtime_doc_ids")
    @classmethod
    def _validate_doc_ids(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for entry in value:
            doc_id = normalize_doc_id(entry)
            if doc_id and doc_id not in normalized:
                normalized.append(doc_id)
        if not normalized:
            raise ValueError("At least one runtime doc id is required.")
        return normalized

    @field_validator("bridge_notification_types")
    @classmethod
    def _normalize_type_filter(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized = [entry.strip().lower() for entry in value if entry and entry.strip()]
        return normalized or None

    @model_validator(mode="after")
    def _resolve_paths(self) -> "RealtimeRuntimeConfig":
        self.runtime_docs_directory = str(Path(self.runtime_docs_directory).resolve())
        if not self.openclaw_sessions_path:
            self.openclaw_sessions_path = default_sessions_path(self.openclaw_agent)
        return self

    def sessions_enabled(self, has_callbacks: bool = False) -> bool:
        if self.realtime_sessions_enabled is not None:
            return self.realtime_sessions_enabled
        return (
            self.chat_realtime_enabled
            or self.docs_realtime_enabled
            or self.notifications_realtime_enabled
            or has_callbacks
        )


class ProgramConfig(BaseModel):
    """Settings for the long-running runtime program (heartbeat, recurring tasks, realtime)."""

    model_config = ConfigDict(extra="forbid")

    api_key: str | None = None
    base_url: str = DEFAULT_API_BASE_URL
    agent_id: int | None = Field(default=None, gt=0)
    workspace_dir: str = Field(default_factory=os.getcwd)
    state_path: str | None = None
    heartbeat_interval_seconds: int | None = Field(default=None, gt=0)

    runtime_provider: Literal["auto", "openclaw", "external"] = "auto"
    runtime_command: str | None = None
    runtime_command_args: list[str] = Field(default_factory=list)
    runtime_version_command: str | None = None
    runtime_name: str | None = None
    runtime_version: str | None = None
    runtime_build: str | None = None
    runtime_models: list[str] = Field(default_factory=list)

    openclaw_command: str | None = None
    openclaw_config_path: str | None = None
    openclaw_agent: str | None = None
    openclaw_sessions_path: str | None = None

    agent_name: str | None = None
    agent_type: str | None = None
    agent_emoji: str | None = None

    public_ip: str | None = None
    public_ip_endpoint: str | None = None
    host_fingerprint: str | None = None
    host_name: str | None = None

    recurring_task_poll_interval_seconds: int = Field(default=30, gt=0)
    recurring_task_poll_limit: int = Field(default=5, gt=0)
    recurring_task_wait_timeout_ms: int = Field(default=600_000, gt=0)
    recurring_task_gateway_timeout_ms: int = Field(default=720_000, gt=0)

    @model_validator(mode="after")
    def _resolve_paths(self) -> "ProgramConfig":
        self.base_url = normalize_api_base_url(self.base_url or DEFAULT_API_BASE_URL)
        self.workspace_dir = str(Path(self.workspace_dir).resolve())
        if not self.state_path:
            self.state_path = str(Path(self.workspace_dir) / ".agentmc" / "state.json")
        else:
            self.state_path = str(Path(self.state_path).resolve())
        # The gateway call must outlive the wait it wraps.
        self.recurring_task_gateway_timeout_ms = max(
            self.recurring_task_gateway_timeout_ms, self.recurring_task_wait_timeout_ms + 30_000
        )
        return self

    @classmethod
    def from_env(
        cls, env: Mapping[str, str] | None = None, **overrides: Any
    ) -> "ProgramConfig":
        """Build settings from ``AGENTMC_*`` variables; explicit overrides take precedence.

        API keys are per agent (``AGENTMC_API_KEY_<AGENT_ID>``). With several
        keys present, ``AGENTMC_AGENT_ID`` selects which one this process runs.
        """
        env = os.environ if env is None else env

        keyed: list[tuple[int, str]] = []
        for name, value in env.items():
            match = _API_KEY_ENV_PATTERN.match(name)
            if not match or not value or not value.strip():
                continue
            agent_id = int(match.group(1))
            if agent_id > 0:
                keyed.append((agent_id, value.strip()))
        keyed.sort()

        requested = _env_positive_int(env, "AGENTMC_AGENT_ID")
        if overrides.get("agent_id") is not None:
            requested = int(overrides["agent_id"])

        if overrides.get("api_key"):
            selected = (requested, str(overrides["api_key"]))
        else:
            if not keyed:
                raise ConfigurationError("AGENTMC_API_KEY_<AGENT_ID> is required.")
            if requested is not None:
                match_entry = next((entry for entry in keyed if entry[0] == requested), None)
                if match_entry is None:
                    raise ConfigurationError(f"Missing AGENTMC_API_KEY_{requested}.")
                selected = match_entry
            elif len(keyed) == 1:
                selected = keyed[0]
            else:
                raise ConfigurationError(
                    "Multiple AGENTMC_API_KEY_<AGENT_ID> values found. "
                    "Set AGENTMC_AGENT_ID to choose which agent this runtime serves."
                )

        agent_id, api_key = selected
        values: dict[str, Any] = {"api_key": api_key, "agent_id": agent_id}

        def pick(field: str, *names: str) -> None:
            for name in names:
                raw = env.get(name)
                if raw is not None and raw.strip():
                    values[field] = raw.strip()
                    return

        suffix = f"_{agent_id}" if agent_id else ""
        pick("base_url", "AGENTMC_BASE_URL")
        pick("workspace_dir", f"AGENTMC_WORKSPACE_DIR{suffix}", "AGENTMC_WORKSPACE_DIR")
        pick("state_path", f"AGENTMC_STATE_PATH{suffix}", "AGENTMC_STATE_PATH")
        pick("runtime_provider", "AGENTMC_RUNTIME_PROVIDER")
        pick("runtime_command", "AGENTMC_RUNTIME_COMMAND")
        pick("openclaw_command", "AGENTMC_OPENCLAW_COMMAND")
        pick("openclaw_agent", "AGENTMC_OPENCLAW_AGENT")
        pick("openclaw_config_path", "OPENCLAW_CONFIG_PATH")
        pick("openclaw_sessions_path", "AGENTMC_OPENCLAW_SESSIONS_PATH")
        pick("agent_name", "AGENTMC_AGENT_NAME")
        pick("agent_type", "AGENTMC_AGENT_TYPE")
        pick("agent_emoji", "AGENTMC_AGENT_EMOJI")
        pick("public_ip", "AGENTMC_PUBLIC_IP")

        models = env.get("AGENTMC_RUNTIME_MODELS")
        if models and models.strip():
            values["runtime_models"] = [m.strip() for m in models.split(",") if m.strip()]

        heartbeat = _env_positive_int(env, "AGENTMC_HEARTBEAT_INTERVAL_SECONDS")
        if heartbeat is not None:
            values["heartbeat_interval_seconds"] = heartbeat

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def realtime_config(self, agent_id: int, **overrides: Any) -> RealtimeRuntimeConfig:
        values: dict[str, Any] = {
            "agent_id": agent_id,
            "runtime_docs_directory": self.workspace_dir,
        }
        if self.openclaw_agent:
            values["openclaw_agent"] = self.openclaw_agent
        if self.openclaw_sessions_path:
            values["openclaw_sessions_path"] = self.openclaw_sessions_path
        values.update(overrides)
        return RealtimeRuntimeConfig(**values)


def _env_positive_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if raw is None or not raw.strip().isdigit():
        return None
    value = int(raw.strip())
    return value if value > 0 else None
