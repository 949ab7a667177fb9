"""
Heartbeat payloads.

A heartbeat tells AgentMC three things: which agent is alive (``agent``),
where it runs (``host``) and what it runs on (``meta``: runtime, models,
realtime capabilities and whatever usage telemetry the runtime exposes).
"""

import platform
from typing import Any, NamedTuple

from ..coerce import as_dict, non_empty_str
from ..config import ProgramConfig
from ..errors import ConfigurationError
from ..log_config import get_logger
from ..openclaw.identity import IdentitySnapshot, ensure_identity_payload
from ..openclaw.provider import normalize_model_list
from ..types import AgentProfile, RuntimeProvider
from .host import host_meta

log = get_logger("heartbeat")

DEFAULT_AGENT_TYPE = "runtime"

# Telemetry keys owned by the provider descriptor.
_RESERVED_TELEMETRY_KEYS = frozenset({"models", "type"})
_PROVIDER_VERSION_KEYS = frozenset({"openclaw_version", "openclaw_build"})


class HostSnapshot(NamedTuple):
    name: str
    private_ip: str
    public_ip: str
    fingerprint: str


def identity_emoji(identity: dict[str, Any] | None) -> str | None:
    return non_empty_str((identity or {}).get("emoji"))


def resolve_agent_profile(
    agent_id: int,
    config: ProgramConfig,
    snapshot: IdentitySnapshot | None = None,
    workspace_identity: IdentitySnapshot | None = None,
) -> AgentProfile:
    """Combine configured values with what the host reports.

    The machine snapshot name beats the configured name, which beats the
    synthetic ``agent-<id>``. The type is never discovered: configured or ``runtime``.
    """
    configured_name = non_empty_str(config.agent_name)
    configured_type = non_empty_str(config.agent_type)
    fallback_name = configured_name or f"agent-{agent_id}"

    fallback_identity = workspace_identity.identity if workspace_identity else {}
    fallback_emoji = (
        non_empty_str(config.agent_emoji)
        or (workspace_identity.emoji if workspace_identity else None)
        or identity_emoji(fallback_identity)
    )

    name = (snapshot.name if snapshot else None) or fallback_name
    identity_candidate = snapshot.identity if snapshot and snapshot.identity else fallback_identity
    emoji = (snapshot.emoji if snapshot else None) or fallback_emoji or identity_emoji(identity_candidate)
    agent_type = configured_type or DEFAULT_AGENT_TYPE

    synthetic_name = not configured_name and not (snapshot and snapshot.name)
    if synthetic_name or not configured_type:
        log.info(
            "profile.fallback_applied",
            fallback_name=name if synthetic_name else None,
            fallback_type=None if configured_type else agent_type,
        )

    identity = {key: value for key, value in identity_candidate.items() if key != "name"}
    return AgentProfile(
        id=agent_id,
        name=name,
        type=agent_type,
        identity=ensure_identity_payload(identity, name, emoji),
        emoji=emoji,
    )


def refresh_profile(profile: AgentProfile, snapshot: IdentitySnapshot | None) -> AgentProfile:
    """Apply a newer machine snapshot; without one the profile is unchanged."""
    if snapshot is None:
        return profile
    name = snapshot.name or profile.name
    identity_candidate = snapshot.identity or profile.identity
    emoji = snapshot.emoji or profile.emoji or identity_emoji(identity_candidate)
    identity = {key: value for key, value in identity_candidate.items() if key != "name"}
    return AgentProfile(
        id=profile.id,
        name=name,
        type=profile.type,
        identity=ensure_identity_payload(identity, name, emoji),
        emoji=emoji,
    )


def build_heartbeat_body(
    provider: RuntimeProvider,
    profile: AgentProfile,
    host: HostSnapshot,
    telemetry: dict[str, Any] | None = None,
    runtime_status: dict[str, Any] | None = None,
) -> dict[str, Any]:
    telemetry = telemetry or {}
    runtime_status = runtime_status or {}

    models = normalize_model_list(telemetry.get("models")) or normalize_model_list(provider.models)
    if not models:
        guidance = (
            "Configure OpenClaw models so `openclaw models status --json` returns at least one model."
            if provider.kind == "openclaw"
            else "Set runtime_models with at least one runtime model identifier."
        )
        raise ConfigurationError(f"Heartbeat requires runtime model inventory in meta.models. {guidance}")

    runtime: dict[str, Any] = {"name": provider.name, "version": provider.version}
    if provider.build:
        runtime["build"] = provider.build

    emoji = profile.emoji or identity_emoji(profile.identity)
    meta: dict[str, Any] = {
        "type": "openclaw" if provider.kind == "openclaw" else provider.name,
        "runtime": runtime,
        "models": models,
        "runtime_mode": provider.mode,
        "python_version": platform.python_version(),
        "agent_name": profile.name,
        "tool_availability": {
            "chat_realtime": bool(runtime_status.get("chat_realtime_enabled", False)),
            "files_realtime": bool(runtime_status.get("docs_realtime_enabled", False)),
            "notifications_realtime": bool(runtime_status.get("notifications_realtime_enabled", False)),
        },
    }
    if provider.kind == "openclaw":
        meta["openclaw_version"] = provider.version
        meta["openclaw_build"] = provider.build or provider.version
    if emoji:
        meta["emoji"] = emoji

    for key, value in telemetry.items():
        if key in _RESERVED_TELEMETRY_KEYS:
            continue
        if key == "runtime":
            incoming = as_dict(value)
            if incoming:
                meta["runtime"] = {**incoming, **meta["runtime"]}
            continue
        if key == "tool_availability":
            incoming = as_dict(value)
            if incoming:
                meta["tool_availability"] = {**incoming, **meta["tool_availability"]}
            continue
        if provider.kind == "openclaw" and key in _PROVIDER_VERSION_KEYS:
            continue
        meta[key] = value

    return {
        "meta": meta,
        "host": {
            "fingerprint": host.fingerprint,
            "name": host.name,
            "meta": host_meta(host.name, host.private_ip, host.public_ip, provider.name, provider.version),
        },
        "agent": {
            "id": profile.id,
            "name": profile.name,
            "type": profile.type,
            "identity": ensure_identity_payload(profile.identity, profile.name, emoji),
        },
    }
