"""Tests for heartbeat payloads, agent profile resolution and host facts."""

from dataclasses import replace

import httpx
import pytest

from agentmc_bridge.config import ProgramConfig
from agentmc_bridge.errors import ConfigurationError
from agentmc_bridge.openclaw.identity import IdentitySnapshot
from agentmc_bridge.runtime import heartbeat as heartbeat_module
from agentmc_bridge.runtime import host as host_module
from agentmc_bridge.runtime.heartbeat import (
    HostSnapshot,
    build_heartbeat_body,
    refresh_profile,
    resolve_agent_profile,
)
from agentmc_bridge.runtime.host import (
    host_fingerprint,
    host_meta,
    is_private_ipv4,
    parse_public_ip,
    resolve_public_ip,
)
from agentmc_bridge.types import AgentProfile, RuntimeProvider

PROVIDER = RuntimeProvider(
    kind="openclaw",
    name="openclaw",
    version="2026.2.26",
    build="bc50708",
    mode="openclaw",
    models=["openai/gpt-5-codex"],
    command="openclaw",
)
PROFILE = AgentProfile(id=42, name="codex-runtime", type="runtime", identity={"name": "codex-runtime"}, emoji=None)
HOST = HostSnapshot(name="build-box", private_ip="10.0.0.5", public_ip="203.0.113.7", fingerprint="f" * 64)
RUNTIME_STATUS = {
    "chat_realtime_enabled": True,
    "docs_realtime_enabled": True,
    "notifications_realtime_enabled": False,
}


@pytest.fixture(autouse=True)
def fixed_host_meta(monkeypatch):
    monkeypatch.setattr(heartbeat_module, "host_meta", lambda *args: {"hostname": args[0]})


class TestBuildHeartbeatBody:
    """Tests for build_heartbeat_body."""

    def test_openclaw_body(self):
        body = build_heartbeat_body(PROVIDER, PROFILE, HOST, runtime_status=RUNTIME_STATUS)

        meta = body["meta"]
        assert meta["type"] == "openclaw"
        assert meta["runtime"] == {"name": "openclaw", "version": "2026.2.26", "build": "bc50708"}
        assert meta["models"] == ["openai/gpt-5-codex"]
        assert meta["openclaw_version"] == "2026.2.26"
        assert meta["openclaw_build"] == "bc50708"
        assert meta["tool_availability"] == {
            "chat_realtime": True,
            "files_realtime": True,
            "notifications_realtime": False,
        }
        assert body["host"] == {"fingerprint": "f" * 64, "name": "build-box", "meta": {"hostname": "build-box"}}
        assert body["agent"] == {
            "id": 42,
            "name": "codex-runtime",
            "type": "runtime",
            "identity": {"name": "codex-runtime"},
        }

    def test_telemetry_merges_without_overriding_provider(self):
        telemetry = {
            "models": ["openai/gpt-5.3-codex"],
            "runtime": {"mode": "direct", "version": "9.9.9"},
            "tool_availability": {"browser": True, "chat_realtime": False},
            "openclaw_version": "9.9.9",
            "tokens_in": 77000,
            "thinking_mode": False,
        }

        meta = build_heartbeat_body(PROVIDER, PROFILE, HOST, telemetry, RUNTIME_STATUS)["meta"]

        assert meta["models"] == ["openai/gpt-5.3-codex"]
        assert meta["runtime"] == {"mode": "direct", "name": "openclaw", "version": "2026.2.26", "build": "bc50708"}
        assert meta["tool_availability"]["browser"] is True
        assert meta["tool_availability"]["chat_realtime"] is True
        assert meta["openclaw_version"] == "2026.2.26"
        assert meta["tokens_in"] == 77000
        assert meta["thinking_mode"] is False

    def test_requires_models(self):
        external = RuntimeProvider(kind="external", name="my-agent", version="1.0.0")
        with pytest.raises(ConfigurationError, match="runtime_models"):
            build_heartbeat_body(external, PROFILE, HOST)

    def test_external_type_and_emoji(self):
        external = RuntimeProvider(kind="external", name="my-agent", version="1.0.0", models=["local/qwen"])
        profile = replace(PROFILE, emoji="🦊")

        body = build_heartbeat_body(external, profile, HOST)

        assert body["meta"]["type"] == "my-agent"
        assert body["meta"]["emoji"] == "🦊"
        assert "openclaw_version" not in body["meta"]
        assert body["agent"]["identity"]["emoji"] == "🦊"


class TestAgentProfile:
    """Name and type resolution for the heartbeat agent block."""

    def test_synthetic_fallbacks(self, tmp_path):
        profile = resolve_agent_profile(42, ProgramConfig(workspace_dir=str(tmp_path)))
        assert profile == AgentProfile(42, "agent-42", "runtime", {"name": "agent-42"}, None)

    def test_snapshot_name_beats_configured_name(self, tmp_path):
        config = ProgramConfig(workspace_dir=str(tmp_path), agent_name="configured", agent_type="assistant")
        snapshot = IdentitySnapshot(name="Nova", identity={"name": "Nova", "vibe": "calm"}, emoji="🦊")

        profile = resolve_agent_profile(42, config, snapshot)

        assert profile.name == "Nova"
        assert profile.type == "assistant"
        assert profile.emoji == "🦊"
        assert profile.identity == {"vibe": "calm", "name": "Nova", "emoji": "🦊"}

    def test_workspace_identity_supplies_emoji(self, tmp_path):
        config = ProgramConfig(workspace_dir=str(tmp_path), agent_name="codex-runtime")
        workspace = IdentitySnapshot(name="Nova", identity={"creature": "fox"}, emoji="🦊")

        profile = resolve_agent_profile(42, config, None, workspace)

        assert profile.name == "codex-runtime"
        assert profile.emoji == "🦊"
        assert profile.identity == {"creature": "fox", "name": "codex-runtime", "emoji": "🦊"}

    def test_refresh_profile(self):
        assert refresh_profile(PROFILE, None) is PROFILE
        refreshed = refresh_profile(PROFILE, IdentitySnapshot(name="Nova", identity={}, emoji=None))
        assert refreshed.name == "Nova"
        assert refreshed.type == "runtime"
        assert refreshed.identity == {"name": "Nova"}


class TestHostFacts:
    @pytest.mark.parametrize(
        "address, expected",
        [("10.1.2.3", True), ("172.20.0.1", True), ("192.168.1.1", True), ("127.0.0.1", True), ("8.8.8.8", False)],
    )
    def test_private_ranges(self, address, expected):
        assert is_private_ipv4(address) is expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("203.0.113.7\n", "203.0.113.7"),
            ('{"ip": "203.0.113.8"}', "203.0.113.8"),
            ('{"public_ip": "203.0.113.9"}', "203.0.113.9"),
            ('{"ip": "not-an-ip"}', None),
            ("<html>", None),
        ],
    )
    def test_parse_public_ip(self, text, expected):
        assert parse_public_ip(text) == expected

    @pytest.mark.asyncio
    async def test_explicit_public_ip(self):
        assert await resolve_public_ip("198.51.100.1", None, "10.0.0.5") == "198.51.100.1"

    @pytest.mark.asyncio
    async def test_endpoint_fallbacks(self, monkeypatch):
        monkeypatch.setattr(host_module, "interface_ipv4_addresses", lambda: ["10.0.0.5"])
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(request.url.host)
            if request.url.host == "api.ipify.org":
                return httpx.Response(503)
            return httpx.Response(200, text="203.0.113.7")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            address = await resolve_public_ip(None, None, "10.0.0.5", http_client=client)

        assert address == "203.0.113.7"
        assert requested == ["api.ipify.org", "ifconfig.me"]

    @pytest.mark.asyncio
    async def test_public_ip_failure_summary(self, monkeypatch):
        monkeypatch.setattr(host_module, "interface_ipv4_addresses", lambda: [])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="nope")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ConfigurationError, match="Private IP was 10.0.0.5"):
                await resolve_public_ip(None, "https://echo.example/ip", "10.0.0.5", http_client=client)

    def test_fingerprint_is_stable(self):
        first = host_fingerprint("box", "10.0.0.5", "203.0.113.7")
        assert first == host_fingerprint("box", "10.0.0.5", "203.0.113.7")
        assert first != host_fingerprint("box", "10.0.0.6", "203.0.113.7")
        assert len(first) == 64

    def test_host_meta_shape(self):
        meta = host_meta("box", "10.0.0.5", "203.0.113.7", "openclaw", "2026.2.26")
        assert meta["network"] == {"private_ip": "10.0.0.5", "public_ip": "203.0.113.7"}
        assert meta["runtime"] == {"name": "openclaw", "version": "2026.2.26"}
        assert meta["cpu_cores"] >= 0
        assert set(meta["disk"]) == {"total_bytes", "free_bytes"}
