"""Tests for the long-running runtime program: state, instruction sync, bootstrap and heartbeats."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import failed, ok

from agentmc_bridge.config import ProgramConfig
from agentmc_bridge.errors import ConfigurationError, OperationError
from agentmc_bridge.runtime.heartbeat import HostSnapshot
from agentmc_bridge.runtime.program import AgentRuntimeProgram, StateStore
from agentmc_bridge.types import RuntimeProvider

EXTERNAL = RuntimeProvider(kind="external", name="my-agent", version="1.0.0", models=["local/qwen"])


def make_program(fake_api, config, provider=EXTERNAL) -> AgentRuntimeProgram:
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=provider)
    return AgentRuntimeProgram(config, api=fake_api, provider_resolver=resolver)


class TestStateStore:
    def test_missing_file_loads_empty(self, tmp_path):
        assert StateStore(str(tmp_path / "state.json")).load() == {}

    def test_persist_merges(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        store = StateStore(str(path))
        store.persist(agent_id=7)
        store.persist(bundle_version="v2")

        assert json.loads(path.read_text()) == {"agent_id": 7, "bundle_version": "v2"}
        assert StateStore(str(path)).load() == {"agent_id": 7, "bundle_version": "v2"}

    @pytest.mark.parametrize("content", ["{broken", "[1, 2]"])
    def test_invalid_file(self, tmp_path, content):
        path = tmp_path / "state.json"
        path.write_text(content)
        with pytest.raises(ConfigurationError, match="Invalid state file JSON"):
            StateStore(str(path)).load()


class TestInstructionSync:
    """getAgentInstructions drives managed files, the agent id and the heartbeat interval."""

    @pytest.mark.asyncio
    async def test_changed_bundle_writes_files(self, fake_api, program_config, tmp_path):
        fake_api.instructions = ok(
            {
                "changed": True,
                "bundle_version": "v3",
                "agent": {"id": 7},
                "defaults": {"heartbeat_interval_seconds": 45},
                "files": [
                    {"path": "skills/agentmc/SKILL.md", "content": "# Skill"},
                    {"path": "", "content": "skipped"},
                    {"path": "binary.bin", "content": None},
                ],
            }
        )
        program = make_program(fake_api, program_config)

        synced = await program.sync_instruction_bundle()

        assert synced.changed is True
        assert synced.heartbeat_interval_seconds == 45
        assert synced.agent_id == 7
        assert (tmp_path / "skills" / "agentmc" / "SKILL.md").read_text() == "# Skill"
        assert not (tmp_path / "binary.bin").exists()
        assert program.state.data["bundle_version"] == "v3"
        assert program.state.data["last_skill_sync_at"].endswith("Z")

    @pytest.mark.asyncio
    async def test_sends_known_bundle_version(self, fake_api, program_config):
        program = make_program(fake_api, program_config)
        program.state.persist(bundle_version="v2", agent_id=7)

        synced = await program.sync_instruction_bundle()

        assert fake_api.instruction_requests == ["v2"]
        assert synced.changed is False
        assert program.state.data["bundle_version"] == "v2"
        assert program.state.data["agent_id"] == 7

    @pytest.mark.asyncio
    async def test_api_failure_raises(self, fake_api, program_config):
        fake_api.instructions = failed(401, {"message": "Unauthenticated."})
        with pytest.raises(OperationError):
            await make_program(fake_api, program_config).sync_instruction_bundle()

    def test_refuses_paths_outside_workspace(self, fake_api, program_config, tmp_path):
        program = make_program(fake_api, program_config)
        with pytest.raises(ConfigurationError, match="outside workspace"):
            program.write_managed_file("../escape.md", "nope")
        assert not (tmp_path.parent / "escape.md").exists()


class TestBootstrap:
    def test_api_key_required(self, tmp_path):
        with pytest.raises(ConfigurationError, match="API key"):
            AgentRuntimeProgram(ProgramConfig(workspace_dir=str(tmp_path)))

    def test_agent_id_precedence(self, fake_api, tmp_path):
        config = ProgramConfig(api_key="k", workspace_dir=str(tmp_path))
        program = make_program(fake_api, config)

        assert program.resolve_agent_id(9) == 9
        program.state.data["agent_id"] = 4
        assert program.resolve_agent_id(9) == 4

        with pytest.raises(ConfigurationError, match="Agent id is missing"):
            make_program(fake_api, config).resolve_agent_id(None)

    @pytest.mark.asyncio
    async def test_bootstrap_resolves_everything(self, fake_api, tmp_path):
        fake_api.instructions = ok(
            {"changed": False, "agent": {"id": 12}, "defaults": {"heartbeat_interval_seconds": 30}}
        )
        config = ProgramConfig(api_key="k", workspace_dir=str(tmp_path), agent_name="codex-runtime")
        program = make_program(fake_api, config)

        agent_id = await program.bootstrap()

        assert agent_id == 12
        assert program.heartbeat_interval_seconds == 30
        assert program.provider is EXTERNAL
        assert program.profile.name == "codex-runtime"
        assert program.profile.id == 12
        assert program.recurring.agent_id == 12
        assert program.telemetry is None

    @pytest.mark.asyncio
    async def test_bootstrap_requires_heartbeat_interval(self, fake_api, program_config):
        fake_api.instructions = ok({"changed": False})
        with pytest.raises(ConfigurationError, match="Heartbeat interval is missing"):
            await make_program(fake_api, program_config).bootstrap()


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_send_persists_timestamp(self, fake_api, program_config):
        program = make_program(fake_api, program_config)
        body = {"meta": {"runtime": {"name": "my-agent"}}, "host": {"fingerprint": "abc"}}

        response = await program.send_heartbeat(body)

        assert fake_api.heartbeats == [(body, "abc")]
        assert response == {"host": {"status": "online"}}
        assert program.state.data["last_heartbeat_at"].endswith("Z")

    @pytest.mark.asyncio
    async def test_missing_fingerprint(self, fake_api, program_config):
        with pytest.raises(ConfigurationError, match="fingerprint"):
            await make_program(fake_api, program_config).send_heartbeat({"host": {}})
        assert fake_api.heartbeats == []

    @pytest.mark.asyncio
    async def test_build_body_uses_collected_host(self, fake_api, program_config, monkeypatch):
        monkeypatch.setattr("agentmc_bridge.runtime.heartbeat.host_meta", lambda *args: {})
        program = make_program(fake_api, program_config)
        await program.bootstrap()
        program.collect_host = AsyncMock(return_value=HostSnapshot("box", "10.0.0.5", "203.0.113.7", "fp"))

        body = await program.build_heartbeat_body()

        assert body["host"]["fingerprint"] == "fp"
        assert body["meta"]["type"] == "my-agent"
        assert body["meta"]["models"] == ["local/qwen"]
        assert body["agent"]["id"] == 7

    @pytest.mark.asyncio
    async def test_cycle_restarts_realtime_on_new_bundle(self, fake_api, program_config):
        fake_api.instructions = ok({"changed": True, "defaults": {"heartbeat_interval_seconds": 90}})
        program = make_program(fake_api, program_config)
        program.restart_realtime = AsyncMock()
        program.build_heartbeat_body = AsyncMock(return_value={"host": {"fingerprint": "fp"}})

        await program.heartbeat_cycle(7)

        program.restart_realtime.assert_awaited_once_with(7)
        assert program.heartbeat_interval_seconds == 90
        assert len(fake_api.heartbeats) == 1

    @pytest.mark.asyncio
    async def test_errors_go_to_handler(self, fake_api, program_config):
        on_error = AsyncMock()
        program = make_program(fake_api, program_config)
        program.on_error = on_error
        error = RuntimeError("boom")

        await program.emit_error(error, source="heartbeat.cycle")

        on_error.assert_awaited_once_with(error)
