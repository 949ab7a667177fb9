"""Tests for runtime provider resolution and subprocess handling."""

import json
import sys

import pytest

from agentmc_bridge.config import ProgramConfig
from agentmc_bridge.errors import CommandError, ConfigurationError
from agentmc_bridge.openclaw import provider as provider_module
from agentmc_bridge.openclaw.provider import (
    ExternalAgentRunner,
    ProviderResolver,
    executables_on_path,
    extract_build_token,
    extract_version_token,
    looks_like_openclaw_command,
    openclaw_command_candidates,
    parse_external_agent_output,
    select_status_models,
)
from agentmc_bridge.process import CommandOutput, run_command
from agentmc_bridge.types import AgentRunInput

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell stubs")


def write_stub(directory, name: str, body: str):
    path = directory / name
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return path


def fake_commands(responses):
    """run_command stand-in keyed by ``"<command> <args>"``."""
    calls = []

    async def run_command(command, args, timeout=None, check=True, **kwargs):
        key = " ".join([command, *args])
        calls.append(key)
        response = responses.get(key)
        if response is None:
            raise CommandError(f"{command} could not be started: FileNotFoundError")
        return CommandOutput(stdout=response, stderr="", returncode=0)

    return run_command, calls


class TestVersionParsing:
    def test_version_and_build_tokens(self):
        line = "OpenClaw 2026.2.26 (bc50708)"
        assert extract_version_token(line) == "2026.2.26"
        assert extract_build_token(line) == "bc50708"
        assert extract_build_token("tool 1.2.3 commit 9f8e7d6c") == "9f8e7d6c"
        assert extract_version_token("no version") is None

    @pytest.mark.parametrize(
        "command, expected",
        [("openclaw", True), ("/opt/bin/openclaw-dev", True), ("OpenClaw.cmd", True), ("codex", False), (None, False)],
    )
    def test_looks_like_openclaw(self, command, expected):
        assert looks_like_openclaw_command(command) is expected


class TestModelSelection:
    """``models status --json`` precedence."""

    def test_resolved_default_wins(self):
        status = {"resolvedDefault": "openai/gpt-5-codex", "defaultModel": "x/y", "allowed": ["a/b"]}
        assert select_status_models(status) == ["openai/gpt-5-codex"]

    def test_allowed_list(self):
        assert select_status_models({"allowed": ["a/b", {"id": "c/d"}, "a/b"]}) == ["a/b", "c/d"]

    def test_scans_nested_values(self):
        status = {"providers": {"openai": {"models": [{"id": "openai/gpt-5"}, {"label": "not a model id"}]}}}
        assert select_status_models(status) == ["openai/gpt-5"]


class TestCommandCandidates:
    @posix_only
    def test_path_executables_follow_configured_command(self, tmp_path):
        first = tmp_path / "first"
        second = tmp_path / "second"
        first.mkdir()
        second.mkdir()
        stub = write_stub(second, "openclaw", "echo 'OpenClaw 1.0.0'")
        (first / "openclaw").write_text("not executable")

        search_path = f"{first}:{second}"
        assert executables_on_path("openclaw", search_path) == [str(stub)]

        candidates = openclaw_command_candidates("/custom/openclaw", "codex", search_path)
        assert candidates[:3] == ["/custom/openclaw", str(stub), "openclaw"]
        assert "/usr/local/bin/openclaw" in candidates


class TestProviderResolver:
    """Resolution against a scripted OpenClaw CLI."""

    @pytest.mark.asyncio
    async def test_falls_back_from_broken_configured_command(self, monkeypatch, tmp_path):
        run, calls = fake_commands(
            {
                "openclaw --version": "OpenClaw 2026.2.26 (bc50708)\n",
                "openclaw models status --json": json.dumps({"resolvedDefault": "openai/gpt-5-codex"}),
            }
        )
        monkeypatch.setattr(provider_module, "run_command", run)
        config = ProgramConfig(workspace_dir=str(tmp_path), openclaw_command="/missing/openclaw")
        resolver = ProviderResolver(config, search_path="")

        provider = await resolver.resolve()

        assert calls[0] == "/missing/openclaw --version"
        assert provider.kind == "openclaw"
        assert provider.command == "openclaw"
        assert provider.version == "2026.2.26"
        assert provider.build == "bc50708"
        assert provider.models == ["openai/gpt-5-codex"]

    @pytest.mark.asyncio
    async def test_configured_models_skip_probe(self, monkeypatch, tmp_path):
        run, calls = fake_commands({"openclaw --version": "OpenClaw 2026.3.1"})
        monkeypatch.setattr(provider_module, "run_command", run)
        config = ProgramConfig(workspace_dir=str(tmp_path), runtime_models=["anthropic/claude-sonnet"])

        provider = await ProviderResolver(config, search_path="").resolve_openclaw_provider()

        assert provider.models == ["anthropic/claude-sonnet"]
        assert provider.build is None
        assert not any("models status" in call for call in calls)

    @pytest.mark.asyncio
    async def test_openclaw_mode_without_models_fails(self, monkeypatch, tmp_path):
        run, _ = fake_commands({"openclaw --version": "OpenClaw 2026.3.1", "openclaw models status --json": "{}"})
        monkeypatch.setattr(provider_module, "run_command", run)
        config = ProgramConfig(workspace_dir=str(tmp_path), runtime_provider="openclaw")

        with pytest.raises(ConfigurationError, match="model inventory is empty"):
            await ProviderResolver(config, search_path="").resolve()

    @pytest.mark.asyncio
    async def test_auto_falls_back_to_external(self, monkeypatch, tmp_path):
        run, _ = fake_commands({"my-agent --version": "my-agent 3.4.1"})
        monkeypatch.setattr(provider_module, "run_command", run)
        config = ProgramConfig(
            workspace_dir=str(tmp_path),
            runtime_command="my-agent",
            runtime_models=["local/qwen"],
        )

        provider = await ProviderResolver(config, search_path="").resolve()

        assert provider.kind == "external"
        assert provider.name == "my-agent"
        assert provider.version == "3.4.1"
        assert isinstance(provider.run_agent, ExternalAgentRunner)

    @pytest.mark.asyncio
    async def test_nothing_available(self, monkeypatch, tmp_path):
        run, _ = fake_commands({})
        monkeypatch.setattr(provider_module, "run_command", run)

        with pytest.raises(ConfigurationError, match="Unable to resolve runtime provider"):
            await ProviderResolver(ProgramConfig(workspace_dir=str(tmp_path)), search_path="").resolve()

    @pytest.mark.asyncio
    async def test_external_requires_models(self, monkeypatch, tmp_path):
        run, _ = fake_commands({"my-agent --version": "1.0.0"})
        monkeypatch.setattr(provider_module, "run_command", run)
        config = ProgramConfig(workspace_dir=str(tmp_path), runtime_provider="external", runtime_command="my-agent")

        with pytest.raises(ConfigurationError, match="runtime_models"):
            await ProviderResolver(config, search_path="").resolve()


class TestExternalAgentRunner:
    @pytest.mark.parametrize(
        "stdout, expected",
        [('{"content": "done"}', "done"), ('"quoted"', "quoted"), ("plain text\n", "plain text"), ("", "")],
    )
    def test_parse_output(self, stdout, expected):
        assert parse_external_agent_output(stdout) == expected

    @posix_only
    @pytest.mark.asyncio
    async def test_runs_stub_command(self, tmp_path):
        stub = write_stub(tmp_path, "agent", 'printf \'{"content": "reply for %s"}\' "$1"')
        runner = ExternalAgentRunner(str(stub))

        result = await runner(AgentRunInput(session_id=3, request_id="r-1", user_text="hi"))

        assert result.content == "reply for --agentmc-input"
        assert result.run_id == "agentmc-3-r-1"
        assert result.status == "ok"


@posix_only
class TestRunCommand:
    """Tests for the subprocess wrapper."""

    @pytest.mark.asyncio
    async def test_captures_output(self):
        output = await run_command("sh", ["-c", "echo out; echo err >&2"])
        assert output == CommandOutput("out\n", "err\n", 0)

    @pytest.mark.asyncio
    async def test_nonzero_exit_hides_output(self):
        with pytest.raises(CommandError) as excinfo:
            await run_command("sh", ["-c", "echo secret-token; exit 3"])
        assert excinfo.value.returncode == 3
        assert "secret-token" not in str(excinfo.value)

        output = await run_command("sh", ["-c", "exit 3"], check=False)
        assert output.returncode == 3

    @pytest.mark.asyncio
    async def test_missing_command_and_timeout(self, tmp_path):
        with pytest.raises(CommandError, match="could not be started"):
            await run_command(str(tmp_path / "missing"), [])

        with pytest.raises(CommandError) as excinfo:
            await run_command("sh", ["-c", "sleep 5"], timeout=0.2)
        assert excinfo.value.timed_out
