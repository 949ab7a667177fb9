"""Tests for OpenClaw gateway calls and the chat bridge run cycle."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentmc_bridge.errors import CommandError, GatewayCallError
from agentmc_bridge.openclaw import gateway as gateway_module
from agentmc_bridge.openclaw.chat import ChatBridge, default_run_id
from agentmc_bridge.openclaw.gateway import (
    OpenClawGateway,
    merge_gateway_response,
    parse_gateway_json,
)
from agentmc_bridge.openclaw.text import (
    FALLBACK_EMPTY_MESSAGE,
    FALLBACK_ERROR_MESSAGE,
    FALLBACK_TIMEOUT_MESSAGE,
)
from agentmc_bridge.process import CommandOutput
from agentmc_bridge.types import AgentRunInput, AgentRunResult


def make_bridge(tmp_path, responses=None, side_effect=None, run_agent=None) -> ChatBridge:
    gateway = MagicMock(spec=OpenClawGateway)
    gateway.call = AsyncMock(side_effect=side_effect if side_effect is not None else responses)
    return ChatBridge(
        gateway=gateway,
        openclaw_agent="main",
        sessions_path=str(tmp_path / "sessions.json"),
        run_agent=run_agent,
    )


RUN_INPUT = AgentRunInput(session_id=42, request_id="req-1", user_text="hello")


class TestGatewayParsing:
    """Tests for gateway output parsing and run id precedence."""

    def test_banner_lines_before_json(self):
        stdout = "OpenClaw 2026.3.1\nconnecting...\n" + json.dumps({"runId": "r-1"})
        assert parse_gateway_json(stdout) == {"runId": "r-1"}

    def test_empty_output_raises(self):
        with pytest.raises(GatewayCallError, match="Empty"):
            parse_gateway_json("  ")

    def test_unparseable_output_raises(self):
        with pytest.raises(GatewayCallError, match="not parseable"):
            parse_gateway_json("no json here")

    def test_top_level_run_id_wins(self):
        merged = merge_gateway_response({"runId": "top", "result": {"runId": "nested"}})
        assert merged["runId"] == "top"

    def test_nested_result_is_flattened(self):
        merged = merge_gateway_response({"ok": True, "result": {"runId": "nested", "status": "ok"}})
        assert merged["runId"] == "nested"
        assert merged["status"] == "ok"

    @pytest.mark.asyncio
    async def test_call_builds_cli_args(self, monkeypatch):
        run_command = AsyncMock(return_value=CommandOutput(stdout='{"status":"ok"}', stderr="", returncode=0))
        monkeypatch.setattr(gateway_module, "run_command", run_command)

        result = await OpenClawGateway("openclaw").call("agent.wait", {"runId": "r-1"}, 1_000)

        assert result == {"status": "ok"}
        command, args = run_command.call_args.args
        assert command == "openclaw"
        assert args[:6] == ["gateway", "call", "agent.wait", "--json", "--timeout", "1000"]
        assert json.loads(args[-1]) == {"runId": "r-1"}
        assert run_command.call_args.kwargs["timeout"] == 6.0

    @pytest.mark.asyncio
    async def test_call_wraps_command_errors(self, monkeypatch):
        error = CommandError("openclaw timed out after 6.0s", timed_out=True)
        monkeypatch.setattr(gateway_module, "run_command", AsyncMock(side_effect=error))

        with pytest.raises(GatewayCallError) as excinfo:
            await OpenClawGateway("openclaw").call("agent", {}, 1_000)
        assert excinfo.value.__cause__ is error


class TestChatBridgeRun:
    """Tests for the submit/wait cycle and its fallbacks."""

    @pytest.mark.asyncio
    async def test_uses_wait_text(self, tmp_path):
        bridge = make_bridge(
            tmp_path,
            responses=[{"runId": "run-9"}, {"status": "ok", "content": "[[reply_to_current]] Hi!"}],
        )
        result = await bridge.run(RUN_INPUT)

        assert result == AgentRunResult("req-1", "run-9", "ok", "wait", "Hi!")
        submit_params = bridge.gateway.call.call_args_list[0].args[1]
        assert submit_params["idempotencyKey"] == "agentmc-42-req-1"
        assert submit_params["sessionKey"] == "agent:main:agentmc:42"
        wait_params = bridge.gateway.call.call_args_list[1].args[1]
        assert wait_params == {"runId": "run-9", "timeoutMs": 90_000}

    @pytest.mark.asyncio
    async def test_control_tag_only_reply_falls_back_to_history(self, tmp_path):
        (tmp_path / "sessions.json").write_text(
            json.dumps(
                {
                    "sessions": {
                        "agent:main:agentmc:42": {
                            "messages": [{"role": "assistant", "content": "From history"}]
                        }
                    }
                }
            )
        )
        bridge = make_bridge(tmp_path, responses=[{}, {"status": "ok", "content": "[[reply_to_current]]"}])

        result = await bridge.run(RUN_INPUT)

        assert result.run_id == default_run_id(42, "req-1")
        assert result.text_source == "session_history"
        assert result.content == "From history"

    @pytest.mark.asyncio
    async def test_no_text_anywhere(self, tmp_path):
        bridge = make_bridge(tmp_path, responses=[{"runId": "r"}, {"status": "ok"}])
        result = await bridge.run(RUN_INPUT)
        assert result.text_source == "fallback"
        assert result.content == FALLBACK_EMPTY_MESSAGE

    @pytest.mark.asyncio
    async def test_wait_timeout(self, tmp_path):
        bridge = make_bridge(tmp_path, responses=[{"runId": "r"}, {"status": "timeout"}])
        result = await bridge.run(RUN_INPUT)
        assert result.status == "timeout"
        assert result.content == FALLBACK_TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_wait_error_status(self, tmp_path):
        bridge = make_bridge(tmp_path, responses=[{"runId": "r"}, {"status": "failed", "error": "boom"}])
        result = await bridge.run(RUN_INPUT)
        assert result.status == "error"
        assert result.content == FALLBACK_ERROR_MESSAGE


class TestChatBridgeFailures:
    """Failures never leak exception text into the reply."""

    @pytest.mark.asyncio
    async def test_gateway_error_becomes_fixed_reply(self, tmp_path):
        bridge = make_bridge(tmp_path, side_effect=GatewayCallError("token=sk-secret rejected"))
        result = await bridge.run_safely(RUN_INPUT)

        assert result.status == "error"
        assert result.content == FALLBACK_ERROR_MESSAGE
        assert "sk-secret" not in result.content

    @pytest.mark.asyncio
    async def test_process_timeout_maps_to_timeout(self, tmp_path):
        cause = CommandError("openclaw timed out", timed_out=True)
        error = GatewayCallError("openclaw gateway call agent failed")
        error.__cause__ = cause
        bridge = make_bridge(tmp_path, side_effect=error)

        result = await bridge.run_safely(RUN_INPUT)

        assert result.status == "timeout"
        assert result.content == FALLBACK_TIMEOUT_MESSAGE


class TestCustomRunAgent:
    """Tests for caller-supplied run_agent results."""

    @pytest.mark.asyncio
    async def test_dict_result_is_coerced(self, tmp_path):
        run_agent = AsyncMock(return_value={"runId": "custom-1", "content": "Done"})
        bridge = make_bridge(tmp_path, run_agent=run_agent)

        result = await bridge.run(RUN_INPUT)

        assert result == AgentRunResult("req-1", "custom-1", "ok", "wait", "Done")
        bridge.gateway.call.assert_not_called()

    def test_invalid_result_type(self):
        with pytest.raises(TypeError):
            ChatBridge.coerce_result(RUN_INPUT, "plain text")
