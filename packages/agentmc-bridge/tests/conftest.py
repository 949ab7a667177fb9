"""Shared fixtures: an in-memory AgentMC API and runtime configs rooted in tmp_path."""

from typing import Any

import pytest

from agentmc_bridge.api import ApiResult
from agentmc_bridge.config import ProgramConfig, RealtimeRuntimeConfig


def ok(data: Any = None, status: int = 200) -> ApiResult:
    return ApiResult(data=data if data is not None else {}, error=None, status=status)


def failed(status: int, error: Any = None) -> ApiResult:
    return ApiResult(data=None, error=error if error is not None else {"message": "failed"}, status=status)


class FakeApi:
    """Records every call; responses are queued per operation."""

    def __init__(self):
        self.created_signals: list[dict[str, Any]] = []
        self.read_notifications: list[str] = []
        self.closed_sessions: list[tuple[int, str, str]] = []
        self.signal_polls: list[dict[str, Any]] = []
        self.heartbeats: list[tuple[dict[str, Any], str]] = []
        self.completed_runs: list[tuple[int, dict[str, Any]]] = []
        self.instruction_requests: list[str | None] = []
        self.socket_auth_requests: list[tuple[int, str, str]] = []

        self.create_signal_result: ApiResult | None = None
        self.mark_read_result: ApiResult = ok()
        self.close_result: ApiResult = ok()
        self.signal_results: list[ApiResult] = []
        self.requested_sessions: ApiResult = ok({"data": []})
        self.instructions: ApiResult = ok({"changed": False, "defaults": {"heartbeat_interval_seconds": 60}})
        self.heartbeat_result: ApiResult = ok({"host": {"status": "online"}})
        self.due_runs: ApiResult = ok({"data": []})
        self.complete_result: ApiResult = ok()
        self.claim_result: ApiResult = ok({"data": {"id": 5}})
        self.socket_auth_result: ApiResult = ok({"auth": "app-key:signature"})

    async def create_signal(self, session_id: int, signal_type: str, payload: dict[str, Any]) -> ApiResult:
        self.created_signals.append({"session_id": session_id, "type": signal_type, "payload": payload})
        if self.create_signal_result is not None:
            return self.create_signal_result
        return ok({"data": {"id": len(self.created_signals)}}, status=201)

    async def mark_notification_read(self, notification_id: str) -> ApiResult:
        self.read_notifications.append(notification_id)
        return self.mark_read_result

    async def close_session(self, session_id: int, reason: str, status: str) -> ApiResult:
        self.closed_sessions.append((session_id, reason, status))
        return self.close_result

    async def list_signals(
        self, session_id: int, after_id: int | None, exclude_sender: str | None, limit: int
    ) -> ApiResult:
        self.signal_polls.append(
            {"session_id": session_id, "after_id": after_id, "exclude_sender": exclude_sender, "limit": limit}
        )
        if self.signal_results:
            return self.signal_results.pop(0)
        return ok({"data": []})

    async def claim_session(self, session_id: int) -> ApiResult:
        return self.claim_result

    async def authenticate_socket(self, session_id: int, socket_id: str, channel_name: str) -> ApiResult:
        self.socket_auth_requests.append((session_id, socket_id, channel_name))
        return self.socket_auth_result

    async def list_requested_sessions(self, limit: int) -> ApiResult:
        return self.requested_sessions

    async def get_agent_instructions(self, current_bundle_version: str | None = None) -> ApiResult:
        self.instruction_requests.append(current_bundle_version)
        return self.instructions

    async def heartbeat(self, body: dict[str, Any], host_fingerprint: str) -> ApiResult:
        self.heartbeats.append((body, host_fingerprint))
        return self.heartbeat_result

    async def list_due_recurring_task_runs(self, limit: int) -> ApiResult:
        return self.due_runs

    async def complete_recurring_task_run(self, run_id: int, body: dict[str, Any]) -> ApiResult:
        self.completed_runs.append((run_id, body))
        return self.complete_result

    async def aclose(self) -> None:
        pass

    def published(self, channel_type: str) -> list[dict[str, Any]]:
        """Bodies of every channel message published with ``channel_type``."""
        return [
            entry["payload"]["payload"]
            for entry in self.created_signals
            if entry["payload"].get("type") == channel_type
        ]


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def realtime_config(tmp_path) -> RealtimeRuntimeConfig:
    return RealtimeRuntimeConfig(
        agent_id=7,
        runtime_docs_directory=str(tmp_path),
        openclaw_sessions_path=str(tmp_path / "sessions.json"),
    )


@pytest.fixture
def program_config(tmp_path) -> ProgramConfig:
    return ProgramConfig(api_key="test-key", agent_id=7, workspace_dir=str(tmp_path))
