"""
AgentMC REST client.

Only the operations the bridge needs are declared. Every call returns an
:class:`ApiResult` instead of raising on HTTP errors, so callers can react to
specific statuses (429 backoff, 404 session gone) and redact everything else
through :func:`agentmc_bridge.errors.create_operation_error`.
"""

from typing import Any, ClassVar, NamedTuple
from urllib.parse import quote

import httpx

from .. import __version__
from ..config import DEFAULT_API_BASE_URL, normalize_api_base_url
from ..errors import ConfigurationError, create_operation_error


class Operation(NamedTuple):
    method: str
    path: str


class ApiResult(NamedTuple):
    """Outcome of one REST operation."""

    data: Any
    error: Any
    status: int

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self, operation_id: str) -> None:
        if self.error is not None:
            raise create_operation_error(operation_id, self.status, self.error)


OPERATIONS: dict[str, Operation] = {
    "listAgentRealtimeRequestedSessions": Operation("GET", "/agent/realtime/sessions/requested"),
    "claimAgentRealtimeSession": Operation("POST", "/agent/realtime/sessions/{session}/claim"),
    "closeAgentRealtimeSession": Operation("POST", "/agent/realtime/sessions/{session}/close"),
    "authenticateAgentRealtimeSocket": Operation("POST", "/agent/realtime/sessions/{session}/socket/auth"),
    "listAgentRealtimeSignals": Operation("GET", "/agent/realtime/sessions/{session}/signals"),
    "createAgentRealtimeSignal": Operation("POST", "/agent/realtime/sessions/{session}/signals"),
    "markNotificationRead": Operation("POST", "/notifications/{notification}/read"),
    "getAgentInstructions": Operation("GET", "/agent/instructions"),
    "agentHeartbeat": Operation("POST", "/agent/heartbeat"),
    "listDueRecurringTaskRuns": Operation("GET", "/agent/recurring-task-runs/due"),
    "completeRecurringTaskRun": Operation("POST", "/agent/recurring-task-runs/{run}/complete"),
}


class AgentMCApi:
    """Async client for the AgentMC agent API, authenticated with ``X-Api-Key``."""

    DEFAULT_TIMEOUT = 30.0
    USER_AGENT: ClassVar[str] = f"agentmc-bridge/{__version__}"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not api_key or not api_key.strip():
            raise ConfigurationError("AgentMC API key is required.")
        self.base_url = normalize_api_base_url(base_url)
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={"Accept": "application/json", "User-Agent": self.USER_AGENT},
        )
        self._api_key = api_key.strip()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "AgentMCApi":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def request(
        self,
        operation_id: str,
        path: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> ApiResult:
        operation = OPERATIONS.get(operation_id)
        if operation is None:
            raise ValueError(f"Unknown operationId: {operation_id}")

        url = self.base_url + self._format_path(operation_id, operation.path, path or {})
        params = {key: value for key, value in (query or {}).items() if value is not None}
        request_headers = {"X-Api-Key": self._api_key, **(headers or {})}

        response = await self.http_client.request(
            operation.method,
            url,
            params=params or None,
            json=body,
            headers=request_headers,
        )
        payload = self._decode(response)
        if response.is_success:
            return ApiResult(data=payload, error=None, status=response.status_code)
        return ApiResult(
            data=None,
            error=payload if payload is not None else {"status": response.status_code},
            status=response.status_code,
        )

    @staticmethod
    def _format_path(operation_id: str, template: str, values: dict[str, Any]) -> str:
        try:
            return template.format(**{key: quote(str(value), safe="") for key, value in values.items()})
        except KeyError as e:
            raise ValueError(f"Missing required parameters for {operation_id}: path.{e.args[0]}.") from e

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # Realtime sessions

    async def list_requested_sessions(self, limit: int) -> ApiResult:
        return await self.request("listAgentRealtimeRequestedSessions", query={"limit": limit})

    async def claim_session(self, session_id: int) -> ApiResult:
        return await self.request("claimAgentRealtimeSession", path={"session": session_id}, body={})

    async def close_session(self, session_id: int, reason: str, status: str) -> ApiResult:
        return await self.request(
            "closeAgentRealtimeSession",
            path={"session": session_id},
            body={"reason": reason, "status": status},
        )

    async def authenticate_socket(self, session_id: int, socket_id: str, channel_name: str) -> ApiResult:
        return await self.request(
            "authenticateAgentRealtimeSocket",
            path={"session": session_id},
            body={"socket_id": socket_id, "channel_name": channel_name},
        )

    async def list_signals(
        self,
        session_id: int,
        after_id: int | None,
        exclude_sender: str | None,
        limit: int,
    ) -> ApiResult:
        return await self.request(
            "listAgentRealtimeSignals",
            path={"session": session_id},
            query={"after_id": after_id, "exclude_sender": exclude_sender, "limit": limit},
        )

    async def create_signal(self, session_id: int, signal_type: str, payload: dict[str, Any]) -> ApiResult:
        return await self.request(
            "createAgentRealtimeSignal",
            path={"session": session_id},
            body={"type": signal_type, "payload": payload},
        )

    # Notifications

    async def mark_notification_read(self, notification_id: str) -> ApiResult:
        return await self.request("markNotificationRead", path={"notification": notification_id}, body={})

    # Agent lifecycle

    async def get_agent_instructions(self, current_bundle_version: str | None = None) -> ApiResult:
        return await self.request(
            "getAgentInstructions", query={"current_bundle_version": current_bundle_version}
        )

    async def heartbeat(self, body: dict[str, Any], host_fingerprint: str) -> ApiResult:
        return await self.request(
            "agentHeartbeat", body=body, headers={"X-Host-Fingerprint": host_fingerprint}
        )

    async def list_due_recurring_task_runs(self, limit: int) -> ApiResult:
        return await self.request("listDueRecurringTaskRuns", query={"limit": limit})

    async def complete_recurring_task_run(self, run_id: int, body: dict[str, Any]) -> ApiResult:
        return await self.request("completeRecurringTaskRun", path={"run": run_id}, body=body)
