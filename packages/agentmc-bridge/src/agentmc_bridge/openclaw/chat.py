"""
Chat bridge: one request/response cycle against the agent runtime.

An OpenClaw run is two gateway calls: ``agent`` submits the message and
``agent.wait`` blocks until the run settles. When the wait response carries
no usable text the reply is recovered from the persisted session transcript.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from ..coerce import non_empty_str
from ..errors import CommandError, GatewayCallError
from ..log_config import get_logger
from ..types import AgentRunInput, AgentRunResult
from .gateway import OpenClawGateway
from .text import (
    FALLBACK_EMPTY_MESSAGE,
    FALLBACK_ERROR_MESSAGE,
    FALLBACK_TIMEOUT_MESSAGE,
    extract_text,
    sanitize_assistant_output_text,
)
from .transcript import read_latest_assistant_text

RunAgent = Callable[[AgentRunInput], Awaitable[Any]]


def default_run_id(session_id: int, request_id: str) -> str:
    return f"agentmc-{session_id}-{request_id}"


class ChatBridge:
    """Drives agent runs for realtime chat and notification requests."""

    def __init__(
        self,
        gateway: OpenClawGateway,
        openclaw_agent: str,
        sessions_path: str,
        submit_timeout_ms: int = 30_000,
        wait_timeout_ms: int = 90_000,
        gateway_timeout_ms: int = 120_000,
        run_agent: RunAgent | None = None,
    ):
        self.gateway = gateway
        self.openclaw_agent = openclaw_agent
        self.sessions_path = sessions_path
        self.submit_timeout_ms = submit_timeout_ms
        self.wait_timeout_ms = wait_timeout_ms
        self.gateway_timeout_ms = gateway_timeout_ms
        self.run_agent = run_agent
        self.log = get_logger("chat_bridge", openclaw_agent=openclaw_agent)

    def session_key(self, session_id: int) -> str:
        return f"agent:{self.openclaw_agent}:agentmc:{session_id}"

    async def run_safely(self, run_input: AgentRunInput) -> AgentRunResult:
        """Run the agent, converting any failure into a fixed, non-identifying reply.

        The exception is logged by type only; its message may echo process
        output or credentials and must not reach published content.
        """
        try:
            return await self.run(run_input)
        except Exception as e:
            result = self.failure_result(run_input, e)
            self.log.warn(
                "chat.run_failed",
                session_id=run_input.session_id,
                request_id=run_input.request_id,
                status=result.status,
                error_type=type(e).__name__,
            )
            return result

    @staticmethod
    def failure_result(run_input: AgentRunInput, error: BaseException) -> AgentRunResult:
        """Map a failed run to the fixed reply for its outcome; ``error`` text is never used."""
        run_id = default_run_id(run_input.session_id, run_input.request_id)
        cause = error.__cause__ if isinstance(error, GatewayCallError) else error
        if isinstance(cause, CommandError) and cause.timed_out:
            return AgentRunResult(run_input.request_id, run_id, "timeout", "wait", FALLBACK_TIMEOUT_MESSAGE)
        return AgentRunResult(run_input.request_id, run_id, "error", "error", FALLBACK_ERROR_MESSAGE)

    async def run(self, run_input: AgentRunInput) -> AgentRunResult:
        if self.run_agent is not None:
            return self.coerce_result(run_input, await self.run_agent(run_input))
        return await self.run_openclaw_chat(run_input)

    @staticmethod
    def coerce_result(run_input: AgentRunInput, result: Any) -> AgentRunResult:
        if isinstance(result, AgentRunResult):
            data = result._asdict()
        elif isinstance(result, dict):
            data = {
                "run_id": result.get("run_id", result.get("runId")),
                "status": result.get("status"),
                "text_source": result.get("text_source", result.get("textSource")),
                "content": result.get("content"),
            }
        else:
            raise TypeError("run_agent must return an AgentRunResult or dict")

        return AgentRunResult(
            request_id=run_input.request_id,
            run_id=non_empty_str(data.get("run_id"))
            or default_run_id(run_input.session_id, run_input.request_id),
            status=non_empty_str(data.get("status")) or "ok",
            text_source=non_empty_str(data.get("text_source")) or "wait",
            content=str(data.get("content") or ""),
        )

    async def run_openclaw_chat(self, run_input: AgentRunInput) -> AgentRunResult:
        run_id = default_run_id(run_input.session_id, run_input.request_id)
        session_key = self.session_key(run_input.session_id)

        submitted = await self.gateway.call(
            "agent",
            {"idempotencyKey": run_id, "sessionKey": session_key, "message": run_input.user_text},
            self.submit_timeout_ms,
        )
        submitted_run_id = (
            non_empty_str(submitted.get("runId"))
            or non_empty_str(submitted.get("run_id"))
            or non_empty_str(submitted.get("id"))
            or run_id
        )

        waited = await self.gateway.call(
            "agent.wait",
            {"runId": submitted_run_id, "timeoutMs": self.wait_timeout_ms},
            self.gateway_timeout_ms,
        )
        raw_status = waited.get("status")
        status = raw_status.strip().lower() if isinstance(raw_status, str) and raw_status.strip() else "ok"

        if status == "timeout":
            return AgentRunResult(
                run_input.request_id, submitted_run_id, "timeout", "wait", FALLBACK_TIMEOUT_MESSAGE
            )

        if status != "ok":
            self.log.warn(
                "chat.wait_failed",
                session_id=run_input.session_id,
                run_id=submitted_run_id,
                wait_status=status,
            )
            return AgentRunResult(
                run_input.request_id, submitted_run_id, "error", "error", FALLBACK_ERROR_MESSAGE
            )

        direct = None
        for key in ("content", "output_text", "text", "message", "response"):
            direct = extract_text(waited.get(key))
            if direct:
                break
        direct_text = sanitize_assistant_output_text(direct)
        if direct_text:
            return AgentRunResult(run_input.request_id, submitted_run_id, "ok", "wait", direct_text)

        history_text = sanitize_assistant_output_text(
            read_latest_assistant_text(self.sessions_path, session_key)
        )
        if history_text:
            return AgentRunResult(
                run_input.request_id, submitted_run_id, "ok", "session_history", history_text
            )

        return AgentRunResult(
            run_input.request_id, submitted_run_id, "ok", "fallback", FALLBACK_EMPTY_MESSAGE
        )
