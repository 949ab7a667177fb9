"""
Recurring task runs.

AgentMC schedules recurring tasks server-side and hands due runs to the
agent as claims. Each claim is executed as one agent turn and reported back
with ``completeRecurringTaskRun``, success or not, so the server never has
to time a claim out.
"""

import time
from datetime import datetime, timezone
from typing import Any, NamedTuple

from ..api import AgentMCApi
from ..coerce import as_dict, as_list, as_positive_int, non_empty_str, to_base36
from ..config import ProgramConfig
from ..errors import AgentMCError, ConfigurationError
from ..log_config import get_logger
from ..openclaw.chat import ChatBridge
from ..openclaw.gateway import OpenClawGateway
from ..openclaw.text import extract_text, sanitize_assistant_output_text
from ..openclaw.transcript import read_latest_assistant_text
from ..prompts import build_recurring_task_message, summarize_run_text, truncate_utf8
from ..types import AgentRunInput, AgentRunResult, RuntimeProvider

AGENT_RESPONSE_MAX_BYTES = 24_000
SUBMIT_TIMEOUT_MS = 30_000

EMPTY_PROMPT_MESSAGE = "Recurring task prompt is empty."
TIMEOUT_MESSAGE = "Recurring task execution timed out while waiting for completion."
NO_TEXT_MESSAGE = "Recurring task run completed, but no assistant response text was returned."

_WAIT_TEXT_KEYS = ("content", "output_text", "text", "message", "response")


class ClaimedRun(NamedTuple):
    run_id: int
    task_id: int
    prompt: str
    claim_token: str
    scheduled_for: str | None = None
    agent_id: int | None = None

    @classmethod
    def from_payload(cls, value: Any) -> "ClaimedRun | None":
        """Parse one due-run row; None when a required field is missing."""
        row = as_dict(value)
        if row is None:
            return None
        run_id = as_positive_int(row.get("run_id"))
        task_id = as_positive_int(row.get("task_id"))
        claim_token = non_empty_str(row.get("claim_token"))
        prompt = row.get("prompt")
        if not run_id or not task_id or not claim_token or not isinstance(prompt, str):
            return None
        return cls(
            run_id=run_id,
            task_id=task_id,
            prompt=prompt,
            claim_token=claim_token,
            scheduled_for=non_empty_str(row.get("scheduled_for")),
            agent_id=as_positive_int(row.get("agent_id")),
        )


class RunOutcome(NamedTuple):
    status: str
    summary: str | None
    error_message: str | None
    runtime_meta: dict[str, Any]


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _wait_text(response: dict[str, Any]) -> str | None:
    for key in _WAIT_TEXT_KEYS:
        text = sanitize_assistant_output_text(extract_text(response.get(key)))
        if text:
            return text
    return None


class RecurringTaskRunner:
    """Claims due recurring runs and executes them against the runtime provider."""

    def __init__(
        self,
        api: AgentMCApi,
        config: ProgramConfig,
        provider: RuntimeProvider,
        agent_id: int,
        sessions_path: str | None = None,
    ):
        self.api = api
        self.config = config
        self.provider = provider
        self.agent_id = agent_id
        self.sessions_path = sessions_path
        self.log = get_logger("recurring", agent_id=agent_id)

    async def poll(self) -> int:
        """Run every claimed due run; returns how many were executed."""
        result = await self.api.list_due_recurring_task_runs(self.config.recurring_task_poll_limit)
        result.raise_for_error("listDueRecurringTaskRuns")

        rows = as_list((as_dict(result.data) or {}).get("data")) or []
        if not rows:
            return 0
        self.log.info("recurring.claimed", count=len(rows), limit=self.config.recurring_task_poll_limit)

        executed = 0
        for row in rows:
            claimed = ClaimedRun.from_payload(row)
            if claimed is None:
                self.log.error("recurring.claim_malformed")
                continue
            if claimed.agent_id is not None and claimed.agent_id != self.agent_id:
                self.log.error(
                    "recurring.claim_wrong_agent",
                    run_id=claimed.run_id,
                    actual_agent_id=claimed.agent_id,
                )
                continue
            try:
                await self.execute(claimed)
            except AgentMCError as e:
                self.log.error("recurring.run_failed", run_id=claimed.run_id, task_id=claimed.task_id, exc=e)
                continue
            executed += 1
        return executed

    async def execute(self, claimed: ClaimedRun) -> RunOutcome:
        started_at = utc_iso()
        try:
            outcome = await self.run_prompt(claimed)
        except Exception as e:
            # Only the type is reported; messages may carry process output.
            outcome = RunOutcome(
                status="error",
                summary=None,
                error_message=f"Recurring task execution failed ({type(e).__name__}).",
                runtime_meta=self._provider_meta(),
            )
            self.log.warn("recurring.prompt_failed", run_id=claimed.run_id, error_type=type(e).__name__)
            self.log.debug("recurring.prompt_failed_detail", run_id=claimed.run_id, exc=e)

        body = {
            "status": outcome.status,
            "claim_token": claimed.claim_token,
            "summary": outcome.summary,
            "error_message": outcome.error_message,
            "started_at": started_at,
            "finished_at": utc_iso(),
            "runtime_meta": outcome.runtime_meta,
        }
        result = await self.api.complete_recurring_task_run(claimed.run_id, body)
        result.raise_for_error("completeRecurringTaskRun")

        self.log.info(
            "recurring.completed", run_id=claimed.run_id, task_id=claimed.task_id, status=outcome.status
        )
        return outcome

    def _provider_meta(self) -> dict[str, Any]:
        return {
            "provider": self.provider.name,
            "provider_kind": self.provider.kind,
            "provider_version": self.provider.version,
        }

    async def run_prompt(self, claimed: ClaimedRun) -> RunOutcome:
        request_id = f"recurring-{claimed.run_id}-{to_base36(int(time.time() * 1000))}"
        prompt = claimed.prompt.strip()
        if not prompt:
            return RunOutcome(
                status="error",
                summary=None,
                error_message=EMPTY_PROMPT_MESSAGE,
                runtime_meta={
                    "request_id": request_id,
                    "provider": self.provider.name,
                    "provider_kind": self.provider.kind,
                },
            )

        run_input = AgentRunInput(
            session_id=claimed.task_id,
            request_id=request_id,
            user_text=build_recurring_task_message(prompt),
        )
        if self.provider.run_agent is not None:
            run = ChatBridge.coerce_result(run_input, await self.provider.run_agent(run_input))
        elif self.provider.kind == "openclaw":
            run = await self.run_openclaw(run_input, claimed)
        else:
            raise ConfigurationError(
                f"Runtime provider {self.provider.kind} does not support recurring task execution."
            )

        runtime_meta: dict[str, Any] = {
            "request_id": request_id,
            "run_id": non_empty_str(run.run_id) or f"agentmc-recurring-{claimed.run_id}",
            "runtime_status": run.status,
            "text_source": run.text_source,
            **self._provider_meta(),
            "scheduled_for": claimed.scheduled_for,
            "task_id": claimed.task_id,
        }
        stored, stored_bytes, truncated = truncate_utf8(run.content, AGENT_RESPONSE_MAX_BYTES)
        if stored is not None:
            runtime_meta["agent_response"] = stored
            runtime_meta["agent_response_bytes"] = stored_bytes
            runtime_meta["agent_response_truncated"] = truncated

        summary = summarize_run_text(run.content)
        if run.status == "ok":
            return RunOutcome("success", summary, None, runtime_meta)
        return RunOutcome(
            "error", None, summary or f'Runtime execution returned status "{run.status}".', runtime_meta
        )

    async def run_openclaw(self, run_input: AgentRunInput, claimed: ClaimedRun) -> AgentRunResult:
        if not self.provider.command:
            raise ConfigurationError("OpenClaw command resolution returned no executable command.")
        gateway = OpenClawGateway(self.provider.command)
        execution_id = f"agentmc-recurring-{claimed.run_id}"
        session_key = f"agent:{self.agent_id}:agentmc:recurring:{claimed.task_id}"

        submitted = await gateway.call(
            "agent",
            {"idempotencyKey": execution_id, "sessionKey": session_key, "message": run_input.user_text},
            SUBMIT_TIMEOUT_MS,
        )
        run_id = (
            non_empty_str(submitted.get("runId"))
            or non_empty_str(submitted.get("run_id"))
            or non_empty_str(submitted.get("id"))
            or execution_id
        )

        waited = await gateway.call(
            "agent.wait",
            {"runId": run_id, "timeoutMs": self.config.recurring_task_wait_timeout_ms},
            self.config.recurring_task_gateway_timeout_ms,
        )
        status = (non_empty_str(waited.get("status")) or "ok").lower()
        text = _wait_text(waited)

        if status == "timeout":
            return AgentRunResult(run_input.request_id, run_id, "timeout", "wait", text or TIMEOUT_MESSAGE)
        if status != "ok":
            return AgentRunResult(
                run_input.request_id,
                run_id,
                "error",
                "error",
                text or f'OpenClaw recurring execution failed with status "{status}".',
            )
        if text:
            return AgentRunResult(run_input.request_id, run_id, "ok", "wait", text)

        history = None
        if self.sessions_path:
            history = sanitize_assistant_output_text(read_latest_assistant_text(self.sessions_path, session_key))
        if history:
            return AgentRunResult(run_input.request_id, run_id, "ok", "session_history", history)
        return AgentRunResult(run_input.request_id, run_id, "ok", "fallback", NO_TEXT_MESSAGE)
