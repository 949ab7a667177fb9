"""
Long-running agent runtime program.

Ties the pieces together for one agent on one host:

1. sync the instruction bundle (skills, heartbeat interval, agent id)
2. resolve the runtime provider and the agent profile
3. start the realtime bridge
4. loop: poll recurring task runs, re-sync and heartbeat on schedule

State that must survive restarts (agent id, bundle version, last sync and
heartbeat times) lives in a small JSON file under the workspace.
"""

import asyncio
import contextlib
import json
import socket
import time
from pathlib import Path
from typing import Any, NamedTuple

from ..api import AgentMCApi
from ..callbacks import ErrorHandler, call_error_handler
from ..coerce import as_bool, as_dict, as_list, as_positive_int, iso_now, non_empty_str
from ..config import ProgramConfig
from ..errors import ConfigurationError
from ..log_config import get_logger
from ..openclaw.identity import IdentityResolver
from ..openclaw.provider import ProviderResolver
from ..openclaw.telemetry import TelemetryCollector
from ..types import AgentProfile, RuntimeProvider
from .bridge import AgentRealtimeRuntime
from .heartbeat import HostSnapshot, build_heartbeat_body, refresh_profile, resolve_agent_profile
from .host import host_fingerprint, resolve_private_ip, resolve_public_ip
from .recurring import RecurringTaskRunner


class InstructionSync(NamedTuple):
    changed: bool
    heartbeat_interval_seconds: int | None
    agent_id: int | None


class StateStore:
    """JSON object persisted between runs; writes merge into what is already there."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.data: dict[str, Any] = {}

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            self.data = {}
            return self.data
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid state file JSON at {self.path}.") from e
        if not isinstance(parsed, dict):
            raise ConfigurationError(f"Invalid state file JSON at {self.path}.")
        self.data = parsed
        return self.data

    def persist(self, **patch: Any) -> dict[str, Any]:
        merged = {**self.data, **patch}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(merged, indent=2) + "\n", encoding="utf-8")
        self.data = merged
        return merged


class AgentRuntimeProgram:
    """Runs heartbeats, recurring tasks and the realtime bridge for one agent."""

    MIN_LOOP_WAIT_SECONDS = 0.25

    def __init__(
        self,
        config: ProgramConfig,
        api: AgentMCApi | None = None,
        provider_resolver: ProviderResolver | None = None,
        on_error: ErrorHandler | None = None,
    ):
        if api is None:
            if not config.api_key:
                raise ConfigurationError("AgentMC API key is required.")
            api = AgentMCApi(config.api_key, config.base_url)
        self.api = api
        self.config = config
        self.on_error = on_error
        self.providers = provider_resolver or ProviderResolver(config)
        self.state = StateStore(config.state_path or str(Path(config.workspace_dir) / ".agentmc" / "state.json"))

        self.heartbeat_interval_seconds = config.heartbeat_interval_seconds
        self.agent_id: int | None = None
        self.provider: RuntimeProvider | None = None
        self.profile: AgentProfile | None = None
        self.realtime: AgentRealtimeRuntime | None = None
        self.recurring: RecurringTaskRunner | None = None
        self.telemetry: TelemetryCollector | None = None
        self.identity: IdentityResolver | None = None

        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self.log = get_logger("program", agent_id=config.agent_id)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def emit_error(self, error: BaseException, source: str | None = None) -> None:
        if self.on_error is None:
            self.log.error("program.error", source=source, exc=error)
            return
        await call_error_handler(self.on_error, error)

    # Lifecycle

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop())

    async def run(self) -> None:
        await self.start()
        if self._loop_task is not None:
            await self._loop_task

    async def stop(self) -> None:
        self._stop_event.set()
        if self.realtime is not None:
            try:
                await self.realtime.stop()
            except Exception as e:
                await self.emit_error(e, source="realtime.stop")
        if self._loop_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def bootstrap(self) -> int:
        """Load state, sync instructions and resolve provider and profile; returns the agent id."""
        self.state.load()
        synced = await self.sync_instruction_bundle()
        if synced.heartbeat_interval_seconds is not None:
            self.heartbeat_interval_seconds = synced.heartbeat_interval_seconds
        if not self.heartbeat_interval_seconds:
            raise ConfigurationError(
                "Heartbeat interval is missing. Ensure getAgentInstructions returns "
                "defaults.heartbeat_interval_seconds."
            )

        agent_id = self.resolve_agent_id(synced.agent_id)
        self.agent_id = agent_id
        self.log = self.log.bind(agent_id=agent_id)

        self.provider = await self.resolve_provider()
        self.profile = await self.resolve_profile(agent_id)
        self.recurring = RecurringTaskRunner(
            self.api,
            self.config,
            self.provider,
            agent_id,
            sessions_path=self.config.openclaw_sessions_path,
        )
        return agent_id

    async def _run_loop(self) -> None:
        agent_id = await self.bootstrap()
        await self.start_realtime(agent_id)

        try:
            await self.send_heartbeat(await self.build_heartbeat_body())
        except Exception as e:
            await self.emit_error(e, source="heartbeat.startup")

        recurring_interval = float(self.config.recurring_task_poll_interval_seconds)
        next_recurring_at = time.monotonic()
        next_heartbeat_at = time.monotonic() + (self.heartbeat_interval_seconds or 1)

        while not self._stop_event.is_set():
            now = time.monotonic()

            if now >= next_recurring_at:
                try:
                    await self.poll_recurring()
                except Exception as e:
                    await self.emit_error(e, source="recurring.poll")
                finally:
                    next_recurring_at = time.monotonic() + recurring_interval

            if now >= next_heartbeat_at:
                try:
                    await self.heartbeat_cycle(agent_id)
                except Exception as e:
                    await self.emit_error(e, source="heartbeat.cycle")
                finally:
                    next_heartbeat_at = time.monotonic() + (self.heartbeat_interval_seconds or 1)

            now = time.monotonic()
            wait = min(max(0.0, next_heartbeat_at - now), max(0.0, next_recurring_at - now))
            await self._sleep(max(self.MIN_LOOP_WAIT_SECONDS, wait))

    async def heartbeat_cycle(self, agent_id: int) -> None:
        synced = await self.sync_instruction_bundle()
        if synced.heartbeat_interval_seconds is not None:
            self.heartbeat_interval_seconds = synced.heartbeat_interval_seconds
        if synced.changed:
            await self.restart_realtime(agent_id)
        await self.send_heartbeat(await self.build_heartbeat_body())

    async def poll_recurring(self) -> int:
        if self.recurring is None:
            return 0
        return await self.recurring.poll()

    # Instructions and state

    async def sync_instruction_bundle(self) -> InstructionSync:
        result = await self.api.get_agent_instructions(non_empty_str(self.state.data.get("bundle_version")))
        result.raise_for_error("getAgentInstructions")

        payload = as_dict(result.data) or {}
        changed = as_bool(payload.get("changed")) is True
        bundle_version = non_empty_str(payload.get("bundle_version"))
        agent_id = as_positive_int((as_dict(payload.get("agent")) or {}).get("id"))
        interval = as_positive_int((as_dict(payload.get("defaults")) or {}).get("heartbeat_interval_seconds"))

        if changed:
            written = 0
            for entry in as_list(payload.get("files")) or []:
                row = as_dict(entry) or {}
                path = non_empty_str(row.get("path"))
                content = row.get("content")
                if not path or not isinstance(content, str):
                    continue
                self.write_managed_file(path, content)
                written += 1
            self.log.info("instructions.synced", bundle_version=bundle_version, files=written)

        self.state.persist(
            agent_id=agent_id or self.state.data.get("agent_id"),
            bundle_version=bundle_version or self.state.data.get("bundle_version"),
            last_skill_sync_at=iso_now(),
        )
        return InstructionSync(changed=changed, heartbeat_interval_seconds=interval, agent_id=agent_id)

    def write_managed_file(self, relative_path: str, content: str) -> Path:
        workspace = Path(self.config.workspace_dir).resolve()
        destination = (workspace / relative_path).resolve()
        if destination != workspace and workspace not in destination.parents:
            raise ConfigurationError(f"Refusing to write managed file outside workspace: {relative_path}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(content, encoding="utf-8")
        return destination

    def resolve_agent_id(self, from_instructions: int | None = None) -> int:
        """Configured id, then the persisted one, then the id the instructions report."""
        from_state = as_positive_int(self.state.data.get("agent_id"))
        resolved = self.config.agent_id or from_state or from_instructions
        if not resolved:
            raise ConfigurationError(
                "Agent id is missing. Ensure getAgentInstructions returns agent.id or "
                f"{self.state.path} includes a valid agent_id."
            )
        if from_state != resolved:
            self.state.data["agent_id"] = resolved
        return resolved

    # Provider and profile

    async def resolve_provider(self) -> RuntimeProvider:
        provider = await self.providers.resolve()
        if provider.kind == "openclaw" and provider.command:
            self.identity = IdentityResolver(
                provider.command,
                self.config.workspace_dir,
                agent_key=self.config.openclaw_agent,
                config_path=self.config.openclaw_config_path,
                sessions_path=self.config.openclaw_sessions_path,
            )
            provider.identity_resolver = self.identity.resolve
            self.telemetry = TelemetryCollector(provider.command)
        self.log.info(
            "provider.resolved",
            kind=provider.kind,
            name=provider.name,
            version=provider.version,
            models=len(provider.models),
        )
        return provider

    async def _machine_snapshot(self, fallback_name: str | None):
        if self.provider is None or self.provider.identity_resolver is None:
            return None
        return await self.provider.identity_resolver(fallback_name)

    async def resolve_profile(self, agent_id: int) -> AgentProfile:
        fallback_name = non_empty_str(self.config.agent_name) or f"agent-{agent_id}"
        workspace_identity = IdentityResolver(None, self.config.workspace_dir).from_workspace_markdown()
        snapshot = await self._machine_snapshot(fallback_name)
        return resolve_agent_profile(agent_id, self.config, snapshot, workspace_identity)

    async def refresh_profile(self) -> None:
        if self.profile is None:
            return
        self.profile = refresh_profile(self.profile, await self._machine_snapshot(self.profile.name))

    # Realtime

    async def start_realtime(self, agent_id: int) -> AgentRealtimeRuntime:
        overrides: dict[str, Any] = {"runtime_source": "agent-runtime"}
        if self.provider is not None and self.provider.kind == "openclaw" and self.provider.command:
            overrides["openclaw_command"] = self.provider.command

        runtime = AgentRealtimeRuntime(
            self.api,
            self.config.realtime_config(agent_id, **overrides),
            run_agent=self.provider.run_agent if self.provider else None,
            on_error=lambda error: self.emit_error(error, source="realtime.runtime"),
            on_session_ready=lambda session: self.log.info(
                "realtime.session_ready", session_id=(as_dict(session) or {}).get("id")
            ),
            on_session_closed=lambda session_id, reason: self.log.info(
                "realtime.session_closed", session_id=session_id, reason=reason
            ),
        )
        self.realtime = runtime
        await runtime.start()
        self.log.info("realtime.started", provider=self.provider.kind if self.provider else None)
        return runtime

    async def restart_realtime(self, agent_id: int) -> None:
        if self.realtime is not None:
            await self.realtime.stop()
            self.realtime = None
        await self.start_realtime(agent_id)

    # Heartbeat

    async def collect_host(self) -> HostSnapshot:
        name = non_empty_str(self.config.host_name) or socket.gethostname()
        private_ip = resolve_private_ip()
        public_ip = await resolve_public_ip(self.config.public_ip, self.config.public_ip_endpoint, private_ip)
        fingerprint = non_empty_str(self.config.host_fingerprint) or host_fingerprint(name, private_ip, public_ip)
        return HostSnapshot(name=name, private_ip=private_ip, public_ip=public_ip, fingerprint=fingerprint)

    async def build_heartbeat_body(self) -> dict[str, Any]:
        await self.refresh_profile()
        if self.provider is None or self.profile is None:
            raise ConfigurationError("Runtime provider and agent profile must be initialized before heartbeat.")

        host = await self.collect_host()
        telemetry = await self.telemetry.collect(self.provider) if self.telemetry else {}
        status = self.realtime.get_status() if self.realtime else {}
        return build_heartbeat_body(self.provider, self.profile, host, telemetry, status)

    async def send_heartbeat(self, body: dict[str, Any]) -> dict[str, Any]:
        fingerprint = non_empty_str((as_dict(body.get("host")) or {}).get("fingerprint"))
        if not fingerprint:
            raise ConfigurationError("Heartbeat host fingerprint is missing.")

        result = await self.api.heartbeat(body, fingerprint)
        result.raise_for_error("agentHeartbeat")

        sent_at = iso_now()
        self.state.persist(last_heartbeat_at=sent_at)
        host = as_dict((as_dict(result.data) or {}).get("host")) or {}
        self.log.info(
            "heartbeat.sent",
            at=sent_at,
            host_status=non_empty_str(host.get("status")),
            runtime=(as_dict(body.get("meta")) or {}).get("runtime"),
        )
        return as_dict(result.data) or {}
