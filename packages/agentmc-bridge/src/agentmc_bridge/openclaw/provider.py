"""
Runtime provider resolution.

Finds which agent runtime is installed on the host: an OpenClaw CLI (the
default) or an external command the operator points at. For OpenClaw the
executable is searched in order:

1. the configured ``openclaw_command``
2. ``openclaw`` executables found on ``PATH``
3. a configured ``runtime_command`` whose name looks like OpenClaw
4. the bare command name and a few well-known install paths
"""

import json
import os
import re
import sys
from pathlib import Path
from typing import Any

from ..coerce import as_dict, as_list, non_empty_str
from ..config import ProgramConfig
from ..errors import CommandError, ConfigurationError
from ..log_config import get_logger
from ..process import run_command
from ..types import AgentRunInput, AgentRunResult, RuntimeProvider
from .chat import default_run_id
from .output import first_non_empty_line, parse_command_json, parse_json_text

DEFAULT_OPENCLAW_COMMAND = "openclaw"
OPENCLAW_COMMAND_FALLBACK_PATHS: tuple[str, ...] = (
    "/usr/bin/openclaw",
    "/usr/local/bin/openclaw",
    "/opt/homebrew/bin/openclaw",
    "/bin/openclaw",
)
MODELS_STATUS_ARGS: tuple[str, ...] = ("models", "status", "--json")

VERSION_PROBE_TIMEOUT_SECONDS = 10.0
MODELS_PROBE_TIMEOUT_SECONDS = 15.0
EXTERNAL_RUN_TIMEOUT_SECONDS = 600.0

_VERSION_TOKEN = re.compile(r"\b\d+\.\d+(?:\.\d+)?(?:[-+][A-Za-z0-9._-]+)?\b")
_PAREN_BUILD = re.compile(r"\(([A-Za-z0-9._-]{5,})\)")
_HASH_BUILD = re.compile(r"\b[a-f0-9]{7,40}\b", re.IGNORECASE)
_EXTENSION = re.compile(r"\.[^.]+$")
_WHITESPACE = re.compile(r"\s")
_MODEL_FAMILY = re.compile(
    r"(?:gpt|claude|gemini|llama|mistral|qwen|deepseek|sonnet|haiku|opus|o[134])"
)

_MODEL_SCALAR_KEYS = frozenset(
    {"model", "modelid", "modelname", "primary", "default", "defaultmodel", "resolveddefault"}
)
_MODEL_COLLECTION_KEYS = frozenset(
    {"allowed", "models", "fallbacks", "availablemodels", "modelinventory", "runtimemodels"}
)
_MODEL_COLLECTION_FIELD_KEYS = frozenset(
    {"id", "model", "modelid", "name", "key", "slug", "identifier"}
)


def extract_version_token(line: str) -> str | None:
    match = _VERSION_TOKEN.search(line)
    return match.group(0) if match else None


def extract_build_token(line: str) -> str | None:
    """``OpenClaw 2026.2.26 (bc50708)`` -> ``bc50708``."""
    paren = _PAREN_BUILD.search(line)
    if paren:
        return paren.group(1)
    digest = _HASH_BUILD.search(line)
    return digest.group(0) if digest else None


def looks_like_openclaw_command(value: str | None) -> bool:
    command = non_empty_str(value)
    if not command:
        return False
    if command.lower() == DEFAULT_OPENCLAW_COMMAND:
        return True
    return DEFAULT_OPENCLAW_COMMAND in _EXTENSION.sub("", Path(command).name).lower()


def _executable_name_variants(name: str) -> list[str]:
    if sys.platform != "win32":
        return [name]
    variants = [name]
    for ext in (os.environ.get("PATHEXT") or ".EXE;.CMD;.BAT;.COM").split(";"):
        suffix = ext.strip().lower()
        if suffix and not name.lower().endswith(suffix):
            variants.append(f"{name}{suffix}")
    return variants


def executables_on_path(name: str, search_path: str | None = None) -> list[str]:
    """Every ``name`` executable on ``PATH``, in search order."""
    search_path = os.environ.get("PATH", "") if search_path is None else search_path
    found: list[str] = []
    for directory in search_path.split(os.pathsep):
        directory = directory.strip()
        if not directory:
            continue
        for variant in _executable_name_variants(name):
            candidate = os.path.join(directory, variant)
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK) and candidate not in found:
                found.append(candidate)
    return found


def openclaw_command_candidates(
    configured: str | None, runtime_command: str | None, search_path: str | None = None
) -> list[str]:
    candidates: list[str] = []

    def add(value: str | None) -> None:
        command = non_empty_str(value)
        if command and command not in candidates:
            candidates.append(command)

    add(configured)
    for command in executables_on_path(DEFAULT_OPENCLAW_COMMAND, search_path):
        add(command)
    if looks_like_openclaw_command(runtime_command):
        add(runtime_command)
    add(DEFAULT_OPENCLAW_COMMAND)
    for command in OPENCLAW_COMMAND_FALLBACK_PATHS:
        add(command)
    return candidates


def normalize_model_token(value: Any) -> str:
    text = str(value if value is not None else "").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1].strip()
    return text


def normalize_model_list(models: Any) -> list[str]:
    normalized: list[str] = []
    for entry in models or []:
        token = normalize_model_token(entry)
        if token and token not in normalized:
            normalized.append(token)
    return normalized


def _lookup_key(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.strip().lower())


def _is_likely_model_identifier(value: str) -> bool:
    text = value.strip()
    if not text or len(text) > 200 or _WHITESPACE.search(text):
        return False
    return "/" in text or bool(_MODEL_FAMILY.search(text.lower()))


def extract_model_strings(value: Any) -> list[str]:
    """Collect anything that looks like a model id from an arbitrary status payload."""
    found: list[str] = []

    def add(candidate: str) -> None:
        text = candidate.strip()
        if text and text not in found:
            found.append(text)

    def visit(node: Any, path: list[str]) -> None:
        if isinstance(node, str):
            key = _lookup_key(path[-1]) if path else ""
            in_collection = any(_lookup_key(segment) in _MODEL_COLLECTION_KEYS for segment in path[:-1])
            if key in _MODEL_SCALAR_KEYS:
                add(node)
            elif in_collection and (key in _MODEL_COLLECTION_FIELD_KEYS or _is_likely_model_identifier(node)):
                add(node)
        elif isinstance(node, list):
            for index, item in enumerate(node):
                visit(item, [*path, str(index)])
        elif isinstance(node, dict):
            for key, child in node.items():
                visit(child, [*path, str(key)])

    visit(value, [])
    return found


def select_status_models(parsed: Any) -> list[str]:
    """Pick the model inventory out of ``models status --json`` output.

    ``resolvedDefault`` wins over ``defaultModel``, which wins over the
    ``allowed`` list; anything else that looks like a model id is the last resort.
    """
    status = as_dict(parsed)
    if status is None:
        return normalize_model_list(extract_model_strings(parsed))

    for key in ("resolvedDefault", "defaultModel"):
        value = status.get(key)
        if isinstance(value, str) and normalize_model_token(value):
            return [normalize_model_token(value)]
        nested = extract_model_strings(value) if isinstance(value, dict) else []
        if nested:
            return normalize_model_list(nested)

    allowed = as_list(status.get("allowed"))
    if allowed:
        models = normalize_model_list(
            entry if isinstance(entry, str) else (as_dict(entry) or {}).get("id") for entry in allowed
        )
        if models:
            return models

    return normalize_model_list(extract_model_strings(status))


def parse_external_agent_output(stdout: str) -> str:
    """Reply text from an external runtime: a JSON string, a ``content``/``output``/``text`` field, or raw text."""
    trimmed = (stdout or "").strip()
    if not trimmed:
        return ""
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return trimmed
    if isinstance(parsed, str):
        return parsed
    if isinstance(parsed, dict):
        for key in ("content", "output", "text"):
            direct = non_empty_str(parsed.get(key))
            if direct:
                return direct
    return trimmed


class ExternalAgentRunner:
    """Runs one turn through an operator-supplied command.

    The command receives ``--agentmc-input <json>`` and answers on stdout.
    """

    def __init__(self, command: str, args: list[str] | None = None, timeout: float = EXTERNAL_RUN_TIMEOUT_SECONDS):
        self.command = command
        self.args = list(args or [])
        self.timeout = timeout

    async def __call__(self, run_input: AgentRunInput) -> AgentRunResult:
        payload = json.dumps(
            {
                "session_id": run_input.session_id,
                "request_id": run_input.request_id,
                "message": run_input.user_text,
            }
        )
        output = await run_command(self.command, [*self.args, "--agentmc-input", payload], timeout=self.timeout)
        return AgentRunResult(
            request_id=run_input.request_id,
            run_id=default_run_id(run_input.session_id, run_input.request_id),
            status="ok",
            text_source="wait",
            content=parse_external_agent_output(output.stdout),
        )


class ProviderResolver:
    """Resolves and caches the runtime provider for one program."""

    def __init__(self, config: ProgramConfig, search_path: str | None = None):
        self.config = config
        self.search_path = search_path
        self.resolved_openclaw_command: str | None = None
        self.log = get_logger("provider", agent_id=config.agent_id)

    async def resolve_openclaw_command(self, strict: bool = False) -> str | None:
        """First candidate answering ``--version``; None (or ConfigurationError when strict) if none does."""
        if self.resolved_openclaw_command:
            return self.resolved_openclaw_command

        configured = non_empty_str(self.config.openclaw_command)
        candidates = openclaw_command_candidates(configured, self.config.runtime_command, self.search_path)
        for candidate in candidates:
            if not await self._answers_version(candidate):
                continue
            self.resolved_openclaw_command = candidate
            if configured and candidate != configured:
                self.log.info(
                    "provider.openclaw_command_fallback",
                    configured_command=configured,
                    resolved_command=candidate,
                )
            return candidate

        if strict:
            raise ConfigurationError(
                f"OpenClaw command is not available. Checked: {', '.join(candidates) or '(none)'}. "
                "Install OpenClaw or set openclaw_command to an executable path."
            )
        return None

    async def _answers_version(self, command: str) -> bool:
        try:
            await run_command(command, ["--version"], timeout=VERSION_PROBE_TIMEOUT_SECONDS)
        except CommandError:
            return False
        return True

    async def resolve_openclaw_models(self, command: str) -> list[str]:
        configured = normalize_model_list(self.config.runtime_models)
        if configured:
            return configured
        try:
            output = await run_command(
                command, list(MODELS_STATUS_ARGS), timeout=MODELS_PROBE_TIMEOUT_SECONDS, check=False
            )
        except CommandError as e:
            self.log.warn("provider.models_unavailable", exc=e)
            return []
        return select_status_models(parse_command_json(output))

    async def resolve_openclaw_provider(self) -> RuntimeProvider:
        command = await self.resolve_openclaw_command(strict=True)
        assert command is not None

        output = await run_command(command, ["--version"], timeout=VERSION_PROBE_TIMEOUT_SECONDS)
        version_line = first_non_empty_line(output.stdout) or first_non_empty_line(output.stderr)
        if not version_line:
            raise ConfigurationError("Unable to resolve OpenClaw version output.")

        models = await self.resolve_openclaw_models(command)
        if not models:
            raise ConfigurationError(
                "OpenClaw model inventory is empty. Configure at least one OpenClaw model."
            )

        return RuntimeProvider(
            kind="openclaw",
            name="openclaw",
            version=extract_version_token(version_line) or version_line,
            build=extract_build_token(version_line),
            mode="openclaw",
            models=models,
            command=command,
        )

    async def read_command_version(self, command: str, args: list[str]) -> str | None:
        try:
            output = await run_command(command, args, timeout=VERSION_PROBE_TIMEOUT_SECONDS)
        except CommandError:
            return None
        line = first_non_empty_line(output.stdout)
        if not line:
            return None
        return extract_version_token(line) or line

    async def resolve_external_provider(self, strict: bool = True) -> RuntimeProvider:
        runtime_command = non_empty_str(self.config.runtime_command)
        if not runtime_command:
            raise ConfigurationError("External runtime mode requires runtime_command.")

        version_command = non_empty_str(self.config.runtime_version_command) or runtime_command
        version_args = ["--version"] if version_command == runtime_command else []
        version = await self.read_command_version(version_command, version_args) or non_empty_str(
            self.config.runtime_version
        )
        if not version:
            raise ConfigurationError(
                "Unable to resolve runtime version for external provider. "
                "Provide a runnable --version command or set runtime_version."
            )

        models = normalize_model_list(self.config.runtime_models)
        if strict and not models:
            raise ConfigurationError(
                "External runtime mode requires runtime_models with at least one model identifier."
            )

        return RuntimeProvider(
            kind="external",
            name=non_empty_str(self.config.runtime_name) or Path(runtime_command).name,
            version=version,
            build=non_empty_str(self.config.runtime_build),
            mode="external",
            models=models,
            command=runtime_command,
            args=list(self.config.runtime_command_args),
            run_agent=ExternalAgentRunner(runtime_command, self.config.runtime_command_args),
        )

    async def resolve(self) -> RuntimeProvider:
        """Resolve the provider named by ``runtime_provider``; ``auto`` tries OpenClaw first."""
        configured = self.config.runtime_provider
        if configured == "external":
            return await self.resolve_external_provider(strict=True)
        if configured == "openclaw":
            return await self.resolve_openclaw_provider()

        try:
            return await self.resolve_openclaw_provider()
        except (ConfigurationError, CommandError) as e:
            self.log.info("provider.openclaw_autodetect_skipped", exc=e)

        if not non_empty_str(self.config.runtime_command):
            raise ConfigurationError(
                "Unable to resolve runtime provider automatically. Install OpenClaw or set "
                "runtime_command (and runtime_models) for external mode."
            )
        return await self.resolve_external_provider(strict=True)
