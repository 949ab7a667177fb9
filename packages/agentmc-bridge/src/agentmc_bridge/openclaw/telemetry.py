"""
Heartbeat telemetry scraped from ``openclaw status``.

OpenClaw releases disagree on the status schema: some emit nested JSON
objects, others wrap the human status card (``Tokens: 77000 in / 1800 out``)
in JSON strings. Both are read. Structured keys are matched through a lookup
of every path suffix, so ``{"cache": {"hit_rate": 0.89}}`` answers to
``cache_hit_rate``; the text lines fill whatever is still missing.

Normalized output:

- percentages are integers between 0 and 100
- ``thinking_mode`` is a bool, the raw level lands in ``thinking_level``
- ``session`` and ``auth`` lose their ``Session:`` / ``Auth:`` labels
"""

import re
from collections.abc import Iterator
from typing import Any

from ..coerce import as_bool, as_dict, as_number, non_empty_str
from ..errors import CommandError
from ..log_config import get_logger
from ..process import run_command
from ..types import RuntimeProvider
from .output import parse_command_json
from .provider import MODELS_STATUS_ARGS, normalize_model_list

TELEMETRY_COMMAND_CANDIDATES: tuple[tuple[str, ...], ...] = (
    ("status", "--json", "--usage"),
    ("status", "--json"),
    ("health", "--json"),
)
TELEMETRY_TIMEOUT_SECONDS = 4.0

PERCENT_FIELDS: tuple[str, ...] = (
    "cache_hit_rate_percent",
    "context_percent_used",
    "usage_window_percent_left",
    "usage_day_percent_left",
)

TOOL_FIELDS: tuple[tuple[str, str], ...] = (
    ("browser", "browser_tool_available"),
    ("exec", "exec_tool_available"),
    ("nodes", "nodes_tool_available"),
    ("messaging", "messaging_tool_available"),
    ("sessions", "sessions_tool_available"),
    ("memory", "memory_tool_available"),
)

_INTEGER_FIELDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("tokens_in", ("tokens_in", "input_tokens", "prompt_tokens")),
    ("tokens_out", ("tokens_out", "output_tokens", "completion_tokens")),
    ("cache_tokens_cached", ("cache_tokens_cached", "cached_tokens", "prompt_cache_tokens")),
    ("cache_tokens_new", ("cache_tokens_new", "new_tokens", "uncached_tokens")),
    ("context_tokens_used", ("context_tokens_used", "context_used_tokens", "context_used")),
    (
        "context_tokens_max",
        ("context_tokens_max", "context_max_tokens", "context_window_max", "context_limit"),
    ),
    ("context_compactions", ("context_compactions", "context_compaction_count", "compactions")),
    ("queue_depth", ("queue_depth", "queue_size", "pending_count")),
)

_PERCENT_LOOKUPS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("cache_hit_rate_percent", ("cache_hit_rate_percent", "prompt_cache_hit_rate_percent")),
    ("context_percent_used", ("context_percent_used", "context_usage_percent")),
    ("usage_window_percent_left", ("usage_window_percent_left", "window_percent_left")),
    ("usage_day_percent_left", ("usage_day_percent_left", "daily_percent_left")),
)

_STRING_FIELDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("usage_window_time_left", ("usage_window_time_left", "window_time_left")),
    ("usage_day_time_left", ("usage_day_time_left", "daily_time_left")),
    ("session", ("session_id", "session")),
    ("queue", ("queue_name", "queue")),
    ("auth", ("auth_mode", "authentication", "auth")),
)

_DISABLED_THINKING = frozenset({"off", "none", "disabled", "false", "0", "no"})

_LOOKUP_KEY_STRIP = re.compile(r"[^a-z0-9]")
_STATUS_LABEL = re.compile(r"^\s*([A-Za-z][A-Za-z ]*?)\s*[:=]\s")

_TEXT_TOKENS = re.compile(r"\b([\d,]+)\s*in\b[^\d]+([\d,]+)\s*out\b", re.IGNORECASE)
_TEXT_CACHE = re.compile(
    r"\b([\d.]+)\s*%\s*hit\b.*?\b([\d,]+)\s*cached\b.*?\b([\d,]+)\s*new\b", re.IGNORECASE
)
_TEXT_CONTEXT = re.compile(r"\b([\d,]+)\s*/\s*([\d,]+)\s*\(\s*([\d.]+)\s*%\s*\)", re.IGNORECASE)
_TEXT_COMPACTIONS = re.compile(r"\bcompactions?\b\s*[:=]?\s*([\d,]+)", re.IGNORECASE)
_TEXT_WINDOW_PERCENT = re.compile(r"\bwindow\b[^0-9]*([\d.]+)\s*%\s*left\b", re.IGNORECASE)
_TEXT_DAY_PERCENT = re.compile(r"\bday\b[^0-9]*([\d.]+)\s*%\s*left\b", re.IGNORECASE)
_TEXT_WINDOW_TIME = re.compile(
    r"\bwindow\b.*?@\s*(.+?)(?:\s+(?:·|\|)\s+|\s+\bday\b|$)", re.IGNORECASE
)
_TEXT_DAY_TIME = re.compile(r"\bday\b.*?@\s*(.+?)(?:\s+(?:·|\|)\s+|$)", re.IGNORECASE)
_TEXT_QUEUE_DEPTH = re.compile(r"\bqueue\s*depth\b\s*[:=]?\s*([\d,]+)", re.IGNORECASE)
_TEXT_RUNTIME_MODE = re.compile(r"\bruntime\b\s*[:=]?\s*([a-z0-9._-]+)", re.IGNORECASE)
_TEXT_THINKING = re.compile(r"\bthink(?:ing)?\b\s*[:=]?\s*([a-z0-9._-]+)", re.IGNORECASE)
_TEXT_SESSION = re.compile(r"\bsession\b\s*[:=]?\s*(.+)$", re.IGNORECASE)
_TEXT_QUEUE_NAME = re.compile(r"\bqueue\b(?!\s*depth\b)\s*[:=]?\s*([a-z0-9._-]+)", re.IGNORECASE)
_TEXT_AUTH = re.compile(r"\bauth\b\s*[:=]?\s*(.+)$", re.IGNORECASE)
_TEXT_MODEL = re.compile(r"\bmodel\b\s*[:=]?\s*(.+)$", re.IGNORECASE)
_TEXT_TOOLS = {
    tool: re.compile(rf"\b{tool}\b\s*(?:tool\b\s*)?(on|off|true|false|1|0|yes|no)\b", re.IGNORECASE)
    for tool, _ in TOOL_FIELDS
}


def lookup_key(value: str) -> str:
    return _LOOKUP_KEY_STRIP.sub("", value.strip().lower())


def build_lookup(source: dict[str, Any]) -> dict[str, list[Any]]:
    """Index every value under each suffix of its key path, normalized to ``[a-z0-9]``."""
    lookup: dict[str, list[Any]] = {}

    def visit(value: Any, path: list[str]) -> None:
        for size in range(1, len(path) + 1):
            key = lookup_key("_".join(path[-size:]))
            if key:
                lookup.setdefault(key, []).append(value)
        if isinstance(value, list):
            for item in value:
                visit(item, path)
        elif isinstance(value, dict):
            for child_key, child in value.items():
                visit(child, [*path, str(child_key)])

    visit(source, [])
    return lookup


def first_lookup_value(lookup: dict[str, list[Any]], keys: tuple[str, ...]) -> Any:
    for key in keys:
        values = lookup.get(lookup_key(key))
        if values:
            return values[0]
    return None


def iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, list):
        for item in value:
            yield from iter_strings(item)
    elif isinstance(value, dict):
        for child in value.values():
            yield from iter_strings(child)


def to_percent(value: Any, fraction: bool = False) -> int | None:
    """Integer percent in ``[0, 100]``; values in ``(0, 1)`` (or any value when ``fraction``) are scaled."""
    number = as_number(value)
    if number is None:
        return None
    if fraction and number <= 1:
        number *= 100
    elif 0 < number < 1:
        number *= 100
    return max(0, min(100, int(round(number))))


def _to_int(value: Any) -> int | None:
    number = as_number(value)
    return int(number) if number is not None else None


def thinking_enabled(value: Any) -> tuple[bool | None, str | None]:
    """``(enabled, level)`` for a thinking mode given as a bool or a level name such as ``off``/``high``."""
    if isinstance(value, bool):
        return value, None
    text = non_empty_str(value)
    if not text:
        return None, None
    return text.lower() not in _DISABLED_THINKING, text


def strip_label(value: str, label: str) -> str:
    stripped = re.sub(rf"^{label}\s*[:=]\s*", "", value, flags=re.IGNORECASE).strip()
    return stripped or value


def is_foreign_status_line(value: str, field: str) -> bool:
    """True for a status card line labelled for another field, e.g. ``Queue depth: 1`` read as ``queue``."""
    match = _STATUS_LABEL.match(value)
    return bool(match) and lookup_key(match.group(1)) != lookup_key(field)


def _set_missing(target: dict[str, Any], field: str, value: Any) -> None:
    if value is not None and field not in target:
        target[field] = value


def _known_text(value: str | None) -> str | None:
    text = non_empty_str(value)
    return text if text and text.lower() != "unknown" else None


def apply_text_fallbacks(target: dict[str, Any], snapshot: dict[str, Any]) -> None:
    """Fill missing fields from status card lines found anywhere in the snapshot."""
    seen: set[str] = set()
    for raw in iter_strings(snapshot):
        line = raw.strip()
        if not line or line in seen:
            continue
        seen.add(line)

        if match := _TEXT_TOKENS.search(line):
            _set_missing(target, "tokens_in", _to_int(match.group(1)))
            _set_missing(target, "tokens_out", _to_int(match.group(2)))
        if match := _TEXT_CACHE.search(line):
            _set_missing(target, "cache_hit_rate_percent", to_percent(match.group(1)))
            _set_missing(target, "cache_tokens_cached", _to_int(match.group(2)))
            _set_missing(target, "cache_tokens_new", _to_int(match.group(3)))
        if match := _TEXT_CONTEXT.search(line):
            _set_missing(target, "context_tokens_used", _to_int(match.group(1)))
            _set_missing(target, "context_tokens_max", _to_int(match.group(2)))
            _set_missing(target, "context_percent_used", to_percent(match.group(3)))
        if match := _TEXT_COMPACTIONS.search(line):
            _set_missing(target, "context_compactions", _to_int(match.group(1)))
        if match := _TEXT_WINDOW_PERCENT.search(line):
            _set_missing(target, "usage_window_percent_left", to_percent(match.group(1)))
        if match := _TEXT_DAY_PERCENT.search(line):
            _set_missing(target, "usage_day_percent_left", to_percent(match.group(1)))
        if match := _TEXT_WINDOW_TIME.search(line):
            _set_missing(target, "usage_window_time_left", _known_text(match.group(1)))
        if match := _TEXT_DAY_TIME.search(line):
            _set_missing(target, "usage_day_time_left", _known_text(match.group(1)))
        if match := _TEXT_QUEUE_DEPTH.search(line):
            _set_missing(target, "queue_depth", _to_int(match.group(1)))
        if match := _TEXT_RUNTIME_MODE.search(line):
            _set_missing(target, "runtime_mode", non_empty_str(match.group(1)))
        if match := _TEXT_THINKING.search(line):
            enabled, level = thinking_enabled(match.group(1))
            _set_missing(target, "thinking_mode", enabled)
            _set_missing(target, "thinking_level", level)
        if match := _TEXT_SESSION.search(line):
            _set_missing(target, "session", _known_text(match.group(1)))
        if match := _TEXT_QUEUE_NAME.search(line):
            _set_missing(target, "queue", match.group(1))
        if match := _TEXT_AUTH.search(line):
            _set_missing(target, "auth", _known_text(match.group(1)))
        if (match := _TEXT_MODEL.search(line)) and "models" not in target:
            model = _known_text(match.group(1))
            if model:
                target["models"] = [model]
        for tool, field in TOOL_FIELDS:
            if match := _TEXT_TOOLS[tool].search(line):
                _set_missing(target, field, as_bool(match.group(1)))


def extract_telemetry(snapshot: dict[str, Any]) -> dict[str, Any]:
    """Normalize one status snapshot into heartbeat ``meta`` fields."""
    telemetry: dict[str, Any] = {}
    lookup = build_lookup(snapshot)

    runtime_obj = as_dict(first_lookup_value(lookup, ("runtime", "runtime_info", "provider_runtime"))) or {}
    runtime_identity = {
        "name": non_empty_str(runtime_obj.get("name"))
        or non_empty_str(first_lookup_value(lookup, ("runtime_name", "provider_name", "provider"))),
        "version": non_empty_str(runtime_obj.get("version"))
        or non_empty_str(first_lookup_value(lookup, ("openclaw_version", "runtime_version"))),
        "build": non_empty_str(runtime_obj.get("build"))
        or non_empty_str(
            first_lookup_value(
                lookup, ("openclaw_build", "runtime_build", "build", "git_sha", "commit_hash")
            )
        ),
        "mode": non_empty_str(runtime_obj.get("mode"))
        or non_empty_str(first_lookup_value(lookup, ("runtime_mode", "provider_mode", "mode"))),
    }
    runtime_identity = {key: value for key, value in runtime_identity.items() if value}
    if runtime_identity:
        telemetry["runtime"] = runtime_identity
    if "version" in runtime_identity:
        telemetry["openclaw_version"] = runtime_identity["version"]
    if "build" in runtime_identity:
        telemetry["openclaw_build"] = runtime_identity["build"]
    if "mode" in runtime_identity:
        telemetry["runtime_mode"] = runtime_identity["mode"]

    raw_models = runtime_obj.get("models")
    if raw_models is None:
        raw_models = first_lookup_value(
            lookup, ("models", "runtime_models", "model_inventory", "available_models")
        )
    models = normalize_model_list(raw_models) if isinstance(raw_models, list) else []
    if models:
        telemetry["models"] = models

    for field, keys in _INTEGER_FIELDS:
        value = _to_int(first_lookup_value(lookup, keys))
        if value is not None:
            telemetry[field] = value

    for field, keys in _PERCENT_LOOKUPS:
        value = to_percent(first_lookup_value(lookup, keys))
        if value is not None:
            telemetry[field] = value
    if "cache_hit_rate_percent" not in telemetry:
        value = to_percent(
            first_lookup_value(lookup, ("cache_hit_rate", "prompt_cache_hit_rate")), fraction=True
        )
        if value is not None:
            telemetry["cache_hit_rate_percent"] = value

    for field, keys in _STRING_FIELDS:
        value = non_empty_str(first_lookup_value(lookup, keys))
        if value and not is_foreign_status_line(value, field):
            telemetry[field] = value

    enabled, level = thinking_enabled(
        first_lookup_value(lookup, ("thinking_mode", "reasoning_mode", "thinking"))
    )
    if enabled is not None:
        telemetry["thinking_mode"] = enabled
    if level:
        telemetry["thinking_level"] = level

    tools = as_dict(first_lookup_value(lookup, ("tool_availability", "toolavailability", "tools", "tool_status")))
    if tools:
        availability = {key: flag for key, flag in ((k, as_bool(v)) for k, v in tools.items()) if flag is not None}
        if availability:
            telemetry["tool_availability"] = availability

    for tool, field in TOOL_FIELDS:
        flag = as_bool(first_lookup_value(lookup, (field, f"tools_{tool}", tool)))
        if flag is not None:
            telemetry[field] = flag

    apply_text_fallbacks(telemetry, snapshot)

    for field, label in (("session", "session"), ("auth", "auth")):
        value = non_empty_str(telemetry.get(field))
        if value:
            telemetry[field] = strip_label(value, label)

    if "context_percent_used" not in telemetry:
        used = as_number(telemetry.get("context_tokens_used"))
        limit = as_number(telemetry.get("context_tokens_max"))
        if used is not None and limit:
            telemetry["context_percent_used"] = to_percent(used / limit * 100)

    return telemetry


def merge_telemetry(target: dict[str, Any], patch: dict[str, Any]) -> None:
    for key, value in patch.items():
        if key in ("runtime", "tool_availability"):
            incoming = as_dict(value)
            if incoming:
                target[key] = {**(as_dict(target.get(key)) or {}), **incoming}
        elif key == "models":
            models = normalize_model_list(value)
            if models:
                target["models"] = models
        else:
            target[key] = value


class TelemetryCollector:
    """Collects heartbeat telemetry from an OpenClaw install.

    The status command that last produced JSON is remembered and tried
    first on the next heartbeat.
    """

    def __init__(self, command: str):
        self.command = command
        self.cached_args: tuple[str, ...] | None = None
        self.last_error: str | None = None
        self.log = get_logger("telemetry")

    async def _run_json(self, args: tuple[str, ...]) -> dict[str, Any] | None:
        output = await run_command(self.command, list(args), timeout=TELEMETRY_TIMEOUT_SECONDS)
        return as_dict(parse_command_json(output))

    async def _status_snapshot(self, errors: list[str]) -> dict[str, Any] | None:
        candidates = list(TELEMETRY_COMMAND_CANDIDATES)
        if self.cached_args:
            candidates.insert(0, self.cached_args)

        tried: set[tuple[str, ...]] = set()
        for args in candidates:
            if args in tried:
                continue
            tried.add(args)
            try:
                snapshot = await self._run_json(args)
            except CommandError as e:
                errors.append(f"{' '.join(args)}: {e}")
                continue
            if snapshot is None:
                errors.append(f"{' '.join(args)}: command output did not contain a JSON object.")
                continue
            self.cached_args = args
            return snapshot

        self.cached_args = None
        return None

    async def load_snapshots(self) -> list[dict[str, Any]]:
        errors: list[str] = []
        snapshots: list[dict[str, Any]] = []

        status = await self._status_snapshot(errors)
        if status is not None:
            snapshots.append(status)

        try:
            models = await self._run_json(MODELS_STATUS_ARGS)
        except CommandError as e:
            errors.append(f"{' '.join(MODELS_STATUS_ARGS)}: {e}")
        else:
            if models is not None:
                snapshots.append(models)

        if snapshots:
            self.last_error = None
            return snapshots

        reason = errors[0] if errors else "OpenClaw telemetry command returned no parseable JSON."
        if reason != self.last_error:
            self.last_error = reason
            self.log.info("telemetry.unavailable", reason=reason)
        return []

    async def collect(self, provider: RuntimeProvider) -> dict[str, Any]:
        snapshots = await self.load_snapshots()
        if not snapshots:
            return {}

        telemetry: dict[str, Any] = {}
        for snapshot in snapshots:
            merge_telemetry(telemetry, extract_telemetry(snapshot))

        telemetry.setdefault("openclaw_version", provider.version)
        if provider.build:
            telemetry.setdefault("openclaw_build", provider.build)

        runtime = as_dict(telemetry.get("runtime"))
        if runtime is not None:
            runtime.setdefault("name", provider.name)
            runtime.setdefault("version", provider.version)
            if provider.build:
                runtime.setdefault("build", provider.build)
            runtime.setdefault("mode", provider.mode)
        return telemetry
