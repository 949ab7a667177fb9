"""
Agent identity discovery.

The display name and emoji shown in AgentMC come from what the operator
configured in OpenClaw. Several sources are tried because CLI versions
differ in what they expose:

- ``openclaw agents list --json``
- ``openclaw gateway call agents.list`` / ``config.get``
- ``openclaw.json`` config files on disk
- the workspace ``IDENTITY.md``

Discovery never raises; a missing identity is logged once per reason.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, NamedTuple

from ..coerce import as_dict, as_list, non_empty_str
from ..errors import CommandError
from ..log_config import get_logger
from ..process import run_command
from .output import parse_command_json

DISCOVERY_TIMEOUT_SECONDS = 10.0

IDENTITY_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("agents", "list", "--json"),
    ("gateway", "call", "agents.list", "--json"),
    ("gateway", "call", "agents.list", "--json", "--params", "{}"),
    ("gateway", "call", "config.get", "--json"),
)

_NAME_KEYS: tuple[str, ...] = (
    "identityName",
    "identity_name",
    "name",
    "agent_name",
    "agentName",
    "display_name",
    "displayName",
)
_NESTED_NAME_PARENTS: tuple[str, ...] = ("identity", "profile", "agent", "meta")
_EMOJI_KEYS: tuple[str, ...] = (
    "emoji",
    "avatar_emoji",
    "avatarEmoji",
    "profile_emoji",
    "profileEmoji",
    "icon_emoji",
    "iconEmoji",
    "icon",
)
_ROW_HINT_KEYS = frozenset(
    {
        "id",
        "key",
        "agent",
        "agentId",
        "agent_id",
        "agentKey",
        "agent_key",
        "workspace",
        "workspaceDir",
        "workspace_dir",
        "agentDir",
        "agent_dir",
        "identity",
        "identityName",
        "identity_name",
        "emoji",
        "model",
    }
)
_ROW_CONTAINER_KEYS: tuple[str, ...] = ("list", "agents", "data", "items")
_MARKDOWN_FIELD = re.compile(r"^-\s*\*\*(?P<label>[^*]+?):\*\*\s*(?P<value>.+)$", re.MULTILINE)


class IdentitySnapshot(NamedTuple):
    """Name, emoji and identity payload read from the host."""

    name: str | None
    identity: dict[str, Any]
    emoji: str | None


def parse_identity_markdown(text: str) -> dict[str, str]:
    """``- **Name:** Nova`` lines, keyed by lowercased label; ``_(placeholder)_`` values are skipped."""
    fields: dict[str, str] = {}
    for match in _MARKDOWN_FIELD.finditer(text or ""):
        value = match.group("value").strip()
        if not value or value.startswith("_("):
            continue
        fields.setdefault(match.group("label").strip().lower(), value)
    return fields


def _row_key(row: dict[str, Any]) -> str | None:
    for key in ("id", "key", "agentId", "agent_id", "agentKey", "agent_key", "agent"):
        value = non_empty_str(row.get(key))
        if value:
            return value
    return None


def _row_name(row: dict[str, Any]) -> str | None:
    for key in _NAME_KEYS:
        value = non_empty_str(row.get(key))
        if value:
            return value
    for parent in _NESTED_NAME_PARENTS:
        nested = as_dict(row.get(parent))
        if nested:
            value = non_empty_str(nested.get("name"))
            if value:
                return value
    for key in ("identityMarkdown", "identity_markdown"):
        markdown = non_empty_str(row.get(key))
        if markdown:
            value = parse_identity_markdown(markdown).get("name")
            if value:
                return value
    return None


def _row_emoji(row: dict[str, Any]) -> str | None:
    for source in (row, as_dict(row.get("identity")) or {}):
        for key in _EMOJI_KEYS:
            value = non_empty_str(source.get(key))
            if value:
                return value
    return None


def _row_paths(row: dict[str, Any], *keys: str) -> list[str]:
    paths: list[str] = []
    for key in keys:
        value = non_empty_str(row.get(key))
        if value:
            paths.append(value)
    return paths


def is_likely_agent_row(value: Any) -> bool:
    row = as_dict(value)
    if not row:
        return False
    return any(key in row for key in _ROW_HINT_KEYS)


def extract_agent_rows(parsed: Any) -> list[dict[str, Any]]:
    """Breadth-first search for agent rows in CLI or config JSON.

    Object maps (``{"main": {...}}``) get their key injected as ``key`` so
    they can be matched like list rows.
    """
    rows: list[dict[str, Any]] = []
    queue: list[Any] = [parsed]
    seen: set[int] = set()

    while queue:
        node = queue.pop(0)
        if id(node) in seen:
            continue
        seen.add(id(node))

        if isinstance(node, list):
            for entry in node:
                if is_likely_agent_row(entry):
                    rows.append(entry)
            continue

        record = as_dict(node)
        if record is None:
            continue

        for key in ("config", "parsed", "result", "payload"):
            nested = as_dict(record.get(key))
            if nested:
                queue.append(nested)

        for key in _ROW_CONTAINER_KEYS:
            child = record.get(key)
            if isinstance(child, list):
                queue.append(child)
                continue
            child_map = as_dict(child)
            if not child_map:
                continue
            if any(isinstance(child_map.get(inner), list) for inner in _ROW_CONTAINER_KEYS):
                queue.append(child_map)
                continue
            for map_key, entry in child_map.items():
                entry_map = as_dict(entry)
                if entry_map is not None and (is_likely_agent_row(entry_map) or _row_name(entry_map)):
                    rows.append({"key": map_key, **entry_map})

    return rows


def _normalize_path(value: str) -> str:
    try:
        return str(Path(value).expanduser().resolve())
    except (OSError, RuntimeError):
        return value


def _path_score(candidate: str, preferred: list[str], exact: int, parent: int, child: int) -> int:
    target = _normalize_path(candidate)
    best = 0
    for path in preferred:
        if target == path:
            best = max(best, exact)
        elif path.startswith(target.rstrip(os.sep) + os.sep):
            best = max(best, parent)
        elif target.startswith(path.rstrip(os.sep) + os.sep):
            best = max(best, child)
    return best


def find_agent_row(
    rows: list[dict[str, Any]],
    agent_key: str | None,
    fallback_name: str | None,
    preferred_paths: list[str],
    prefer_path_match: bool = True,
) -> dict[str, Any] | None:
    """Choose the row describing this agent.

    An exact workspace match always wins. Otherwise path proximity and the
    configured agent key compete, in the order given by ``prefer_path_match``,
    before falling back to a name match or a lone row.
    """
    if not rows:
        return None
    preferred = [_normalize_path(path) for path in preferred_paths if path]

    for row in rows:
        for workspace in _row_paths(row, "workspace", "workspaceDir", "workspace_dir"):
            if _normalize_path(workspace) in preferred:
                return row

    def path_score(row: dict[str, Any]) -> int:
        scores = [
            _path_score(path, preferred, 6, 5, 4)
            for path in _row_paths(row, "agentDir", "agent_dir")
        ] + [
            _path_score(path, preferred, 12, 3, 2)
            for path in _row_paths(row, "workspace", "workspaceDir", "workspace_dir")
        ]
        return max(scores, default=0)

    def by_path() -> dict[str, Any] | None:
        scored = [(path_score(row), index, row) for index, row in enumerate(rows)]
        scored = [entry for entry in scored if entry[0] > 0]
        if not scored:
            return None
        scored.sort(key=lambda entry: (-entry[0], entry[1]))
        return scored[0][2]

    def by_key() -> dict[str, Any] | None:
        if not agent_key:
            return None
        wanted = agent_key.lower()
        return next((row for row in rows if (_row_key(row) or "").lower() == wanted), None)

    strategies = (by_path, by_key) if prefer_path_match else (by_key, by_path)
    for strategy in strategies:
        row = strategy()
        if row is not None:
            return row

    if fallback_name:
        wanted = fallback_name.lower()
        named = next((row for row in rows if (_row_name(row) or "").lower() == wanted), None)
        if named is not None:
            return named

    return rows[0] if len(rows) == 1 else None


def ensure_identity_payload(
    identity: dict[str, Any] | None, fallback_name: str | None, emoji: str | None = None
) -> dict[str, Any]:
    payload = dict(identity or {})
    if not non_empty_str(payload.get("name")) and fallback_name:
        payload["name"] = fallback_name
    if emoji and not non_empty_str(payload.get("emoji")):
        payload["emoji"] = emoji
    return payload


def snapshot_from_row(row: dict[str, Any]) -> IdentitySnapshot | None:
    name = _row_name(row)
    emoji = _row_emoji(row)
    if not name and not emoji:
        return None
    nested = as_dict(row.get("identity")) or {}
    identity = {key: value for key, value in nested.items() if value is not None}
    return IdentitySnapshot(name=name, identity=ensure_identity_payload(identity, name, emoji), emoji=emoji)


class IdentityResolver:
    """Reads the agent's configured name and emoji from OpenClaw.

    ``command`` may be None when no OpenClaw executable resolved; config
    files and ``IDENTITY.md`` are still consulted.
    """

    def __init__(
        self,
        command: str | None,
        workspace_dir: str,
        agent_key: str | None = None,
        config_path: str | None = None,
        sessions_path: str | None = None,
        home_dir: str | None = None,
    ):
        self.command = command
        self.workspace_dir = workspace_dir
        self.agent_key = agent_key
        self.config_path = config_path
        self.sessions_path = sessions_path
        self.home_dir = home_dir
        self._reported_reasons: set[str] = set()
        self.log = get_logger("identity", agent_key=agent_key)

    def preferred_paths(self) -> list[str]:
        paths = [self.workspace_dir, os.getcwd()]
        if self.sessions_path:
            sessions_dir = Path(self.sessions_path).expanduser().parent
            paths.extend([str(sessions_dir), str(sessions_dir.parent)])
        return paths

    def config_candidates(self) -> list[Path]:
        home = Path(self.home_dir) if self.home_dir else Path.home()
        candidates: list[Path] = []
        for value in (self.config_path, os.environ.get("OPENCLAW_CONFIG_PATH")):
            text = non_empty_str(value)
            if text:
                candidates.append(Path(text).expanduser())
        candidates.extend(
            [
                home / ".openclaw" / "openclaw.json",
                Path("/root/.openclaw/openclaw.json"),
                Path(self.workspace_dir) / ".openclaw" / "openclaw.json",
            ]
        )
        if self.sessions_path:
            candidates.append(Path(self.sessions_path).expanduser().parent / "openclaw.json")

        unique: list[Path] = []
        for candidate in candidates:
            if candidate not in unique:
                unique.append(candidate)
        return unique

    def _select(self, rows: list[dict[str, Any]], fallback_name: str | None) -> IdentitySnapshot | None:
        row = find_agent_row(
            rows,
            self.agent_key,
            fallback_name,
            self.preferred_paths(),
            prefer_path_match=self.agent_key is None,
        )
        return snapshot_from_row(row) if row is not None else None

    async def from_commands(self, fallback_name: str | None) -> IdentitySnapshot | None:
        if not self.command:
            return None
        for args in IDENTITY_COMMANDS:
            try:
                output = await run_command(self.command, list(args), timeout=DISCOVERY_TIMEOUT_SECONDS)
            except CommandError as e:
                self.log.debug("identity.command_failed", args=" ".join(args), exc=e)
                continue
            snapshot = self._select(extract_agent_rows(parse_command_json(output)), fallback_name)
            if snapshot is not None:
                return snapshot
        return None

    def from_config_files(self, fallback_name: str | None) -> IdentitySnapshot | None:
        for candidate in self.config_candidates():
            try:
                parsed = json.loads(candidate.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as e:
                self.log.debug("identity.config_unreadable", path=str(candidate), exc=e)
                continue
            snapshot = self._select(extract_agent_rows(parsed), fallback_name)
            if snapshot is not None:
                return snapshot
        return None

    def from_workspace_markdown(self) -> IdentitySnapshot | None:
        path = Path(self.workspace_dir) / "IDENTITY.md"
        try:
            fields = parse_identity_markdown(path.read_text(encoding="utf-8"))
        except OSError:
            return None
        name = fields.get("name")
        emoji = fields.get("emoji")
        if not name and not emoji:
            return None
        identity: dict[str, Any] = {
            key: fields[key] for key in ("creature", "vibe", "theme", "avatar") if key in fields
        }
        return IdentitySnapshot(name=name, identity=ensure_identity_payload(identity, name, emoji), emoji=emoji)

    async def resolve(self, fallback_name: str | None = None) -> IdentitySnapshot | None:
        snapshot = (
            await self.from_commands(fallback_name)
            or self.from_config_files(fallback_name)
            or self.from_workspace_markdown()
        )
        if snapshot is None:
            self._report_once("no_identity_source")
        return snapshot

    __call__ = resolve

    def _report_once(self, reason: str) -> None:
        if reason in self._reported_reasons:
            return
        self._reported_reasons.add(reason)
        self.log.info("identity.unresolved", reason=reason)
