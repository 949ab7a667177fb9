"""Parsing for OpenClaw CLI output that may mix human text and JSON across streams."""

import json
from typing import Any

from ..process import CommandOutput


def first_non_empty_line(value: str | None) -> str | None:
    for line in (value or "").splitlines():
        if line.strip():
            return line.strip()
    return None


def parse_json_text(value: str | None) -> Any | None:
    """Parse a whole stream as JSON, else its first JSON line, else its last one."""
    text = (value or "").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    for line in (lines[0], lines[-1]):
        try:
            return json.loads(line)
        except ValueError:
            continue
    return None


def parse_command_json(output: CommandOutput) -> Any | None:
    """JSON from stdout, falling back to stderr."""
    parsed = parse_json_text(output.stdout)
    if parsed is not None:
        return parsed
    return parse_json_text(output.stderr)
