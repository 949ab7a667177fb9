"""Thin async wrapper around ``openclaw gateway call``."""

import json
from typing import Any

from ..coerce import non_empty_str
from ..errors import CommandError, GatewayCallError
from ..process import run_command


def parse_gateway_json(stdout: str) -> dict[str, Any]:
    """Parse gateway output, falling back to the last JSON object line.

    The CLI may print banner or progress lines before the JSON result.
    """
    output = (stdout or "").strip()
    if not output:
        raise GatewayCallError("Empty OpenClaw gateway response.")

    try:
        parsed = json.loads(output)
    except ValueError:
        pass
    else:
        return parsed if isinstance(parsed, dict) else {}

    for line in reversed([line.strip() for line in output.splitlines() if line.strip()]):
        try:
            parsed = json.loads(line)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise GatewayCallError("OpenClaw gateway response was not parseable JSON.")


def unwrap_gateway_payload(payload: dict[str, Any]) -> dict[str, Any]:
    for key in ("result", "data", "payload"):
        nested = payload.get(key)
        if isinstance(nested, dict):
            return nested
    return payload


def has_top_level_run_id(payload: dict[str, Any]) -> bool:
    return bool(non_empty_str(payload.get("runId")) or non_empty_str(payload.get("run_id")))


def merge_gateway_response(parsed: dict[str, Any]) -> dict[str, Any]:
    """Flatten a wrapped response, keeping it untouched when it already names the run.

    A top-level ``runId`` is authoritative over any id nested in ``result``.
    """
    if has_top_level_run_id(parsed):
        return parsed
    unwrapped = unwrap_gateway_payload(parsed)
    if unwrapped is parsed:
        return parsed
    return {**parsed, **unwrapped}


class OpenClawGateway:
    """Calls gateway RPC methods through the OpenClaw CLI."""

    # Extra time the CLI process gets beyond the RPC timeout it was given.
    PROCESS_GRACE_MS = 5_000

    def __init__(self, command: str, max_buffer_bytes: int | None = None):
        self.command = command
        self.max_buffer_bytes = max_buffer_bytes

    async def call(self, method: str, params: dict[str, Any], timeout_ms: int) -> dict[str, Any]:
        timeout_ms = max(1, int(timeout_ms))
        args = [
            "gateway",
            "call",
            method,
            "--json",
            "--timeout",
            str(timeout_ms),
            "--params",
            json.dumps(params),
        ]
        try:
            output = await run_command(
                self.command,
                args,
                timeout=(timeout_ms + self.PROCESS_GRACE_MS) / 1000,
                max_output_bytes=self.max_buffer_bytes,
            )
            return merge_gateway_response(parse_gateway_json(output.stdout))
        except (CommandError, GatewayCallError) as e:
            raise GatewayCallError(f"openclaw gateway call {method} failed: {e}") from e
