"""Bounded async subprocess execution."""

import asyncio
import contextlib
from typing import NamedTuple

from .errors import CommandError


class CommandOutput(NamedTuple):
    """Captured output of a finished subprocess."""

    stdout: str
    stderr: str
    returncode: int


async def run_command(
    command: str,
    args: list[str],
    timeout: float | None = None,
    cwd: str | None = None,
    max_output_bytes: int | None = None,
    check: bool = True,
) -> CommandOutput:
    """Run ``command`` with ``args`` and capture its output.

    The process is killed when ``timeout`` (seconds) elapses. With ``check``
    a non-zero exit status raises :class:`CommandError`; the error message
    names the command and exit code only, never the captured output.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError, OSError) as e:
        raise CommandError(f"{command} could not be started: {type(e).__name__}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(Exception):
            await process.wait()
        raise CommandError(f"{command} timed out after {timeout}s", timed_out=True) from e
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        raise

    if max_output_bytes is not None and len(stdout) > max_output_bytes:
        raise CommandError(f"{command} output exceeded {max_output_bytes} bytes")

    returncode = process.returncode if process.returncode is not None else -1
    if check and returncode != 0:
        raise CommandError(f"{command} exited with status {returncode}", returncode=returncode)

    return CommandOutput(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        returncode=returncode,
    )


async def can_execute(command: str, args: list[str], timeout: float = 10.0) -> bool:
    try:
        await run_command(command, args, timeout=timeout)
    except CommandError:
        return False
    return True
