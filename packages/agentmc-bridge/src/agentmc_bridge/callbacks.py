"""Invocation of caller-supplied hooks that must never break the runtime loop."""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from .log_config import get_logger

log = get_logger("callbacks")

ErrorHandler = Callable[[BaseException], Awaitable[None] | None]


async def call_error_handler(handler: ErrorHandler | None, error: BaseException) -> None:
    """Report ``error``; a failing error handler is logged and dropped."""
    if handler is None:
        log.warn("runtime.error", exc=error)
        return
    try:
        result = handler(error)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.error("callbacks.error_handler_failed", exc=e)


async def call_optional_handler(
    handler: Callable[..., Any] | None, *args: Any, on_error: ErrorHandler | None = None
) -> None:
    """Call ``handler`` if set, routing anything it raises to ``on_error``."""
    if handler is None:
        return
    try:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        await call_error_handler(on_error, e)
