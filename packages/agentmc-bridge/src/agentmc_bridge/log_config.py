"""
Structured JSON logging for the bridge runtime.

Every record is a single JSON line with an ``event`` name plus bound and
per-call context fields:

    log = get_logger("runtime", service="agentmc", agent_id=7)
    log.info("session.started", session_id=42)

Exceptions are passed as ``exc=`` and rendered as their type and message.
"""

import json
import logging
import os
import sys
import time
from typing import Any

_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "websockets")
_CONFIGURED = False


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(fields)
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: str | None = None, force: bool = False) -> None:
    """Install the JSON handler on the ``agentmc`` logger tree once."""
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    resolved = (level or os.environ.get("AGENTMC_LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger("agentmc")
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, resolved, logging.INFO))
    root.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _CONFIGURED = True


class StructuredLogger:
    """Thin wrapper binding context fields onto a stdlib logger."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any]):
        self._logger = logger
        self._context = context

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self._logger, {**self._context, **context})

    def debug(self, event: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, event, fields)

    def info(self, event: str, **fields: Any) -> None:
        self._emit(logging.INFO, event, fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._emit(logging.WARNING, event, fields)

    warning = warn

    def error(self, event: str, **fields: Any) -> None:
        self._emit(logging.ERROR, event, fields)

    def _emit(self, level: int, event: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._context}
        for key, value in fields.items():
            if value is None:
                continue
            if key == "exc" and isinstance(value, BaseException):
                merged["error_type"] = type(value).__name__
                merged["error"] = str(value)
                continue
            merged[key] = value
        self._logger.log(level, event, extra={"fields": merged})


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Return a structured logger under the ``agentmc`` namespace."""
    return StructuredLogger(logging.getLogger(f"agentmc.{name}"), context)
