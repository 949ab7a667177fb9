"""Helpers for reading loosely-typed JSON values."""

import json
import re
import time
from typing import Any


def as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def as_list(value: Any) -> list[Any] | None:
    return value if isinstance(value, list) else None


def as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def non_empty_str(value: Any) -> str | None:
    """Return the trimmed string, or None when blank or not a string."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on", "enabled"):
            return True
        if lowered in ("false", "0", "no", "off", "disabled"):
            return False
    return None


def as_positive_int(value: Any) -> int | None:
    """Return a strictly positive integer, accepting integral floats and digit strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def as_number(value: Any) -> float | None:
    """Parse numbers and numeric strings, tolerating thousands separators."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if cleaned.endswith("%"):
            cleaned = cleaned[:-1].strip()
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def parse_json_object(value: Any) -> dict[str, Any]:
    """Accept a dict or a JSON string encoding one; anything else becomes ``{}``."""
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def now_ms() -> int:
    return int(time.time() * 1000)


def to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value <= 0:
        return "0"
    encoded = ""
    while value:
        value, remainder = divmod(value, 36)
        encoded = digits[remainder] + encoded
    return encoded


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()) + f".{int(time.time() * 1000) % 1000:03d}Z"


_SAFE_TOKEN_STRIP = re.compile(r"[^a-z0-9_-]+")
_DASH_RUN = re.compile(r"-+")


def safe_token(value: str, max_length: int = 120) -> str:
    """Lowercase and collapse a value into ``[a-z0-9_-]`` for use inside ids."""
    token = _SAFE_TOKEN_STRIP.sub("-", value.lower())
    token = _DASH_RUN.sub("-", token).strip("-")
    return token[:max_length]
