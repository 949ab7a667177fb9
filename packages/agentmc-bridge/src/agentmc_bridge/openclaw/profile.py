"""Apply browser-initiated agent profile edits through ``openclaw agents set-identity``."""

from typing import Any, NamedTuple

from ..coerce import non_empty_str
from ..process import run_command

SET_IDENTITY_TIMEOUT_SECONDS = 30.0
_PROFILE_FIELDS = ("name", "emoji", "creature", "vibe", "theme", "avatar")


class ProfileUpdate(NamedTuple):
    """Identity fields requested by an ``agent.profile.update`` message."""

    name: str | None = None
    emoji: str | None = None
    creature: str | None = None
    vibe: str | None = None
    theme: str | None = None
    avatar: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ProfileUpdate":
        source = payload.get("profile") if isinstance(payload.get("profile"), dict) else payload
        return cls(**{field: non_empty_str(source.get(field)) for field in _PROFILE_FIELDS})

    @property
    def is_empty(self) -> bool:
        return not any(self)

    def to_dict(self) -> dict[str, str]:
        return {key: value for key, value in self._asdict().items() if value is not None}


class OpenClawProfileUpdater:
    """Writes identity fields for one OpenClaw agent."""

    def __init__(self, command: str, agent: str):
        self.command = command
        self.agent = agent

    def build_args(self, update: ProfileUpdate) -> list[str]:
        args = ["agents", "set-identity", "--agent", self.agent]
        for field, value in update.to_dict().items():
            args.extend([f"--{field}", value])
        return args

    async def __call__(self, update: ProfileUpdate) -> dict[str, Any]:
        await run_command(self.command, self.build_args(update), timeout=SET_IDENTITY_TIMEOUT_SECONDS)
        return {"provider": "openclaw", "agent_key": self.agent, "profile": update.to_dict()}
