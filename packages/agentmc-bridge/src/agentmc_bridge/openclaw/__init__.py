"""OpenClaw integration: gateway calls, chat runs, provider and host discovery."""

from .chat import ChatBridge, default_run_id
from .gateway import OpenClawGateway
from .identity import IdentityResolver, IdentitySnapshot
from .profile import OpenClawProfileUpdater, ProfileUpdate
from .provider import ExternalAgentRunner, ProviderResolver
from .telemetry import TelemetryCollector

__all__ = [
    "ChatBridge",
    "ExternalAgentRunner",
    "IdentityResolver",
    "IdentitySnapshot",
    "OpenClawGateway",
    "OpenClawProfileUpdater",
    "ProfileUpdate",
    "ProviderResolver",
    "TelemetryCollector",
    "default_run_id",
]
