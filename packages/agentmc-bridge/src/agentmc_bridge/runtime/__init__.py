from .bridge import AgentRealtimeRuntime
from .program import AgentRuntimeProgram

__all__ = ["AgentRealtimeRuntime", "AgentRuntimeProgram"]
