from .client import OPERATIONS, AgentMCApi, ApiResult

__all__ = ["OPERATIONS", "AgentMCApi", "ApiResult"]
