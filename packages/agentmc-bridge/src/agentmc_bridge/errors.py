"""Exception types shared across the bridge runtime."""

from typing import Any


class AgentMCError(Exception):
    """Base class for bridge runtime errors."""

    pass


class OperationError(AgentMCError):
    """A remote AgentMC operation returned an error response.

    Only the operation id and HTTP status survive. The response body is
    dropped on construction so tokens or headers echoed back by the server
    can never reach a caller, a log line, or a published message.
    """

    def __init__(self, operation_id: str, status: int | None):
        self.operation_id = operation_id
        self.status = status
        suffix = "unknown status" if status is None else f"status {status}"
        super().__init__(f"{operation_id} failed with {suffix}.")


def create_operation_error(
    operation_id: str, status: Any, _error_payload: Any = None
) -> OperationError:
    """Build a redacted error for a failed remote operation."""
    resolved = status if isinstance(status, int) and not isinstance(status, bool) else None
    if resolved is not None and resolved <= 0:
        resolved = None
    return OperationError(operation_id, resolved)


class ConfigurationError(AgentMCError):
    """Raised when required runtime configuration is missing or invalid."""

    pass


class CommandError(AgentMCError):
    """Raised when a local subprocess fails, times out, or cannot start."""

    def __init__(self, message: str, returncode: int | None = None, timed_out: bool = False):
        super().__init__(message)
        self.returncode = returncode
        self.timed_out = timed_out


class GatewayCallError(AgentMCError):
    """Raised when an ``openclaw gateway call`` invocation fails or returns no JSON."""

    pass


class RealtimeError(AgentMCError):
    """Raised for realtime subscription and publish failures."""

    pass


class SubscriptionClosedError(RealtimeError):
    """Raised when a subscription is torn down before becoming ready."""

    pass
