"""Exception hierarchy for aidaemon.

Connection and protocol failures raised by the MCP client, orchestration
failures raised inside the agent loop, and model backend failures.
Orchestration errors carry the exact user-visible text in ``message``.
"""

from __future__ import annotations


class AidaemonError(Exception):
    """Base exception for aidaemon."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(AidaemonError):
    """Raised when a configuration file is unreadable or invalid."""

    pass


# ---------------------------------------------------------------------------
# MCP client errors
# ---------------------------------------------------------------------------


class McpError(AidaemonError):
    """Base for transport and protocol failures talking to a plugin server."""

    pass


class NotConnectedError(McpError):
    """Raised when an operation needs a live connection and there is none."""

    def __init__(self, message: str = "Not connected to MCP server"):
        super().__init__(message)


class ConnectionFailedError(McpError):
    """Raised when a transport cannot be established."""

    def __init__(self, detail: str):
        super().__init__(f"Connection failed: {detail}", {"detail": detail})
        self.detail = detail


class ProtocolError(McpError):
    """Raised when the server violates the JSON-RPC/MCP message contract."""

    def __init__(self, detail: str):
        super().__init__(f"Protocol error: {detail}", {"detail": detail})
        self.detail = detail


class McpTimeoutError(McpError):
    """Raised when a request's reply does not arrive in time."""

    def __init__(self, message: str = "MCP request timed out"):
        super().__init__(message)


class ServerError(McpError):
    """Raised from a JSON-RPC error object or a non-2xx HTTP status."""

    def __init__(self, code: int, message: str):
        super().__init__(f"Server error {code}: {message}", {"code": code})
        self.code = code
        self.server_message = message


class InvalidResponseError(McpError):
    """Raised when a reply is well-formed JSON-RPC but has an unusable shape."""

    def __init__(self, detail: str):
        super().__init__(f"Invalid response: {detail}", {"detail": detail})
        self.detail = detail


class ProcessLaunchFailedError(McpError):
    """Raised when the plugin subprocess cannot be started."""

    def __init__(self, detail: str):
        super().__init__(f"Process launch failed: {detail}", {"detail": detail})
        self.detail = detail


class TransportClosedError(McpError):
    """Raised when the transport closed while a caller was waiting on it."""

    def __init__(self, message: str = "Transport closed"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Model backend errors
# ---------------------------------------------------------------------------


class ModelProviderError(AidaemonError):
    """Raised when a model backend request fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class RequestAbortedError(ModelProviderError):
    """Raised when an in-flight model request was cancelled by abort()."""

    def __init__(self, message: str = "Request was cancelled."):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Orchestrator errors
# ---------------------------------------------------------------------------


class OrchestratorError(AidaemonError):
    """Loop-level condition that ends a turn early with a readable message."""

    pass


class ProviderUnavailableError(OrchestratorError):
    def __init__(self):
        super().__init__(
            "Claude is unavailable. Configure an Anthropic API key in Settings → Cloud."
        )


class MalformedResponseError(OrchestratorError):
    def __init__(self, reason: str):
        super().__init__(f"Unexpected Claude response format: {reason}", {"reason": reason})
        self.reason = reason


class NoToolResultsError(OrchestratorError):
    def __init__(self):
        super().__init__("No tool results were produced for Claude.")


class NoFinalResponseError(OrchestratorError):
    def __init__(self):
        super().__init__("Claude did not provide a final response.")


class MaxRoundsExceededError(OrchestratorError):
    def __init__(self, max_rounds: int = 10):
        super().__init__(
            f"Stopped after {max_rounds} tool-use rounds to prevent an infinite loop."
        )
        self.max_rounds = max_rounds


class TurnTimedOutError(OrchestratorError):
    def __init__(self, timeout_seconds: float = 90):
        super().__init__(
            f"Stopped after {timeout_seconds:g} seconds to prevent a stalled execution."
        )
        self.timeout_seconds = timeout_seconds


class AbortedError(OrchestratorError):
    def __init__(self):
        super().__init__("Stopped.")


class LocalModelUnavailableError(OrchestratorError):
    def __init__(self):
        super().__init__("Local model is not ready yet.")


# ---------------------------------------------------------------------------
# Single-step command errors
# ---------------------------------------------------------------------------


class CommandParseError(AidaemonError):
    """Raised when model output cannot be decoded into a command."""

    @classmethod
    def invalid_json(cls, detail: str) -> CommandParseError:
        return cls(f"Invalid JSON: {detail}", {"detail": detail})

    @classmethod
    def missing_type(cls) -> CommandParseError:
        return cls("Command is missing 'type' field")

    @classmethod
    def unknown_type(cls, command_type: str) -> CommandParseError:
        return cls(f"Unknown command type: {command_type}", {"type": command_type})

    @classmethod
    def missing_field(cls, field_name: str) -> CommandParseError:
        return cls(f"Missing required field: {field_name}", {"field": field_name})
