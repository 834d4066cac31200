"""MCP client lifecycle.

Handshake parameters, the server facts learned from ``initialize``, and the
connection state of one protocol client.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from aidaemon.exceptions import NotConnectedError

# Protocol version advertised in initialize
MCP_PROTOCOL_VERSION = "2025-03-26"

CLIENT_INFO = {"name": "aiDAEMON", "version": "1.0.0"}

INIT_TIMEOUT = 30.0
CALL_TIMEOUT = 30.0


class LifecycleState(Enum):
    """Protocol client connection states."""

    DISCONNECTED = "disconnected"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class ServerInfo:
    """Name and version a server declares in its initialize result."""

    name: str
    version: str

    @classmethod
    def from_dict(cls, data: Any) -> ServerInfo | None:
        if not isinstance(data, dict):
            return None
        return cls(name=str(data.get("name", "")), version=str(data.get("version", "")))


@dataclass
class ServerCapabilities:
    """Capability flags a server declares in its initialize result."""

    tools: bool = False
    tools_list_changed: bool = False
    resources: bool = False
    prompts: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> ServerCapabilities:
        if not isinstance(data, dict):
            return cls()
        tools = data.get("tools")
        return cls(
            tools=isinstance(tools, dict),
            tools_list_changed=isinstance(tools, dict) and bool(tools.get("listChanged", False)),
            resources=isinstance(data.get("resources"), dict),
            prompts=isinstance(data.get("prompts"), dict),
            raw=data,
        )


def initialize_params() -> dict[str, Any]:
    """Build the params of the client's initialize request."""
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": dict(CLIENT_INFO),
    }


@dataclass
class ClientLifecycle:
    """Tracks where one protocol client is in its connection lifecycle."""

    state: LifecycleState = LifecycleState.DISCONNECTED
    server_info: ServerInfo | None = None
    capabilities: ServerCapabilities | None = None
    protocol_version: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.state == LifecycleState.READY

    def begin(self) -> None:
        self.state = LifecycleState.INITIALIZING
        self.server_info = None
        self.capabilities = None
        self.protocol_version = None

    def handle_initialize_result(self, result: dict[str, Any]) -> None:
        """Record the server facts from an initialize result.

        Args:
            result: The ``result`` member of the initialize response.
        """
        self.server_info = ServerInfo.from_dict(result.get("serverInfo"))
        self.capabilities = ServerCapabilities.from_dict(result.get("capabilities"))
        version = result.get("protocolVersion")
        self.protocol_version = version if isinstance(version, str) else None

    def mark_ready(self) -> None:
        self.state = LifecycleState.READY

    def mark_closed(self) -> None:
        self.state = LifecycleState.CLOSED

    def require_ready(self) -> None:
        """Assert that the client finished its handshake.

        Raises:
            NotConnectedError: If the client is not ready for tool traffic.
        """
        if self.state != LifecycleState.READY:
            raise NotConnectedError()
