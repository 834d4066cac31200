"""Plugin server manager.

Owns the catalog of configured MCP servers, one live McpClient per connected
server, and the per-server connection status. Connecting a server registers
each of its tools into the ToolRegistry under a namespaced id; disconnecting
removes them again. Connection failures become an ``error`` status, never an
exception escaping to the caller.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from aidaemon.exceptions import ConnectionFailedError, McpError, NotConnectedError
from aidaemon.plugins.config import PluginServerConfig, ServerCatalog, TransportKind
from aidaemon.plugins.secrets import SecretStore, env_secret_key
from aidaemon.protocol.client import TOOLS_LIST_CHANGED, McpClient, McpTool, ToolResult
from aidaemon.protocol.lifecycle import CALL_TIMEOUT, INIT_TIMEOUT
from aidaemon.protocol.transport import HttpTransport, StdioTransport, Transport
from aidaemon.tools.definitions import RiskLevel, ToolExecutionResult, ToolExecutor
from aidaemon.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT = 30.0

TransportFactory = Callable[[PluginServerConfig, dict[str, str]], Transport]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class PluginConnectionStatus:
    """Connection state of one plugin server."""

    state: ConnectionState
    tool_count: int = 0
    message: str | None = None

    @classmethod
    def disconnected(cls) -> PluginConnectionStatus:
        return cls(ConnectionState.DISCONNECTED)

    @classmethod
    def connecting(cls) -> PluginConnectionStatus:
        return cls(ConnectionState.CONNECTING)

    @classmethod
    def connected(cls, tool_count: int) -> PluginConnectionStatus:
        return cls(ConnectionState.CONNECTED, tool_count=tool_count)

    @classmethod
    def error(cls, message: str) -> PluginConnectionStatus:
        return cls(ConnectionState.ERROR, message=message)

    @property
    def is_settled(self) -> bool:
        """True once a connection attempt has finished either way."""
        return self.state in (ConnectionState.CONNECTED, ConnectionState.ERROR)

    @property
    def display_text(self) -> str:
        if self.state == ConnectionState.CONNECTING:
            return "Connecting..."
        if self.state == ConnectionState.CONNECTED:
            return f"Connected ({self.tool_count} tools)"
        if self.state == ConnectionState.ERROR:
            return f"Error: {self.message}"
        return "Disconnected"


def tool_registry_id(server_name: str, tool_name: str) -> str:
    """Namespaced registry id for a plugin tool.

    ``("Brave Search", "web_search")`` becomes ``mcp__brave_search__web_search``.
    """
    slug = re.sub(r"\s+", "_", server_name.lower())
    slug = re.sub(r"[^a-z0-9_]", "", slug)
    return f"mcp__{slug}__{tool_name}"


def default_transport_factory(config: PluginServerConfig, env: dict[str, str]) -> Transport:
    """Build the transport a server config asks for."""
    if config.transport == TransportKind.HTTP:
        return HttpTransport(config.url or "")
    return StdioTransport(
        command=config.command or "",
        args=list(config.arguments),
        env=env,
        name=config.name,
    )


def _is_https_url(url: str | None) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme == "https" and bool(parsed.netloc)


class McpToolExecutor(ToolExecutor):
    """Forwards a registry tool call to the plugin server that owns the tool."""

    def __init__(self, manager: ServerManager, server_id: str, tool_name: str) -> None:
        self.manager = manager
        self.server_id = server_id
        self.tool_name = tool_name

    def execute(self, arguments: dict[str, Any]) -> ToolExecutionResult:
        try:
            result = self.manager.call_tool(self.server_id, self.tool_name, arguments)
        except McpError as e:
            return ToolExecutionResult.error(f"MCP tool error: {e}")

        text = result.text_content
        if result.is_error:
            return ToolExecutionResult.error(text)
        return ToolExecutionResult.ok(text)


class ServerManager:
    """Lifecycle of the configured plugin servers."""

    def __init__(
        self,
        registry: ToolRegistry,
        catalog: ServerCatalog | None = None,
        secrets: SecretStore | None = None,
        transport_factory: TransportFactory = default_transport_factory,
        init_timeout: float = INIT_TIMEOUT,
        call_timeout: float = CALL_TIMEOUT,
    ) -> None:
        """Initialize the manager.

        Args:
            registry: Registry that receives discovered plugin tools.
            catalog: Persistent server catalog; None keeps configs in memory.
            secrets: Store holding plugin environment values.
            transport_factory: Builds the transport for a server config.
            init_timeout: Handshake timeout passed to each client.
            call_timeout: Per-request timeout passed to each client.
        """
        self.registry = registry
        self.catalog = catalog
        self.secrets = secrets
        self.transport_factory = transport_factory
        self.init_timeout = init_timeout
        self.call_timeout = call_timeout

        self._lock = threading.RLock()
        self._status_changed = threading.Condition(self._lock)
        self._servers: list[PluginServerConfig] = []
        self._clients: dict[str, McpClient] = {}
        self._statuses: dict[str, PluginConnectionStatus] = {}
        self._registered: dict[str, list[str]] = {}
        # Bumped on every connect/disconnect so a slow handshake can tell it was superseded
        self._attempts: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def load(self) -> list[PluginServerConfig]:
        """Load server configs from the catalog.

        Raises:
            ConfigError: If the catalog file is invalid.
        """
        servers = self.catalog.load() if self.catalog is not None else []
        with self._lock:
            self._servers = servers
            for server in servers:
                self._statuses.setdefault(server.id, PluginConnectionStatus.disconnected())
        return list(servers)

    @property
    def servers(self) -> list[PluginServerConfig]:
        with self._lock:
            return list(self._servers)

    def get_server(self, server_id: str) -> PluginServerConfig | None:
        with self._lock:
            return next((s for s in self._servers if s.id == server_id), None)

    def add_server(self, config: PluginServerConfig) -> PluginConnectionStatus:
        """Persist a new server and connect it when enabled."""
        with self._lock:
            self._servers.append(config)
            self._set_status(config.id, PluginConnectionStatus.disconnected())
            self._save()
        logger.info("Added MCP server %s (%s)", config.name, config.id)
        if config.enabled:
            return self.connect(config.id)
        return self.status(config.id)

    def update_server(self, config: PluginServerConfig) -> PluginConnectionStatus:
        """Replace a server's config; a connected server is reconnected.

        Raises:
            KeyError: If no server has this id.
        """
        with self._lock:
            index = next(
                (i for i, s in enumerate(self._servers) if s.id == config.id), None
            )
            if index is None:
                raise KeyError(config.id)
            self._servers[index] = config
            self._save()
            was_connected = config.id in self._clients

        if was_connected:
            self.disconnect(config.id)
            if config.enabled:
                return self.connect(config.id)
        return self.status(config.id)

    def remove_server(self, server_id: str) -> bool:
        """Disconnect, forget and delete the secrets of a server.

        Returns:
            True if the server existed.
        """
        config = self.get_server(server_id)
        if config is None:
            return False

        self.disconnect(server_id)
        with self._lock:
            self._servers = [s for s in self._servers if s.id != server_id]
            self._statuses.pop(server_id, None)
            self._attempts.pop(server_id, None)
            self._save()
        if self.secrets is not None:
            for key in config.environment_keys:
                self.secrets.delete(env_secret_key(server_id, key))
        logger.info("Removed MCP server %s (%s)", config.name, server_id)
        return True

    def _save(self) -> None:
        if self.catalog is not None:
            self.catalog.save(self._servers)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def resolve_environment(self, config: PluginServerConfig) -> dict[str, str]:
        """Look up a server's declared environment keys in the secret store.

        Keys without a stored value are left out.
        """
        env: dict[str, str] = {}
        if self.secrets is None:
            return env
        for key in config.environment_keys:
            value = self.secrets.get(env_secret_key(config.id, key))
            if value is not None:
                env[key] = value
        return env

    def connect(self, server_id: str) -> PluginConnectionStatus:
        """Connect a server and register its tools.

        Args:
            server_id: Id of a configured server.

        Returns:
            The resulting status: connected with a tool count, or error.
        """
        config = self.get_server(server_id)
        if config is None:
            logger.warning("Connect requested for unknown MCP server %s", server_id)
            return PluginConnectionStatus.error("Server not found.")

        with self._lock:
            reconnecting = server_id in self._clients
        if reconnecting:
            self.disconnect(server_id)

        with self._lock:
            attempt = self._attempts.get(server_id, 0) + 1
            self._attempts[server_id] = attempt
            self._set_status(server_id, PluginConnectionStatus.connecting())

        client: McpClient | None = None
        try:
            transport = self._build_transport(config)
            client = McpClient(
                transport,
                name=config.name,
                init_timeout=self.init_timeout,
                call_timeout=self.call_timeout,
                on_notification=self._notification_handler(server_id),
            )
            tools = client.connect()
        except McpError as e:
            logger.warning("MCP server %s failed to connect: %s", config.name, e)
            with self._lock:
                if self._attempts.get(server_id) == attempt:
                    self._set_status(server_id, PluginConnectionStatus.error(e.message))
                return self._statuses.get(server_id, PluginConnectionStatus.error(e.message))

        with self._lock:
            if self._attempts.get(server_id) != attempt:
                logger.info("Discarding superseded connection to %s", config.name)
                client.close()
                return self._statuses.get(server_id, PluginConnectionStatus.disconnected())
            self._clients[server_id] = client
            self._register_tools(config, tools)
            status = PluginConnectionStatus.connected(len(tools))
            self._set_status(server_id, status)
        return status

    def _build_transport(self, config: PluginServerConfig) -> Transport:
        if config.transport == TransportKind.STDIO:
            if not config.command:
                raise ConnectionFailedError("No command specified for stdio server.")
        elif not _is_https_url(config.url):
            raise ConnectionFailedError("Invalid or non-HTTPS URL.")
        return self.transport_factory(config, self.resolve_environment(config))

    def disconnect(self, server_id: str) -> None:
        """Close a server's connection and remove its tools from the registry."""
        with self._lock:
            self._attempts[server_id] = self._attempts.get(server_id, 0) + 1
            client = self._clients.pop(server_id, None)
            self._unregister_tools(server_id)
            if server_id in self._statuses or client is not None:
                self._set_status(server_id, PluginConnectionStatus.disconnected())
        if client is not None:
            client.close()
            logger.info("Disconnected MCP server %s", client.name)

    def connect_all_enabled(self) -> dict[str, PluginConnectionStatus]:
        """Connect every enabled server that is not already connected."""
        results: dict[str, PluginConnectionStatus] = {}
        for config in self.servers:
            if config.enabled and not self.is_connected(config.id):
                results[config.id] = self.connect(config.id)
        return results

    def disconnect_all(self) -> None:
        with self._lock:
            server_ids = list(self._clients)
        for server_id in server_ids:
            self.disconnect(server_id)

    def ensure_enabled_servers_ready(self, max_wait: float = DEFAULT_READY_TIMEOUT) -> None:
        """Bring enabled servers up and wait, bounded, until each settles.

        Servers that are neither connected nor connecting are connected on
        background threads. Returns once every enabled server is connected or
        errored, or after ``max_wait`` seconds, whichever comes first.
        """
        enabled = [s.id for s in self.servers if s.enabled]
        if not enabled:
            return

        for server_id in enabled:
            state = self.status(server_id).state
            if state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
                continue
            with self._lock:
                self._set_status(server_id, PluginConnectionStatus.connecting())
            threading.Thread(
                target=self.connect,
                args=(server_id,),
                name=f"mcp-connect-{server_id}",
                daemon=True,
            ).start()

        deadline = time.monotonic() + max_wait
        with self._status_changed:
            while not all(self._status_for(sid).is_settled for sid in enabled):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Timed out waiting for MCP servers after %gs", max_wait)
                    return
                self._status_changed.wait(remaining)

    def call_tool(
        self, server_id: str, name: str, arguments: dict[str, Any] | None = None
    ) -> ToolResult:
        """Invoke a tool on a connected server.

        Raises:
            NotConnectedError: If the server has no live client.
            McpError: On transport or protocol failure.
        """
        with self._lock:
            client = self._clients.get(server_id)
        if client is None:
            raise NotConnectedError()
        return client.call_tool(name, arguments)

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    def status(self, server_id: str) -> PluginConnectionStatus:
        with self._lock:
            return self._status_for(server_id)

    def statuses(self) -> dict[str, PluginConnectionStatus]:
        with self._lock:
            return {s.id: self._status_for(s.id) for s in self._servers}

    def is_connected(self, server_id: str) -> bool:
        with self._lock:
            client = self._clients.get(server_id)
            return client is not None and client.is_connected

    def tool_ids(self, server_id: str) -> list[str]:
        with self._lock:
            return list(self._registered.get(server_id, []))

    def _status_for(self, server_id: str) -> PluginConnectionStatus:
        return self._statuses.get(server_id, PluginConnectionStatus.disconnected())

    def _set_status(self, server_id: str, status: PluginConnectionStatus) -> None:
        # Caller holds self._lock
        self._statuses[server_id] = status
        self._status_changed.notify_all()

    # ------------------------------------------------------------------
    # Tool registration
    # ------------------------------------------------------------------

    def _register_tools(self, config: PluginServerConfig, tools: list[McpTool]) -> None:
        self._unregister_tools(config.id)
        registered: list[str] = []
        for tool in tools:
            tool_id = tool_registry_id(config.name, tool.name)
            self.registry.register_plugin_tool(
                tool_id=tool_id,
                name=tool.name,
                description=tool.description,
                input_schema=tool.input_schema,
                executor=McpToolExecutor(self, config.id, tool.name),
                risk_level=RiskLevel.CAUTION,
            )
            registered.append(tool_id)
        self._registered[config.id] = registered
        logger.info("Registered %d tools from %s", len(registered), config.name)

    def _unregister_tools(self, server_id: str) -> None:
        for tool_id in self._registered.pop(server_id, []):
            self.registry.unregister(tool_id)

    def _notification_handler(self, server_id: str) -> Callable[[str, dict[str, Any] | None], None]:
        def handle(method: str, params: dict[str, Any] | None) -> None:
            if method != TOOLS_LIST_CHANGED:
                return
            # Runs on the thread holding the client's request lock, so refresh elsewhere
            threading.Thread(
                target=self._refresh_tools,
                args=(server_id,),
                name=f"mcp-refresh-{server_id}",
                daemon=True,
            ).start()

        return handle

    def _refresh_tools(self, server_id: str) -> None:
        with self._lock:
            client = self._clients.get(server_id)
        config = self.get_server(server_id)
        if client is None or config is None:
            return
        try:
            tools = client.refresh_tools()
        except McpError as e:
            logger.warning("Refreshing tools from %s failed: %s", config.name, e)
            return
        with self._lock:
            if self._clients.get(server_id) is not client:
                return
            self._register_tools(config, tools)
            self._set_status(server_id, PluginConnectionStatus.connected(len(tools)))
