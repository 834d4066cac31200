"""Tests for the plugin server manager."""

import json
import sys
import threading
import time
from pathlib import Path

import pytest
from conftest import ScriptedTransport, make_tool

from aidaemon.exceptions import NotConnectedError, ProcessLaunchFailedError
from aidaemon.plugins.config import PluginServerConfig, ServerCatalog, TransportKind
from aidaemon.plugins.manager import (
    ConnectionState,
    PluginConnectionStatus,
    ServerManager,
    default_transport_factory,
    tool_registry_id,
)
from aidaemon.plugins.secrets import InMemorySecretStore, env_secret_key
from aidaemon.protocol.client import TOOLS_LIST_CHANGED
from aidaemon.protocol.transport import HttpTransport, StdioTransport
from aidaemon.tools.definitions import RiskLevel, ToolCall
from aidaemon.tools.registry import ToolRegistry

FAKE_SERVER = str(Path(__file__).parent / "fake_mcp_server.py")

SEARCH_SCHEMA = {"type": "object", "properties": {"query": {"type": "string"}}}


class FakeFactory:
    """Transport factory handing out ScriptedTransports per server name."""

    def __init__(self):
        self.tools = {}
        self.errors = {}
        self.transports = {}
        self.envs = {}
        self.delay = 0.0

    def __call__(self, config, env):
        if self.delay:
            time.sleep(self.delay)
        self.envs[config.name] = env
        transport = ScriptedTransport(
            tools=self.tools.get(config.name, []), start_error=self.errors.get(config.name)
        )
        self.transports[config.name] = transport
        return transport


def stdio_server(name="Brave Search", **changes):
    config = PluginServerConfig(
        name=name, transport=TransportKind.STDIO, command="npx", arguments=("-y", "server")
    )
    return config.with_changes(**changes) if changes else config


@pytest.fixture
def factory():
    factory = FakeFactory()
    factory.tools["Brave Search"] = [
        make_tool("brave_web_search", "Search the web", SEARCH_SCHEMA),
        make_tool("brave_local_search", "Search nearby"),
    ]
    return factory


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def secrets():
    return InMemorySecretStore()


@pytest.fixture
def manager(registry, secrets, factory, tmp_path):
    manager = ServerManager(
        registry,
        catalog=ServerCatalog(tmp_path / "mcp-servers.json"),
        secrets=secrets,
        transport_factory=factory,
        init_timeout=2,
        call_timeout=2,
    )
    yield manager
    manager.disconnect_all()


class TestToolRegistryId:
    """Tests for namespaced plugin tool ids."""

    @pytest.mark.parametrize(
        "server,tool,expected",
        [
            ("Brave Search", "brave_web_search", "mcp__brave_search__brave_web_search"),
            ("GitHub", "create_issue", "mcp__github__create_issue"),
            ("My  Server (dev)!", "x", "mcp__my_server_dev__x"),
        ],
    )
    def test_slugs_server_name(self, server, tool, expected):
        """Should lower-case, replace whitespace and strip other characters."""
        assert tool_registry_id(server, tool) == expected


class TestConnectionStatus:
    """Tests for status display text."""

    def test_display_text(self):
        """Should describe each state for the settings screen."""
        assert PluginConnectionStatus.disconnected().display_text == "Disconnected"
        assert PluginConnectionStatus.connecting().display_text == "Connecting..."
        assert PluginConnectionStatus.connected(3).display_text == "Connected (3 tools)"
        assert PluginConnectionStatus.error("boom").display_text == "Error: boom"


class TestConnect:
    """Tests for connecting servers and registering their tools."""

    def test_add_server_connects_and_registers_tools(self, manager, registry):
        """Should register every discovered tool under a namespaced id."""
        config = stdio_server()

        status = manager.add_server(config)

        assert status == PluginConnectionStatus.connected(2)
        assert manager.is_connected(config.id)
        assert sorted(manager.tool_ids(config.id)) == [
            "mcp__brave_search__brave_local_search",
            "mcp__brave_search__brave_web_search",
        ]
        definition = registry.get("mcp__brave_search__brave_web_search")
        assert definition.input_schema == SEARCH_SCHEMA
        assert definition.risk_level == RiskLevel.CAUTION

    def test_add_server_persists_catalog(self, manager, tmp_path):
        """Should save the new server to the catalog file."""
        config = stdio_server(enabled=False)

        status = manager.add_server(config)

        assert status.state == ConnectionState.DISCONNECTED
        saved = json.loads((tmp_path / "mcp-servers.json").read_text())
        assert [s["id"] for s in saved] == [config.id]

    def test_resolves_secret_environment(self, manager, secrets, factory):
        """Should pass stored secrets for declared keys and skip missing ones."""
        config = stdio_server(environment_keys=("BRAVE_API_KEY", "UNSET_KEY"))
        secrets.set(env_secret_key(config.id, "BRAVE_API_KEY"), "bk-1")

        manager.add_server(config)

        assert factory.envs["Brave Search"] == {"BRAVE_API_KEY": "bk-1"}

    def test_stdio_without_command_errors(self, manager, factory):
        """Should record an error status without building a transport."""
        config = stdio_server(command=None)

        status = manager.add_server(config)

        assert status.state == ConnectionState.ERROR
        assert "No command specified for stdio server." in status.message
        assert factory.transports == {}

    @pytest.mark.parametrize("url", [None, "http://insecure.dev/mcp", "https://"])
    def test_http_requires_https_url(self, manager, url):
        """Should refuse HTTP servers without a valid HTTPS URL."""
        config = PluginServerConfig(name="Remote", transport=TransportKind.HTTP, url=url)

        status = manager.add_server(config)

        assert status.state == ConnectionState.ERROR
        assert "Invalid or non-HTTPS URL." in status.message

    def test_transport_failure_becomes_error_status(self, manager, factory, registry):
        """Should downgrade connect failures to an error status."""
        factory.errors["Brave Search"] = ProcessLaunchFailedError("npx: not found")
        config = stdio_server()

        status = manager.add_server(config)

        assert status.state == ConnectionState.ERROR
        assert status.message == "Process launch failed: npx: not found"
        assert registry.tool_ids() == []
        assert not manager.is_connected(config.id)

    def test_unknown_server(self, manager):
        """Should report an error for an id that is not configured."""
        assert manager.connect("nope") == PluginConnectionStatus.error("Server not found.")

    def test_reconnect_replaces_previous_client(self, manager, factory):
        """Should close the old connection when connecting again."""
        config = stdio_server()
        manager.add_server(config)
        first = factory.transports["Brave Search"]

        manager.connect(config.id)

        assert first.closed
        assert manager.is_connected(config.id)

    def test_connect_all_enabled_skips_disabled(self, manager, factory):
        """Should connect only enabled servers that are not yet connected."""
        enabled = stdio_server()
        disabled = stdio_server(name="GitHub", enabled=False)
        manager.add_server(disabled)
        with manager._lock:
            manager._servers.append(enabled)

        results = manager.connect_all_enabled()

        assert list(results) == [enabled.id]
        assert "GitHub" not in factory.transports


class TestDisconnect:
    """Tests for disconnecting and removing servers."""

    def test_disconnect_unregisters_tools(self, manager, registry, factory):
        """Should remove the server's tools and close its transport."""
        config = stdio_server()
        manager.add_server(config)

        manager.disconnect(config.id)

        assert registry.tool_ids() == []
        assert manager.status(config.id) == PluginConnectionStatus.disconnected()
        assert factory.transports["Brave Search"].closed

    def test_remove_server_deletes_secrets(self, manager, secrets, tmp_path):
        """Should forget the server, its secrets and its catalog entry."""
        config = stdio_server(environment_keys=("BRAVE_API_KEY",))
        key = env_secret_key(config.id, "BRAVE_API_KEY")
        secrets.set(key, "bk-1")
        manager.add_server(config)

        assert manager.remove_server(config.id)

        assert secrets.get(key) is None
        assert manager.servers == []
        assert json.loads((tmp_path / "mcp-servers.json").read_text()) == []
        assert not manager.remove_server(config.id)

    def test_update_server_reconnects(self, manager, registry, factory):
        """Should reconnect a connected server with its new config."""
        config = stdio_server()
        manager.add_server(config)
        factory.tools["Brave"] = factory.tools["Brave Search"]

        status = manager.update_server(config.with_changes(name="Brave"))

        assert status.state == ConnectionState.CONNECTED
        assert "mcp__brave__brave_web_search" in registry.tool_ids()
        assert "mcp__brave_search__brave_web_search" not in registry.tool_ids()

    def test_update_unknown_server(self, manager):
        """Should raise KeyError for an unknown id."""
        with pytest.raises(KeyError):
            manager.update_server(stdio_server())

    def test_load_reads_catalog(self, registry, factory, tmp_path):
        """Should load configs saved by an earlier manager."""
        catalog = ServerCatalog(tmp_path / "mcp-servers.json")
        catalog.save([stdio_server(enabled=False)])

        manager = ServerManager(registry, catalog=catalog, transport_factory=factory)

        assert [s.name for s in manager.load()] == ["Brave Search"]
        assert manager.statuses() == {
            manager.servers[0].id: PluginConnectionStatus.disconnected()
        }


class TestCallTool:
    """Tests for routing tool calls to servers."""

    def test_registry_call_reaches_server(self, manager, registry, factory):
        """Should forward a registry call to the owning server."""
        config = stdio_server()
        manager.add_server(config)

        result = registry.execute(
            ToolCall("mcp__brave_search__brave_web_search", {"query": "python"})
        )

        assert result.success
        assert result.message == 'brave_web_search called with {"query": "python"}'
        call = factory.transports["Brave Search"].requests("tools/call")[0]
        assert call["params"] == {"name": "brave_web_search", "arguments": {"query": "python"}}

    def test_server_reported_error(self, manager, registry, factory):
        """Should turn an isError result into a failed execution."""
        config = stdio_server()
        manager.add_server(config)
        factory.transports["Brave Search"].call_handler = lambda name, args: {
            "content": [{"type": "text", "text": "quota exceeded"}],
            "isError": True,
        }

        result = registry.execute(ToolCall("mcp__brave_search__brave_web_search", {}))

        assert not result.success
        assert result.message == "quota exceeded"

    def test_call_on_disconnected_server(self, manager):
        """Should raise NotConnectedError when there is no live client."""
        with pytest.raises(NotConnectedError):
            manager.call_tool("missing", "x")

    def test_transport_failure_becomes_tool_error(self, manager, registry, factory):
        """Should report protocol failures as MCP tool errors."""
        config = stdio_server()
        manager.add_server(config)
        factory.transports["Brave Search"].close()

        result = registry.execute(ToolCall("mcp__brave_search__brave_web_search", {}))

        assert not result.success
        assert result.message.startswith("MCP tool error:")


class TestEnsureReady:
    """Tests for the bounded wait on enabled servers."""

    def test_connects_enabled_servers(self, manager, registry):
        """Should connect every enabled server before returning."""
        config = stdio_server(enabled=False)
        manager.add_server(config)
        with manager._lock:
            manager._servers = [config.with_changes(enabled=True)]

        manager.ensure_enabled_servers_ready(max_wait=5)

        assert manager.status(config.id) == PluginConnectionStatus.connected(2)
        assert registry.is_registered("mcp__brave_search__brave_web_search")

    def test_returns_after_max_wait(self, manager, factory):
        """Should stop waiting once the deadline passes."""
        config = stdio_server(enabled=False)
        manager.add_server(config)
        with manager._lock:
            manager._servers = [config.with_changes(enabled=True)]
        factory.delay = 1.0

        started = time.monotonic()
        manager.ensure_enabled_servers_ready(max_wait=0.1)

        assert time.monotonic() - started < 0.9
        assert manager.status(config.id).state == ConnectionState.CONNECTING

    def test_no_enabled_servers_returns_immediately(self, manager):
        """Should not wait when nothing is enabled."""
        manager.ensure_enabled_servers_ready(max_wait=5)


class TestToolsListChanged:
    """Tests for refreshing tools on server notification."""

    def test_notification_refreshes_registry(self, manager, registry, factory):
        """Should re-discover tools when the server says they changed."""
        config = stdio_server()
        manager.add_server(config)
        transport = factory.transports["Brave Search"]
        transport.pages = [[make_tool("brave_news_search")]]
        transport.preamble = [json.dumps({"jsonrpc": "2.0", "method": TOOLS_LIST_CHANGED})]

        registry.execute(ToolCall("mcp__brave_search__brave_web_search", {}))

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and manager.status(config.id).tool_count != 1:
            time.sleep(0.01)
        assert manager.tool_ids(config.id) == ["mcp__brave_search__brave_news_search"]
        assert not registry.is_registered("mcp__brave_search__brave_web_search")


class TestDefaultTransportFactory:
    """Tests for transport selection."""

    def test_stdio(self):
        """Should build a stdio transport with the resolved environment."""
        transport = default_transport_factory(stdio_server(), {"KEY": "v"})

        assert isinstance(transport, StdioTransport)
        assert transport.command == "npx"
        assert transport.args == ["-y", "server"]
        assert transport.extra_env == {"KEY": "v"}

    def test_http(self):
        """Should build an HTTP transport for the configured URL."""
        config = PluginServerConfig(
            name="Remote", transport=TransportKind.HTTP, url="https://x.dev/mcp"
        )

        transport = default_transport_factory(config, {})

        assert isinstance(transport, HttpTransport)
        assert transport.url == "https://x.dev/mcp"


class TestStdioServerProcess:
    """End-to-end flow against a real server subprocess."""

    def test_connect_call_disconnect(self, registry, tmp_path):
        """Should register the server's tools, route calls, and clean up on disconnect."""
        manager = ServerManager(
            registry,
            catalog=ServerCatalog(tmp_path / "mcp-servers.json"),
            init_timeout=10,
            call_timeout=10,
        )
        config = PluginServerConfig(
            name="Filesystem",
            transport=TransportKind.STDIO,
            command=sys.executable,
            arguments=(FAKE_SERVER,),
        )

        try:
            status = manager.add_server(config)

            assert status.state == ConnectionState.CONNECTED
            assert status.tool_count > 0
            tool_ids = manager.tool_ids(config.id)
            assert tool_ids == ["mcp__filesystem__echo"]
            assert registry.get("mcp__filesystem__echo").risk_level == RiskLevel.CAUTION

            result = registry.execute(ToolCall("mcp__filesystem__echo", {"text": "hello"}))
            assert result.success
            assert result.message == "hello"

            manager.disconnect(config.id)

            assert not any(registry.is_registered(tool_id) for tool_id in tool_ids)
            assert manager.status(config.id).state == ConnectionState.DISCONNECTED
            assert not manager.is_connected(config.id)
        finally:
            manager.disconnect_all()


class TestConcurrency:
    """Tests for concurrent connect/disconnect."""

    def test_parallel_connects_leave_consistent_state(self, manager, registry):
        """Should end with one client and one set of tools."""
        config = stdio_server()
        manager.add_server(config)

        threads = [threading.Thread(target=manager.connect, args=(config.id,)) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        status = manager.status(config.id)
        if status.state == ConnectionState.CONNECTED:
            assert len(registry.tool_ids()) == 2
        else:
            assert registry.tool_ids() == []
