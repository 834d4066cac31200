"""Tests for the stdio and HTTP transports."""

import json
import os
import sys
from pathlib import Path

import httpx
import pytest

from aidaemon.exceptions import (
    ConnectionFailedError,
    McpTimeoutError,
    NotConnectedError,
    ProcessLaunchFailedError,
    ServerError,
    TransportClosedError,
)
from aidaemon.protocol import transport as transport_module
from aidaemon.protocol.transport import (
    SESSION_HEADER,
    HttpTransport,
    StdioTransport,
    _sse_payloads,
    build_argv,
    fallback_path,
    reset_shell_path_cache,
    resolve_shell_path,
)

FAKE_SERVER = str(Path(__file__).parent / "fake_mcp_server.py")


class TestShellPath:
    """Tests for login-shell PATH resolution."""

    def test_probes_once_and_caches(self, monkeypatch):
        """Should run the shell probe a single time per process."""
        calls = []

        def probe():
            calls.append(1)
            return "/custom/bin:/usr/bin"

        monkeypatch.setattr(transport_module, "_probe_login_shell_path", probe)
        reset_shell_path_cache()

        assert resolve_shell_path() == "/custom/bin:/usr/bin"
        assert resolve_shell_path() == "/custom/bin:/usr/bin"
        assert len(calls) == 1

    def test_falls_back_when_probe_fails(self, monkeypatch):
        """Should use the hardcoded directory list when the probe fails."""
        monkeypatch.setattr(transport_module, "_probe_login_shell_path", lambda: None)
        reset_shell_path_cache()

        path = resolve_shell_path()

        assert path == fallback_path()
        assert "/usr/local/bin" in path.split(os.pathsep)
        assert "~" not in path


class TestBuildArgv:
    """Tests for argument vector construction."""

    def test_resolves_command_on_search_path(self, tmp_path):
        """Should replace a bare command with its resolved path."""
        exe = tmp_path / "mytool"
        exe.write_text("#!/bin/sh\n")
        exe.chmod(0o755)

        argv = build_argv("mytool", ["-y", "pkg"], str(tmp_path))

        assert argv == [str(exe), "-y", "pkg"]

    def test_uses_env_for_unresolvable_command(self, tmp_path):
        """Should defer lookup to /usr/bin/env when the command is not found."""
        argv = build_argv("definitely-not-here", ["a"], str(tmp_path))

        assert argv == ["/usr/bin/env", "definitely-not-here", "a"]

    def test_keeps_executable_absolute_path(self):
        """Should use an executable absolute path as-is."""
        argv = build_argv(sys.executable, ["x"], "")

        assert argv == [sys.executable, "x"]

    def test_arguments_are_never_shell_joined(self, tmp_path):
        """Should keep arguments with spaces and metacharacters as single items."""
        argv = build_argv("definitely-not-here", ["a b; rm -rf /"], str(tmp_path))

        assert argv[-1] == "a b; rm -rf /"


class TestStdioTransport:
    """Tests for the subprocess transport."""

    def test_round_trip_with_real_subprocess(self):
        """Should exchange newline-delimited JSON with a child process."""
        transport = StdioTransport(sys.executable, [FAKE_SERVER], name="fake")
        transport.start()
        try:
            assert transport.is_connected
            transport.send(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize"}))

            reply = json.loads(transport.receive(timeout=10))

            assert reply["id"] == 1
            assert reply["result"]["serverInfo"]["name"] == "fake"
        finally:
            transport.close()

        assert not transport.is_connected

    def test_passes_extra_environment(self, tmp_path):
        """Should layer configured variables over the inherited environment."""
        script = tmp_path / "env_echo.py"
        script.write_text(
            "import json, os, sys\n"
            "sys.stdin.readline()\n"
            "print(json.dumps({'value': os.environ.get('BRAVE_API_KEY')}), flush=True)\n"
        )
        transport = StdioTransport(sys.executable, [str(script)], env={"BRAVE_API_KEY": "k-123"})
        transport.start()
        try:
            transport.send("{}")
            assert json.loads(transport.receive(timeout=10)) == {"value": "k-123"}
        finally:
            transport.close()

    def test_receive_reports_closed_stream(self):
        """Should raise TransportClosedError once the child exits."""
        transport = StdioTransport(sys.executable, ["-c", "pass"])
        transport.start()
        try:
            with pytest.raises(TransportClosedError):
                transport.receive(timeout=10)
            # Every later waiter sees the same end of stream
            with pytest.raises(TransportClosedError):
                transport.receive(timeout=1)
        finally:
            transport.close()

    def test_receive_times_out(self):
        """Should raise McpTimeoutError when nothing arrives in time."""
        transport = StdioTransport(sys.executable, [FAKE_SERVER])
        transport.start()
        try:
            with pytest.raises(McpTimeoutError):
                transport.receive(timeout=0.2)
        finally:
            transport.close()

    def test_send_before_start_raises(self):
        """Should refuse to send on a transport that was never started."""
        transport = StdioTransport(sys.executable)

        with pytest.raises(NotConnectedError):
            transport.send("{}")

    def test_launch_failure_raises(self, tmp_path):
        """Should report an executable that cannot be started."""
        # A directory passes the X_OK check but cannot be exec'd
        transport = StdioTransport(str(tmp_path))

        with pytest.raises(ProcessLaunchFailedError):
            transport.start()

    def test_close_is_idempotent(self):
        """Should tolerate repeated close calls."""
        transport = StdioTransport(sys.executable, [FAKE_SERVER])
        transport.start()

        transport.close()
        transport.close()

        assert not transport.is_connected


def _http_transport(handler, url="https://mcp.example.com/rpc"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpTransport(url, client=client)


class TestHttpTransport:
    """Tests for the HTTPS transport."""

    def test_rejects_plain_http(self):
        """Should refuse to start against a non-HTTPS URL."""
        transport = HttpTransport("http://mcp.example.com/rpc")

        with pytest.raises(ConnectionFailedError) as exc_info:
            transport.start()

        assert "HTTPS" in exc_info.value.message

    def test_queues_json_body_as_reply(self):
        """Should deliver a 200 JSON body as one message."""
        seen = {}

        def handler(request):
            seen["content_type"] = request.headers["content-type"]
            seen["accept"] = request.headers["accept"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {}})

        transport = _http_transport(handler)
        transport.start()
        transport.send('{"jsonrpc": "2.0", "id": 1, "method": "ping"}')

        assert json.loads(transport.receive(timeout=1))["id"] == 1
        assert seen["content_type"] == "application/json"
        assert "application/json" in seen["accept"]
        assert seen["body"]["method"] == "ping"

    def test_accepted_without_body_queues_nothing(self):
        """Should treat 202 as accepted with no reply."""
        transport = _http_transport(lambda request: httpx.Response(202))
        transport.start()
        transport.send('{"jsonrpc": "2.0", "method": "notifications/initialized"}')

        with pytest.raises(McpTimeoutError):
            transport.receive(timeout=0.05)

    def test_replays_session_id(self):
        """Should echo the server's session id on later requests."""
        sessions = []

        def handler(request):
            sessions.append(request.headers.get(SESSION_HEADER))
            return httpx.Response(202, headers={SESSION_HEADER: "sess-42"})

        transport = _http_transport(handler)
        transport.start()
        transport.send("{}")
        transport.send("{}")

        assert sessions == [None, "sess-42"]
        assert transport.session_id == "sess-42"

    def test_error_status_raises_server_error(self):
        """Should raise ServerError for a non-2xx status."""
        transport = _http_transport(lambda request: httpx.Response(500, text="boom"))
        transport.start()

        with pytest.raises(ServerError) as exc_info:
            transport.send("{}")

        assert exc_info.value.code == 500

    def test_splits_event_stream_body(self):
        """Should queue each data payload of an SSE body."""
        body = (
            'event: message\ndata: {"jsonrpc": "2.0", "method": "notifications/x"}\n\n'
            'data: {"jsonrpc": "2.0", "id": 1, "result": {}}\n\n'
        )
        transport = _http_transport(
            lambda request: httpx.Response(
                200, text=body, headers={"content-type": "text/event-stream"}
            )
        )
        transport.start()
        transport.send("{}")

        assert json.loads(transport.receive(timeout=1))["method"] == "notifications/x"
        assert json.loads(transport.receive(timeout=1))["id"] == 1

    def test_network_failure_raises_connection_failed(self):
        """Should wrap transport-level HTTP errors."""

        def handler(request):
            raise httpx.ConnectError("refused")

        transport = _http_transport(handler)
        transport.start()

        with pytest.raises(ConnectionFailedError):
            transport.send("{}")

    def test_close_wakes_waiting_reader(self):
        """Should release receive() with TransportClosedError on close."""
        transport = _http_transport(lambda request: httpx.Response(202))
        transport.start()
        transport.close()

        with pytest.raises(TransportClosedError):
            transport.receive(timeout=1)
        assert not transport.is_connected


class TestSsePayloads:
    """Tests for event-stream parsing."""

    def test_joins_multiline_data(self):
        """Should join consecutive data lines of one event with newlines."""
        assert _sse_payloads("data: a\ndata: b\n\ndata: c") == ["a\nb", "c"]

    def test_ignores_blank_events(self):
        """Should drop events without data."""
        assert _sse_payloads(": comment\n\nevent: ping\n\n") == []
