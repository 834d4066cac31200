"""Pytest configuration and shared fixtures."""

import json
import os
import queue

import pytest

from aidaemon.exceptions import McpTimeoutError, NotConnectedError, TransportClosedError
from aidaemon.protocol import transport as transport_module
from aidaemon.protocol.transport import Transport


@pytest.fixture(autouse=True)
def known_shell_path(monkeypatch):
    """Skip the login-shell PATH probe; it starts an interactive shell."""
    monkeypatch.setattr(
        transport_module,
        "_shell_path",
        os.environ.get("PATH") or transport_module.fallback_path(),
    )


class ScriptedTransport(Transport):
    """In-memory MCP server answering requests as they are sent.

    Replies are queued synchronously from send(), so a client blocked in
    receive() sees them immediately. Lines in ``preamble`` are delivered
    just before the next reply (notifications, stale responses, garbage).
    """

    def __init__(
        self,
        tools=None,
        pages=None,
        capabilities=None,
        call_handler=None,
        start_error=None,
        silent_methods=(),
    ):
        self.pages = pages if pages is not None else [tools or []]
        self.capabilities = (
            capabilities if capabilities is not None else {"tools": {"listChanged": True}}
        )
        self.call_handler = call_handler
        self.start_error = start_error
        self.silent_methods = set(silent_methods)
        self.preamble = []
        self.sent = []
        self.started = False
        self.closed = False
        self._queue = queue.Queue()

    @property
    def is_connected(self):
        return self.started and not self.closed

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def send(self, message):
        if not self.is_connected:
            raise NotConnectedError()
        data = json.loads(message)
        self.sent.append(data)
        if "method" not in data or "id" not in data:
            return
        if data["method"] in self.silent_methods:
            return
        for line in self.preamble:
            self._queue.put(line)
        self.preamble = []
        self._queue.put(json.dumps(self._reply(data)))

    def receive(self, timeout=None):
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise McpTimeoutError() from None
        if item is None:
            self._queue.put(None)
            raise TransportClosedError()
        return item

    def close(self):
        self.closed = True
        self._queue.put(None)

    def push(self, line):
        """Deliver a server-initiated line outside any request."""
        self._queue.put(line)

    def requests(self, method):
        return [m for m in self.sent if m.get("method") == method and "id" in m]

    def _reply(self, request):
        method = request["method"]
        params = request.get("params") or {}
        if method == "initialize":
            result = {
                "protocolVersion": "2025-03-26",
                "capabilities": self.capabilities,
                "serverInfo": {"name": "scripted", "version": "0.1"},
            }
        elif method == "tools/list":
            index = int(params.get("cursor", "0"))
            result = {"tools": self.pages[index]}
            if index + 1 < len(self.pages):
                result["nextCursor"] = str(index + 1)
        elif method == "tools/call":
            if self.call_handler is not None:
                result = self.call_handler(params["name"], params.get("arguments", {}))
            else:
                text = f"{params['name']} called with {json.dumps(params.get('arguments', {}))}"
                result = {"content": [{"type": "text", "text": text}]}
        else:
            return {
                "jsonrpc": "2.0",
                "id": request["id"],
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            }
        return {"jsonrpc": "2.0", "id": request["id"], "result": result}


def make_tool(name, description="", schema=None):
    tool = {"name": name, "description": description}
    if schema is not None:
        tool["inputSchema"] = schema
    return tool


@pytest.fixture
def scripted_transport():
    """Factory for ScriptedTransport instances."""
    return ScriptedTransport
