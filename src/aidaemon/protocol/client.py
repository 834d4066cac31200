"""MCP protocol client.

One client per connected plugin server. Performs the initialize handshake,
discovers tools (following pagination cursors), invokes tools, and hands
server notifications to a callback. Requests are single-flight: one request
is outstanding per client, and the receive loop skips any message whose id
is not the one awaited.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from aidaemon.exceptions import (
    InvalidResponseError,
    McpError,
    McpTimeoutError,
    NotConnectedError,
    ProtocolError,
    ServerError,
)
from aidaemon.protocol.jsonrpc import (
    METHOD_NOT_FOUND,
    JsonRpcError,
    JsonRpcNotification,
    JsonRpcRequest,
    format_error,
    format_notification,
    format_request,
    format_response,
    parse_message,
)
from aidaemon.protocol.lifecycle import (
    CALL_TIMEOUT,
    INIT_TIMEOUT,
    ClientLifecycle,
    LifecycleState,
    ServerCapabilities,
    ServerInfo,
    initialize_params,
)
from aidaemon.protocol.transport import Transport

logger = logging.getLogger(__name__)

TOOLS_LIST_CHANGED = "notifications/tools/list_changed"

# Guards against servers that return the same cursor forever
MAX_TOOL_PAGES = 100

NotificationHandler = Callable[[str, dict[str, Any] | None], None]


@dataclass
class McpTool:
    """A tool as reported by a server's tools/list."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> McpTool | None:
        name = data.get("name")
        if not isinstance(name, str) or not name:
            return None
        description = data.get("description")
        schema = data.get("inputSchema")
        return cls(
            name=name,
            description=description if isinstance(description, str) else "",
            input_schema=schema if isinstance(schema, dict) else {"type": "object"},
        )


@dataclass
class ContentBlock:
    """One typed block of a tools/call result."""

    type: str
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    uri: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> ContentBlock | None:
        if not isinstance(data, dict):
            return None
        block_type = data.get("type")
        if block_type == "text":
            text = data.get("text")
            return cls(type="text", text=text) if isinstance(text, str) else None
        if block_type == "image":
            return cls(
                type="image",
                data=data.get("data") if isinstance(data.get("data"), str) else "",
                mime_type=data.get("mimeType") if isinstance(data.get("mimeType"), str) else "",
            )
        if block_type == "resource":
            resource = data.get("resource") if isinstance(data.get("resource"), dict) else data
            uri = resource.get("uri")
            text = resource.get("text")
            return cls(
                type="resource",
                uri=uri if isinstance(uri, str) else "",
                text=text if isinstance(text, str) else None,
            )
        # Unknown block types survive only if they carry text
        text = data.get("text")
        if isinstance(text, str):
            return cls(type="text", text=text)
        return None

    def render(self) -> str:
        """Render the block as plain text for a model or a user."""
        if self.type == "image":
            return f"[Image: {self.mime_type}]"
        if self.type == "resource":
            return self.text if self.text is not None else f"[Resource: {self.uri}]"
        return self.text or ""


@dataclass
class ToolResult:
    """Result of a tools/call request."""

    content: list[ContentBlock]
    is_error: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolResult:
        raw_content = data.get("content")
        blocks: list[ContentBlock] = []
        if isinstance(raw_content, list):
            for item in raw_content:
                block = ContentBlock.from_dict(item)
                if block is not None:
                    blocks.append(block)
        return cls(content=blocks, is_error=data.get("isError") is True)

    @property
    def text_content(self) -> str:
        """All blocks rendered and joined by newlines."""
        if not self.content:
            return "(no content)"
        return "\n".join(block.render() for block in self.content)


class McpClient:
    """JSON-RPC client for a single MCP server."""

    def __init__(
        self,
        transport: Transport,
        name: str = "",
        init_timeout: float = INIT_TIMEOUT,
        call_timeout: float = CALL_TIMEOUT,
        on_notification: NotificationHandler | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            transport: Transport to the server; started by connect().
            name: Label used in log lines.
            init_timeout: Seconds allowed for the initialize reply.
            call_timeout: Seconds allowed for every later reply.
            on_notification: Called with (method, params) for every
                server notification seen while waiting for a reply.
        """
        self.transport = transport
        self.name = name
        self.init_timeout = init_timeout
        self.call_timeout = call_timeout
        self.on_notification = on_notification
        self._lifecycle = ClientLifecycle()
        self._request_lock = threading.Lock()
        self._next_id = 0
        self._tools: list[McpTool] = []

    @property
    def server_info(self) -> ServerInfo | None:
        return self._lifecycle.server_info

    @property
    def capabilities(self) -> ServerCapabilities | None:
        return self._lifecycle.capabilities

    @property
    def tools(self) -> list[McpTool]:
        return list(self._tools)

    @property
    def is_connected(self) -> bool:
        return self._lifecycle.is_ready and self.transport.is_connected

    def connect(self) -> list[McpTool]:
        """Start the transport, handshake, and discover tools.

        Returns:
            Tools the server offers (empty if it has no tool capability).

        Raises:
            McpError: On any transport or protocol failure; the transport
                is closed before the error propagates.
        """
        self._lifecycle.begin()
        try:
            self.transport.start()
            self._initialize()
            self._lifecycle.mark_ready()
            if self.capabilities is not None and self.capabilities.tools:
                self._tools = self.list_tools()
            else:
                self._tools = []
        except McpError:
            self.close()
            raise

        info = self.server_info
        logger.info(
            "Connected to MCP server %s (%s %s) with %d tools",
            self.name,
            info.name if info else "unknown",
            info.version if info else "",
            len(self._tools),
        )
        return self.tools

    def _initialize(self) -> None:
        result = self._request("initialize", initialize_params(), self.init_timeout)
        if not isinstance(result, dict):
            raise InvalidResponseError("initialize result must be an object")
        self._lifecycle.handle_initialize_result(result)
        self._notify("notifications/initialized")

    def list_tools(self) -> list[McpTool]:
        """Fetch every tool, following nextCursor until the server stops paging.

        Returns:
            All discovered tools.
        """
        self._lifecycle.require_ready()
        tools: list[McpTool] = []
        cursor: str | None = None
        for _ in range(MAX_TOOL_PAGES):
            params = {"cursor": cursor} if cursor else None
            result = self._request("tools/list", params, self.call_timeout)
            if not isinstance(result, dict):
                raise InvalidResponseError("tools/list result must be an object")

            raw_tools = result.get("tools", [])
            if not isinstance(raw_tools, list):
                raise InvalidResponseError("tools/list result has no tools array")
            for raw in raw_tools:
                if isinstance(raw, dict) and (tool := McpTool.from_dict(raw)) is not None:
                    tools.append(tool)

            next_cursor = result.get("nextCursor")
            if not isinstance(next_cursor, str) or not next_cursor:
                return tools
            cursor = next_cursor

        raise ProtocolError(f"tools/list did not finish after {MAX_TOOL_PAGES} pages")

    def refresh_tools(self) -> list[McpTool]:
        """Re-run discovery and replace the cached tool list."""
        self._tools = self.list_tools()
        return self.tools

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Invoke a tool on the server.

        Args:
            name: Tool name as reported by the server.
            arguments: Tool arguments.

        Returns:
            Parsed tool result.
        """
        self._lifecycle.require_ready()
        result = self._request(
            "tools/call", {"name": name, "arguments": arguments or {}}, self.call_timeout
        )
        if not isinstance(result, dict):
            raise InvalidResponseError("tools/call result must be an object")
        return ToolResult.from_dict(result)

    def close(self) -> None:
        """Close the transport; the client cannot be reused after this."""
        self._lifecycle.mark_closed()
        try:
            self.transport.close()
        except OSError as e:
            logger.warning("Error closing MCP server %s: %s", self.name, e)

    def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self.transport.send(format_notification(method, params))

    def _request(self, method: str, params: dict[str, Any] | None, timeout: float) -> Any:
        with self._request_lock:
            if self._lifecycle.state == LifecycleState.CLOSED:
                raise NotConnectedError()
            self._next_id += 1
            request_id = self._next_id
            self.transport.send(format_request(request_id, method, params))

            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise McpTimeoutError(f"{method} timed out after {timeout:g}s")

                try:
                    raw = self.transport.receive(timeout=remaining)
                except McpTimeoutError:
                    raise McpTimeoutError(f"{method} timed out after {timeout:g}s") from None
                try:
                    message = parse_message(raw)
                except JsonRpcError as e:
                    logger.warning("Ignoring malformed message from %s: %s", self.name, e)
                    continue

                if isinstance(message, JsonRpcNotification):
                    self._dispatch_notification(message)
                    continue
                if isinstance(message, JsonRpcRequest):
                    self._answer_server_request(message)
                    continue
                if message.id != request_id:
                    logger.debug(
                        "Skipping response id %r from %s while awaiting %d",
                        message.id,
                        self.name,
                        request_id,
                    )
                    continue

                if message.error is not None:
                    raise ServerError(message.error.code, message.error.message)
                return message.result

    def _dispatch_notification(self, notification: JsonRpcNotification) -> None:
        logger.debug("Notification from %s: %s", self.name, notification.method)
        if self.on_notification is not None:
            self.on_notification(notification.method, notification.params)

    def _answer_server_request(self, request: JsonRpcRequest) -> None:
        if request.method == "ping":
            self.transport.send(format_response(request.id, {}))
        else:
            self.transport.send(
                format_error(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")
            )
