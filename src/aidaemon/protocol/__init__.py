"""MCP protocol layer: JSON-RPC codec, transports and the protocol client."""

from aidaemon.protocol.client import ContentBlock, McpClient, McpTool, ToolResult
from aidaemon.protocol.jsonrpc import (
    JsonRpcError,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    format_notification,
    format_request,
    parse_message,
)
from aidaemon.protocol.lifecycle import MCP_PROTOCOL_VERSION, LifecycleState
from aidaemon.protocol.transport import HttpTransport, StdioTransport, Transport

__all__ = [
    "ContentBlock",
    "HttpTransport",
    "JsonRpcError",
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "LifecycleState",
    "MCP_PROTOCOL_VERSION",
    "McpClient",
    "McpTool",
    "StdioTransport",
    "ToolResult",
    "Transport",
    "format_notification",
    "format_request",
    "parse_message",
]
