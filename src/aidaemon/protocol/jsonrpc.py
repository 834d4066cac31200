"""JSON-RPC 2.0 message encoding and decoding.

Client-side half of the JSON-RPC 2.0 codec used to talk to MCP servers:
requests and notifications are encoded, and inbound lines are decoded into
responses, server-initiated requests, or notifications.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

# Standard JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Maximum message size (1 MB)
MAX_MESSAGE_SIZE = 1_048_576


class JsonRpcError(Exception):
    """JSON-RPC error with code and message."""

    def __init__(self, code: int, message: str, data: Any | None = None) -> None:
        """Initialize the error.

        Args:
            code: JSON-RPC error code.
            message: Human-readable error message.
            data: Optional additional error data.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


@dataclass
class JsonRpcRequest:
    """Represents a JSON-RPC request (has id and method)."""

    id: int | str
    method: str
    params: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire representation."""
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": self.id, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


@dataclass
class JsonRpcNotification:
    """Represents a JSON-RPC notification (no id)."""

    method: str
    params: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire representation."""
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


@dataclass
class JsonRpcResponse:
    """Represents a JSON-RPC response (has id and result or error)."""

    id: int | str | None
    result: Any = None
    error: JsonRpcError | None = None

    @property
    def is_error(self) -> bool:
        """Check whether the response carries an error object."""
        return self.error is not None


JsonRpcMessage = JsonRpcRequest | JsonRpcNotification | JsonRpcResponse


def format_request(msg_id: int | str, method: str, params: dict[str, Any] | None = None) -> str:
    """Format a JSON-RPC request.

    Args:
        msg_id: Request ID; the reply echoes it back.
        method: Method name.
        params: Optional parameters.

    Returns:
        JSON string.
    """
    return json.dumps(JsonRpcRequest(id=msg_id, method=method, params=params).to_dict())


def format_notification(method: str, params: dict[str, Any] | None = None) -> str:
    """Format a JSON-RPC notification (client to server).

    Args:
        method: Notification method name.
        params: Optional parameters.

    Returns:
        JSON string.
    """
    return json.dumps(JsonRpcNotification(method=method, params=params).to_dict())


def _parse_error_object(raw_error: Any) -> JsonRpcError:
    if not isinstance(raw_error, dict):
        raise JsonRpcError(INVALID_REQUEST, "Invalid Response: error must be an object")
    code = raw_error.get("code")
    message = raw_error.get("message")
    if not isinstance(code, int) or isinstance(code, bool):
        code = INTERNAL_ERROR
    if not isinstance(message, str):
        message = "Unknown error"
    return JsonRpcError(code, message, raw_error.get("data"))


def parse_message(raw: str | bytes) -> JsonRpcMessage:
    """Parse a JSON-RPC message received from a server.

    Args:
        raw: Raw JSON text (one line for stdio, one body for HTTP).

    Returns:
        Parsed response, server request, or notification.

    Raises:
        JsonRpcError: If the message is invalid.
    """
    # Check message size before parsing to prevent DoS
    if len(raw) > MAX_MESSAGE_SIZE:
        raise JsonRpcError(
            PARSE_ERROR, f"Message too large: {len(raw)} bytes exceeds {MAX_MESSAGE_SIZE} limit"
        )

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise JsonRpcError(PARSE_ERROR, f"Parse error: {e}") from e

    if not isinstance(data, dict):
        raise JsonRpcError(INVALID_REQUEST, "Invalid Request: message must be an object")

    if data.get("jsonrpc") != "2.0":
        raise JsonRpcError(INVALID_REQUEST, "Invalid Request: jsonrpc must be '2.0'")

    msg_id = data.get("id")
    if msg_id is not None and (not isinstance(msg_id, int | str) or isinstance(msg_id, bool)):
        raise JsonRpcError(INVALID_REQUEST, "Invalid Request: id must be integer or string")

    method = data.get("method")
    if method is not None:
        if not isinstance(method, str):
            raise JsonRpcError(INVALID_REQUEST, "Invalid Request: method must be a string")
        params = data.get("params")
        if params is not None and not isinstance(params, dict):
            raise JsonRpcError(INVALID_REQUEST, "Invalid Request: params must be an object")
        if msg_id is None:
            return JsonRpcNotification(method=method, params=params)
        return JsonRpcRequest(id=msg_id, method=method, params=params)

    if "result" in data:
        return JsonRpcResponse(id=msg_id, result=data["result"])
    if "error" in data:
        return JsonRpcResponse(id=msg_id, error=_parse_error_object(data["error"]))

    raise JsonRpcError(
        INVALID_REQUEST, "Invalid Request: message has neither method, result nor error"
    )


def format_response(msg_id: int | str, result: Any) -> str:
    """Format a successful JSON-RPC response to a server-initiated request.

    Args:
        msg_id: Request ID to echo back.
        result: Result payload.

    Returns:
        JSON string.
    """
    return json.dumps({"jsonrpc": "2.0", "id": msg_id, "result": result})


def format_error(msg_id: int | str | None, code: int, message: str) -> str:
    """Format a JSON-RPC error response to a server-initiated request.

    Args:
        msg_id: Request ID.
        code: Error code.
        message: Error message.

    Returns:
        JSON string.
    """
    return json.dumps({"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}})
