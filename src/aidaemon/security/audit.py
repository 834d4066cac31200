"""Audit trail for tool executions and policy outcomes.

Append-only JSON Lines log. Every tool the agent runs gets a request record
and a result record; blocked or refused calls get a security record.
"""

from __future__ import annotations

import json
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Patterns for sensitive argument keys
SENSITIVE_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"auth", re.IGNORECASE),
    re.compile(r"credential", re.IGNORECASE),
    re.compile(r"private[_-]?key", re.IGNORECASE),
]

REDACTED = "[REDACTED]"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    return any(pattern.search(key) for pattern in SENSITIVE_PATTERNS)


def redact_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Copy arguments with sensitive values replaced, at any depth.

    Args:
        arguments: Tool arguments.

    Returns:
        New dictionary safe to write to the audit log.
    """

    def redact(value: Any) -> Any:
        if isinstance(value, dict):
            return redact_arguments(value)
        if isinstance(value, list):
            return [redact(item) for item in value]
        return value

    return {
        key: REDACTED if is_sensitive_key(str(key)) else redact(value)
        for key, value in arguments.items()
    }


def _get_timestamp() -> str:
    """Get current UTC timestamp in ISO 8601 format."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class AuditLogger:
    """Append-only audit logger with JSON Lines format.

    Each record is flushed as it is written. Writes from concurrent tool
    executions are serialized.
    """

    def __init__(self, log_path: Path) -> None:
        """Open (or create) the audit log.

        Args:
            log_path: Path to the audit log file.
        """
        self._log_path = log_path
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    def _write_line(self, data: dict[str, Any]) -> None:
        line = json.dumps(data, default=str)
        with self._lock:
            if self._file.closed:
                return
            self._file.write(line + "\n")
            self._file.flush()

    def log_request(self, request_id: str, tool_id: str, arguments: dict[str, Any]) -> None:
        """Log a tool invocation about to run.

        Args:
            request_id: Model-assigned tool-use id.
            tool_id: Registry id of the tool.
            arguments: Tool arguments (sensitive values are redacted).
        """
        self._write_line(
            {
                "type": "request",
                "timestamp": _get_timestamp(),
                "request_id": request_id,
                "tool_id": tool_id,
                "arguments": redact_arguments(arguments),
            }
        )

    def log_response(self, request_id: str, status: str, duration_ms: float) -> None:
        """Log a tool result.

        Args:
            request_id: Request identifier to correlate with.
            status: Result status (success/error).
            duration_ms: Execution time in milliseconds.
        """
        self._write_line(
            {
                "type": "response",
                "timestamp": _get_timestamp(),
                "request_id": request_id,
                "result_status": status,
                "execution_time_ms": round(duration_ms, 3),
            }
        )

    def log_security_event(self, event_type: str, details: dict[str, Any]) -> None:
        """Log a denied, refused, or otherwise blocked call.

        Args:
            event_type: Kind of event (policy_denied, user_denied, ...).
            details: Event details; argument maps are redacted.
        """
        details = dict(details)
        if isinstance(details.get("arguments"), dict):
            details["arguments"] = redact_arguments(details["arguments"])
        self._write_line(
            {
                "type": "security",
                "timestamp": _get_timestamp(),
                "event_type": event_type,
                "details": details,
            }
        )

    def close(self) -> None:
        """Close the log file."""
        with self._lock:
            if not self._file.closed:
                self._file.close()

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
