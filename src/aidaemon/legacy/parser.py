"""Command parser for single-step model output.

The local model answers with one JSON object such as::

    {"type": "APP_OPEN", "target": "https://youtube.com", "confidence": 0.95}

possibly wrapped in a markdown code fence or followed by stray text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from aidaemon.exceptions import CommandParseError


class CommandType(Enum):
    APP_OPEN = "APP_OPEN"
    FILE_SEARCH = "FILE_SEARCH"
    WINDOW_MANAGE = "WINDOW_MANAGE"
    SYSTEM_INFO = "SYSTEM_INFO"
    FILE_OP = "FILE_OP"
    PROCESS_MANAGE = "PROCESS_MANAGE"
    QUICK_ACTION = "QUICK_ACTION"


# Types that cannot run without a target
TARGET_REQUIRED = frozenset(
    {
        CommandType.APP_OPEN,
        CommandType.FILE_OP,
        CommandType.PROCESS_MANAGE,
        CommandType.QUICK_ACTION,
    }
)


@dataclass(frozen=True)
class Command:
    """A structured command decoded from model output."""

    type: CommandType
    target: str | None = None
    query: str | None = None
    parameters: dict[str, Any] | None = None
    confidence: float | None = None

    def string_param(self, key: str) -> str | None:
        value = (self.parameters or {}).get(key)
        return value if isinstance(value, str) else None

    @property
    def description(self) -> str:
        parts = [f"Command: {self.type.value}"]
        if self.target is not None:
            parts.append(f"Target: {self.target}")
        if self.query is not None:
            parts.append(f"Query: {self.query}")
        if self.confidence is not None:
            parts.append(f"Confidence: {self.confidence * 100:.0f}%")
        return ", ".join(parts)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned.replace("```json", "")
    if cleaned.startswith("```"):
        cleaned = cleaned.replace("```", "")
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def find_matching_brace(text: str, start: int) -> int | None:
    """Index of the brace closing the object opened at ``start``.

    Braces inside JSON strings are ignored.
    """
    depth = 0
    in_string = False
    escape_next = False
    for index in range(start, len(text)):
        char = text[index]
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def extract_json_object(text: str) -> str:
    """Cut the first balanced ``{...}`` out of surrounding text, if there is one."""
    start = text.find("{")
    if start == -1:
        return text
    end = find_matching_brace(text, start)
    if end is None:
        return text
    return text[start : end + 1]


def _optional_string(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise CommandParseError.invalid_json(f"'{key}' must be a string")


def parse_command(raw: str) -> Command:
    """Decode model output into a Command.

    Args:
        raw: Model output text.

    Returns:
        The decoded command.

    Raises:
        CommandParseError: If no valid command object can be decoded.
    """
    candidate = extract_json_object(strip_code_fences(raw))
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise CommandParseError.invalid_json(str(e)) from e

    if not isinstance(data, dict):
        raise CommandParseError.invalid_json("expected a JSON object")

    type_name = data.get("type")
    if type_name is None:
        raise CommandParseError.missing_type()
    try:
        command_type = CommandType(type_name)
    except ValueError as e:
        raise CommandParseError.unknown_type(str(type_name)) from e

    parameters = data.get("parameters")
    if parameters is not None and not isinstance(parameters, dict):
        raise CommandParseError.invalid_json("'parameters' must be an object")

    confidence = data.get("confidence")
    if confidence is not None and (
        isinstance(confidence, bool) or not isinstance(confidence, int | float)
    ):
        raise CommandParseError.invalid_json("'confidence' must be a number")

    command = Command(
        type=command_type,
        target=_optional_string(data, "target"),
        query=_optional_string(data, "query"),
        parameters=parameters,
        confidence=float(confidence) if confidence is not None else None,
    )

    if command.type in TARGET_REQUIRED and command.target is None:
        raise CommandParseError.missing_field("target")
    return command
