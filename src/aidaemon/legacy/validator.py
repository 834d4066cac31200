"""Validation between command parsing and execution.

Sanitizes every string field, checks the fields each command type needs,
rejects path traversal in file commands, and classifies how risky the
command is. Risky commands come back as needing confirmation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from aidaemon.legacy.parser import Command, CommandType
from aidaemon.tools.definitions import RiskLevel

MAX_FIELD_LENGTH = 500

_DANGEROUS_PROCESS_ACTIONS = frozenset({"force_quit", "force quit", "kill", "kill_port"})


class OutcomeKind(Enum):
    VALID = "valid"
    NEEDS_CONFIRMATION = "needs_confirmation"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating one command."""

    kind: OutcomeKind
    command: Command | None = None
    reason: str | None = None
    level: RiskLevel = RiskLevel.SAFE

    @classmethod
    def valid(cls, command: Command) -> ValidationOutcome:
        return cls(OutcomeKind.VALID, command=command)

    @classmethod
    def needs_confirmation(
        cls, command: Command, reason: str, level: RiskLevel
    ) -> ValidationOutcome:
        return cls(OutcomeKind.NEEDS_CONFIRMATION, command=command, reason=reason, level=level)

    @classmethod
    def rejected(cls, reason: str) -> ValidationOutcome:
        return cls(OutcomeKind.REJECTED, reason=reason)


def sanitize_field(value: str | None) -> str | None:
    """Drop control characters except TAB/LF/CR and cap the length.

    Empty results read as missing.
    """
    if not value:
        return None
    cleaned = "".join(ch for ch in value if ord(ch) >= 32 or ch in "\t\n\r")
    cleaned = cleaned[:MAX_FIELD_LENGTH]
    return cleaned or None


def _sanitize_parameters(params: dict[str, Any] | None) -> dict[str, Any] | None:
    if not params:
        return params
    cleaned: dict[str, Any] = {}
    for key, value in params.items():
        clean_key = sanitize_field(key) or key
        cleaned[clean_key] = (sanitize_field(value) or "") if isinstance(value, str) else value
    return cleaned


def _is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


class CommandValidator:
    """Checks a parsed command before it is dispatched."""

    def validate(self, command: Command) -> ValidationOutcome:
        sanitized = self.sanitize(command)

        reason = self._missing_field_reason(sanitized) or self._path_reason(sanitized)
        if reason is not None:
            return ValidationOutcome.rejected(reason)

        level = self.classify(sanitized)
        if level == RiskLevel.SAFE:
            return ValidationOutcome.valid(sanitized)
        return ValidationOutcome.needs_confirmation(
            sanitized, self._confirmation_reason(sanitized), level
        )

    @staticmethod
    def sanitize(command: Command) -> Command:
        return replace(
            command,
            target=sanitize_field(command.target),
            query=sanitize_field(command.query),
            parameters=_sanitize_parameters(command.parameters),
        )

    @staticmethod
    def _missing_field_reason(command: Command) -> str | None:
        kind = command.type
        if kind == CommandType.APP_OPEN and _is_blank(command.target):
            return "An app name or URL is required to open an application."

        if kind == CommandType.FILE_SEARCH:
            query = command.query or command.target
            if _is_blank(query):
                return "A search term is required to search for files."
            if len(query.strip()) < 2:
                return "Search term must be at least 2 characters."

        if kind == CommandType.WINDOW_MANAGE:
            position = command.target or command.string_param("position")
            if _is_blank(position):
                return "A window position is required (e.g. left half, full screen)."

        if kind == CommandType.SYSTEM_INFO and _is_blank(command.target):
            return "An info type is required (e.g. battery, disk space, memory)."
        if kind == CommandType.FILE_OP and _is_blank(command.target):
            return "A file path is required for file operations."
        if kind == CommandType.PROCESS_MANAGE and _is_blank(command.target):
            return "A process or app name is required."
        if kind == CommandType.QUICK_ACTION and _is_blank(command.target):
            return "An action is required (e.g. screenshot, lock screen)."
        return None

    @staticmethod
    def _path_reason(command: Command) -> str | None:
        if command.type not in (CommandType.FILE_OP, CommandType.FILE_SEARCH):
            return None
        for raw in (command.target, command.query):
            if raw is None:
                continue
            if "../" in raw or "/.." in raw or raw == "..":
                return f'Path traversal sequences are not allowed: "{raw}"'
            if "\0" in raw:
                return f'Invalid characters in path: "{raw}"'
        return None

    @staticmethod
    def classify(command: Command) -> RiskLevel:
        """Risk tier of a sanitized command."""
        if command.type == CommandType.FILE_OP:
            return RiskLevel.CAUTION
        if command.type == CommandType.PROCESS_MANAGE:
            action = (command.string_param("action") or "").lower()
            if action in _DANGEROUS_PROCESS_ACTIONS:
                return RiskLevel.DANGEROUS
            return RiskLevel.CAUTION
        if command.type == CommandType.QUICK_ACTION:
            target = (command.target or "").lower()
            if "empty" in target or "trash" in target:
                return RiskLevel.CAUTION
        return RiskLevel.SAFE

    @staticmethod
    def _confirmation_reason(command: Command) -> str:
        if command.type == CommandType.FILE_OP:
            action = command.string_param("action") or "modify"
            return f'This will {action} "{command.target or "the file"}". Do you want to continue?'
        if command.type == CommandType.PROCESS_MANAGE:
            action = command.string_param("action") or "quit"
            target = command.target or "the process"
            return f'This will {action} "{target}". Any unsaved work may be lost. Continue?'
        if command.type == CommandType.QUICK_ACTION:
            return f"This will perform: {command.target or 'this action'}. Continue?"
        return "Confirm this action?"
