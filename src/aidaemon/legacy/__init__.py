"""Single-step fallback: one local generation parsed into one command."""

from aidaemon.legacy.dispatch import READABLE_NAMES, TOOL_IDS, tool_call_from_command
from aidaemon.legacy.parser import Command, CommandType, parse_command
from aidaemon.legacy.prompts import build_command_prompt, build_conversational_prompt
from aidaemon.legacy.validator import CommandValidator, OutcomeKind, ValidationOutcome

__all__ = [
    "Command",
    "CommandType",
    "CommandValidator",
    "OutcomeKind",
    "READABLE_NAMES",
    "TOOL_IDS",
    "ValidationOutcome",
    "build_command_prompt",
    "build_conversational_prompt",
    "parse_command",
    "tool_call_from_command",
]
