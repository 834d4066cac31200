"""Mapping from single-step commands onto registry tool calls."""

from __future__ import annotations

from typing import Any

from aidaemon.legacy.parser import Command, CommandType
from aidaemon.tools.definitions import ToolCall

TOOL_IDS: dict[CommandType, str] = {
    CommandType.APP_OPEN: "app_open",
    CommandType.FILE_SEARCH: "file_search",
    CommandType.WINDOW_MANAGE: "window_manage",
    CommandType.SYSTEM_INFO: "system_info",
    CommandType.FILE_OP: "file_op",
    CommandType.PROCESS_MANAGE: "process_manage",
    CommandType.QUICK_ACTION: "quick_action",
}

READABLE_NAMES: dict[CommandType, str] = {
    CommandType.APP_OPEN: "Open Application",
    CommandType.FILE_SEARCH: "Search Files",
    CommandType.WINDOW_MANAGE: "Manage Window",
    CommandType.SYSTEM_INFO: "System Information",
    CommandType.FILE_OP: "File Operation",
    CommandType.PROCESS_MANAGE: "Manage Process",
    CommandType.QUICK_ACTION: "Quick Action",
}


def tool_call_from_command(command: Command) -> ToolCall:
    """Build the registry call that carries out a command.

    A window command whose position came in as its target is rewritten to
    act on the frontmost window at that position.
    """
    arguments: dict[str, Any] = {}
    if command.target is not None:
        arguments["target"] = command.target
    if command.query is not None:
        arguments["query"] = command.query
    arguments.update(command.parameters or {})

    if (
        command.type == CommandType.WINDOW_MANAGE
        and "position" not in arguments
        and command.target
    ):
        arguments["position"] = command.target
        if arguments.get("target") in (None, command.target):
            arguments["target"] = "frontmost"

    return ToolCall(tool_id=TOOL_IDS[command.type], arguments=arguments)
