"""Built-in tool catalog.

Schemas for the local tools the assistant ships with. Their executors are
platform wrappers supplied by the host application.
"""

from __future__ import annotations

import logging
from typing import Any

from aidaemon.tools.definitions import (
    ParamType,
    RiskLevel,
    ToolDefinition,
    ToolExecutionResult,
    ToolExecutor,
    ToolParameter,
)
from aidaemon.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

APP_OPEN = ToolDefinition(
    id="app_open",
    display_name="Open Application",
    description="Opens an application by name or a URL in the default browser.",
    parameters=(
        ToolParameter(
            name="target",
            type=ParamType.STRING,
            description="The app name (e.g. 'Safari') or URL (e.g. 'https://google.com') to open.",
        ),
    ),
    risk_level=RiskLevel.SAFE,
)

FILE_SEARCH = ToolDefinition(
    id="file_search",
    display_name="Search Files",
    description="Searches for files using the system index. Returns matching file paths ranked by relevance.",
    parameters=(
        ToolParameter(
            name="query",
            type=ParamType.STRING,
            description="The search term (e.g. 'tax return', 'resume pdf').",
        ),
        ToolParameter(
            name="kind",
            type=ParamType.ENUM,
            description="Optional file type filter.",
            required=False,
            enum_values=("pdf", "image", "video", "audio", "text", "folder", "app"),
        ),
        ToolParameter(
            name="date",
            type=ParamType.STRING,
            description="Optional date filter (e.g. '2024', 'last week').",
            required=False,
        ),
    ),
    risk_level=RiskLevel.SAFE,
)

WINDOW_MANAGE = ToolDefinition(
    id="window_manage",
    display_name="Manage Window",
    description="Moves or resizes a window to a specified position on screen.",
    parameters=(
        ToolParameter(
            name="target",
            type=ParamType.STRING,
            description="The app whose window to manage, or 'frontmost' for the active window.",
            required=False,
        ),
        ToolParameter(
            name="position",
            type=ParamType.ENUM,
            description="The screen position to move the window to.",
            enum_values=(
                "left_half",
                "right_half",
                "top_half",
                "bottom_half",
                "full_screen",
                "center",
                "top_left",
                "top_right",
                "bottom_left",
                "bottom_right",
            ),
        ),
    ),
    risk_level=RiskLevel.SAFE,
)

SYSTEM_INFO = ToolDefinition(
    id="system_info",
    display_name="System Information",
    description="Retrieves system information such as battery level, disk space, IP address, etc.",
    parameters=(
        ToolParameter(
            name="target",
            type=ParamType.ENUM,
            description="The type of system information to retrieve.",
            enum_values=(
                "ip_address",
                "disk_space",
                "cpu_usage",
                "battery",
                "battery_time",
                "memory",
                "hostname",
                "os_version",
                "uptime",
            ),
        ),
    ),
    risk_level=RiskLevel.SAFE,
)

BUILTIN_TOOLS: tuple[ToolDefinition, ...] = (APP_OPEN, FILE_SEARCH, WINDOW_MANAGE, SYSTEM_INFO)


class PlaceholderExecutor(ToolExecutor):
    """Stands in for a built-in tool whose platform executor is not available."""

    def __init__(self, definition: ToolDefinition) -> None:
        self.definition = definition

    def execute(self, arguments: dict[str, Any]) -> ToolExecutionResult:
        return ToolExecutionResult.error(f"{self.definition.display_name} is not yet implemented.")


def register_builtin_tools(
    registry: ToolRegistry,
    executors: dict[str, ToolExecutor],
    placeholders: bool = False,
) -> list[str]:
    """Register the built-in tools the host supplied executors for.

    Args:
        registry: Registry to populate.
        executors: Tool id to executor.
        placeholders: Register a PlaceholderExecutor for every built-in
            without an executor instead of leaving it out.

    Returns:
        Ids of the tools registered.
    """
    registered = []
    for definition in BUILTIN_TOOLS:
        executor = executors.get(definition.id)
        if executor is None:
            if not placeholders:
                logger.debug("No executor for built-in tool '%s'", definition.id)
                continue
            executor = PlaceholderExecutor(definition)
        registry.register(definition, executor)
        registered.append(definition.id)
    return registered
