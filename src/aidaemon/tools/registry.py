"""Tool registry - maps tool ids to definitions and executors."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from aidaemon.tools.definitions import (
    RiskLevel,
    ToolCall,
    ToolDefinition,
    ToolExecutionResult,
    ToolExecutor,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a tool call."""

    is_valid: bool
    reason: str | None = None

    @classmethod
    def valid(cls) -> ValidationResult:
        return cls(is_valid=True)

    @classmethod
    def invalid(cls, reason: str) -> ValidationResult:
        return cls(is_valid=False, reason=reason)


@dataclass(frozen=True)
class _Registration:
    definition: ToolDefinition
    executor: ToolExecutor


class ToolRegistry:
    """Unifies built-in and plugin tools behind one invocation interface.

    Registration and lookups are guarded by a lock; listing methods work on
    a snapshot so they never observe a half-applied register/unregister.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._lock = threading.RLock()
        self._tools: dict[str, _Registration] = {}

    def register(self, definition: ToolDefinition, executor: ToolExecutor) -> None:
        """Register a tool, replacing any tool with the same id.

        Args:
            definition: Tool definition.
            executor: Executor that runs the tool.
        """
        with self._lock:
            if definition.id in self._tools:
                logger.warning("Replacing registered tool '%s'", definition.id)
            self._tools[definition.id] = _Registration(definition, executor)

    def register_plugin_tool(
        self,
        tool_id: str,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        executor: ToolExecutor,
        risk_level: RiskLevel = RiskLevel.CAUTION,
    ) -> ToolDefinition:
        """Register a tool discovered from a plugin server.

        Args:
            tool_id: Namespaced registry id.
            name: Tool name as reported by the server.
            description: Tool description.
            input_schema: The server's JSON Schema, kept verbatim.
            executor: Executor that forwards the call to the server.
            risk_level: Risk tier assigned to the tool.

        Returns:
            The registered definition.
        """
        definition = ToolDefinition(
            id=tool_id,
            display_name=name,
            description=description,
            risk_level=risk_level,
            input_schema=input_schema,
        )
        self.register(definition, executor)
        return definition

    def unregister(self, tool_id: str) -> bool:
        """Remove a tool.

        Returns:
            True if the tool was registered.
        """
        with self._lock:
            return self._tools.pop(tool_id, None) is not None

    def is_registered(self, tool_id: str) -> bool:
        with self._lock:
            return tool_id in self._tools

    def get(self, tool_id: str) -> ToolDefinition | None:
        with self._lock:
            registration = self._tools.get(tool_id)
        return registration.definition if registration else None

    def tool_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        """All registered definitions, sorted by id."""
        with self._lock:
            snapshot = list(self._tools.values())
        return sorted((r.definition for r in snapshot), key=lambda d: d.id)

    def validate(self, call: ToolCall) -> ValidationResult:
        """Validate a call against the tool's declared parameters.

        Plugin tools always validate; their server owns the schema. Extra
        arguments are ignored.

        Args:
            call: Tool call to check.

        Returns:
            ValidationResult naming the first problem found.
        """
        definition = self.get(call.tool_id)
        if definition is None:
            return ValidationResult.invalid(f"Unknown tool: '{call.tool_id}'")

        if definition.is_plugin_tool:
            return ValidationResult.valid()

        for param in definition.parameters:
            if param.name not in call.arguments:
                if param.required:
                    return ValidationResult.invalid(
                        f"Missing required parameter '{param.name}' for tool '{definition.id}'"
                    )
                continue
            error = param.type_error(call.arguments[param.name])
            if error is not None:
                return ValidationResult.invalid(error)

        return ValidationResult.valid()

    def execute(self, call: ToolCall) -> ToolExecutionResult:
        """Run a tool call through its executor.

        Never raises: unknown tools and executor crashes become failure results.

        Args:
            call: Tool call to run (validate first).

        Returns:
            The executor's result.
        """
        with self._lock:
            registration = self._tools.get(call.tool_id)
        if registration is None:
            return ToolExecutionResult.error(f"Unknown tool: '{call.tool_id}'")

        logger.info("Executing tool '%s'", call.tool_id)
        try:
            return registration.executor.execute(call.arguments)
        except Exception as e:
            logger.exception("Tool '%s' raised", call.tool_id)
            return ToolExecutionResult.error(f"Tool '{call.tool_id}' failed: {e}")

    def anthropic_tool_definitions(self) -> list[dict[str, Any]]:
        """Tool definitions for a model's tool-calling request, sorted by id."""
        return [definition.to_model_dict() for definition in self.definitions()]

    def tool_descriptions_for_prompt(self) -> str:
        """Plain-text listing of the registered tools for a system prompt."""
        definitions = self.definitions()
        if not definitions:
            return "No tools available."

        lines = ["Available tools:"]
        for tool in definitions:
            lines.append("")
            lines.append(f"- {tool.id}: {tool.description}")
            for p in tool.parameters:
                requirement = "required" if p.required else "optional"
                lines.append(f"    {p.name} ({p.prompt_type()}, {requirement}): {p.description}")
        return "\n".join(lines)
