"""Tool data structures and the executor interface.

Every tool, built-in or plugin-backed, is described by a ToolDefinition and
run by a ToolExecutor that returns a ToolExecutionResult.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RiskLevel(Enum):
    """Risk tier of a tool, driving confirmation policy."""

    SAFE = "safe"
    CAUTION = "caution"
    DANGEROUS = "dangerous"


class ParamType(Enum):
    """Declared type of a built-in tool parameter."""

    STRING = "string"
    INT = "int"
    BOOL = "bool"
    DOUBLE = "double"
    ENUM = "enum"


@dataclass(frozen=True)
class ToolParameter:
    """One parameter of a built-in tool."""

    name: str
    type: ParamType
    description: str
    required: bool = True
    enum_values: tuple[str, ...] = ()

    def type_error(self, value: Any) -> str | None:
        """Check a supplied value against the declared type.

        Args:
            value: Argument value from the model.

        Returns:
            A reason string if the value does not match, else None.
        """
        got = type(value).__name__
        if self.type == ParamType.STRING:
            if not isinstance(value, str):
                return f"Parameter '{self.name}' must be a string, got {got}"
        elif self.type == ParamType.INT:
            if not isinstance(value, int) or isinstance(value, bool):
                return f"Parameter '{self.name}' must be an integer, got {got}"
        elif self.type == ParamType.BOOL:
            if not isinstance(value, bool):
                return f"Parameter '{self.name}' must be a boolean, got {got}"
        elif self.type == ParamType.DOUBLE:
            if not isinstance(value, int | float) or isinstance(value, bool):
                return f"Parameter '{self.name}' must be a number, got {got}"
        elif self.type == ParamType.ENUM:
            allowed = ", ".join(self.enum_values)
            if not isinstance(value, str) or value not in self.enum_values:
                return f"Parameter '{self.name}' must be one of: {allowed}"
        return None

    def json_schema(self) -> dict[str, Any]:
        """JSON Schema fragment describing this parameter."""
        schema: dict[str, Any] = {"description": self.description}
        if self.type == ParamType.ENUM:
            schema["type"] = "string"
            schema["enum"] = list(self.enum_values)
        else:
            schema["type"] = {
                ParamType.STRING: "string",
                ParamType.INT: "integer",
                ParamType.BOOL: "boolean",
                ParamType.DOUBLE: "number",
            }[self.type]
        return schema

    def prompt_type(self) -> str:
        if self.type == ParamType.ENUM:
            return "one of: " + ", ".join(self.enum_values)
        return self.json_schema()["type"]


@dataclass(frozen=True)
class ToolDefinition:
    """Immutable description of a registered tool.

    Built-in tools declare ``parameters``; plugin tools leave them empty and
    carry the server's JSON Schema in ``input_schema`` instead.
    """

    id: str
    display_name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()
    risk_level: RiskLevel = RiskLevel.SAFE
    input_schema: dict[str, Any] | None = field(default=None, compare=False)

    @property
    def is_plugin_tool(self) -> bool:
        return self.input_schema is not None

    def to_model_dict(self) -> dict[str, Any]:
        """Convert to a model tool-calling definition.

        Returns:
            ``{name, description, input_schema}`` with the plugin schema used
            verbatim, or one synthesized from the parameter list.
        """
        if self.input_schema is not None:
            return {
                "name": self.id,
                "description": self.description,
                "input_schema": self.input_schema,
            }

        properties = {p.name: p.json_schema() for p in self.parameters}
        required = sorted(p.name for p in self.parameters if p.required)
        input_schema: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            input_schema["required"] = required
        return {"name": self.id, "description": self.description, "input_schema": input_schema}


@dataclass
class ToolCall:
    """A request to run one tool with the given arguments."""

    tool_id: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def string_argument(self, key: str) -> str | None:
        """Return an argument if it is a string, else None."""
        value = self.arguments.get(key)
        return value if isinstance(value, str) else None


@dataclass
class ToolExecutionResult:
    """Uniform result returned by every tool executor."""

    success: bool
    message: str
    details: str | None = None

    @classmethod
    def ok(cls, message: str, details: str | None = None) -> ToolExecutionResult:
        return cls(success=True, message=message, details=details)

    @classmethod
    def error(cls, message: str, details: str | None = None) -> ToolExecutionResult:
        return cls(success=False, message=message, details=details)

    def formatted(self) -> str:
        """Message followed by details on a new line, when there are details."""
        if self.details:
            return f"{self.message}\n{self.details}"
        return self.message


class ToolExecutor(ABC):
    """Runs a tool. Implementations report failures as results, not exceptions."""

    @abstractmethod
    def execute(self, arguments: dict[str, Any]) -> ToolExecutionResult:
        """Execute the tool.

        Args:
            arguments: Sanitized and validated tool arguments.

        Returns:
            ToolExecutionResult describing the outcome.
        """
        pass


class FunctionExecutor(ToolExecutor):
    """Adapts a plain callable to the ToolExecutor interface."""

    def __init__(self, func: Callable[[dict[str, Any]], ToolExecutionResult]) -> None:
        self._func = func

    def execute(self, arguments: dict[str, Any]) -> ToolExecutionResult:
        return self._func(arguments)
