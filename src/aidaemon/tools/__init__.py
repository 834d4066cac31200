"""Tool definitions, the built-in catalog and the tool registry."""

from aidaemon.tools.definitions import (
    FunctionExecutor,
    ParamType,
    RiskLevel,
    ToolCall,
    ToolDefinition,
    ToolExecutionResult,
    ToolExecutor,
    ToolParameter,
)
from aidaemon.tools.registry import ToolRegistry, ValidationResult

__all__ = [
    "FunctionExecutor",
    "ParamType",
    "RiskLevel",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolParameter",
    "ToolRegistry",
    "ValidationResult",
]
