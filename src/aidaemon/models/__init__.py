"""Language-model backends and the router that chooses between them."""

from aidaemon.models.anthropic import AnthropicProvider
from aidaemon.models.base import (
    COMMAND_PARAMS,
    GenerationParams,
    ModelProvider,
    ModelResponse,
    StopReason,
    ToolCallingProvider,
    ToolUseBlock,
)
from aidaemon.models.local import LocalModelProvider
from aidaemon.models.router import ModelRouter, RoutingDecision, RoutingMode, is_complex

__all__ = [
    "AnthropicProvider",
    "COMMAND_PARAMS",
    "GenerationParams",
    "LocalModelProvider",
    "ModelProvider",
    "ModelResponse",
    "ModelRouter",
    "RoutingDecision",
    "RoutingMode",
    "StopReason",
    "ToolCallingProvider",
    "ToolUseBlock",
    "is_complex",
]
