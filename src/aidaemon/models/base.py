"""Model provider interface and shared response types."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from aidaemon.exceptions import RequestAbortedError

T = TypeVar("T")


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters for a single generation."""

    max_tokens: int = 256
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1


# Tuned for short, deterministic JSON command output
COMMAND_PARAMS = GenerationParams(max_tokens=256, temperature=0.1)


class StopReason(Enum):
    """Why the model stopped generating."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    UNKNOWN = "unknown"

    @classmethod
    def from_api(cls, value: Any) -> StopReason:
        for member in cls:
            if member.value == value and member is not cls.UNKNOWN:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """Parsed reply of a tool-calling model request.

    ``raw_content_blocks`` is the assistant turn exactly as it must be
    replayed in the next request.
    """

    stop_reason: StopReason
    raw_content_blocks: list[dict[str, Any]] = field(default_factory=list)
    text_blocks: list[str] = field(default_factory=list)
    tool_use_blocks: list[ToolUseBlock] = field(default_factory=list)

    @property
    def text_content(self) -> str:
        return "\n".join(self.text_blocks)


class ModelProvider(ABC):
    """A language-model backend, local or cloud."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Human-readable provider name."""
        pass

    @property
    @abstractmethod
    def is_cloud(self) -> bool:
        """Whether requests leave the machine."""
        pass

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether the provider can serve a request right now (cached)."""
        pass

    def refresh_availability(self) -> bool:
        """Re-check availability and return it."""
        return self.is_available

    @abstractmethod
    def generate(self, prompt: str, params: GenerationParams | None = None) -> str:
        """Generate text for a single prompt.

        Args:
            prompt: Full prompt text.
            params: Sampling parameters.

        Returns:
            Generated text.

        Raises:
            ModelProviderError: If the backend fails.
        """
        pass

    @abstractmethod
    def abort(self) -> None:
        """Cancel any in-flight request. Safe to call when idle."""
        pass


class ToolCallingProvider(ModelProvider):
    """A provider that supports multi-turn tool use."""

    @abstractmethod
    def send_with_tools(
        self,
        messages: list[dict[str, Any]],
        system: str,
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        """Send a conversation with tool definitions.

        Args:
            messages: Conversation so far, including prior tool results.
            system: System prompt.
            tools: Tool definitions (name, description, input_schema).

        Returns:
            Parsed response with raw blocks preserved.
        """
        pass


def call_cancellable(
    executor: ThreadPoolExecutor,
    func: Callable[[], T],
    cancel: threading.Event,
    poll_interval: float = 0.05,
) -> T:
    """Run a blocking call on a worker thread, returning early on cancel.

    Args:
        executor: Pool that runs the call.
        func: Blocking call, typically an HTTP request.
        cancel: Event set by abort().
        poll_interval: Seconds between cancel checks.

    Returns:
        The call's return value; its exceptions propagate unchanged.

    Raises:
        RequestAbortedError: If ``cancel`` is set before the call finishes.
    """
    if cancel.is_set():
        raise RequestAbortedError()
    future = executor.submit(func)
    while True:
        try:
            return future.result(timeout=poll_interval)
        except FutureTimeoutError:
            if cancel.is_set():
                # The worker finishes on its own; its result is discarded
                future.cancel()
                raise RequestAbortedError() from None
