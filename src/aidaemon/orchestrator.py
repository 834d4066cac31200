"""Agent orchestrator.

Runs one user turn end to end. The primary path is a tool-use loop against
the cloud model:

    Thinking -> (ToolUse -> Thinking)* -> EndTurn | MaxTokens | StopSequence

Every requested tool call is sanitized, validated against the registry and
checked by the policy engine before it runs; failures become error tool
results fed back to the model. The loop is bounded by a round cap and a
wall-clock deadline, and an abort flag is checked before every model call
and every tool execution.

When the cloud model is unavailable the turn falls back to the single-step
local path: one generation parsed into one command, validated, optionally
confirmed, and dispatched through the same registry.
"""

from __future__ import annotations

import getpass
import logging
import platform
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from aidaemon.conversation import Conversation, Message, MessageRole
from aidaemon.exceptions import (
    AbortedError,
    LocalModelUnavailableError,
    MalformedResponseError,
    MaxRoundsExceededError,
    ModelProviderError,
    NoFinalResponseError,
    NoToolResultsError,
    OrchestratorError,
    ProviderUnavailableError,
    RequestAbortedError,
    TurnTimedOutError,
)
from aidaemon.legacy.dispatch import READABLE_NAMES, tool_call_from_command
from aidaemon.legacy.parser import parse_command
from aidaemon.legacy.prompts import build_command_prompt, build_conversational_prompt
from aidaemon.legacy.validator import CommandValidator, OutcomeKind
from aidaemon.models.base import COMMAND_PARAMS, ModelProvider, StopReason, ToolCallingProvider, ToolUseBlock
from aidaemon.models.router import ModelRouter, RoutingMode
from aidaemon.plugins.manager import ServerManager
from aidaemon.security.audit import AuditLogger
from aidaemon.security.policy import AutonomyLevel, PolicyEngine
from aidaemon.tools.definitions import RiskLevel, ToolCall, ToolExecutionResult
from aidaemon.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 10
DEFAULT_TURN_TIMEOUT = 90.0
DEFAULT_READY_TIMEOUT = 30.0

MAX_HISTORY_MESSAGES = 10
MAX_MESSAGE_CHARS = 4000

STATUS_CONNECTING = "Connecting integrations..."
STATUS_THINKING = "Thinking..."
STATUS_LOCAL_FALLBACK = "Cloud unavailable. Using local fallback..."

MAX_TOKENS_TEXT = "I hit the response length limit before finishing."


@dataclass(frozen=True)
class ConfirmationRequest:
    """A tool call waiting for the user's approval."""

    tool_call: ToolCall
    reason: str
    level: RiskLevel


@dataclass(frozen=True)
class TurnResult:
    """Final outcome of one user turn."""

    response_text: str
    model_used: str
    was_cloud: bool
    success: bool
    elapsed_seconds: float = 0.0
    tool_calls: int = 0

    @property
    def summary(self) -> str:
        return f"[{self.elapsed_seconds:.1f}s | {self.tool_calls} tools]"


ConfirmationHandler = Callable[[ConfirmationRequest], bool]
StatusObserver = Callable[[str], None]


class TurnMetrics:
    """Timing and tool usage of a single turn."""

    def __init__(self) -> None:
        self.started = time.monotonic()
        self.finished: float | None = None
        self.tool_calls = 0

    def record_tool_call(self) -> None:
        self.tool_calls += 1

    def finish(self) -> None:
        if self.finished is None:
            self.finished = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished if self.finished is not None else time.monotonic()
        return end - self.started


def sanitize_message_content(text: str) -> str:
    """Drop control characters except TAB/LF/CR, trim, and cap the length."""
    cleaned = "".join(ch for ch in text if ord(ch) >= 32 or ch in "\t\n\r").strip()
    return cleaned[:MAX_MESSAGE_CHARS]


def build_model_messages(recent: list[Message], current_input: str) -> list[dict[str, Any]]:
    """Conversation history in the Messages API shape, ending with the new input.

    The input is not appended again when it already is the last user message.
    """
    messages: list[dict[str, Any]] = []
    for message in recent[-MAX_HISTORY_MESSAGES:]:
        if message.role == MessageRole.SYSTEM:
            continue
        content = sanitize_message_content(message.content)
        if not content:
            continue
        role = "assistant" if message.role == MessageRole.ASSISTANT else "user"
        messages.append({"role": role, "content": content})

    current = sanitize_message_content(current_input)
    if messages and messages[-1]["role"] == "user" and messages[-1]["content"] == current:
        return messages
    messages.append({"role": "user", "content": current})
    return messages


def tool_result_payload(tool_use_id: str, content: str, is_error: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
    }
    if is_error:
        payload["is_error"] = True
    return payload


def status_text(call: ToolCall) -> str:
    """Progress line shown while a tool runs."""
    if call.tool_id == "app_open":
        return f"Opening {call.string_argument('target') or 'application'}..."
    if call.tool_id == "file_search":
        query = call.string_argument("query") or call.string_argument("target") or "files"
        return f"Searching for {query}..."
    if call.tool_id == "window_manage":
        return "Adjusting window..."
    if call.tool_id == "system_info":
        return "Checking system info..."
    return f"Running {call.tool_id}..."


def _user_name() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "user"


def build_system_prompt(registry: ToolRegistry, now: datetime | None = None) -> str:
    """System prompt: persona, environment facts and the available tools."""
    timestamp = (now or datetime.now(UTC)).isoformat(timespec="seconds")
    environment = f"{_user_name()}@{platform.system()} | {Path.home()} | {timestamp}"
    return f"""\
You are aiDAEMON, an AI companion that operates this computer by calling tools. \
You are not a chatbot. You are an agent that takes action.

Environment: {environment}

HOW TO RESPOND:
- Be competent, concise and proactive. Just do safe things without asking first.
- Respond in 1-2 sentences. "Done, opened Safari to google.com." Not a paragraph.
- Break multi-step tasks down and execute them one by one.
- If something fails, say briefly what went wrong and try a different approach.

{registry.tool_descriptions_for_prompt()}

RULES YOU MUST FOLLOW:
- NEVER claim you did something without calling a tool. Every action requires a tool call.
- NEVER invent tool results. Only report what actually happened.
- If a tool returns an error, report the real error. Don't say "Done" when it failed.
- If the same approach fails twice, try something different.
"""


class Orchestrator:
    """Drives a user turn through the model, the policy engine and the tools."""

    def __init__(
        self,
        registry: ToolRegistry,
        policy: PolicyEngine,
        cloud: ToolCallingProvider,
        local: ModelProvider,
        router: ModelRouter | None = None,
        server_manager: ServerManager | None = None,
        autonomy_level: AutonomyLevel = AutonomyLevel.AUTO_EXECUTE,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        turn_timeout: float = DEFAULT_TURN_TIMEOUT,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        on_status: StatusObserver | None = None,
        on_confirmation: ConfirmationHandler | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Registry of every callable tool.
            policy: Policy engine deciding whether a call may run.
            cloud: Tool-calling provider for the primary loop.
            local: Local provider for the single-step fallback.
            router: Router over the two providers; built from them if omitted.
            server_manager: Plugin servers to bring up before the loop.
            autonomy_level: How much may run without confirmation.
            max_rounds: Cap on tool-use rounds per turn.
            turn_timeout: Wall-clock budget per turn, in seconds.
            ready_timeout: Bounded wait for plugin servers, in seconds.
            on_status: Receives progress lines as they happen.
            on_confirmation: Asked to approve calls that need confirmation;
                without one, such calls are refused.
            audit: Optional audit trail for tool executions.
        """
        self.registry = registry
        self.policy = policy
        self.cloud = cloud
        self.local = local
        self.router = router or ModelRouter(local=local, cloud=cloud)
        self.server_manager = server_manager
        self.autonomy_level = autonomy_level
        self.max_rounds = max_rounds
        self.turn_timeout = turn_timeout
        self.ready_timeout = ready_timeout
        self.on_status = on_status
        self.on_confirmation = on_confirmation
        self.audit = audit
        self.validator = CommandValidator()
        self._abort = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def handle_user_input(self, text: str, conversation: Conversation | None = None) -> TurnResult:
        """Run one user turn.

        Args:
            text: What the user typed.
            conversation: History for context; the caller may already have
                appended ``text`` as the last user message.

        Returns:
            The turn's final result. Never raises for loop-level failures.
        """
        conversation = conversation or Conversation()
        self._abort.clear()
        metrics = TurnMetrics()

        if self.router.mode == RoutingMode.ALWAYS_LOCAL:
            result = self._run_legacy_turn(text, conversation, metrics)
        else:
            if not self.cloud.is_available:
                self.cloud.refresh_availability()
            if self.cloud.is_available:
                result = self._run_agent_loop(text, conversation, metrics)
            elif not self._local_ready():
                result = self._cloud_result(ProviderUnavailableError().message, False, metrics)
            else:
                self._emit_status(STATUS_LOCAL_FALLBACK)
                result = self._run_legacy_turn(text, conversation, metrics)

        logger.info(
            "Turn finished via %s: success=%s %s",
            result.model_used,
            result.success,
            result.summary,
        )
        return result

    def abort(self) -> None:
        """Stop the current turn at its next checkpoint and cancel model requests."""
        self._abort.set()
        self.cloud.abort()
        self.local.abort()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    # ------------------------------------------------------------------
    # Primary tool-use loop
    # ------------------------------------------------------------------

    def _run_agent_loop(
        self, text: str, conversation: Conversation, metrics: TurnMetrics
    ) -> TurnResult:
        deadline = time.monotonic() + self.turn_timeout
        rounds = 0

        try:
            self._prepare_integrations()
            system = build_system_prompt(self.registry)
            tools = self.registry.anthropic_tool_definitions()
            messages = build_model_messages(conversation.recent_messages(), text)

            while True:
                self._check_abort()
                self._check_deadline(deadline)
                self._emit_status(STATUS_THINKING)

                try:
                    response = self.cloud.send_with_tools(messages, system, tools)
                except RequestAbortedError as e:
                    raise AbortedError() from e
                except ModelProviderError as e:
                    fallback = self._fallback_after_cloud_failure(e, text, conversation, metrics)
                    if fallback is not None:
                        return fallback
                    raise

                self._check_abort()

                # The assistant turn must be replayed verbatim before its tool results
                messages.append({"role": "assistant", "content": response.raw_content_blocks})
                response_text = response.text_content.strip()

                if response.stop_reason == StopReason.END_TURN:
                    return self._cloud_result(response_text or "Done.", True, metrics)

                if response.stop_reason == StopReason.TOOL_USE:
                    rounds += 1
                    if rounds > self.max_rounds:
                        raise MaxRoundsExceededError(self.max_rounds)
                    results = self._process_tool_use_blocks(
                        response.tool_use_blocks, deadline, metrics
                    )
                    if not results:
                        raise NoToolResultsError()
                    messages.append({"role": "user", "content": results})
                    continue

                if response.stop_reason == StopReason.MAX_TOKENS:
                    return self._cloud_result(response_text or MAX_TOKENS_TEXT, False, metrics)

                # stop_sequence or an unrecognized stop reason
                if response_text:
                    return self._cloud_result(response_text, True, metrics)
                raise NoFinalResponseError()

        except OrchestratorError as e:
            logger.info("Agent loop ended early: %s", e.message)
            return self._cloud_result(e.message, False, metrics)
        except Exception as e:
            logger.exception("Agent loop failed")
            return self._cloud_result(f"Agent loop failed: {e}", False, metrics)

    def _prepare_integrations(self) -> None:
        if self.server_manager is None:
            return
        pending = any(
            server.enabled and not self.server_manager.is_connected(server.id)
            for server in self.server_manager.servers
        )
        if pending:
            self._emit_status(STATUS_CONNECTING)
        self.server_manager.ensure_enabled_servers_ready(self.ready_timeout)

    def _fallback_after_cloud_failure(
        self,
        error: ModelProviderError,
        text: str,
        conversation: Conversation,
        metrics: TurnMetrics,
    ) -> TurnResult | None:
        # Replaying the input locally after tools ran could repeat their side effects
        if metrics.tool_calls:
            return None
        self._local_ready()
        if self.router.fallback(self.cloud) is None:
            return None
        logger.warning("Cloud request failed, retrying locally: %s", error.message)
        self._emit_status(STATUS_LOCAL_FALLBACK)
        return self._run_legacy_turn(text, conversation, metrics)

    def _process_tool_use_blocks(
        self,
        blocks: list[ToolUseBlock],
        deadline: float,
        metrics: TurnMetrics,
    ) -> list[dict[str, Any]]:
        if not blocks:
            raise MalformedResponseError(
                "stop_reason=tool_use but no tool_use blocks were returned"
            )

        results: list[dict[str, Any]] = []
        for block in blocks:
            self._check_abort()
            self._check_deadline(deadline)

            arguments = self.policy.sanitize(block.input)
            call = ToolCall(tool_id=block.name, arguments=arguments)

            validation = self.registry.validate(call)
            if not validation.is_valid:
                content = f"Tool validation failed for '{block.name}': {validation.reason}"
                results.append(tool_result_payload(block.id, content, True))
                continue

            decision = self.policy.evaluate(block.name, arguments, self.autonomy_level)
            if decision.is_denied:
                results.append(
                    tool_result_payload(block.id, f"Denied by policy: {decision.reason}", True)
                )
                continue

            if decision.needs_confirmation:
                approved = self._request_confirmation(
                    ConfirmationRequest(
                        tool_call=call,
                        reason=decision.reason or "",
                        level=self.policy.safety_level(block.name),
                    )
                )
                self._check_abort()
                if not approved:
                    if self.audit is not None:
                        self.audit.log_security_event(
                            "user_denied", {"tool": block.name, "arguments": arguments}
                        )
                    results.append(
                        tool_result_payload(block.id, f"User denied tool '{block.name}'.", True)
                    )
                    continue

            result = self._execute_tool(call, metrics, request_id=block.id, deadline=deadline)
            results.append(tool_result_payload(block.id, result.formatted(), not result.success))

        return results

    def _execute_tool(
        self,
        call: ToolCall,
        metrics: TurnMetrics,
        request_id: str,
        deadline: float | None = None,
    ) -> ToolExecutionResult:
        self._check_abort()
        if deadline is not None:
            self._check_deadline(deadline)

        self._emit_status(status_text(call))
        metrics.record_tool_call()
        if self.audit is not None:
            self.audit.log_request(request_id, call.tool_id, call.arguments)

        started = time.perf_counter()
        result = self.registry.execute(call)
        duration_ms = (time.perf_counter() - started) * 1000

        if self.audit is not None:
            self.audit.log_response(
                request_id, "success" if result.success else "error", duration_ms
            )
        logger.debug(
            "Tool %s finished in %.0fms (success=%s)", call.tool_id, duration_ms, result.success
        )
        return result

    # ------------------------------------------------------------------
    # Single-step local fallback
    # ------------------------------------------------------------------

    def _run_legacy_turn(
        self, text: str, conversation: Conversation, metrics: TurnMetrics
    ) -> TurnResult:
        if not self._local_ready():
            return self._local_result(LocalModelUnavailableError().message, False, metrics)

        try:
            self._check_abort()
            self._emit_status(STATUS_THINKING)

            prompt = self._build_legacy_prompt(text, conversation)
            try:
                output = self.local.generate(prompt, COMMAND_PARAMS)
            except RequestAbortedError as e:
                raise AbortedError() from e
            except ModelProviderError as e:
                return self._local_result(f"Generation failed: {e.message}", False, metrics)

            self._check_abort()

            outcome = self.validator.validate(parse_command(output.strip()))
            if outcome.kind == OutcomeKind.REJECTED:
                return self._local_result(f"Command blocked: {outcome.reason}", False, metrics)

            command = outcome.command
            call = tool_call_from_command(command)
            if outcome.kind == OutcomeKind.NEEDS_CONFIRMATION:
                approved = self._request_confirmation(
                    ConfirmationRequest(tool_call=call, reason=outcome.reason or "", level=outcome.level)
                )
                if not approved:
                    return self._local_result("Action cancelled.", False, metrics)

            self._check_abort()
            result = self._execute_tool(call, metrics, request_id=str(uuid.uuid4()))

            reply = f"{text} → {READABLE_NAMES[command.type]}\n\n{result.message}"
            if result.details:
                reply += "\n" + result.details
            return self._local_result(reply, result.success, metrics)

        except OrchestratorError as e:
            return self._local_result(e.message, False, metrics)
        except Exception as e:
            logger.exception("Local fallback failed")
            return self._local_result(f"Local fallback failed: {e}", False, metrics)

    @staticmethod
    def _build_legacy_prompt(text: str, conversation: Conversation) -> str:
        history = conversation.recent_messages()
        if history and history[-1].role == MessageRole.USER and history[-1].content == text:
            history = history[:-1]
        history = [m for m in history if m.role != MessageRole.SYSTEM]
        if history:
            return build_conversational_prompt(history, text)
        return build_command_prompt(text)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _request_confirmation(self, request: ConfirmationRequest) -> bool:
        if self.on_confirmation is None:
            logger.info("No confirmation handler; refusing %s", request.tool_call.tool_id)
            return False
        return self.on_confirmation(request)

    def _local_ready(self) -> bool:
        if not self.local.is_available:
            self.local.refresh_availability()
        return self.local.is_available

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise AbortedError()

    def _check_deadline(self, deadline: float) -> None:
        if time.monotonic() > deadline:
            raise TurnTimedOutError(self.turn_timeout)

    def _emit_status(self, status: str) -> None:
        status = status.strip()
        if status and self.on_status is not None:
            self.on_status(status)

    def _cloud_result(self, text: str, success: bool, metrics: TurnMetrics) -> TurnResult:
        return self._result(text, self.cloud, success, metrics)

    def _local_result(self, text: str, success: bool, metrics: TurnMetrics) -> TurnResult:
        return self._result(text, self.local, success, metrics)

    @staticmethod
    def _result(
        text: str, provider: ModelProvider, success: bool, metrics: TurnMetrics
    ) -> TurnResult:
        metrics.finish()
        return TurnResult(
            response_text=text,
            model_used=provider.provider_name,
            was_cloud=provider.is_cloud,
            success=success,
            elapsed_seconds=metrics.elapsed_seconds,
            tool_calls=metrics.tool_calls,
        )
