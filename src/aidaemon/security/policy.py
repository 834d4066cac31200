"""Policy engine - decides allow / confirm / deny for every tool call.

Arguments are sanitized first, then checked for path traversal, and finally
the tool's risk tier is weighed against the user's autonomy level.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from aidaemon.tools.definitions import RiskLevel

if TYPE_CHECKING:
    from aidaemon.security.audit import AuditLogger
    from aidaemon.tools.registry import ToolRegistry

MAX_ARGUMENT_LENGTH = 1000

# Argument keys whose values are treated as filesystem paths
PATH_KEY_HINTS = (
    "path",
    "file",
    "folder",
    "directory",
    "dir",
    "destination",
    "source",
    "target",
    "query",
)

TRAVERSAL_MARKERS = ("../", "/..", "..\\", "\\..")

_ALLOWED_CONTROL = {"\t", "\n", "\r"}


class AutonomyLevel(Enum):
    """How much the assistant may do without asking."""

    CONFIRM_ALL = "confirm_all"
    AUTO_EXECUTE = "auto_execute"
    # Scoped permissions are not differentiated yet; behaves as AUTO_EXECUTE
    FULLY_AUTO = "fully_auto"


class DecisionKind(Enum):
    ALLOW = "allow"
    REQUIRE_CONFIRMATION = "require_confirmation"
    DENY = "deny"


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a policy evaluation; never cached."""

    kind: DecisionKind
    reason: str | None = None

    @classmethod
    def allow(cls) -> PolicyDecision:
        return cls(DecisionKind.ALLOW)

    @classmethod
    def require_confirmation(cls, reason: str) -> PolicyDecision:
        return cls(DecisionKind.REQUIRE_CONFIRMATION, reason)

    @classmethod
    def deny(cls, reason: str) -> PolicyDecision:
        return cls(DecisionKind.DENY, reason)

    @property
    def is_allowed(self) -> bool:
        return self.kind == DecisionKind.ALLOW

    @property
    def needs_confirmation(self) -> bool:
        return self.kind == DecisionKind.REQUIRE_CONFIRMATION

    @property
    def is_denied(self) -> bool:
        return self.kind == DecisionKind.DENY


def sanitize_string(value: str) -> str:
    """Strip control characters (except tab/LF/CR), trim, and cap length.

    The result is a fixed point: sanitizing it again returns it unchanged.
    """
    filtered = "".join(ch for ch in value if ord(ch) >= 32 or ch in _ALLOWED_CONTROL)
    return filtered.strip()[:MAX_ARGUMENT_LENGTH].strip()


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, dict):
        return sanitize_arguments(value)
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    return value


def sanitize_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Sanitize every string key and value at any nesting depth.

    Args:
        arguments: Raw tool arguments from the model.

    Returns:
        New dictionary with cleaned keys and values.
    """
    return {sanitize_string(str(key)): sanitize_value(value) for key, value in arguments.items()}


def _is_traversal(value: str) -> bool:
    lowered = value.lower()
    return lowered == ".." or any(marker in lowered for marker in TRAVERSAL_MARKERS)


def contains_path_traversal(value: Any, key_hint: str | None = None) -> bool:
    """Check path-like arguments for directory traversal, recursively.

    Args:
        value: Argument value (maps and lists are walked).
        key_hint: Key the value was found under.

    Returns:
        True if a path-like key holds a traversal pattern.
    """
    if isinstance(value, dict):
        return any(contains_path_traversal(v, str(k)) for k, v in value.items())
    if isinstance(value, list):
        return any(contains_path_traversal(item, key_hint) for item in value)
    if not isinstance(value, str):
        return False

    key = (key_hint or "").lower()
    if not any(hint in key for hint in PATH_KEY_HINTS):
        return False
    return _is_traversal(value)


class PolicyEngine:
    """Stateless decision function over (tool, arguments, autonomy level)."""

    def __init__(self, registry: ToolRegistry, audit: AuditLogger | None = None) -> None:
        """Initialize the engine.

        Args:
            registry: Registry used to look up tool risk tiers.
            audit: Optional audit log for denied calls.
        """
        self._registry = registry
        self._audit = audit

    def sanitize(self, arguments: dict[str, Any]) -> dict[str, Any]:
        return sanitize_arguments(arguments)

    def evaluate(
        self,
        tool_id: str,
        arguments: dict[str, Any],
        autonomy_level: AutonomyLevel = AutonomyLevel.AUTO_EXECUTE,
    ) -> PolicyDecision:
        """Decide whether a tool call may run.

        Args:
            tool_id: Registry id of the tool.
            arguments: Tool arguments (sanitized again here).
            autonomy_level: User-configured autonomy.

        Returns:
            The policy decision.
        """
        sanitized = sanitize_arguments(arguments)

        if contains_path_traversal(sanitized):
            reason = "Blocked unsafe path traversal pattern in tool arguments."
            if self._audit is not None:
                self._audit.log_security_event(
                    "path_traversal_blocked", {"tool": tool_id, "arguments": sanitized}
                )
            return PolicyDecision.deny(reason)

        definition = self._registry.get(tool_id)
        if definition is None:
            return PolicyDecision.require_confirmation(
                f"Tool '{tool_id}' is unknown. Confirm before continuing."
            )

        if autonomy_level == AutonomyLevel.CONFIRM_ALL:
            return PolicyDecision.require_confirmation(
                self._confirmation_reason(tool_id, definition.risk_level)
            )

        # AUTO_EXECUTE and FULLY_AUTO share one rule set
        if definition.risk_level == RiskLevel.DANGEROUS:
            return PolicyDecision.require_confirmation(
                self._confirmation_reason(tool_id, definition.risk_level)
            )
        return PolicyDecision.allow()

    def safety_level(self, tool_id: str) -> RiskLevel:
        """Risk tier for UI styling; unknown tools are treated as dangerous."""
        definition = self._registry.get(tool_id)
        return definition.risk_level if definition else RiskLevel.DANGEROUS

    @staticmethod
    def _confirmation_reason(tool_id: str, risk: RiskLevel) -> str:
        if risk == RiskLevel.DANGEROUS:
            return f"Tool '{tool_id}' is dangerous and requires explicit approval."
        if risk == RiskLevel.CAUTION:
            return f"Tool '{tool_id}' modifies system state. Confirm to continue."
        return f"Autonomy Level 0 requires confirmation before running '{tool_id}'."
