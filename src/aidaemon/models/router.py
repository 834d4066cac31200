"""Model router - picks the local or cloud backend for each request.

Routing rules, in priority order:
1. ALWAYS_LOCAL -> local.
2. ALWAYS_CLOUD -> cloud if available, else local.
3. AUTO with one provider unavailable -> the available one.
4. AUTO otherwise -> cloud for complex requests, local for simple ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from aidaemon.models.base import ModelProvider

MAX_SIMPLE_LENGTH = 80

MULTI_STEP_MARKERS = (
    " and then ",
    " then ",
    " after that ",
    " followed by ",
    " next ",
    " afterwards ",
)

COMPLEX_KEYWORDS = (
    "workflow",
    "set up",
    "configure",
    "schedule",
    "automate",
    "screen",
    "what do you see",
    "look at",
    "click on",
    "navigate to",
    "step by step",
    "help me",
    "how do i",
    "explain",
    "plan",
)

# Single-action verbs the local model handles well
ACTION_VERBS = (
    "open",
    "launch",
    "start",
    "run",
    "find",
    "search",
    "locate",
    "look for",
    "move",
    "resize",
    "close",
    "minimize",
    "maximize",
    "fullscreen",
    "show",
    "check",
    "what",
    "tell",
    "get",
    "quit",
    "kill",
    "stop",
    "force quit",
    "take",
    "empty",
    "lock",
    "toggle",
)

_SINGLE_WORD_VERBS = frozenset(v for v in ACTION_VERBS if " " not in v)
_CLAUSE_OPENERS = frozenset({"and", "then", ","})


class RoutingMode(Enum):
    """User preference for routing between local and cloud."""

    AUTO = "auto"
    ALWAYS_LOCAL = "always_local"
    ALWAYS_CLOUD = "always_cloud"


@dataclass(frozen=True)
class RoutingDecision:
    """Chosen provider plus a human-readable reason."""

    provider: ModelProvider
    reason: str

    @property
    def is_cloud(self) -> bool:
        return self.provider.is_cloud


def starts_with_action_verb(clause: str) -> bool:
    clause = clause.strip()
    return any(clause == verb or clause.startswith(verb + " ") for verb in ACTION_VERBS)


def count_clause_initial_verbs(text: str) -> int:
    """Count single-word action verbs that open a clause."""
    words = text.split(" ")
    count = 0
    for i, word in enumerate(words):
        if word in _SINGLE_WORD_VERBS and (i == 0 or words[i - 1] in _CLAUSE_OPENERS):
            count += 1
    return count


def is_complex(text: str) -> bool:
    """Heuristic: does this request benefit from the cloud model?

    Args:
        text: Raw user input.

    Returns:
        True for long, multi-step, workflow or screen-referencing requests.
    """
    lowered = text.lower().strip()

    if len(lowered) > MAX_SIMPLE_LENGTH:
        return True

    if any(marker in lowered for marker in MULTI_STEP_MARKERS):
        return True

    # Verb phrases joined by "and", e.g. "open safari and move it"
    if " and " in lowered:
        parts = lowered.split(" and ")
        if len(parts) >= 2 and all(starts_with_action_verb(part) for part in parts):
            return True

    if any(keyword in lowered for keyword in COMPLEX_KEYWORDS):
        return True

    return count_clause_initial_verbs(lowered) >= 2


class ModelRouter:
    """Per-request routing between a local and a cloud provider."""

    def __init__(
        self,
        local: ModelProvider,
        cloud: ModelProvider,
        mode: RoutingMode = RoutingMode.AUTO,
    ) -> None:
        self.local = local
        self.cloud = cloud
        self.mode = mode

    def route(self, text: str) -> RoutingDecision:
        """Choose the provider for one request.

        Args:
            text: User input the request is built from.

        Returns:
            Routing decision with its reason.
        """
        if self.mode == RoutingMode.ALWAYS_LOCAL:
            return RoutingDecision(self.local, "User preference: Always Local")

        if self.mode == RoutingMode.ALWAYS_CLOUD:
            if self.cloud.is_available:
                return RoutingDecision(self.cloud, "User preference: Always Cloud")
            return RoutingDecision(self.local, "Cloud unavailable — falling back to local")

        if not self.cloud.is_available:
            return RoutingDecision(self.local, "Cloud unavailable — using local")
        if not self.local.is_available:
            return RoutingDecision(self.cloud, "Local model not loaded — using cloud")

        if is_complex(text):
            return RoutingDecision(self.cloud, "Complex request — routed to cloud")
        return RoutingDecision(self.local, "Simple request — routed to local")

    def fallback(self, primary: ModelProvider) -> ModelProvider | None:
        """Return the other provider if it reports itself available."""
        other = self.cloud if primary is self.local else self.local
        return other if other.is_available else None
