"""Security layer: argument sanitization, policy decisions and the audit trail."""

from aidaemon.security.audit import AuditLogger
from aidaemon.security.policy import (
    AutonomyLevel,
    DecisionKind,
    PolicyDecision,
    PolicyEngine,
    sanitize_arguments,
)

__all__ = [
    "AuditLogger",
    "AutonomyLevel",
    "DecisionKind",
    "PolicyDecision",
    "PolicyEngine",
    "sanitize_arguments",
]
