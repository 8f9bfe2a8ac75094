"""Permission layer for agentguard.

Every tool call an agent makes is checked against three rule sets:
1. Off-limits paths that no agent may touch
2. Dangerous or path-touching shell commands
3. The path globs of the agent's current role

and every decision is recorded in the audit trail.
"""

from agentguard.auth.audit import (
    AuditEvent,
    AuditEventType,
    AuditLog,
    AuditSession,
)
from agentguard.auth.commands import (
    CommandAnalysis,
    CommandAnalyzer,
    FileOperation,
    OperationKind,
)
from agentguard.auth.off_limits import OffLimitsRegistry
from agentguard.auth.patterns import PathPattern, matches_glob
from agentguard.auth.policy import ROLE_PERMISSIONS, VALID_ROLES, Verdict

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLog",
    "AuditSession",
    "CommandAnalysis",
    "CommandAnalyzer",
    "FileOperation",
    "OperationKind",
    "OffLimitsRegistry",
    "PathPattern",
    "matches_glob",
    "ROLE_PERMISSIONS",
    "VALID_ROLES",
    "Verdict",
]
