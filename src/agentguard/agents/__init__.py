"""Agent identities: locks, state files, workspaces and the registry."""

from agentguard.agents.lock import AgentLockManager, LockHandle
from agentguard.agents.registry import AgentRegistry
from agentguard.agents.state import AgentSession, AgentState, AgentStatus

__all__ = [
    "AgentLockManager",
    "LockHandle",
    "AgentRegistry",
    "AgentSession",
    "AgentState",
    "AgentStatus",
]
