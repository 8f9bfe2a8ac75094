"""agentguard - access control for AI agents sharing one working tree.

Modules:
    - auth: glob patterns, off-limits list, shell command analysis,
      role policy, audit trail
    - agents: claim locks, state files, workspaces, the agent registry
    - guard: the pre-tool-use hook adapter
    - cli: the ``agentguard`` command
"""

__version__ = "0.3.0"
