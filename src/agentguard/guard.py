"""Pre-tool-use guard.

The host calls this synchronously before every tool action, passing a
JSON payload on stdin. The decision comes back as an exit code: 0 lets
the action through, 2 blocks it and shows the messages to the agent.

Layers, checked in order:
1. Off-limits paths (files-off-limits.md) block every role. Reads of
   the index, workflow and mode files are exempt so a new agent can
   onboard.
2. Shell commands: dangerous signatures are blocked; plain calls of our
   own CLI then pass (and record the session for claims); every detected
   file operation is off-limits checked, and mutating ones role checked.
3. Staged reads: no identity -> bootstrap files only; identity without
   role -> plus own mode files; role -> everything.
4. Role permissions for write, edit and delete.

Every decision, allowed or blocked, goes to the audit log.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel

from agentguard.agents.registry import AgentRegistry
from agentguard.agents.state import AgentState
from agentguard.auth.audit import AuditEvent, AuditEventType
from agentguard.auth.commands import CommandAnalyzer, Token, command_stages
from agentguard.auth.off_limits import OffLimitsRegistry
from agentguard.auth.patterns import relative_to_root

logger = logging.getLogger(__name__)

EXIT_ALLOW = 0
EXIT_BLOCK = 2

MAX_COMMAND_DISPLAY = 100

_TOOL_ACTIONS = {
    "write": "write",
    "edit": "edit",
    "multiedit": "edit",
    "notebookedit": "edit",
    "bash": "execute",
    "read": "read",
}

_MUTATING_ACTIONS = {"write", "edit", "delete"}

_OWN_COMMAND = re.compile(r"(?:^|[;&|]\s*)(?:\S*/)?agentguard\s", re.IGNORECASE)
_CLAIM_COMMAND = re.compile(
    r"(?:^|[;&|]\s*)(?:\S*/)?agentguard\s+agent\s+claim\s+(\S+)", re.IGNORECASE
)


class ToolInput(BaseModel):
    file_path: str | None = None
    notebook_path: str | None = None
    path: str | None = None
    command: str | None = None


class HookInput(BaseModel):
    """PreToolUse payload. Unknown fields are ignored."""

    session_id: str | None = None
    tool_name: str | None = None
    tool_input: ToolInput | None = None

    @property
    def tool(self) -> str | None:
        return self.tool_name.lower() if self.tool_name else None

    @property
    def action(self) -> str:
        return _TOOL_ACTIONS.get(self.tool or "", "unknown")

    @property
    def file_path(self) -> str | None:
        if self.tool_input is None:
            return None
        return self.tool_input.file_path or self.tool_input.notebook_path or self.tool_input.path

    @property
    def command(self) -> str | None:
        return self.tool_input.command if self.tool_input else None


@dataclass
class GuardDecision:
    """The verdict for one tool call."""

    allowed: bool
    messages: list[str] = field(default_factory=list)
    exit_code: int = EXIT_ALLOW

    @classmethod
    def allow(cls, messages: list[str] | None = None) -> "GuardDecision":
        return cls(True, messages or [], EXIT_ALLOW)

    @classmethod
    def block(cls, *messages: str) -> "GuardDecision":
        return cls(False, list(messages), EXIT_BLOCK)


def truncate_command(command: str) -> str:
    if len(command) <= MAX_COMMAND_DISPLAY:
        return command
    return command[:MAX_COMMAND_DISPLAY] + "..."


def parse_claim_command(command: str) -> str | None:
    """Agent argument of an ``agentguard agent claim <name>`` command, if any."""
    match = _CLAIM_COMMAND.search(command)
    return match.group(1).strip("\"'") if match else None


def is_own_command(command: str) -> bool:
    return _OWN_COMMAND.search(command) is not None


def is_own_invocation(command: str) -> bool:
    """True when every stage of ``command`` is a plain ``agentguard`` call.

    Pipes, background jobs, redirections and command substitution all
    disqualify it.
    """
    if "`" in command or "$(" in command:
        return False
    stages = command_stages(command)
    return bool(stages) and all(_is_own_stage(stage) for stage in stages)


def _is_own_stage(stage: list[Token]) -> bool:
    if any(token.is_operator for token in stage):
        return False
    program = posixpath.basename(stage[0].text.replace("\\", "/"))
    return program.lower() == "agentguard"


class Guard:
    """Evaluates tool calls against off-limits, command and role rules."""

    def __init__(
        self,
        registry: AgentRegistry,
        off_limits: OffLimitsRegistry | None = None,
        analyzer: CommandAnalyzer | None = None,
    ):
        self.registry = registry
        self.off_limits = off_limits or OffLimitsRegistry.load(registry.paths.off_limits_file)
        self.analyzer = analyzer or CommandAnalyzer()
        self.root_name = registry.root_name

    @classmethod
    def open(cls, start: Path | None = None) -> "Guard":
        return cls(AgentRegistry.open(start))

    # ── Entry points ────────────────────────────────────

    def check_hook(self, hook: HookInput) -> GuardDecision:
        """Evaluate a hook payload. A payload without a session id is blocked."""
        if not hook.session_id:
            return GuardDecision.block("BLOCKED: No session_id in hook input.")
        return self.evaluate(
            session_id=hook.session_id,
            action=hook.action,
            path=hook.file_path,
            command=hook.command,
            tool=hook.tool,
        )

    def check_manual(
        self, action: str | None = None, path: str | None = None, command: str | None = None
    ) -> GuardDecision:
        """Evaluate a CLI request, using the stored session context."""
        return self.evaluate(
            session_id=self.registry.session_context(),
            action=action or ("execute" if command else "edit"),
            path=path,
            command=command,
            tool="bash" if command else None,
        )

    def evaluate(
        self,
        session_id: str | None,
        action: str,
        path: str | None = None,
        command: str | None = None,
        tool: str | None = None,
    ) -> GuardDecision:
        relative = relative_to_root(path, self.registry.paths.project_root) if path else None

        if relative:
            decision = self._check_off_limits_path(session_id, action, path, relative, tool)
            if decision is not None:
                return decision

        if tool == "bash" and command:
            return self._check_command(session_id, command)

        agent = self.registry.get_current_agent(session_id)

        if action == "read":
            return self._check_read(session_id, path, relative, agent, tool)

        if not path:
            return GuardDecision.allow()

        if agent is None:
            self._audit(session_id, AuditEvent(AuditEventType.BLOCKED, path=path, tool=tool, reason="No agent identity"))
            return GuardDecision.block(
                "BLOCKED: No agent identity assigned to this process.",
                "  Run 'agentguard agent claim auto' to claim an agent identity.",
            )

        if not agent.role:
            self._audit(session_id, AuditEvent(AuditEventType.BLOCKED, path=path, tool=tool, reason="No role set"))
            return GuardDecision.block(
                f"BLOCKED: Agent {agent.name} has no role set.",
                "  Run 'agentguard agent role <role>' to set your role.",
            )

        if action in _MUTATING_ACTIONS:
            verdict = self.registry.is_path_allowed(session_id, path, action)
            if not verdict.allowed:
                self._audit(session_id, AuditEvent(AuditEventType.BLOCKED, path=path, tool=tool, reason=verdict.reason))
                return GuardDecision.block(f"BLOCKED: {verdict.reason}")

        event_type = {
            "write": AuditEventType.WRITE,
            "delete": AuditEventType.DELETE,
        }.get(action, AuditEventType.EDIT)
        self._audit(session_id, AuditEvent(event_type, path=path, tool=tool))
        return GuardDecision.allow()

    # ── Layers ──────────────────────────────────────────

    def _check_off_limits_path(
        self, session_id: str | None, action: str, path: str, relative: str, tool: str | None
    ) -> GuardDecision | None:
        if action == "read" and self._read_bypasses_off_limits(session_id, relative):
            return None

        pattern = self.off_limits.is_off_limits(relative)
        if pattern is None:
            return None

        self._audit(
            session_id,
            AuditEvent(AuditEventType.BLOCKED, path=path, tool=tool, reason=f"Off-limits: {pattern}"),
        )
        return GuardDecision.block(
            "BLOCKED: Path is off-limits to all agents.",
            f"  Path: {path}",
            f"  Pattern: {pattern}",
            f"  Configure exceptions in {self.root_name}/files-off-limits.md",
        )

    def _read_bypasses_off_limits(self, session_id: str | None, relative: str) -> bool:
        if self.is_guidance_file(relative):
            return True
        agent = self.registry.get_current_agent(session_id)
        if agent is None:
            return False
        if self.is_mode_file(relative, agent.name):
            return True
        return bool(agent.role) and self.is_mode_file(relative)

    def _check_command(self, session_id: str | None, command: str) -> GuardDecision:
        display = truncate_command(command)

        own = is_own_command(command)
        if own and session_id:
            self._record_own_command(session_id, command)

        dangerous, reason = self.analyzer.check_dangerous(command)
        if dangerous:
            self._audit(
                session_id,
                AuditEvent(AuditEventType.BLOCKED, tool="bash", command=display, reason=f"Dangerous pattern: {reason}"),
            )
            return GuardDecision.block(
                "BLOCKED: Dangerous command pattern detected.",
                f"  Reason: {reason}",
                f"  Command: {display}",
            )

        # Mixed, piped or redirected commands fall through to the remaining checks.
        if own and is_own_invocation(command):
            return GuardDecision.allow()

        analysis = self.analyzer.analyze(command)
        warnings = [f"WARNING: {w}" for w in analysis.warnings]

        if analysis.dangerous:
            self._audit(
                session_id,
                AuditEvent(
                    AuditEventType.BLOCKED, tool="bash", command=display,
                    reason=f"Dangerous pattern: {analysis.reason}",
                ),
            )
            return GuardDecision.block(
                *warnings,
                "BLOCKED: Dangerous command pattern detected.",
                f"  Reason: {analysis.reason}",
            )

        agent = self.registry.get_current_agent(session_id)

        for op in analysis.operations:
            relative = relative_to_root(op.path, self.registry.paths.project_root)
            pattern = self.off_limits.is_off_limits(relative)
            if pattern is not None:
                self._audit(
                    session_id,
                    AuditEvent(
                        AuditEventType.BLOCKED, tool="bash", path=op.path, command=display,
                        reason=f"Off-limits: {pattern}",
                    ),
                )
                return GuardDecision.block(
                    *warnings,
                    "BLOCKED: Command references off-limits path.",
                    f"  Path: {op.path}",
                    f"  Pattern: {pattern}",
                    f"  Detected: {op.kind.value} via {op.command}",
                )

            if op.kind.is_mutating and agent is not None and agent.role:
                verdict = self.registry.is_path_allowed(session_id, op.path, op.kind.value)
                if not verdict.allowed:
                    self._audit(
                        session_id,
                        AuditEvent(
                            AuditEventType.BLOCKED, tool="bash", path=op.path, command=display,
                            reason=verdict.reason,
                        ),
                    )
                    return GuardDecision.block(
                        *warnings,
                        f"BLOCKED: {verdict.reason}",
                        f"  Detected {op.kind.value} operation on: {op.path}",
                        f"  Via command: {op.command}",
                    )

        quick = self.off_limits.check_command(command)
        if quick.blocked:
            self._audit(
                session_id,
                AuditEvent(
                    AuditEventType.BLOCKED, tool="bash", path=quick.path, command=display,
                    reason=f"Off-limits: {quick.pattern}",
                ),
            )
            return GuardDecision.block(
                *warnings,
                "BLOCKED: Command references off-limits path.",
                f"  Path: {quick.path}",
                f"  Pattern: {quick.pattern}",
            )

        self._audit(session_id, AuditEvent(AuditEventType.BASH, tool="bash", command=display))
        return GuardDecision.allow(warnings)

    def _record_own_command(self, session_id: str, command: str) -> None:
        """Let our CLI identify the session; hand claims their session id."""
        self.registry.store_session_context(session_id)

        target = parse_claim_command(command)
        if not target:
            return

        if target.lower() == "auto":
            human = self.registry.current_human()
            if not human:
                return
            free = self.registry.free_agents_for_human(human)
            if not free:
                return  # the claim itself reports the error
            name = free[0].name
        else:
            name = self.registry.resolve_name(target)

        if name is not None:
            self.registry.store_pending_session(name, session_id)
            logger.debug(f"Stored pending session {session_id} for {name}")

    def _check_read(
        self,
        session_id: str | None,
        path: str | None,
        relative: str | None,
        agent: AgentState | None,
        tool: str | None,
    ) -> GuardDecision:
        if self._is_read_allowed(relative, agent):
            self._audit(session_id, AuditEvent(AuditEventType.READ, path=path, tool=tool))
            return GuardDecision.allow()

        self._audit(
            session_id,
            AuditEvent(
                AuditEventType.BLOCKED, path=path, tool=tool,
                reason="No agent identity" if agent is None else "No role set",
            ),
        )
        if agent is None:
            return GuardDecision.block(
                "BLOCKED: Read access denied.",
                "  No agent identity assigned to this process.",
                "  Read your workflow.md to learn how to onboard:",
                f"    {self.root_name}/agents/*/workflow.md",
                "  Then run: agentguard agent claim auto",
            )
        return GuardDecision.block(
            "BLOCKED: Read access denied.",
            f"  Agent {agent.name} has no role set.",
            "  Read your mode files to understand available roles:",
            f"    {self.root_name}/agents/{agent.name}/modes/*.md",
            "  Then run: agentguard agent role <role>",
        )

    # ── Staged access ───────────────────────────────────

    def _is_read_allowed(self, relative: str | None, agent: AgentState | None) -> bool:
        if not relative:
            return True
        if self.is_bootstrap_file(relative):
            return True
        if agent is None:
            return False
        if self.is_mode_file(relative, agent.name):
            return True
        return bool(agent.role)

    def is_bootstrap_file(self, relative: str) -> bool:
        """Root-level files plus the guidance files."""
        if "/" not in relative.strip("/"):
            return True
        return self.is_guidance_file(relative)

    def is_guidance_file(self, relative: str) -> bool:
        """``{root}/index.md`` and every agent's workflow.md."""
        root = re.escape(self.root_name)
        if re.fullmatch(rf"{root}/index\.md", relative, re.IGNORECASE):
            return True
        return re.fullmatch(rf"{root}/agents/[^/]+/workflow\.md", relative, re.IGNORECASE) is not None

    def is_mode_file(self, relative: str, agent_name: str | None = None) -> bool:
        """``{root}/agents/{agent}/modes/*.md``; any agent when ``agent_name`` is None."""
        agent = re.escape(agent_name) if agent_name else "[^/]+"
        root = re.escape(self.root_name)
        return re.fullmatch(rf"{root}/agents/{agent}/modes/[^/]+\.md", relative, re.IGNORECASE) is not None

    # ── Audit ───────────────────────────────────────────

    def _audit(self, session_id: str | None, event: AuditEvent) -> None:
        if not session_id:
            return
        try:
            agent = self.registry.get_current_agent(session_id)
            self.registry.audit.log_event(
                session_id,
                event,
                agent.name if agent else None,
                self.registry.current_human(),
            )
        except OSError as e:
            logger.warning(f"Could not write audit event {event.event_type.value}: {e}")
