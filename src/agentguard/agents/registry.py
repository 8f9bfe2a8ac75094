"""Agent identity lifecycle and path permissions.

The registry is the single owner of agent state on disk. Every mutation
of an agent (claim, release, role change) happens under that agent's
claim lock; read-only queries (status, permission checks) take no lock.

Lifecycle:

    Free --claim--> Working --role reviewer--> Reviewing
      ^                |                          |
      +----release-----+--------------------------+

The session id that binds a terminal session to an agent is never typed
by the agent. The guard hook sees the session id on every tool call and,
when it spots an ``agentguard agent claim`` command, stores it in the
agent's ``.pending-session`` file. ``claim`` consumes it.
"""

import logging
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path

from agentguard.agents.lock import AgentLockManager
from agentguard.agents.state import (
    SESSION_FILE_NAME,
    AgentSession,
    AgentState,
    AgentStatus,
    read_session,
    read_state,
    write_session,
    write_state,
)
from agentguard.agents.workspace import WorkspaceScaffolder, archive_workspace, prune_archive
from agentguard.auth.audit import AuditEvent, AuditEventType, AuditLog
from agentguard.auth.patterns import relative_to_root
from agentguard.auth.policy import Verdict, can_take_role, evaluate_path, role_patterns, validate_role
from agentguard.config import (
    HUMAN_ENV_VAR,
    GuardConfig,
    ProjectPaths,
    agent_pool,
    current_human,
    load_config,
    require_config_file,
    save_config,
    validate_agent_claim,
)
from agentguard.errors import (
    AlreadyClaimedError,
    ConflictError,
    InboxNotEmptyError,
    NotFoundError,
    SelfReviewError,
    ValidationError,
)
from agentguard.presets import name_from_letter
from agentguard.snapshot import GitSnapshotter

logger = logging.getLogger(__name__)

PENDING_SESSION_FILE_NAME = ".pending-session"
PENDING_SESSION_ATTEMPTS = 3

AGENT_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")

CLAIM_AUTO_HINT = "Use 'agentguard agent claim auto' to claim the first available."


def normalize_agent_name(name: str) -> str:
    """Validate a new agent name and return it Capitalised."""
    if not name or not name.strip():
        raise ValidationError("Agent name cannot be empty.")
    name = name.strip()
    if not AGENT_NAME_PATTERN.match(name):
        raise ValidationError(
            "Agent name must start with a letter and contain only letters, numbers, and hyphens."
        )
    return name[0].upper() + name[1:].lower()


class AgentRegistry:
    """Claims, releases and role assignment for a pool of agents."""

    def __init__(
        self,
        paths: ProjectPaths,
        config: GuardConfig | None = None,
        scaffolder: WorkspaceScaffolder | None = None,
        audit: AuditLog | None = None,
        snapshotter: GitSnapshotter | None = None,
    ):
        self.paths = paths
        self.config = config
        self.root_name = self._data_root_name(paths)
        self.scaffolder = scaffolder or WorkspaceScaffolder(self.root_name)
        self.audit = audit or AuditLog(paths.audit_dir, paths.project_root)
        self.snapshotter = snapshotter or GitSnapshotter()
        self.locks = AgentLockManager(paths.agents_dir)

    @classmethod
    def open(cls, start: Path | None = None) -> "AgentRegistry":
        """Build a registry for the project containing ``start``."""
        config = load_config(start)
        return cls(ProjectPaths.resolve(start, config), config)

    @staticmethod
    def _data_root_name(paths: ProjectPaths) -> str:
        try:
            return paths.data_root.relative_to(paths.project_root).as_posix()
        except ValueError:
            return paths.data_root.name

    # ── Names ───────────────────────────────────────────

    @property
    def agent_names(self) -> list[str]:
        return agent_pool(self.config)

    def resolve_name(self, name: str) -> str | None:
        """Canonical pool spelling of ``name``; a single letter maps via the presets."""
        if not name:
            return None
        for candidate in self.agent_names:
            if candidate.lower() == name.lower():
                return candidate
        if len(name) == 1:
            return name_from_letter(name, tuple(self.agent_names))
        return None

    def require_name(self, name: str) -> str:
        resolved = self.resolve_name(name)
        if resolved is None:
            raise ValidationError(
                f"Invalid agent name: {name}",
                hint=f"Known agents: {', '.join(self.agent_names)}",
            )
        return resolved

    def workspace(self, agent: str) -> Path:
        return self.paths.agent_workspace(agent)

    def current_human(self) -> str | None:
        return current_human()

    def human_for_agent(self, agent: str) -> str | None:
        return self.config.agents.human_for_agent(agent) if self.config else None

    def agents_for_human(self, human: str) -> list[str]:
        return self.config.agents.agents_for_human(human) if self.config else []

    # ── Read side ───────────────────────────────────────

    def get_state(self, agent: str) -> AgentState:
        """Current state; an agent with no state file is Free."""
        name = self.resolve_name(agent) or agent
        state = read_state(self.workspace(name), name)
        if state is None:
            return AgentState(name=name, assigned_human=self.human_for_agent(name))
        return state

    def get_session(self, agent: str) -> AgentSession | None:
        name = self.resolve_name(agent) or agent
        return read_session(self.workspace(name))

    def is_claimed(self, agent: str) -> bool:
        return self.get_session(agent) is not None

    def get_current_agent(self, session_id: str | None) -> AgentState | None:
        """The agent claimed by ``session_id``, if any."""
        if not session_id:
            return None
        for name in self.agent_names:
            session = read_session(self.workspace(name))
            if session is not None and session.session_id == session_id:
                return self.get_state(name)
        return None

    def all_states(self) -> list[AgentState]:
        return [self.get_state(name) for name in self.agent_names]

    def free_agents(self) -> list[AgentState]:
        return [s for s in self.all_states() if s.is_free]

    def free_agents_for_human(self, human: str) -> list[AgentState]:
        assigned = {a.lower() for a in self.agents_for_human(human)}
        return [s for s in self.free_agents() if s.name.lower() in assigned]

    def can_take_role(self, agent: str, role: str, task: str | None) -> Verdict:
        """Self-review check: a code-writer on ``task`` may never review it."""
        state = self.get_state(agent)
        verdict = can_take_role(role, task, state.task_role_history)
        if not verdict.allowed:
            return Verdict(False, f"Agent {state.name} {verdict.reason}")
        return verdict

    # ── Lifecycle ───────────────────────────────────────

    def claim(self, agent: str, session_id: str | None = None) -> AgentState:
        """Claim ``agent`` for a session.

        Args:
            agent: Agent name (any case) or a single preset letter.
            session_id: Explicit session id. When omitted, the id stored
                by the guard hook in ``.pending-session`` is consumed.

        Returns:
            The agent's new state.

        Raises:
            ValidationError: Unknown agent, no session id, or the human
                may not claim this agent.
            ConflictError: This session already holds another agent.
            AlreadyClaimedError: Another session holds this agent.
            LockBusyError: Another process is mutating this agent.
        """
        name = self.require_name(agent)

        if not session_id:
            session_id = self.take_pending_session(name)
        if not session_id:
            raise ValidationError(
                "No session ID available. Claim must be initiated via hook.",
                hint=f"Run 'agentguard agent claim {name}' from an agent session with the guard hook installed.",
            )

        with self.locks.hold(name):
            human = self.current_human()
            validate_agent_claim(name, human, self.config)

            current = self.get_current_agent(session_id)
            if current is not None and current.name != name:
                raise ConflictError(
                    f"This session already has agent {current.name} claimed. Release first.",
                    hint="Run 'agentguard agent release' first.",
                )

            existing = read_session(self.workspace(name))
            if existing is not None:
                if existing.session_id == session_id:
                    logger.debug(f"Session {session_id} re-claimed {name}")
                    return self.get_state(name)
                message = f"Agent {name} is already claimed by another session."
                if self.config is not None and human:
                    claimable = [s.name for s in self.free_agents_for_human(human)]
                    if claimable:
                        message += f"\nClaimable agents for human '{human}': {', '.join(claimable)}"
                raise AlreadyClaimedError(message, hint=CLAIM_AUTO_HINT)

            workspace = self.workspace(name)
            self.scaffolder.ensure_directory(workspace)

            try:
                archive_workspace(workspace)
                prune_archive(workspace)
            except OSError as e:
                logger.warning(f"Could not archive workspace for {name}: {e}")

            self.scaffolder.regenerate_agent_files(self.paths.agents_dir, name)
            write_session(workspace, AgentSession(agent=name, session_id=session_id))

            state = self.get_state(name)
            state.status = AgentStatus.WORKING
            state.since = datetime.now(timezone.utc)
            state.assigned_human = human or self.human_for_agent(name)
            write_state(workspace, state)

            snapshot = None
            try:
                snapshot = self.snapshotter.capture(self.paths.project_root)
            except Exception as e:
                logger.warning(f"Could not capture project snapshot: {e}")

            self._log_lifecycle(
                session_id,
                AuditEvent(AuditEventType.CLAIM, agent_name=name),
                name,
                human,
                snapshot,
            )
            logger.info(f"Agent {name} claimed by session {session_id}")
            return state

    def claim_auto(self, session_id: str | None = None) -> AgentState:
        """Claim the first free agent assigned to the current human."""
        human = self.current_human()
        if not human:
            raise ValidationError(
                f"{HUMAN_ENV_VAR} environment variable not set.",
                hint=f"Set it to identify which human is operating this terminal:\n  export {HUMAN_ENV_VAR}=your_name",
            )

        free = self.free_agents_for_human(human)
        if not free:
            assigned = self.agents_for_human(human)
            if not assigned:
                raise NotFoundError(f"No agents assigned to human '{human}'.")
            statuses = ", ".join(f"{a} ({self.get_state(a).status.value})" for a in assigned)
            raise ConflictError(
                f"No free agents available for human '{human}'.\nAgents assigned to {human}: {statuses}"
            )

        return self.claim(free[0].name, session_id)

    def release(self, session_id: str | None) -> str:
        """Release the agent held by ``session_id`` and return its name.

        Raises:
            NotFoundError: The session holds no agent.
            InboxNotEmptyError: Unprocessed inbox items remain.
        """
        agent = self.get_current_agent(session_id)
        if agent is None:
            raise NotFoundError("No agent identity assigned to this session.")

        name = agent.name
        with self.locks.hold(name):
            workspace = self.workspace(name)

            inbox = workspace / "inbox"
            pending = len(list(inbox.glob("*.md"))) if inbox.is_dir() else 0
            if pending:
                raise InboxNotEmptyError(
                    f"Cannot release: {pending} unprocessed inbox item(s).",
                    count=pending,
                    hint="Process all inbox items and clear the inbox before releasing.",
                )

            (workspace / SESSION_FILE_NAME).unlink(missing_ok=True)

            human = self.current_human()
            self._log_lifecycle(session_id, AuditEvent(AuditEventType.RELEASE, agent_name=name), name, human)

            state = self.get_state(name)
            state.reset()
            write_state(workspace, state)

            modes = workspace / "modes"
            if modes.is_dir():
                shutil.rmtree(modes)

        logger.info(f"Agent {name} released")
        return name

    def set_role(self, session_id: str | None, role: str, task: str | None = None) -> AgentState:
        """Assign a role (and optionally a task) to the session's agent.

        Raises:
            NotFoundError: The session holds no agent.
            ValidationError: Unknown role.
            SelfReviewError: The agent wrote code for ``task``.
        """
        agent = self.get_current_agent(session_id)
        if agent is None:
            raise NotFoundError(
                "No agent identity assigned to this session.",
                hint="Run 'agentguard agent claim auto' first.",
            )

        validate_role(role)
        name = agent.name

        with self.locks.hold(name):
            verdict = self.can_take_role(name, role, task)
            if not verdict.allowed:
                raise SelfReviewError(verdict.reason)

            state = self.get_state(name)
            allowed, denied = role_patterns(role, name, self.root_name)
            state.role = role
            state.task = task
            state.allowed_paths = allowed
            state.denied_paths = denied
            state.record_role(task, role)
            state.status = AgentStatus.REVIEWING if role == "reviewer" else AgentStatus.WORKING
            write_state(self.workspace(name), state)

        self._log_lifecycle(
            session_id,
            AuditEvent(AuditEventType.ROLE, role=role, task=task),
            name,
            self.current_human(),
        )
        logger.info(f"Agent {name} is now {role}" + (f" on {task}" if task else ""))
        return state

    # ── Permissions ─────────────────────────────────────

    def is_path_allowed(self, session_id: str | None, path: str, action: str) -> Verdict:
        """May the session's agent perform ``action`` on ``path``?"""
        agent = self.get_current_agent(session_id)
        if agent is None:
            return Verdict(
                False,
                "No agent identity assigned to this session. Run 'agentguard agent claim auto' first.",
            )
        if not agent.role:
            return Verdict(
                False,
                f"Agent {agent.name} has no role set. Run 'agentguard agent role <role>' first.",
            )

        relative = relative_to_root(path, self.paths.project_root)
        return evaluate_path(
            agent.name,
            agent.role,
            relative,
            action,
            agent.allowed_paths,
            agent.denied_paths,
            self.root_name,
        )

    # ── Session context ─────────────────────────────────

    def store_pending_session(self, agent: str, session_id: str) -> None:
        """Hand a session id to the next ``claim`` of ``agent``."""
        path = self.workspace(agent) / PENDING_SESSION_FILE_NAME
        path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(PENDING_SESSION_ATTEMPTS):
            try:
                path.write_text(session_id, encoding="utf-8")
                return
            except OSError:
                if attempt == PENDING_SESSION_ATTEMPTS - 1:
                    raise
                time.sleep(0.01 * (attempt + 1))

    def take_pending_session(self, agent: str) -> str | None:
        """Read and delete the pending session id."""
        path = self.workspace(agent) / PENDING_SESSION_FILE_NAME
        if not path.is_file():
            return None
        try:
            session_id = path.read_text(encoding="utf-8").strip()
            path.unlink()
        except OSError as e:
            logger.debug(f"Could not consume pending session for {agent}: {e}")
            return None
        return session_id or None

    def store_session_context(self, session_id: str) -> None:
        path = self.paths.session_context_file
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(session_id, encoding="utf-8")

    def session_context(self) -> str | None:
        """Session id last seen by the hook, for CLI subprocesses."""
        path = self.paths.session_context_file
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8").strip() or None
        except OSError as e:
            logger.debug(f"Could not read session context: {e}")
            return None

    # ── Admin ───────────────────────────────────────────

    def _load_fresh_config(self) -> tuple[GuardConfig, Path]:
        config_path = require_config_file(self.paths.project_root)
        config = load_config(self.paths.project_root)
        if config is None:
            raise NotFoundError(f"Failed to load {config_path.name}.")
        return config, config_path

    def _save(self, config: GuardConfig, path: Path) -> None:
        save_config(config, path)
        self.config = config

    def _pool_name(self, config: GuardConfig, name: str) -> str:
        for candidate in config.agents.pool:
            if candidate.lower() == name.lower():
                return candidate
        raise NotFoundError(f"Agent '{name}' does not exist in the pool.")

    def _require_unclaimed(self, name: str) -> None:
        if read_session(self.workspace(name)) is not None:
            raise ConflictError(
                f"Agent '{name}' is currently claimed. Release it first.",
                hint="Run 'agentguard agent release' from the session holding it.",
            )

    def create_agent(self, name: str, human: str) -> str:
        """Add an agent to the pool, assign it to ``human`` and scaffold its workspace."""
        name = normalize_agent_name(name)
        if not human or not human.strip():
            raise ValidationError("Human name cannot be empty.")

        config, config_path = self._load_fresh_config()
        if config.agents.in_pool(name):
            raise ConflictError(f"Agent '{name}' already exists in the pool.")

        config.agents.pool.append(name)
        config.agents.assignments.setdefault(human, []).append(name)
        self._save(config, config_path)

        self.scaffolder.scaffold_agent(self.paths.agents_dir, name)
        write_state(self.workspace(name), AgentState(name=name, assigned_human=human))
        logger.info(f"Created agent {name} for {human}")
        return name

    def rename_agent(self, old_name: str, new_name: str) -> str:
        """Rename an agent in the pool, its assignments and its workspace."""
        new_name = normalize_agent_name(new_name)
        config, config_path = self._load_fresh_config()

        existing = self._pool_name(config, old_name)
        if existing.lower() != new_name.lower() and config.agents.in_pool(new_name):
            raise ConflictError(f"Agent '{new_name}' already exists in the pool.")
        self._require_unclaimed(existing)

        config.agents.pool = [new_name if a == existing else a for a in config.agents.pool]
        for human, agents in config.agents.assignments.items():
            config.agents.assignments[human] = [
                new_name if a.lower() == existing.lower() else a for a in agents
            ]
        self._save(config, config_path)

        old_workspace = self.workspace(existing)
        new_workspace = self.workspace(new_name)
        if old_workspace.is_dir():
            old_workspace.rename(new_workspace)
            state = read_state(new_workspace, existing)
            if state is not None:
                state.name = new_name
                write_state(new_workspace, state)

        self.scaffolder.regenerate_agent_files(self.paths.agents_dir, new_name)
        logger.info(f"Renamed agent {existing} to {new_name}")
        return new_name

    def remove_agent(self, name: str) -> str:
        """Remove an agent from the pool and delete its workspace."""
        config, config_path = self._load_fresh_config()
        existing = self._pool_name(config, name)
        self._require_unclaimed(existing)

        config.agents.pool = [a for a in config.agents.pool if a.lower() != existing.lower()]
        for human, agents in config.agents.assignments.items():
            config.agents.assignments[human] = [a for a in agents if a.lower() != existing.lower()]
        self._save(config, config_path)

        workspace = self.workspace(existing)
        if workspace.is_dir():
            shutil.rmtree(workspace)
        logger.info(f"Removed agent {existing}")
        return existing

    def reassign_agent(self, name: str, human: str) -> str:
        """Move an agent to a different human."""
        if not human or not human.strip():
            raise ValidationError("Human name cannot be empty.")

        config, config_path = self._load_fresh_config()
        existing = self._pool_name(config, name)
        self._require_unclaimed(existing)

        current = config.agents.human_for_agent(existing)
        if current is not None and current.lower() == human.lower():
            raise ConflictError(f"Agent '{existing}' is already assigned to '{human}'.")

        if current is not None:
            config.agents.assignments[current] = [
                a for a in config.agents.assignments[current] if a.lower() != existing.lower()
            ]
        config.agents.assignments.setdefault(human, []).append(existing)
        self._save(config, config_path)

        state = read_state(self.workspace(existing), existing)
        if state is not None:
            state.assigned_human = human
            write_state(self.workspace(existing), state)
        logger.info(f"Reassigned agent {existing} to {human}")
        return existing

    # ── Audit ───────────────────────────────────────────

    def _log_lifecycle(self, session_id, event, agent_name, human, snapshot=None) -> None:
        if not session_id:
            return
        try:
            self.audit.log_event(session_id, event, agent_name, human, snapshot)
        except OSError as e:
            logger.warning(f"Could not write audit event {event.event_type.value}: {e}")
