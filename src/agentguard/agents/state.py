"""Agent state and session files.

``state.md`` is a markdown document with a YAML front-matter header that
holds the agent's permission scope. It is parsed permissively: a missing
file, a missing header, or an unparseable header all mean "Free, no
role". ``.session`` is a small JSON document that exists only while the
agent is claimed.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.md"
SESSION_FILE_NAME = ".session"


class AgentStatus(str, Enum):
    FREE = "free"
    WORKING = "working"
    REVIEWING = "reviewing"


@dataclass
class AgentState:
    """An agent's role, task and permission scope."""

    name: str
    status: AgentStatus = AgentStatus.FREE
    role: str | None = None
    task: str | None = None
    since: datetime | None = None
    assigned_human: str | None = None
    allowed_paths: list[str] = field(default_factory=list)
    denied_paths: list[str] = field(default_factory=list)
    task_role_history: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_free(self) -> bool:
        return self.status == AgentStatus.FREE

    def record_role(self, task: str | None, role: str) -> None:
        """Add ``role`` to the task's history if it is not there yet."""
        if not task:
            return
        roles = self.task_role_history.setdefault(task, [])
        if role not in roles:
            roles.append(role)

    def reset(self) -> None:
        self.status = AgentStatus.FREE
        self.role = None
        self.task = None
        self.since = None
        self.allowed_paths = []
        self.denied_paths = []

    def header(self) -> dict[str, Any]:
        return {
            "agent": self.name,
            "role": self.role,
            "task": self.task,
            "status": self.status.value,
            "assigned": self.assigned_human or "unassigned",
            "started": self.since.isoformat() if self.since else None,
            "allowed-paths": list(self.allowed_paths),
            "denied-paths": list(self.denied_paths),
            "task-role-history": {k: list(v) for k, v in self.task_role_history.items()},
        }


def render_state(state: AgentState) -> str:
    """Render state.md: YAML header plus free-form sections."""
    header = yaml.safe_dump(state.header(), sort_keys=False, default_flow_style=None).strip()
    task = state.task or "(No active task)"
    return f"""---
{header}
---

# {state.name} - Session State

## Current Task

{task}

## Progress

- [ ] (No items)

## Decisions Made

(None yet)

## Blockers

(None)

---

<!--
This file is managed by agentguard. Manual edits may be overwritten.
-->
"""


def _split_front_matter(content: str) -> str | None:
    if not content.startswith("---"):
        return None
    end = content.find("\n---", 3)
    if end < 0:
        return None
    return content[3:end]


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def _optional(value: Any) -> str | None:
    if value is None or value == "null":
        return None
    return str(value)


def parse_state(name: str, content: str) -> AgentState:
    """Parse state.md content. Anything unreadable yields a Free state."""
    state = AgentState(name=name)
    raw = _split_front_matter(content)
    if raw is None:
        return state

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        logger.debug(f"Unparseable state header for {name}: {e}")
        return state
    if not isinstance(data, dict):
        return state

    state.role = _optional(data.get("role"))
    state.task = _optional(data.get("task"))

    try:
        state.status = AgentStatus(str(data.get("status", "free")).lower())
    except ValueError:
        state.status = AgentStatus.FREE

    assigned = _optional(data.get("assigned"))
    state.assigned_human = None if assigned == "unassigned" else assigned

    started = data.get("started")
    if isinstance(started, datetime):
        state.since = started
    elif isinstance(started, str) and started != "null":
        try:
            state.since = datetime.fromisoformat(started)
        except ValueError:
            state.since = None

    state.allowed_paths = _string_list(data.get("allowed-paths"))
    state.denied_paths = _string_list(data.get("denied-paths"))

    history = data.get("task-role-history")
    if isinstance(history, dict):
        state.task_role_history = {str(task): _string_list(roles) for task, roles in history.items()}

    return state


def read_state(workspace: Path, name: str) -> AgentState | None:
    """Read ``{workspace}/state.md``; None when the file does not exist."""
    path = workspace / STATE_FILE_NAME
    if not path.is_file():
        return None
    try:
        return parse_state(name, path.read_text(encoding="utf-8"))
    except OSError as e:
        logger.debug(f"Could not read {path}: {e}")
        return AgentState(name=name)


def write_state(workspace: Path, state: AgentState) -> None:
    workspace.mkdir(parents=True, exist_ok=True)
    (workspace / STATE_FILE_NAME).write_text(render_state(state), encoding="utf-8")


@dataclass
class AgentSession:
    """Binds a session id to an agent while it is claimed."""

    agent: str
    session_id: str
    claimed: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {"agent": self.agent, "session_id": self.session_id, "claimed": self.claimed.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentSession":
        claimed = data.get("claimed")
        return cls(
            agent=data["agent"],
            session_id=data["session_id"],
            claimed=datetime.fromisoformat(claimed) if claimed else datetime.now(timezone.utc),
        )


def read_session(workspace: Path) -> AgentSession | None:
    path = workspace / SESSION_FILE_NAME
    if not path.is_file():
        return None
    try:
        return AgentSession.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Ignoring unreadable session file {path}: {e}")
        return None


def write_session(workspace: Path, session: AgentSession) -> None:
    workspace.mkdir(parents=True, exist_ok=True)
    (workspace / SESSION_FILE_NAME).write_text(json.dumps(session.to_dict(), indent=2), encoding="utf-8")
