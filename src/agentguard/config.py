"""Project configuration and path resolution.

Settings live in ``agentguard.yaml`` at the project root, found by
walking up from the working directory:

    root: guard                 # data directory, relative to the project root
    agents:
      pool: [Adele, Brian, Charlie]
      assignments:
        alice: [Adele, Brian]
        bob: [Charlie]

Without a config file the project root is the starting directory, the
preset names are the pool, and no human assignments apply. The human
operating a terminal is identified by the ``AGENTGUARD_HUMAN``
environment variable.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from agentguard.errors import ConflictError, NotFoundError, ValidationError
from agentguard.presets import DEFAULT_POOL

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "agentguard.yaml"
HUMAN_ENV_VAR = "AGENTGUARD_HUMAN"
DEFAULT_ROOT = "guard"
OFF_LIMITS_FILE_NAME = "files-off-limits.md"


@dataclass
class AgentsConfig:
    """Agent pool and human-to-agent assignments."""

    pool: list[str] = field(default_factory=list)
    assignments: dict[str, list[str]] = field(default_factory=dict)

    def human_for_agent(self, agent_name: str) -> str | None:
        """Get the human an agent is assigned to."""
        for human, agents in self.assignments.items():
            if any(a.lower() == agent_name.lower() for a in agents):
                return human
        return None

    def agents_for_human(self, human: str) -> list[str]:
        """Get all agents assigned to a human (case-insensitive)."""
        if human in self.assignments:
            return list(self.assignments[human])
        for key, agents in self.assignments.items():
            if key.lower() == human.lower():
                return list(agents)
        return []

    def in_pool(self, agent_name: str) -> bool:
        return any(a.lower() == agent_name.lower() for a in self.pool)


@dataclass
class GuardConfig:
    """Top-level project configuration."""

    root: str = DEFAULT_ROOT
    agents: AgentsConfig = field(default_factory=AgentsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GuardConfig":
        agents = data.get("agents") or {}
        assignments = agents.get("assignments") or {}
        return cls(
            root=str(data.get("root") or DEFAULT_ROOT),
            agents=AgentsConfig(
                pool=[str(a) for a in agents.get("pool") or []],
                assignments={
                    str(human): [str(a) for a in names or []]
                    for human, names in assignments.items()
                },
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root,
            "agents": {
                "pool": list(self.agents.pool),
                "assignments": {k: list(v) for k, v in self.agents.assignments.items()},
            },
        }


def find_config_file(start: Path | None = None) -> Path | None:
    """Find agentguard.yaml by walking up the directory tree."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def load_config(start: Path | None = None) -> GuardConfig | None:
    """Load configuration, or None when the project has no config file.

    Raises:
        ValidationError: If the file exists but is not valid YAML.
    """
    path = find_config_file(start)
    if path is None:
        return None

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(
            f"Failed to parse {path}: {e}",
            hint=f"Fix the YAML syntax in {CONFIG_FILE_NAME}.",
        ) from e

    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping at the top level.")
    return GuardConfig.from_dict(data)


def save_config(config: GuardConfig, path: Path) -> None:
    """Write configuration back to disk."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(config.to_dict(), f, sort_keys=False)
    logger.debug(f"Saved configuration to {path}")


def current_human() -> str | None:
    """Get the human operating this terminal from the environment."""
    human = os.environ.get(HUMAN_ENV_VAR, "").strip()
    return human or None


@dataclass(frozen=True)
class ProjectPaths:
    """Resolved on-disk locations for one project."""

    project_root: Path
    data_root: Path

    @property
    def agents_dir(self) -> Path:
        return self.data_root / "agents"

    @property
    def audit_dir(self) -> Path:
        return self.data_root / "_system" / "audit"

    @property
    def off_limits_file(self) -> Path:
        return self.data_root / OFF_LIMITS_FILE_NAME

    @property
    def session_context_file(self) -> Path:
        return self.agents_dir / ".session-context"

    def agent_workspace(self, agent_name: str) -> Path:
        return self.agents_dir / agent_name

    @classmethod
    def resolve(cls, start: Path | None = None, config: GuardConfig | None = None) -> "ProjectPaths":
        """Resolve paths from the config file location, or from ``start``."""
        config_file = find_config_file(start)
        if config_file is not None:
            project_root = config_file.parent
        else:
            project_root = (start or Path.cwd()).resolve()
        root_name = config.root if config else DEFAULT_ROOT
        return cls(project_root=project_root, data_root=project_root / root_name)


def agent_pool(config: GuardConfig | None) -> list[str]:
    """The configured pool, falling back to the preset names."""
    if config is not None and config.agents.pool:
        return list(config.agents.pool)
    return list(DEFAULT_POOL)


def validate_agent_claim(agent_name: str, human: str | None, config: GuardConfig | None) -> None:
    """Check whether ``human`` may claim ``agent_name``.

    An unconfigured project allows any claim. With a config file the
    human must be identified and the agent must be in the pool; an agent
    assigned to someone else is refused, an unassigned one is open.

    Raises:
        ValidationError: Human not identified, or agent not in the pool.
        ConflictError: Agent assigned to a different human.
    """
    if config is None:
        return

    if not human:
        raise ValidationError(
            f"{HUMAN_ENV_VAR} environment variable not set.",
            hint=f"Set it to identify which human is operating this terminal:\n  export {HUMAN_ENV_VAR}=your_name",
        )

    if not config.agents.in_pool(agent_name):
        raise ValidationError(f"Agent '{agent_name}' is not in the configured agent pool.")

    assigned = config.agents.human_for_agent(agent_name)
    if assigned is None:
        return

    if assigned.lower() != human.lower():
        claimable = config.agents.agents_for_human(human)
        agent_list = ", ".join(claimable) if claimable else "(none assigned)"
        raise ConflictError(
            f"Agent {agent_name} is assigned to human '{assigned}', not '{human}'.\n"
            f"Claimable agents for human '{human}': {agent_list}",
            hint="Use 'agentguard agent claim auto' to claim the first available.",
        )


def require_config_file(start: Path | None = None) -> Path:
    """Get the config file path or raise NotFoundError."""
    path = find_config_file(start)
    if path is None:
        raise NotFoundError(
            f"No {CONFIG_FILE_NAME} found.",
            hint="Run 'agentguard init' first.",
        )
    return path
