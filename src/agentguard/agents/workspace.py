"""Agent workspace housekeeping.

Each agent owns ``{root}/agents/{Agent}/``. Files the guard manages
(state, session, lock, guidance) live next to whatever the agent wrote
during its last session. On claim, the agent's leftovers are moved into
``archive/{YYYYMMDD-HHMMSS}/`` and the archive is pruned to a file
budget, oldest snapshot first.
"""

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

from agentguard.auth.policy import ROLE_DESCRIPTIONS, VALID_ROLES, role_patterns

logger = logging.getLogger(__name__)

SYSTEM_ENTRIES = frozenset({
    "workflow.md",
    "state.md",
    ".session",
    ".pending-session",
    ".claim.lock",
    "modes",
    "archive",
    "inbox",
})

MAX_ARCHIVE_FILES = 30

WORKFLOW_FILE_NAME = "workflow.md"
MODES_DIR_NAME = "modes"


def _is_system_entry(name: str) -> bool:
    return name.lower() in SYSTEM_ENTRIES or name.lower().startswith(".claim.lock")


def archive_workspace(workspace: Path) -> Path | None:
    """Move non-system entries into a new archive snapshot.

    Returns:
        The snapshot directory, or None if there was nothing to archive.
    """
    if not workspace.is_dir():
        return None

    entries = [e for e in workspace.iterdir() if not _is_system_entry(e.name)]
    if not entries:
        return None

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    snapshot = workspace / "archive" / stamp
    suffix = 1
    while snapshot.exists():
        snapshot = workspace / "archive" / f"{stamp}-{suffix}"
        suffix += 1
    snapshot.mkdir(parents=True)

    for entry in entries:
        shutil.move(str(entry), str(snapshot / entry.name))

    logger.debug(f"Archived {len(entries)} entries from {workspace} to {snapshot}")
    return snapshot


def _count_files(directory: Path) -> int:
    try:
        return sum(1 for p in directory.rglob("*") if p.is_file())
    except OSError:
        return 0


def prune_archive(workspace: Path, max_files: int = MAX_ARCHIVE_FILES) -> None:
    """Delete oldest snapshots until the archive holds at most ``max_files`` files."""
    archive = workspace / "archive"
    if not archive.is_dir():
        return

    snapshots = sorted(
        (d for d in archive.iterdir() if d.is_dir() and d.name.lower() != "inbox"),
        key=lambda d: d.name,
    )
    total = sum(_count_files(s) for s in snapshots)

    while total > max_files and snapshots:
        oldest = snapshots.pop(0)
        total -= _count_files(oldest)
        shutil.rmtree(oldest)
        logger.debug(f"Pruned archive snapshot {oldest}")


def render_workflow(agent: str, data_root: str) -> str:
    roles = "\n".join(f"- `{role}`: {ROLE_DESCRIPTIONS[role]}" for role in VALID_ROLES)
    return f"""# {agent} - Workflow

You are **{agent}**. Your workspace is `{data_root}/agents/{agent}/`.

## Getting started

1. Claim this identity: `agentguard agent claim {agent}`
2. Pick a role: `agentguard agent role <role> [--task <name>]`
3. Read `modes/<role>.md` for what that role may touch.
4. Release when done: `agentguard agent release`

## Roles

{roles}

An agent that wrote code for a task can never review that task.
"""


def render_mode(agent: str, role: str, data_root: str) -> str:
    allowed, denied = role_patterns(role, agent, data_root)
    allow_lines = "\n".join(f"- `{p}`" for p in allowed)
    deny_lines = "\n".join(f"- `{p}`" for p in denied)
    return f"""# {agent} as {role}

{ROLE_DESCRIPTIONS[role]}

## May edit

{allow_lines}

## May not edit

{deny_lines}

Paths listed in `{data_root}/files-off-limits.md` are blocked for every role.
"""


class WorkspaceScaffolder:
    """Creates agent workspaces and their guidance files."""

    def __init__(self, data_root_name: str = "guard"):
        self.data_root_name = data_root_name

    def ensure_directory(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)

    def regenerate_agent_files(self, agents_dir: Path, agent: str) -> None:
        """Rewrite workflow.md and every modes/{role}.md from scratch."""
        workspace = agents_dir / agent
        modes = workspace / MODES_DIR_NAME
        self.ensure_directory(modes)

        (workspace / WORKFLOW_FILE_NAME).write_text(
            render_workflow(agent, self.data_root_name), encoding="utf-8"
        )
        for role in VALID_ROLES:
            (modes / f"{role}.md").write_text(
                render_mode(agent, role, self.data_root_name), encoding="utf-8"
            )

    def scaffold_agent(self, agents_dir: Path, agent: str) -> Path:
        workspace = agents_dir / agent
        self.ensure_directory(workspace)
        self.regenerate_agent_files(agents_dir, agent)
        return workspace
