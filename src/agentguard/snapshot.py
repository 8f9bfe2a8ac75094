"""Best-effort picture of the tracked tree, taken when an agent is claimed."""

import logging
import posixpath
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 10


@dataclass
class ProjectSnapshot:
    """Tracked files and folders at one commit."""

    git_commit: str
    files: list[str] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"git_commit": self.git_commit, "files": self.files, "folders": self.folders}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectSnapshot":
        return cls(
            git_commit=data.get("git_commit", ""),
            files=list(data.get("files") or []),
            folders=list(data.get("folders") or []),
        )


def _git(project_root: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=project_root,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git {' '.join(args)} failed: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def git_head(project_root: Path, short: bool = True) -> str | None:
    """Current commit hash, or None outside a repository."""
    args = ("rev-parse", "--short", "HEAD") if short else ("rev-parse", "HEAD")
    output = _git(project_root, *args)
    if not output or not output.strip():
        return None
    return output.strip()


def folders_for(files: list[str]) -> list[str]:
    """Every ancestor folder of the given files, sorted."""
    folders: set[str] = set()
    for path in files:
        parent = posixpath.dirname(path)
        while parent:
            folders.add(parent)
            parent = posixpath.dirname(parent)
    return sorted(folders)


class GitSnapshotter:
    """Captures a ProjectSnapshot from ``git ls-files``."""

    def capture(self, project_root: Path) -> ProjectSnapshot | None:
        """Snapshot the tree, or None when git is unavailable or fails."""
        commit = git_head(project_root, short=False)
        if commit is None:
            return None

        listing = _git(project_root, "ls-files")
        if listing is None:
            return None

        files = [line.strip() for line in listing.splitlines() if line.strip()]
        return ProjectSnapshot(git_commit=commit, files=files, folders=folders_for(files))
