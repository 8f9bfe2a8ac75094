"""Glob pattern matching for project paths.

Shared by the role permission engine and the off-limits registry.

Syntax (always case-insensitive, always against forward-slash paths):
- ``**/`` matches any sequence of leading segments, including none
- ``**`` matches anything, across segments
- ``*`` matches within one segment
- ``?`` matches one character within a segment
- everything else is literal
"""

import os
import posixpath
import re
from dataclasses import dataclass, field
from functools import lru_cache


def normalize_path(path: str) -> str:
    """Normalize a path for matching.

    Forward slashes, no leading slash, and ``.`` / ``..`` segments
    collapsed, so ``src/../guard/x`` is matched as ``guard/x``. A path
    that climbs above its start keeps its leading ``..`` segments.
    """
    normalized = path.replace("\\", "/").lstrip("/")
    if not normalized:
        return ""
    normalized = posixpath.normpath(normalized)
    return "" if normalized == "." else normalized


def escapes_root(normalized: str) -> bool:
    return normalized == ".." or normalized.startswith("../")


def relative_to_root(path: str, project_root: str | os.PathLike) -> str:
    """Make ``path`` project-root-relative and normalized.

    Absolute paths inside the root are made relative; paths outside it
    (absolute, or relative ones that climb out with ``..``) keep their
    absolute shape minus the leading slash, so they can still be matched
    by patterns like ``etc/**`` and never by project patterns.
    """
    if not os.path.isabs(path) and escapes_root(normalize_path(path)):
        path = os.path.join(os.path.abspath(project_root), path.replace("\\", "/"))
    if os.path.isabs(path):
        root = os.path.abspath(project_root)
        absolute = os.path.abspath(path)
        try:
            if os.path.commonpath([root, absolute]) == root:
                path = os.path.relpath(absolute, root)
            else:
                path = absolute
        except ValueError:
            pass  # Different drives on Windows
    return normalize_path(path)


def glob_to_regex(pattern: str) -> str:
    """Translate a glob into an anchored regex string."""
    pattern = pattern.replace("\\", "/")
    parts = ["^"]
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    parts.append("$")
    return "".join(parts)


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern:
    return re.compile(glob_to_regex(pattern), re.IGNORECASE)


def has_wildcard(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


@dataclass(frozen=True)
class PathPattern:
    """A compiled glob."""

    pattern: str
    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "regex", compile_glob(self.pattern))

    @property
    def is_simple(self) -> bool:
        """True for patterns that may also match a bare filename (``.env``)."""
        normalized = self.pattern.replace("\\", "/")
        return "/" not in normalized and "**" not in normalized

    def matches(self, path: str) -> bool:
        return self.regex.match(path) is not None


def matches_glob(path: str, pattern: str) -> bool:
    """Match a normalized path against a single glob."""
    return compile_glob(pattern).match(path) is not None


def matches_any(path: str, patterns: list[str]) -> bool:
    return any(matches_glob(path, p) for p in patterns)
