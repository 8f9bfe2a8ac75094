"""Global off-limits patterns.

A human-edited markdown file lists paths no agent may read, write or
delete, regardless of role. Patterns are taken from fenced code blocks
and from ``-``/``*`` list items. A heading mentioning "whitelist" or
"exception" starts the whitelist section; one mentioning "off-limits"
switches back.

    # Off-limits

    ```
    .env
    secrets/**
    ```

    ## Whitelist

    - config/.env.example   # template, safe to read

A path is blocked when it matches an off-limits pattern and no whitelist
pattern. Simple patterns without separators or ``**`` also match the
bare filename, so ``.env`` blocks ``config/.env`` while ``src/.env``
only blocks that location.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path

from agentguard.auth.patterns import PathPattern, has_wildcard, normalize_path

logger = logging.getLogger(__name__)

_BROAD_WHITELIST = {"*", "**", "**/*", "**/.*"}

_SHELL_BUILTINS = {"echo", "printf", "true", "false", "exit", "return"}

# Quick per-verb extraction; the full analysis lives in auth.commands.
_COMMAND_PATH_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(?:cat|head|tail|less|more|type|Get-Content|gc)\s+(?:-[^\s]+\s+)*([^\s|;&>-][^\s|;&>]*)",
        r"(?:>|>>)\s*([^\s|;&]+)",
        r"(?:<)\s*([^\s|;&]+)",
        r"(?:rm|del|Remove-Item|ri)\s+(?:-[^\s]+\s+)*([^\s|;&>-][^\s|;&>]*)",
        r"(?:cp|mv|copy|move|Copy-Item|Move-Item)\s+(?:-[^\s]+\s+)*([^\s|;&>-][^\s|;&>]*)",
        r"(?:chmod|chown|icacls)\s+(?:[^\s]+\s+)*([^\s|;&>]+)",
        r"(?:touch|truncate|tee)\s+([^\s|;&>]+)",
        r"echo\s+[^>]*>>\s*([^\s|;&]+)",
        r"echo\s+[^>]*>\s*([^\s|;&]+)",
    )
]
_QUOTED = re.compile(r"['\"]([^'\"]+)['\"]")


@dataclass
class FormatIssue:
    """A problem found while linting the off-limits file."""

    message: str
    is_error: bool = False


@dataclass
class CommandCheck:
    """Result of a quick off-limits check on a shell command."""

    blocked: bool = False
    path: str | None = None
    pattern: str | None = None


def parse_off_limits(content: str) -> tuple[list[str], list[str]]:
    """Parse markdown content into (off_limits, whitelist) pattern lists."""
    patterns: list[str] = []
    whitelist: list[str] = []
    in_code_block = False
    section = "off-limits"

    for raw_line in content.splitlines():
        line = raw_line.strip()

        if line.startswith("# ") or line.startswith("## "):
            header = line.lower()
            if "whitelist" in header or "exception" in header:
                section = "whitelist"
            elif "off-limits" in header or "off limits" in header:
                section = "off-limits"
            continue

        if line.startswith("```"):
            in_code_block = not in_code_block
            continue

        if in_code_block:
            candidate = line
        elif line.startswith("- ") or line.startswith("* "):
            candidate = line[2:].strip()
        else:
            continue

        if not candidate or candidate.startswith("#"):
            continue

        comment = candidate.find(" #")
        if comment > 0:
            candidate = candidate[:comment].strip()

        if candidate:
            (whitelist if section == "whitelist" else patterns).append(candidate)

    return patterns, whitelist


def _looks_like_path(value: str) -> bool:
    if not value or not value.strip():
        return False
    if value.startswith("-") or value.startswith("&"):
        return False
    if value.lower() in _SHELL_BUILTINS:
        return False
    if "." in value or "/" in value or "\\" in value:
        return True
    return " " not in value


class OffLimitsRegistry:
    """Role-independent deny/whitelist globs for one project."""

    def __init__(self, off_limits_file: Path):
        self.off_limits_file = off_limits_file
        self._patterns: list[PathPattern] = []
        self._whitelist: list[PathPattern] = []
        self._raw_content: str | None = None

    @classmethod
    def load(cls, off_limits_file: Path) -> "OffLimitsRegistry":
        registry = cls(off_limits_file)
        registry.reload()
        return registry

    @property
    def patterns(self) -> list[str]:
        return [p.pattern for p in self._patterns]

    @property
    def whitelist(self) -> list[str]:
        return [p.pattern for p in self._whitelist]

    def exists(self) -> bool:
        return self.off_limits_file.is_file()

    def reload(self) -> None:
        """(Re)read the off-limits file. A missing file means nothing is off-limits."""
        self._patterns = []
        self._whitelist = []
        self._raw_content = None

        if not self.exists():
            return

        self._raw_content = self.off_limits_file.read_text(encoding="utf-8")
        patterns, whitelist = parse_off_limits(self._raw_content)
        self._patterns = [PathPattern(p) for p in patterns]
        self._whitelist = [PathPattern(p) for p in whitelist]
        logger.debug(
            f"Loaded {len(self._patterns)} off-limits and {len(self._whitelist)} "
            f"whitelist patterns from {self.off_limits_file}"
        )

    def is_off_limits(self, path: str) -> str | None:
        """Return the off-limits pattern blocking ``path``, or None if it is free."""
        normalized = normalize_path(path)

        if self._is_whitelisted(normalized):
            return None

        for pattern in self._patterns:
            if pattern.matches(normalized):
                return pattern.pattern

        filename = posixpath.basename(normalized)
        if filename and filename != normalized:
            for pattern in self._patterns:
                if pattern.is_simple and pattern.matches(filename):
                    return pattern.pattern

        return None

    def _is_whitelisted(self, normalized: str) -> bool:
        if any(p.matches(normalized) for p in self._whitelist):
            return True

        filename = posixpath.basename(normalized)
        if filename and filename != normalized:
            return any(p.is_simple and p.matches(filename) for p in self._whitelist)
        return False

    def check_command(self, command: str) -> CommandCheck:
        """Off-limits check for every path a quick scan finds in ``command``."""
        for path in self.extract_command_paths(command):
            pattern = self.is_off_limits(path)
            if pattern is not None:
                return CommandCheck(blocked=True, path=path, pattern=pattern)
        return CommandCheck()

    @staticmethod
    def extract_command_paths(command: str) -> list[str]:
        """Simplified path extraction: quoted strings plus per-verb regexes."""
        found: dict[str, str] = {}

        for match in _QUOTED.finditer(command):
            value = match.group(1)
            if _looks_like_path(value):
                found.setdefault(value.lower(), value)

        for regex in _COMMAND_PATH_PATTERNS:
            for match in regex.finditer(command):
                value = match.group(1).strip("\"'")
                if _looks_like_path(value):
                    found.setdefault(value.lower(), value)

        return list(found.values())

    def validate_literal_paths(self, project_root: Path) -> list[str]:
        """List non-wildcard patterns whose target does not exist."""
        return [
            p.pattern
            for p in self._patterns
            if not has_wildcard(p.pattern) and not (project_root / p.pattern).exists()
        ]

    def validate_format(self) -> list[FormatIssue]:
        """Lint the off-limits file."""
        if self._raw_content is None:
            return []

        issues: list[FormatIssue] = []

        fences = sum(1 for line in self._raw_content.splitlines() if line.strip().startswith("```"))
        if fences % 2:
            issues.append(FormatIssue("Unclosed code block (``` without closing ```)", is_error=True))

        if not self._patterns and not self._whitelist:
            issues.append(FormatIssue("No off-limits patterns defined"))

        seen: set[str] = set()
        for pattern in self.patterns + self.whitelist:
            key = pattern.lower()
            if key in seen:
                issues.append(FormatIssue(f"Duplicate pattern: {pattern}"))
            seen.add(key)

        for pattern in self.whitelist:
            if pattern in _BROAD_WHITELIST or _is_broad_whitelist(pattern):
                issues.append(
                    FormatIssue(f"Whitelist pattern '{pattern}' is too broad and may defeat security")
                )

        return issues


def _is_broad_whitelist(pattern: str) -> bool:
    # "**/*.json" or "**/.secret*" whitelist whole classes of files
    if not pattern.startswith("**/"):
        return False
    rest = pattern[3:]
    return rest.startswith("*") or rest.startswith(".")
