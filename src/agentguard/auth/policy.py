"""Role-based path permissions.

Each role maps to an (allow, deny) pair of glob lists. Templates use two
placeholders, resolved when the role is assigned:

- ``{self}``: the agent's name
- ``{root}``: the configured data directory (``guard`` by default)

Evaluation is deny-then-allow:
1. A matching deny pattern blocks, unless some allow pattern also matches.
2. An empty allow list blocks everything.
3. Otherwise at least one allow pattern must match.

``**`` as a deny pattern is the "deny everything not allowed" sentinel.
"""

from dataclasses import dataclass

from agentguard.auth.patterns import matches_any, matches_glob
from agentguard.errors import ValidationError

ROLE_PERMISSIONS: dict[str, tuple[list[str], list[str]]] = {
    "code-writer": (
        ["src/**", "tests/**", "{root}/agents/{self}/**"],
        ["{root}/**", "project/**"],
    ),
    "reviewer": (
        ["{root}/agents/{self}/**"],
        ["**"],
    ),
    "co-thinker": (
        ["{root}/agents/{self}/**", "{root}/project/decisions/**"],
        ["src/**", "tests/**"],
    ),
    "docs-writer": (
        [
            "{root}/understand/**",
            "{root}/guides/**",
            "{root}/reference/**",
            "{root}/project/**",
            "{root}/_system/**",
            "{root}/_assets/**",
            "{root}/*.md",
            "{root}/agents/{self}/**",
        ],
        ["src/**", "tests/**"],
    ),
    "interviewer": (
        ["{root}/agents/{self}/**"],
        ["**"],
    ),
    "planner": (
        ["{root}/agents/{self}/**", "{root}/project/tasks/**"],
        ["src/**"],
    ),
    "tester": (
        ["{root}/agents/{self}/**", "tests/**", "{root}/project/pitfalls/**"],
        ["src/**"],
    ),
}

VALID_ROLES: tuple[str, ...] = tuple(ROLE_PERMISSIONS)

ROLE_DESCRIPTIONS = {
    "code-writer": "Implements features in src/ and tests/.",
    "reviewer": "Reviews code; edits only its own workspace.",
    "co-thinker": "Thinks through designs; records decisions.",
    "docs-writer": "Maintains project documentation.",
    "interviewer": "Gathers requirements; edits only its own workspace.",
    "planner": "Breaks work into tasks.",
    "tester": "Writes tests and records pitfalls.",
}

_RESTRICTION_MESSAGES = {
    "reviewer": "Reviewer role can only edit own workspace.",
    "code-writer": "Code-writer role can only edit src/**, tests/**, and own workspace.",
    "co-thinker": "Co-thinker role can edit own workspace and decisions.",
    "docs-writer": "Docs-writer role can only edit {root}/** (except other agents' workspaces) and own workspace.",
    "interviewer": "Interviewer role can only edit own workspace.",
    "planner": "Planner role can only edit own workspace and tasks.",
    "tester": "Tester role can edit own workspace, tests, and pitfalls.",
}


@dataclass
class Verdict:
    """Outcome of a permission check."""

    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


def validate_role(role: str) -> None:
    """Raise ValidationError for roles outside the fixed set."""
    if role not in ROLE_PERMISSIONS:
        raise ValidationError(
            f"Invalid role: {role}. Valid roles: {', '.join(VALID_ROLES)}",
        )


def role_patterns(role: str, agent_name: str, data_root: str) -> tuple[list[str], list[str]]:
    """Resolve a role's (allow, deny) templates for one agent."""
    validate_role(role)
    allowed, denied = ROLE_PERMISSIONS[role]

    def resolve(pattern: str) -> str:
        return pattern.replace("{root}", data_root).replace("{self}", agent_name)

    return [resolve(p) for p in allowed], [resolve(p) for p in denied]


def restriction_message(role: str, data_root: str = "guard") -> str:
    return _RESTRICTION_MESSAGES.get(role, "").replace("{root}", data_root)


def evaluate_path(
    agent_name: str,
    role: str,
    relative_path: str,
    action: str,
    allowed: list[str],
    denied: list[str],
    data_root: str = "guard",
) -> Verdict:
    """Deny-then-allow evaluation of one normalized, project-relative path."""
    refusal = f"Agent {agent_name} ({role}) cannot {action} {relative_path}. {restriction_message(role, data_root)}"

    for pattern in denied:
        if pattern == "**" or matches_glob(relative_path, pattern):
            if not matches_any(relative_path, allowed):
                return Verdict(False, refusal)

    if not allowed:
        return Verdict(False, f"Agent {agent_name} ({role}) has no write permissions.")

    if not matches_any(relative_path, allowed):
        return Verdict(False, refusal)

    return Verdict(True)


def can_take_role(role: str, task: str | None, task_role_history: dict[str, list[str]]) -> Verdict:
    """Self-review rule: a code-writer on a task may never review it."""
    if role != "reviewer" or not task:
        return Verdict(True)
    if "code-writer" in task_role_history.get(task, []):
        return Verdict(
            False,
            f"was code-writer on task '{task}' and cannot be reviewer on the same task. "
            "Dispatch to a different agent for review.",
        )
    return Verdict(True)
