"""Tests for role templates and deny-then-allow path evaluation."""

import pytest

from agentguard.auth.policy import (
    VALID_ROLES,
    can_take_role,
    evaluate_path,
    restriction_message,
    role_patterns,
    validate_role,
)
from agentguard.errors import ValidationError

PATHS = [
    "src/app.py",
    "README.md",
    "guard/agents/Adele/notes.md",
    "guard/project/tasks/t1.md",
    "deep/nested/dir/file.txt",
]


# ── Templates ───────────────────────────────────────────


class TestTemplates:
    def test_placeholders_resolved(self):
        allowed, denied = role_patterns("code-writer", "Adele", "docs")
        assert allowed == ["src/**", "tests/**", "docs/agents/Adele/**"]
        assert denied == ["docs/**", "project/**"]

    def test_every_role_has_a_template(self):
        for role in VALID_ROLES:
            allowed, denied = role_patterns(role, "Adele", "guard")
            assert "guard/agents/Adele/**" in allowed
            assert denied

    def test_unknown_role(self):
        with pytest.raises(ValidationError, match="Valid roles"):
            validate_role("overlord")
        with pytest.raises(ValidationError):
            role_patterns("overlord", "Adele", "guard")

    def test_restriction_message_uses_root(self):
        assert "docs/**" in restriction_message("docs-writer", "docs")


# ── Evaluation ──────────────────────────────────────────


class TestEvaluate:
    @pytest.mark.parametrize("path", PATHS)
    def test_deny_everything_without_allow(self, path):
        verdict = evaluate_path("Adele", "reviewer", path, "write", allowed=[], denied=["**"])
        assert not verdict.allowed
        assert f"cannot write {path}" in verdict.reason

    @pytest.mark.parametrize("path", PATHS)
    def test_no_rules_at_all(self, path):
        verdict = evaluate_path("Adele", "reviewer", path, "edit", allowed=[], denied=[])
        assert not verdict
        assert verdict.reason == "Agent Adele (reviewer) has no write permissions."

    def test_allow_overrides_matching_deny(self):
        allowed, denied = role_patterns("code-writer", "Adele", "guard")
        assert evaluate_path("Adele", "code-writer", "guard/agents/Adele/notes.md", "write", allowed, denied)
        assert not evaluate_path("Adele", "code-writer", "guard/agents/Brian/notes.md", "write", allowed, denied)

    def test_path_outside_allow_list(self):
        allowed, denied = role_patterns("tester", "Adele", "guard")
        verdict = evaluate_path("Adele", "tester", "docs/index.md", "write", allowed, denied)
        assert not verdict
        assert "Tester role can edit own workspace" in verdict.reason

    def test_sentinel_deny_keeps_own_workspace(self):
        allowed, denied = role_patterns("reviewer", "Adele", "guard")
        assert evaluate_path("Adele", "reviewer", "guard/agents/Adele/review.md", "write", allowed, denied)
        assert not evaluate_path("Adele", "reviewer", "src/app.py", "write", allowed, denied)


# ── Self-review ─────────────────────────────────────────


class TestSelfReview:
    def test_code_writer_cannot_review_same_task(self):
        verdict = can_take_role("reviewer", "t1", {"t1": ["code-writer"]})
        assert not verdict
        assert "cannot be reviewer on the same task" in verdict.reason

    def test_intervening_roles_do_not_clear_history(self):
        history = {"t1": ["code-writer", "tester", "planner"], "t2": ["tester"]}
        assert not can_take_role("reviewer", "t1", history)

    def test_other_tasks_and_roles_are_free(self):
        history = {"t1": ["code-writer"]}
        assert can_take_role("reviewer", "t2", history)
        assert can_take_role("tester", "t1", history)
        assert can_take_role("reviewer", None, history)
