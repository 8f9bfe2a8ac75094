"""Tests for the pre-tool-use guard."""

import pytest

from agentguard.guard import (
    EXIT_ALLOW,
    EXIT_BLOCK,
    Guard,
    HookInput,
    is_own_command,
    is_own_invocation,
    parse_claim_command,
    truncate_command,
)

OFF_LIMITS = """# Off-limits

- .env
- secrets/**
- *.pem

## Whitelist

- secrets/README.md
"""


@pytest.fixture
def guard(registry, paths):
    paths.off_limits_file.parent.mkdir(parents=True, exist_ok=True)
    paths.off_limits_file.write_text(OFF_LIMITS)
    return Guard(registry)


@pytest.fixture
def working(guard):
    """Guard whose registry has Adele claimed by s-1 as code-writer on t1."""
    guard.registry.claim("Adele", session_id="s-1")
    guard.registry.set_role("s-1", "code-writer", "t1")
    return guard


def hook(session_id="s-1", tool="Write", **tool_input):
    return HookInput.model_validate({"session_id": session_id, "tool_name": tool, "tool_input": tool_input})


def events(guard, session_id="s-1"):
    session = guard.registry.audit.get_session(session_id)
    return [(e.event_type.value, e.reason) for e in session.events] if session else []


def text(decision):
    return "\n".join(decision.messages)


# ── Hook payload ────────────────────────────────────────


class TestHookInput:
    def test_extra_fields_are_ignored(self):
        payload = HookInput.model_validate_json(
            '{"session_id": "s-1", "tool_name": "Edit", "cwd": "/x",'
            ' "tool_input": {"file_path": "src/a.py", "old_string": "a"}}'
        )
        assert payload.action == "edit"
        assert payload.file_path == "src/a.py"

    def test_notebook_and_bash(self):
        assert hook(tool="NotebookEdit", notebook_path="nb.ipynb").file_path == "nb.ipynb"
        bash = hook(tool="Bash", command="ls")
        assert bash.action == "execute"
        assert bash.command == "ls"

    def test_unknown_tool(self):
        assert hook(tool="WebFetch").action == "unknown"

    def test_missing_session_is_blocked(self, working):
        decision = working.check_hook(hook(session_id=None, file_path="src/app.py"))
        assert decision.exit_code == EXIT_BLOCK
        assert "No session_id" in text(decision)


# ── Off-limits ──────────────────────────────────────────


class TestOffLimits:
    def test_write_blocked_for_every_role(self, working):
        decision = working.check_hook(hook(file_path="secrets/key.txt"))
        assert not decision.allowed
        assert decision.exit_code == EXIT_BLOCK
        assert "off-limits" in text(decision)
        assert "secrets/**" in text(decision)
        assert ("blocked", "Off-limits: secrets/**") in events(working)

    def test_read_blocked(self, working):
        decision = working.check_hook(hook(tool="Read", file_path="secrets/key.txt"))
        assert not decision.allowed

    def test_whitelisted_path(self, working):
        assert working.check_hook(hook(tool="Read", file_path="secrets/README.md")).allowed

    def test_absolute_path(self, working, project):
        decision = working.check_hook(hook(tool="Edit", file_path=str(project / "certs" / "server.pem")))
        assert not decision.allowed

    def test_root_level_read_is_still_checked(self, working, project):
        decision = working.check_hook(hook(tool="Read", file_path=str(project / ".env")))
        assert not decision.allowed
        assert "Pattern: .env" in text(decision)
        assert not working.check_hook(hook(tool="Read", file_path=".env")).allowed

    def test_root_level_read_without_identity(self, guard):
        assert not guard.check_hook(hook("s-9", "Read", file_path=".env")).allowed
        assert guard.check_hook(hook("s-9", "Read", file_path="README.md")).allowed

    def test_parent_segments_cannot_escape_pattern(self, working):
        decision = working.check_hook(hook(tool="Read", file_path="src/../secrets/key.txt"))
        assert not decision.allowed
        assert "secrets/**" in text(decision)


# ── Staged reads ────────────────────────────────────────


class TestStagedReads:
    def test_no_identity_reads_bootstrap_only(self, guard):
        assert guard.check_hook(hook("s-9", "Read", file_path="README.md")).allowed
        assert guard.check_hook(hook("s-9", "Read", file_path="guard/agents/Brian/workflow.md")).allowed

        decision = guard.check_hook(hook("s-9", "Read", file_path="src/app.py"))
        assert not decision.allowed
        assert "agentguard agent claim auto" in text(decision)

    def test_identity_without_role_reads_own_modes(self, guard):
        guard.registry.claim("Adele", session_id="s-1")

        assert guard.check_hook(hook(tool="Read", file_path="guard/agents/Adele/modes/reviewer.md")).allowed
        assert not guard.check_hook(hook(tool="Read", file_path="guard/agents/Brian/modes/reviewer.md")).allowed

        decision = guard.check_hook(hook(tool="Read", file_path="src/app.py"))
        assert not decision.allowed
        assert "has no role set" in text(decision)

    def test_role_reads_anything(self, working):
        assert working.check_hook(hook(tool="Read", file_path="docs/design/notes.md")).allowed
        assert ("read", None) in events(working)

    def test_bootstrap_and_mode_detection(self, guard):
        assert guard.is_bootstrap_file("CLAUDE.md")
        assert guard.is_bootstrap_file("guard/index.md")
        assert not guard.is_bootstrap_file("guard/agents/Adele/state.md")
        assert guard.is_guidance_file("guard/agents/Brian/workflow.md")
        assert not guard.is_guidance_file("CLAUDE.md")
        assert guard.is_mode_file("guard/agents/Adele/modes/tester.md", "Adele")
        assert not guard.is_mode_file("guard/agents/Adele/modes/tester.md", "Brian")
        assert guard.is_mode_file("guard/agents/Brian/modes/tester.md")


# ── Role permissions ────────────────────────────────────


class TestWrites:
    def test_allowed_write_is_audited(self, working):
        decision = working.check_hook(hook(file_path="src/app.py"))
        assert decision.allowed
        assert decision.exit_code == EXIT_ALLOW
        assert ("write", None) in events(working)

    def test_role_violation(self, working):
        decision = working.check_hook(hook(tool="Edit", file_path="README.md"))
        assert not decision.allowed
        assert "Code-writer role can only edit" in text(decision)

    def test_no_identity(self, guard):
        decision = guard.check_hook(hook("s-9", file_path="src/app.py"))
        assert not decision.allowed
        assert "No agent identity" in text(decision)

    def test_no_role(self, guard):
        guard.registry.claim("Adele", session_id="s-1")
        decision = guard.check_hook(hook(file_path="src/app.py"))
        assert not decision.allowed
        assert "has no role set" in text(decision)
        assert ("blocked", "No role set") in events(guard)

    def test_manual_check_uses_session_context(self, working):
        working.registry.store_session_context("s-1")
        assert working.check_manual(path="src/app.py").allowed
        assert not working.check_manual(action="write", path="guard/project/x.md").allowed


# ── Shell commands ──────────────────────────────────────


class TestCommands:
    def test_dangerous_blocked(self, working):
        decision = working.check_hook(hook(tool="Bash", command="rm -rf /"))
        assert not decision.allowed
        assert "Dangerous command pattern" in text(decision)
        assert events(working)[-1][0] == "blocked"

    def test_off_limits_read_via_shell(self, working):
        decision = working.check_hook(hook(tool="Bash", command="cat secrets/key.txt"))
        assert not decision.allowed
        assert "Detected: read via cat" in text(decision)

    def test_mutation_checked_against_role(self, working):
        decision = working.check_hook(hook(tool="Bash", command="rm README.md"))
        assert not decision.allowed
        assert "Detected delete operation on: README.md" in text(decision)

    def test_allowed_command_is_audited(self, working):
        decision = working.check_hook(hook(tool="Bash", command="ls -la src && cat src/app.py"))
        assert decision.allowed
        session = working.registry.audit.get_session("s-1")
        assert session.events[-1].command == "ls -la src && cat src/app.py"

    def test_warnings_do_not_block(self, working):
        decision = working.check_hook(hook(tool="Bash", command="cat $FILE"))
        assert decision.allowed
        assert any("variable expansion" in m for m in decision.messages)

    def test_claim_command_hands_over_session(self, guard):
        decision = guard.check_hook(hook("s-5", "Bash", command="agentguard agent claim adele"))
        assert decision.allowed
        assert guard.registry.session_context() == "s-5"

        guard.registry.claim("Adele")
        assert guard.registry.get_session("Adele").session_id == "s-5"

    def test_claim_auto_picks_first_free(self, guard):
        guard.check_hook(hook("s-5", "Bash", command="agentguard agent claim auto"))
        assert guard.registry.take_pending_session("Adele") == "s-5"

    def test_chained_own_command_is_still_checked(self, working):
        decision = working.check_hook(hook(tool="Bash", command="agentguard whoami && rm -rf /"))
        assert not decision.allowed

    @pytest.mark.parametrize("command", ["agentguard version | rm -rf /", "agentguard version & rm -rf /"])
    def test_piped_own_command_is_still_checked(self, working, command):
        decision = working.check_hook(hook(tool="Bash", command=command))
        assert not decision.allowed
        assert "Dangerous command pattern" in text(decision)

    def test_own_command_piped_into_off_limits_read(self, working):
        decision = working.check_hook(hook(tool="Bash", command="agentguard version | cat secrets/key.txt"))
        assert not decision.allowed
        assert "off-limits" in text(decision)

    def test_own_command_redirect_is_role_checked(self, working):
        decision = working.check_hook(hook(tool="Bash", command="agentguard whoami > guard/agents/Brian/state.md"))
        assert not decision.allowed
        assert "Detected write operation on: guard/agents/Brian/state.md" in text(decision)

    def test_plain_own_commands_pass(self, working):
        decision = working.check_hook(hook(tool="Bash", command="agentguard whoami && agentguard offlimits check .env"))
        assert decision.allowed

    def test_parent_segments_in_command_paths(self, working):
        decision = working.check_hook(hook(tool="Bash", command="echo x > src/../guard/agents/Brian/state.md"))
        assert not decision.allowed
        assert "cannot write guard/agents/Brian/state.md" in text(decision)

        decision = working.check_hook(hook(tool="Bash", command="cat src/../secrets/key"))
        assert not decision.allowed
        assert "Pattern: secrets/**" in text(decision)


class TestHelpers:
    def test_parse_claim_command(self):
        assert parse_claim_command("agentguard agent claim Adele") == "Adele"
        assert parse_claim_command("cd x && agentguard agent claim 'B'") == "B"
        assert parse_claim_command("/usr/local/bin/agentguard agent claim auto") == "auto"
        assert parse_claim_command("agentguard agent release") is None

    def test_is_own_command(self):
        assert is_own_command("agentguard whoami")
        assert not is_own_command("echo agentguard-ish")

    def test_truncate_command(self):
        assert truncate_command("ls") == "ls"
        long = "x" * 150
        assert truncate_command(long) == "x" * 100 + "..."

    def test_is_own_invocation(self):
        assert is_own_invocation("agentguard whoami")
        assert is_own_invocation("/usr/local/bin/agentguard agent claim auto && agentguard whoami")
        assert not is_own_invocation("agentguard version | rm x")
        assert not is_own_invocation("agentguard version & rm x")
        assert not is_own_invocation("agentguard whoami > out.txt")
        assert not is_own_invocation("agentguard agent claim $(cat name)")
        assert not is_own_invocation("echo agentguard")
