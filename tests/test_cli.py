"""End-to-end tests for the agentguard CLI."""

import json

import pytest
from typer.testing import CliRunner

from agentguard import __version__
from agentguard.cli import app
from agentguard.config import load_config

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AGENTGUARD_HUMAN", "alice")
    return tmp_path


@pytest.fixture
def initialized(workdir):
    result = runner.invoke(app, ["init", "--human", "alice", "--agents", "3"])
    assert result.exit_code == 0, result.output
    return workdir


def run_hook(session_id, tool, **tool_input):
    payload = json.dumps({"session_id": session_id, "tool_name": tool, "tool_input": tool_input})
    return runner.invoke(app, ["guard"], input=payload)


class TestBasics:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init(self, initialized):
        config = load_config(initialized)
        assert config.root == "guard"
        assert config.agents.pool == ["Adele", "Brian", "Charlie"]
        assert config.agents.assignments == {"alice": ["Adele", "Brian", "Charlie"]}
        assert (initialized / "guard" / "files-off-limits.md").exists()
        assert (initialized / "guard" / "_system" / "audit").is_dir()
        assert (initialized / "guard" / "agents" / "Brian" / "workflow.md").exists()
        assert (initialized / "guard" / "agents" / "Brian" / "modes" / "reviewer.md").exists()

    def test_init_twice(self, initialized):
        result = runner.invoke(app, ["init"])
        assert result.exit_code == 0
        assert "already exists" in result.output

    def test_whoami_without_claim(self, initialized):
        result = runner.invoke(app, ["whoami"])
        assert result.exit_code == 0
        assert "No agent identity" in result.output


class TestGuardHook:
    def test_missing_session_blocks(self, initialized):
        result = runner.invoke(app, ["guard"], input="{}")
        assert result.exit_code == 2
        assert "No session_id" in result.output

    def test_bootstrap_read_allowed(self, initialized):
        assert run_hook("s-1", "Read", file_path="README.md").exit_code == 0

    def test_dangerous_command_blocked(self, initialized):
        result = run_hook("s-1", "Bash", command="rm -rf /")
        assert result.exit_code == 2
        assert "Dangerous command pattern" in result.output

    def test_off_limits_blocked(self, initialized):
        result = run_hook("s-1", "Read", file_path="secrets/token.txt")
        assert result.exit_code == 2
        assert "off-limits" in result.output

    def test_root_level_off_limits_read_blocked(self, initialized):
        result = run_hook("s-1", "Read", file_path=str(initialized / ".env"))
        assert result.exit_code == 2
        assert "off-limits" in result.output

    def test_piped_own_command_blocked(self, initialized):
        assert run_hook("s-1", "Bash", command="agentguard version | rm -rf /").exit_code == 2

    def test_manual_mode(self, initialized):
        result = runner.invoke(app, ["guard", "--command", "cat secrets/db.txt"])
        assert result.exit_code == 2


class TestAgentLifecycle:
    def test_claim_role_write_release(self, initialized):
        # The hook sees the claim command first and hands over the session id
        assert run_hook("s-1", "Bash", command="agentguard agent claim adele").exit_code == 0

        result = runner.invoke(app, ["agent", "claim", "adele"])
        assert result.exit_code == 0, result.output
        assert "You are now Adele" in result.output

        assert run_hook("s-1", "Write", file_path="src/app.py").exit_code == 2

        result = runner.invoke(app, ["agent", "role", "code-writer", "--task", "t1"])
        assert result.exit_code == 0, result.output
        assert "src/**" in result.output

        assert run_hook("s-1", "Write", file_path="src/app.py").exit_code == 0
        assert run_hook("s-1", "Write", file_path="README.md").exit_code == 2

        result = runner.invoke(app, ["whoami"])
        assert "Adele" in result.output
        assert "code-writer" in result.output

        result = runner.invoke(app, ["agent", "release"])
        assert result.exit_code == 0, result.output
        assert "Released Adele" in result.output

    def test_claim_without_hook(self, initialized):
        result = runner.invoke(app, ["agent", "claim", "Brian"])
        assert result.exit_code == 1
        assert "No session ID available" in result.output

    def test_self_review_refused(self, initialized):
        run_hook("s-1", "Bash", command="agentguard agent claim auto")
        runner.invoke(app, ["agent", "claim", "auto"])
        runner.invoke(app, ["agent", "role", "code-writer", "-t", "t1"])

        result = runner.invoke(app, ["agent", "role", "reviewer", "-t", "t1"])
        assert result.exit_code == 1
        assert "cannot be reviewer" in result.output

    def test_list(self, initialized):
        result = runner.invoke(app, ["agent", "list"])
        assert result.exit_code == 0
        for name in ("Adele", "Brian", "Charlie"):
            assert name in result.output

    def test_admin_commands(self, initialized):
        assert runner.invoke(app, ["agent", "new", "dora", "bob"]).exit_code == 0
        assert runner.invoke(app, ["agent", "reassign", "Dora", "alice"]).exit_code == 0
        assert runner.invoke(app, ["agent", "rename", "Dora", "Daisy"]).exit_code == 0
        assert runner.invoke(app, ["agent", "remove", "Daisy", "--force"]).exit_code == 0
        assert "Daisy" not in load_config(initialized).agents.pool

    def test_admin_error_exit_code(self, initialized):
        result = runner.invoke(app, ["agent", "new", "adele", "alice"])
        assert result.exit_code == 1
        assert "already exists" in result.output


class TestAudit:
    def test_list_and_show(self, initialized):
        run_hook("s-1", "Bash", command="agentguard agent claim Adele")
        runner.invoke(app, ["agent", "claim", "Adele"])

        result = runner.invoke(app, ["audit", "list"])
        assert result.exit_code == 0
        assert "Found 1 session(s)" in result.output
        assert "s-1" in result.output

        result = runner.invoke(app, ["audit", "show", "s-1"])
        assert result.exit_code == 0
        assert "claim" in result.output
        assert "alice" in result.output

    def test_show_unknown(self, initialized):
        result = runner.invoke(app, ["audit", "show", "nope"])
        assert result.exit_code == 1

    def test_list_empty(self, initialized):
        result = runner.invoke(app, ["audit", "list"])
        assert "No audit sessions" in result.output


class TestOffLimitsCommands:
    def test_check(self, initialized):
        result = runner.invoke(app, ["offlimits", "check", "config/.env"])
        assert result.exit_code == 1
        assert "off-limits" in result.output

        assert runner.invoke(app, ["offlimits", "check", "src/app.py"]).exit_code == 0
        assert runner.invoke(app, ["offlimits", "check", ".env.example"]).exit_code == 0

    def test_validate_template(self, initialized):
        result = runner.invoke(app, ["offlimits", "validate"])
        assert result.exit_code == 0
        assert "Literal path does not exist: .env" in result.output

    def test_validate_broken_file(self, initialized):
        (initialized / "guard" / "files-off-limits.md").write_text("```\n.env\n")
        result = runner.invoke(app, ["offlimits", "validate"])
        assert result.exit_code == 1
        assert "ERROR" in result.output
