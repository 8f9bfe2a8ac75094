"""Shared fixtures: a throwaway project with a configured agent pool."""

import pytest

from agentguard.agents.registry import AgentRegistry
from agentguard.config import AgentsConfig, GuardConfig, ProjectPaths, save_config


@pytest.fixture
def config():
    """Three agents: Adele and Brian belong to alice, Charlie to bob."""
    return GuardConfig(
        root="guard",
        agents=AgentsConfig(
            pool=["Adele", "Brian", "Charlie"],
            assignments={"alice": ["Adele", "Brian"], "bob": ["Charlie"]},
        ),
    )


@pytest.fixture
def project(tmp_path, config):
    """Project root containing agentguard.yaml."""
    save_config(config, tmp_path / "agentguard.yaml")
    return tmp_path


@pytest.fixture
def human(monkeypatch):
    monkeypatch.setenv("AGENTGUARD_HUMAN", "alice")
    return "alice"


@pytest.fixture
def paths(project, config):
    return ProjectPaths.resolve(project, config)


@pytest.fixture
def registry(paths, config, human):
    return AgentRegistry(paths, config)


@pytest.fixture
def claimed(registry):
    """Adele claimed by session s-1 as code-writer on task t1."""
    registry.claim("Adele", session_id="s-1")
    registry.set_role("s-1", "code-writer", "t1")
    return registry
