"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from repo_conductor.engine.state_manager import StateManager
from repo_conductor.models.domain import ExecutionConfig, Issue


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    """Location of a not-yet-created state file."""
    return tmp_path / ".conductor" / "state.json"


@pytest.fixture
def state_manager(state_path: Path) -> StateManager:
    """StateManager writing to a temp directory."""
    return StateManager(state_path)


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    """Temporary run log directory."""
    path = tmp_path / ".conductor" / "logs"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def sample_issue() -> Issue:
    """Sample issue for testing."""
    return Issue(
        number=42,
        title="Add user login",
        labels=["enhancement"],
        body="Users need to sign in with email and password.",
    )


@pytest.fixture
def execution_config() -> ExecutionConfig:
    """Fast execution config for tests."""
    return ExecutionConfig(phase_timeout=5)
