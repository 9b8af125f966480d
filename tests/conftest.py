"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for runtime_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from kubesync.config import Config  # noqa: E402
from runtime_mock import InMemoryRuntime, InMemorySource  # noqa: E402


def make_config(tmp_path: Path, **overrides) -> Config:
    """Config with existing directories and timings suited to tests."""
    applications_dir = tmp_path / "applications"
    repos_dir = tmp_path / "repos"
    applications_dir.mkdir(exist_ok=True)
    repos_dir.mkdir(exist_ok=True)
    values = {
        "applications_dir": applications_dir,
        "repos_dir": repos_dir,
        "reconcile_interval_seconds": 3600,
        "fetch_timeout_seconds": 5.0,
        "apply_timeout_seconds": 5.0,
        "health_timeout_seconds": 0.5,
        "health_poll_interval_seconds": 0.01,
        "max_action_attempts": 3,
        "retry_backoff_base_seconds": 0.01,
        "retry_backoff_max_seconds": 0.02,
    }
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return make_config(tmp_path)


@pytest.fixture
def runtime() -> InMemoryRuntime:
    return InMemoryRuntime()


@pytest.fixture
def source() -> InMemorySource:
    return InMemorySource()
