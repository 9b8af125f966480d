"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from kubesync.config import Config, ConfigurationError, SourceType


def _dirs(tmp_path: Path) -> tuple[Path, Path]:
    applications_dir = tmp_path / "applications"
    repos_dir = tmp_path / "repos"
    applications_dir.mkdir()
    repos_dir.mkdir()
    return applications_dir, repos_dir


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self, tmp_path: Path) -> None:
        """Test creating a valid configuration with defaults."""
        applications_dir, repos_dir = _dirs(tmp_path)

        config = Config(applications_dir=applications_dir, repos_dir=repos_dir)

        assert config.reconcile_interval_seconds == 180
        assert config.source_type == SourceType.GIT
        assert config.max_concurrent_actions == 10
        assert config.history_limit == 10
        assert config.dry_run is False
        assert config.enable_audit_logging is True

    def test_missing_directories(self, tmp_path: Path) -> None:
        """Test that missing directories are reported together."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(applications_dir=tmp_path / "nope", repos_dir=tmp_path / "missing")

        message = str(exc_info.value)
        assert "Applications directory does not exist" in message
        assert "Repositories directory does not exist" in message

    def test_invalid_reconcile_interval(self, tmp_path: Path) -> None:
        """Test that out-of-range reconcile interval raises error."""
        applications_dir, repos_dir = _dirs(tmp_path)

        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                applications_dir=applications_dir,
                repos_dir=repos_dir,
                reconcile_interval_seconds=7200,  # Too high
            )

        assert "RECONCILE_INTERVAL" in str(exc_info.value)

    def test_non_positive_timeouts(self, tmp_path: Path) -> None:
        """Test that every timeout must be positive."""
        applications_dir, repos_dir = _dirs(tmp_path)

        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                applications_dir=applications_dir,
                repos_dir=repos_dir,
                apply_timeout_seconds=0,
                health_poll_interval_seconds=-1,
            )

        assert "APPLY_TIMEOUT" in str(exc_info.value)
        assert "HEALTH_POLL_INTERVAL" in str(exc_info.value)

    def test_concurrency_bounds(self, tmp_path: Path) -> None:
        """Test that concurrency is bounded on both sides."""
        applications_dir, repos_dir = _dirs(tmp_path)

        for value in (0, 51):
            with pytest.raises(ConfigurationError) as exc_info:
                Config(
                    applications_dir=applications_dir,
                    repos_dir=repos_dir,
                    max_concurrent_actions=value,
                )
            assert "MAX_CONCURRENT_ACTIONS" in str(exc_info.value)

    def test_backoff_ceiling_below_base(self, tmp_path: Path) -> None:
        """Test that the backoff ceiling cannot be below the base."""
        applications_dir, repos_dir = _dirs(tmp_path)

        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                applications_dir=applications_dir,
                repos_dir=repos_dir,
                retry_backoff_base_seconds=10,
                retry_backoff_max_seconds=5,
            )

        assert "RETRY_BACKOFF_MAX" in str(exc_info.value)

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment."""
        applications_dir, repos_dir = _dirs(tmp_path)

        env = {
            "APPLICATIONS_DIR": str(applications_dir),
            "REPOS_DIR": str(repos_dir),
            "SOURCE_TYPE": "directory",
            "RECONCILE_INTERVAL": "60",
            "HEALTH_TIMEOUT": "12.5",
            "MAX_CONCURRENT_ACTIONS": "4",
            "KUBE_CONTEXT": "staging",
            "DRY_RUN": "true",
            "ENABLE_AUDIT_LOGGING": "false",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.source_type == SourceType.DIRECTORY
        assert config.reconcile_interval_seconds == 60
        assert config.health_timeout_seconds == 12.5
        assert config.max_concurrent_actions == 4
        assert config.kube_context == "staging"
        assert config.dry_run is True
        assert config.enable_audit_logging is False

    def test_from_env_invalid_integer(self, tmp_path: Path) -> None:
        """Test that a non-numeric value is rejected with its variable name."""
        applications_dir, repos_dir = _dirs(tmp_path)

        env = {
            "APPLICATIONS_DIR": str(applications_dir),
            "REPOS_DIR": str(repos_dir),
            "RECONCILE_INTERVAL": "soon",
        }

        with patch.dict(os.environ, env, clear=True), pytest.raises(ConfigurationError) as exc_info:
            Config.from_env()

        assert "RECONCILE_INTERVAL must be an integer" in str(exc_info.value)

    def test_from_env_invalid_source_type(self, tmp_path: Path) -> None:
        """Test that an unknown source type is rejected."""
        applications_dir, repos_dir = _dirs(tmp_path)

        env = {
            "APPLICATIONS_DIR": str(applications_dir),
            "REPOS_DIR": str(repos_dir),
            "SOURCE_TYPE": "svn",
        }

        with patch.dict(os.environ, env, clear=True), pytest.raises(ConfigurationError) as exc_info:
            Config.from_env()

        assert "SOURCE_TYPE" in str(exc_info.value)
