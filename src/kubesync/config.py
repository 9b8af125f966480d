"""Configuration management with validation.

Limits are enforced at configuration load time so that a misconfigured
controller fails on startup instead of partway through a sync.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class SourceType(str, Enum):
    """Supported desired-state sources."""

    GIT = "git"
    DIRECTORY = "directory"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 180
MIN_RECONCILE_INTERVAL_SECONDS = 1
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_FETCH_TIMEOUT_SECONDS = 60.0
DEFAULT_APPLY_TIMEOUT_SECONDS = 120.0
DEFAULT_HEALTH_TIMEOUT_SECONDS = 300.0
DEFAULT_HEALTH_POLL_INTERVAL_SECONDS = 5.0

DEFAULT_MAX_CONCURRENT_ACTIONS = 10
MAX_CONCURRENT_ACTIONS_LIMIT = 50

DEFAULT_MAX_ACTION_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 30.0

DEFAULT_HISTORY_LIMIT = 10
MAX_HISTORY_LIMIT = 1000
DEFAULT_TRIGGER_QUEUE_SIZE = 100

# Circuit breaker for automatic syncs
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300

# Resource limits to prevent runaway changes and oversized inputs
DEFAULT_MAX_RESOURCES_PER_OPERATION = 500
MAX_MANIFEST_FILE_SIZE_BYTES = 5 * 1024 * 1024  # 5MB per manifest file
MAX_APPLICATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per application file
MAX_MANIFEST_FILES = 2000


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    applications_dir: Path = field(default_factory=lambda: Path("/applications"))
    repos_dir: Path = field(default_factory=lambda: Path("/repos"))
    source_type: SourceType = SourceType.GIT

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    apply_timeout_seconds: float = DEFAULT_APPLY_TIMEOUT_SECONDS
    health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS
    health_poll_interval_seconds: float = DEFAULT_HEALTH_POLL_INTERVAL_SECONDS

    # Execution
    max_concurrent_actions: int = DEFAULT_MAX_CONCURRENT_ACTIONS
    max_action_attempts: int = DEFAULT_MAX_ACTION_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    max_resources_per_operation: int = DEFAULT_MAX_RESOURCES_PER_OPERATION

    # Controller loop
    history_limit: int = DEFAULT_HISTORY_LIMIT
    trigger_queue_size: int = DEFAULT_TRIGGER_QUEUE_SIZE

    # Target runtime
    kube_context: str | None = None

    # Behavior
    dry_run: bool = False
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All errors are collected and reported together (fail-fast).
        """
        errors: list[str] = []

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        for name, value in (
            ("FETCH_TIMEOUT", self.fetch_timeout_seconds),
            ("APPLY_TIMEOUT", self.apply_timeout_seconds),
            ("HEALTH_TIMEOUT", self.health_timeout_seconds),
            ("HEALTH_POLL_INTERVAL", self.health_poll_interval_seconds),
        ):
            if value <= 0:
                errors.append(f"{name} must be positive: {value}")

        if not (1 <= self.max_concurrent_actions <= MAX_CONCURRENT_ACTIONS_LIMIT):
            errors.append(
                f"MAX_CONCURRENT_ACTIONS must be between 1 and {MAX_CONCURRENT_ACTIONS_LIMIT}"
            )

        if self.max_action_attempts < 1:
            errors.append("MAX_ACTION_ATTEMPTS must be at least 1")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be >= RETRY_BACKOFF_BASE")

        if not (1 <= self.history_limit <= MAX_HISTORY_LIMIT):
            errors.append(f"HISTORY_LIMIT must be between 1 and {MAX_HISTORY_LIMIT}")

        if self.trigger_queue_size < 1:
            errors.append("TRIGGER_QUEUE_SIZE must be at least 1")

        if self.max_resources_per_operation < 1:
            errors.append("MAX_RESOURCES_PER_OPERATION must be at least 1")

        # Path validation
        if not self.applications_dir.exists():
            errors.append(f"Applications directory does not exist: {self.applications_dir}")

        if not self.repos_dir.exists():
            errors.append(f"Repositories directory does not exist: {self.repos_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            APPLICATIONS_DIR: Path to Application definitions (default: /applications)
            REPOS_DIR: Path to git-sync checkouts (default: /repos)
            SOURCE_TYPE: One of git, directory (default: git)
            RECONCILE_INTERVAL: Seconds between periodic refreshes (default: 180)
            FETCH_TIMEOUT: Timeout for desired/live state fetches (default: 60)
            APPLY_TIMEOUT: Timeout for a single apply call (default: 120)
            HEALTH_TIMEOUT: Time to wait for resources to become healthy (default: 300)
            HEALTH_POLL_INTERVAL: Seconds between health polls (default: 5)
            MAX_CONCURRENT_ACTIONS: Parallel actions within a tier (default: 10)
            MAX_ACTION_ATTEMPTS: Attempts for transient failures (default: 5)
            RETRY_BACKOFF_BASE: Initial retry backoff in seconds (default: 1)
            RETRY_BACKOFF_MAX: Backoff ceiling in seconds (default: 30)
            HISTORY_LIMIT: Sync operations retained per application (default: 10)
            TRIGGER_QUEUE_SIZE: Bound of the trigger channel (default: 100)
            MAX_RESOURCES_PER_OPERATION: Max actions in one plan (default: 500)
            KUBE_CONTEXT: kubeconfig context (default: in-cluster, then current)
            DRY_RUN: If "true", plan but never apply (default: false)
            ENABLE_AUDIT_LOGGING: Enable JSON audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_source_type(value: str | None) -> SourceType:
            if not value:
                return SourceType.GIT
            try:
                return SourceType(value.lower())
            except ValueError as e:
                valid = [s.value for s in SourceType]
                raise ConfigurationError(f"SOURCE_TYPE must be one of {valid}: {value}") from e

        return cls(
            applications_dir=Path(os.environ.get("APPLICATIONS_DIR", "/applications")),
            repos_dir=Path(os.environ.get("REPOS_DIR", "/repos")),
            source_type=get_source_type(os.environ.get("SOURCE_TYPE")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            fetch_timeout_seconds=get_float("FETCH_TIMEOUT", DEFAULT_FETCH_TIMEOUT_SECONDS),
            apply_timeout_seconds=get_float("APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS),
            health_timeout_seconds=get_float("HEALTH_TIMEOUT", DEFAULT_HEALTH_TIMEOUT_SECONDS),
            health_poll_interval_seconds=get_float(
                "HEALTH_POLL_INTERVAL", DEFAULT_HEALTH_POLL_INTERVAL_SECONDS
            ),
            max_concurrent_actions=get_int(
                "MAX_CONCURRENT_ACTIONS", DEFAULT_MAX_CONCURRENT_ACTIONS
            ),
            max_action_attempts=get_int("MAX_ACTION_ATTEMPTS", DEFAULT_MAX_ACTION_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            max_resources_per_operation=get_int(
                "MAX_RESOURCES_PER_OPERATION", DEFAULT_MAX_RESOURCES_PER_OPERATION
            ),
            history_limit=get_int("HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT),
            trigger_queue_size=get_int("TRIGGER_QUEUE_SIZE", DEFAULT_TRIGGER_QUEUE_SIZE),
            kube_context=os.environ.get("KUBE_CONTEXT") or None,
            dry_run=get_bool("DRY_RUN", False),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
