"""Main entry point for the kubesync controller.

The controller reads Application registrations from APPLICATIONS_DIR,
desired state from the git-sync checkouts under REPOS_DIR, and reconciles
each application into the cluster until it receives SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .config import Config, ConfigurationError, SourceType
from .controller import Controller
from .diff_normalizer import create_normalizer_from_env
from .errors import InvalidStateTransition
from .kube_runtime import KubernetesRuntime
from .source import DirectoryManifestSource, GitManifestSource, ManifestSource
from .spec_loader import SpecLoadError, load_applications


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in (
                    "name",
                    "msg",
                    "args",
                    "created",
                    "filename",
                    "funcName",
                    "levelname",
                    "levelno",
                    "lineno",
                    "module",
                    "msecs",
                    "pathname",
                    "process",
                    "processName",
                    "relativeCreated",
                    "stack_info",
                    "exc_info",
                    "exc_text",
                    "thread",
                    "threadName",
                    "taskName",
                    "message",
                ):
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_source(config: Config) -> ManifestSource:
    """Desired-state source selected by SOURCE_TYPE."""
    if config.source_type is SourceType.DIRECTORY:
        return DirectoryManifestSource(config.repos_dir)
    return GitManifestSource(config.repos_dir)


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for a clean stop, 1 for any failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    try:
        applications = load_applications(config.applications_dir)
    except SpecLoadError as e:
        logger.error(
            "Application loading failed",
            extra={"error": str(e), "applications_dir": str(config.applications_dir)},
        )
        return 1

    logger.info(
        "Starting kubesync controller",
        extra={
            "applications": [app.name for app in applications],
            "source_type": config.source_type.value,
            "repos_dir": str(config.repos_dir),
            "kube_context": config.kube_context,
            "dry_run": config.dry_run,
        },
    )

    normalizer, normalization_config = create_normalizer_from_env()
    controller = Controller(
        config,
        build_source(config),
        KubernetesRuntime(context=config.kube_context),
        normalizer=normalizer,
        log_normalizations=normalization_config.log_normalizations,
    )
    for application in applications:
        controller.register(application)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await controller.run()
    except InvalidStateTransition as e:
        logger.critical("Invalid application state transition", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
