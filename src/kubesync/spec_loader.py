"""Application and manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_APPLICATION_FILE_SIZE_BYTES, MAX_MANIFEST_FILE_SIZE_BYTES
from .errors import InvalidManifest
from .models import Application
from .resources import DesiredResource, ResourceKey, parse_sync_options

logger = logging.getLogger(__name__)

APPLICATION_API_VERSION = "kubesync.io/v1"
APPLICATION_KIND = "Application"
MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


class SpecLoadError(Exception):
    """Raised when an Application definition cannot be loaded or validated."""

    pass


def _read_bounded(path: Path, limit: int, error_cls: type[Exception]) -> str:
    """Read a text file after checking its size against `limit`."""
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise error_cls(f"Failed to stat file {path}: {e}") from e

    if file_size > limit:
        raise error_cls(f"File exceeds maximum size of {limit} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise error_cls(f"Failed to read file {path}: {e}") from e


def _format_validation_error(e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return "\n".join(errors)


def parse_application(raw_data: Any, origin: str = "<memory>") -> Application:
    """Validate one Application document.

    Supports both the Kubernetes-style wrapper (apiVersion/kind/metadata/spec)
    and a flat document carrying `name` next to the spec fields.

    Raises:
        SpecLoadError: If the document is not a valid Application.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Application must be a YAML mapping: {origin}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        if raw_data.get("kind") != APPLICATION_KIND:
            raise SpecLoadError(
                f"Expected kind '{APPLICATION_KIND}', got '{raw_data.get('kind')}': {origin}"
            )
        spec_data = raw_data.get("spec")
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {origin}")
        metadata = raw_data.get("metadata") or {}
        spec_data = {**spec_data, "name": metadata.get("name")}
    else:
        spec_data = raw_data

    try:
        return Application.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {origin}:\n{_format_validation_error(e)}"
        ) from e


def load_application_file(path: Path) -> Application:
    """Load and validate a single Application definition.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    content = _read_bounded(path, MAX_APPLICATION_FILE_SIZE_BYTES, SpecLoadError)
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e
    return parse_application(raw_data, origin=str(path))


def load_applications(applications_dir: Path) -> list[Application]:
    """Load every Application definition in a directory.

    Raises:
        SpecLoadError: If any file is invalid or two files share a name.
    """
    if not applications_dir.is_dir():
        raise SpecLoadError(f"Applications directory not found: {applications_dir}")

    applications: dict[str, Application] = {}
    for path in sorted(applications_dir.iterdir()):
        if path.suffix not in (".yaml", ".yml") or not path.is_file():
            continue
        app = load_application_file(path)
        if app.name in applications:
            raise SpecLoadError(f"Duplicate application name '{app.name}' in {path}")
        applications[app.name] = app

    logger.info(
        "Loaded applications",
        extra={"count": len(applications), "applications_dir": str(applications_dir)},
    )
    return list(applications.values())


# =============================================================================
# Manifests
# =============================================================================


def _expand_documents(documents: list[Any]) -> list[tuple[int, Any]]:
    """Flatten `kind: List` wrappers, keeping the original document index."""
    expanded: list[tuple[int, Any]] = []
    for index, doc in enumerate(documents):
        if doc is None:
            continue
        if isinstance(doc, dict) and doc.get("kind") == "List" and "items" in doc:
            for item in doc.get("items") or []:
                expanded.append((index, item))
        else:
            expanded.append((index, doc))
    return expanded


def parse_manifests(
    content: str,
    source_path: str,
    default_namespace: str,
) -> tuple[list[DesiredResource], list[InvalidManifest]]:
    """Parse one manifest file into desired resources.

    A document that fails validation is reported as an InvalidManifest and
    does not prevent the remaining documents from loading.

    Returns:
        Tuple of (resources, errors).
    """
    resources: list[DesiredResource] = []
    errors: list[InvalidManifest] = []

    try:
        if source_path.endswith(".json"):
            documents = [json.loads(content)]
        else:
            documents = list(yaml.safe_load_all(content))
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        return [], [InvalidManifest(source_path, f"parse error: {e}")]

    for index, doc in _expand_documents(documents):
        if not isinstance(doc, dict):
            errors.append(InvalidManifest(source_path, "document must be a mapping", index))
            continue
        if parse_sync_options(doc).get("Skip") == "true":
            continue
        try:
            resources.append(
                DesiredResource.from_manifest(doc, default_namespace, source_path=source_path)
            )
        except ValueError as e:
            errors.append(InvalidManifest(source_path, str(e), index))

    return resources, errors


def merge_resources(
    resources: list[DesiredResource],
) -> tuple[list[DesiredResource], list[InvalidManifest]]:
    """Sort resources by key and report duplicate definitions."""
    by_key: dict[ResourceKey, DesiredResource] = {}
    errors: list[InvalidManifest] = []
    for resource in resources:
        existing = by_key.get(resource.key)
        if existing is not None:
            errors.append(
                InvalidManifest(
                    resource.source_path,
                    f"duplicate definition of {resource.key} (first in {existing.source_path})",
                )
            )
            continue
        by_key[resource.key] = resource
    return [by_key[k] for k in sorted(by_key)], errors


def load_manifest_file(
    path: Path,
    relative_path: str,
    default_namespace: str,
) -> tuple[list[DesiredResource], list[InvalidManifest]]:
    """Read and parse one manifest file from disk."""
    try:
        content = _read_bounded(path, MAX_MANIFEST_FILE_SIZE_BYTES, OSError)
    except OSError as e:
        return [], [InvalidManifest(relative_path, str(e))]
    return parse_manifests(content, relative_path, default_namespace)
