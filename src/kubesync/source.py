"""Desired-state sources.

The controller never clones or pulls: repositories are kept current by a
git-sync sidecar under REPOS_DIR, one checkout per repository. Reading a
specific revision through git plumbing lets the controller sync (and roll
back to) any commit present in the checkout, not only the working tree.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_MANIFEST_FILES
from .errors import InvalidManifest, SourceUnavailable
from .models import DEFAULT_REVISION, Application
from .resources import DesiredResource
from .spec_loader import MANIFEST_SUFFIXES, load_manifest_file, merge_resources, parse_manifests

logger = logging.getLogger(__name__)

GIT_BINARY = "git"


@dataclass(frozen=True)
class FetchResult:
    """Desired state of one application at one revision."""

    revision: str
    resources: tuple[DesiredResource, ...]
    errors: tuple[InvalidManifest, ...] = ()


class ManifestSource(Protocol):
    """Anything that can produce desired state keyed by (repository, revision, path)."""

    async def fetch(self, application: Application, revision: str | None = None) -> FetchResult:
        """Read the application's manifests at `revision` (default: its target revision).

        Raises:
            SourceUnavailable: If the repository or revision cannot be read.
        """
        ...


def repo_dir_name(repo_url: str) -> str:
    """Checkout directory used by git-sync for a repository URL."""
    name = repo_url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    if not name or name in (".", ".."):
        raise SourceUnavailable(f"Cannot derive checkout directory from '{repo_url}'")
    return name


def _is_manifest(path: str) -> bool:
    return path.endswith(MANIFEST_SUFFIXES)


class DirectoryManifestSource:
    """Reads manifests from a plain directory tree.

    The revision is a content hash of the manifest files, so any edit in the
    directory is seen as a new revision.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    def _app_dir(self, application: Application) -> Path:
        base = self._root / repo_dir_name(application.source.repo_url)
        return base if application.source.path == "." else base / application.source.path

    async def fetch(self, application: Application, revision: str | None = None) -> FetchResult:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self._fetch_sync, application)
        requested = revision or application.source.revision
        if requested not in (DEFAULT_REVISION, result.revision):
            raise SourceUnavailable(
                f"Directory source only serves its current content; "
                f"revision '{requested}' is not available"
            )
        return result

    def _fetch_sync(self, application: Application) -> FetchResult:
        app_dir = self._app_dir(application)
        if not app_dir.is_dir():
            raise SourceUnavailable(f"Manifest directory not found: {app_dir}")

        files = sorted(p for p in app_dir.rglob("*") if p.is_file() and _is_manifest(p.name))
        if len(files) > MAX_MANIFEST_FILES:
            raise SourceUnavailable(
                f"{len(files)} manifest files exceed the limit of {MAX_MANIFEST_FILES}"
            )

        digest = hashlib.sha256()
        resources: list[DesiredResource] = []
        errors: list[InvalidManifest] = []
        for path in files:
            relative = path.relative_to(app_dir).as_posix()
            file_resources, file_errors = load_manifest_file(
                path, relative, application.destination.namespace
            )
            digest.update(relative.encode("utf-8"))
            for resource in file_resources:
                digest.update(resource.content_hash.encode("ascii"))
            resources.extend(file_resources)
            errors.extend(file_errors)

        merged, duplicate_errors = merge_resources(resources)
        return FetchResult(
            revision=f"sha256:{digest.hexdigest()[:16]}",
            resources=tuple(merged),
            errors=tuple(errors + duplicate_errors),
        )


class GitManifestSource:
    """Reads manifests at an exact commit from a local git checkout."""

    def __init__(self, root: Path, git_binary: str = GIT_BINARY) -> None:
        self._root = root
        self._git_binary = git_binary

    async def _git(self, checkout: Path, *args: str) -> str:
        """Run a git command in `checkout` and return stdout.

        Raises:
            SourceUnavailable: If git is missing or exits non-zero.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self._git_binary,
                "-C",
                str(checkout),
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SourceUnavailable(f"git executable not found: {self._git_binary}") from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            raise

        if process.returncode != 0:
            raise SourceUnavailable(
                f"git {args[0]} failed in {checkout}: {stderr.decode('utf-8', 'replace').strip()}"
            )
        return stdout.decode("utf-8", "replace")

    async def fetch(self, application: Application, revision: str | None = None) -> FetchResult:
        checkout = self._root / repo_dir_name(application.source.repo_url)
        if not checkout.is_dir():
            raise SourceUnavailable(f"Repository checkout not found: {checkout}")

        requested = revision or application.source.revision
        sha = (
            await self._git(checkout, "rev-parse", "--verify", f"{requested}^{{commit}}")
        ).strip()

        ls_args = ["ls-tree", "-r", "--name-only", sha]
        if application.source.path != ".":
            ls_args += ["--", application.source.path]
        listing = await self._git(checkout, *ls_args)
        files = sorted(f for f in listing.splitlines() if _is_manifest(f))

        if len(files) > MAX_MANIFEST_FILES:
            raise SourceUnavailable(
                f"{len(files)} manifest files exceed the limit of {MAX_MANIFEST_FILES}"
            )

        prefix = "" if application.source.path == "." else application.source.path + "/"
        resources: list[DesiredResource] = []
        errors: list[InvalidManifest] = []
        for file in files:
            relative = file[len(prefix):] if file.startswith(prefix) else file
            content = await self._git(checkout, "show", f"{sha}:{file}")
            if len(content.encode("utf-8")) > MAX_MANIFEST_FILE_SIZE_BYTES:
                errors.append(
                    InvalidManifest(
                        relative, f"exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes"
                    )
                )
                continue
            file_resources, file_errors = parse_manifests(
                content, relative, application.destination.namespace
            )
            resources.extend(file_resources)
            errors.extend(file_errors)

        merged, duplicate_errors = merge_resources(resources)
        logger.debug(
            "Fetched desired state",
            extra={
                "application": application.name,
                "revision": sha,
                "resources": len(merged),
                "errors": len(errors) + len(duplicate_errors),
            },
        )
        return FetchResult(
            revision=sha,
            resources=tuple(merged),
            errors=tuple(errors + duplicate_errors),
        )


async def fetch_desired(
    source: ManifestSource,
    application: Application,
    timeout_seconds: float,
    revision: str | None = None,
) -> FetchResult:
    """Fetch desired state with a timeout.

    Raises:
        SourceUnavailable: If the source fails or does not answer in time.
    """
    try:
        return await asyncio.wait_for(source.fetch(application, revision), timeout=timeout_seconds)
    except TimeoutError as e:
        raise SourceUnavailable(
            f"Desired state fetch timed out after {timeout_seconds}s"
        ) from e
