"""In-memory desired-state source.

Each repository keeps an ordered list of commits; a commit maps manifest
paths to YAML content. Manifests go through the real parser, so invalid
documents surface exactly as they would from a checkout.
"""

from __future__ import annotations

import asyncio
from typing import Any

import yaml

from kubesync.errors import InvalidManifest, SourceError, SourceUnavailable
from kubesync.models import DEFAULT_REVISION, Application
from kubesync.resources import DesiredResource
from kubesync.source import FetchResult
from kubesync.spec_loader import merge_resources, parse_manifests


class InMemorySource:
    """ManifestSource backed by dictionaries.

    Usage:
        source = InMemorySource()
        rev1 = source.commit("https://git.example.com/shop.git", [configmap("cfg")])
        rev2 = source.commit("https://git.example.com/shop.git", [configmap("cfg", {"k": "v2"})])
    """

    def __init__(self, fetch_delay: float = 0.0) -> None:
        self._commits: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.fetch_delay = fetch_delay
        self.fetch_count = 0
        self.failure: SourceError | None = None

    def commit(
        self,
        repo_url: str,
        manifests: list[dict[str, Any]] | str,
        path: str = ".",
    ) -> str:
        """Record a new head commit for `path` and return its revision.

        Files at other paths are carried over from the previous commit.
        """
        history = self._commits.setdefault(repo_url, [])
        files = dict(history[-1][1]) if history else {}
        content = manifests if isinstance(manifests, str) else yaml.safe_dump_all(manifests)
        files[path] = content
        revision = f"{len(history) + 1:040x}"
        history.append((revision, files))
        return revision

    def head(self, repo_url: str) -> str:
        return self._commits[repo_url][-1][0]

    async def fetch(self, application: Application, revision: str | None = None) -> FetchResult:
        self.fetch_count += 1
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        else:
            await asyncio.sleep(0)
        if self.failure is not None:
            raise self.failure

        history = self._commits.get(application.source.repo_url)
        if not history:
            raise SourceUnavailable(f"Repository not found: {application.source.repo_url}")

        requested = revision or application.source.revision
        if requested == DEFAULT_REVISION:
            sha, files = history[-1]
        else:
            match = [c for c in history if c[0] == requested]
            if not match:
                raise SourceUnavailable(f"Revision '{requested}' not found")
            sha, files = match[0]

        content = files.get(application.source.path)
        if content is None:
            raise SourceUnavailable(f"Path '{application.source.path}' not found at {sha}")

        resources: list[DesiredResource]
        errors: list[InvalidManifest]
        resources, errors = parse_manifests(
            content, "manifests.yaml", application.destination.namespace
        )
        merged, duplicate_errors = merge_resources(resources)
        return FetchResult(
            revision=sha,
            resources=tuple(merged),
            errors=tuple(errors + duplicate_errors),
        )
