"""Diff engine: classify desired vs live resources.

Desired manifests are treated as partial specifications, as server-side
apply does: a field the runtime added or defaulted is not drift, only a
field the desired manifest declares with a different value is. A field
recorded in the last-applied annotation but no longer declared is drift
too, and the merge patch removes it with null.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .diff_normalizer import DiffNormalizer
from .resources import DesiredResource, LiveResource, ResourceKey

logger = logging.getLogger(__name__)


class DiffStatus(str, Enum):
    """Classification of one resource."""

    IN_SYNC = "InSync"
    OUT_OF_SYNC = "OutOfSync"
    MISSING = "Missing"  # Desired but not live
    ORPHANED = "Orphaned"  # Live and tracked but no longer desired


@dataclass(frozen=True)
class FieldChange:
    """A single field-level difference."""

    path: str
    desired: Any
    live: Any

    def __str__(self) -> str:
        return f"{self.path}: {self.live!r} -> {self.desired!r}"


@dataclass(frozen=True)
class ResourceDiff:
    """Diff result for one resource key."""

    key: ResourceKey
    status: DiffStatus
    desired: DesiredResource | None = None
    live: LiveResource | None = None
    changes: tuple[FieldChange, ...] = ()
    patch: dict[str, Any] | None = None
    requires_replace: bool = False

    @property
    def actionable(self) -> bool:
        return self.status is not DiffStatus.IN_SYNC

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": str(self.key),
            "status": self.status.value,
            "requires_replace": self.requires_replace,
            "changes": [
                {"path": c.path, "desired": c.desired, "live": c.live} for c in self.changes
            ],
        }


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str | list | dict) and len(value) == 0)


def _set_path(target: dict[str, Any], segments: tuple[str, ...], value: Any) -> None:
    node = target
    for segment in segments[:-1]:
        node = node.setdefault(segment, {})
    node[segments[-1]] = value


def _get_path(source: dict[str, Any], segments: tuple[str, ...]) -> Any:
    node: Any = source
    for segment in segments:
        node = node[segment]
    return node


class DiffEngine:
    """Compares desired and live resources through normalized projections."""

    def __init__(
        self, normalizer: DiffNormalizer | None = None, log_normalizations: bool = False
    ) -> None:
        self._normalizer = normalizer or DiffNormalizer()
        self._log_normalizations = log_normalizations

    def diff(
        self,
        desired: Iterable[DesiredResource],
        live: Iterable[LiveResource],
        prune_enabled: bool,
    ) -> list[ResourceDiff]:
        """Classify every resource key, sorted by kind, namespace and name.

        Unmatched live resources are reported as Orphaned only when
        `prune_enabled`; otherwise they are dropped from the result. A live
        resource annotated with the Prune=false sync option is never
        reported as Orphaned.
        """
        desired_by_key = {r.key: r for r in desired}
        live_by_key = {r.key: r for r in live}

        diffs: list[ResourceDiff] = []
        for key in sorted(desired_by_key.keys() | live_by_key.keys()):
            desired_resource = desired_by_key.get(key)
            live_resource = live_by_key.get(key)

            if desired_resource is None:
                if not prune_enabled:
                    continue
                if live_resource.sync_options.get("Prune") == "false":
                    logger.debug("Prune disabled by annotation", extra={"resource": str(key)})
                    continue
                diffs.append(ResourceDiff(key=key, status=DiffStatus.ORPHANED, live=live_resource))
            elif live_resource is None:
                diffs.append(
                    ResourceDiff(key=key, status=DiffStatus.MISSING, desired=desired_resource)
                )
            else:
                diffs.append(self.compare(desired_resource, live_resource))

        return diffs

    def compare(self, desired: DesiredResource, live: LiveResource) -> ResourceDiff:
        """Field-level comparison of a matched pair."""
        kind = desired.key.kind
        desired_view = self._normalizer.project(kind, desired.manifest)
        live_view = self._normalizer.project(kind, live.manifest)

        changes: list[FieldChange] = []
        patch_paths: list[tuple[str, ...]] = []
        self._compare(kind, desired_view, live_view, "", (), changes, patch_paths)

        removed: list[tuple[str, ...]] = []
        applied = live.last_applied
        if applied is not None:
            self._compare_removed(
                kind,
                self._normalizer.project(kind, applied),
                desired_view,
                live_view,
                "",
                (),
                changes,
                removed,
            )

        if not changes:
            return ResourceDiff(
                key=desired.key, status=DiffStatus.IN_SYNC, desired=desired, live=live
            )

        patch: dict[str, Any] = {}
        for segments in patch_paths:
            _set_path(patch, segments, _get_path(desired_view, segments))
        for segments in removed:
            _set_path(patch, segments, None)

        requires_replace = desired.sync_options.get("Replace") == "true" or any(
            self._normalizer.is_immutable(kind, change.path, live.manifest) for change in changes
        )
        return ResourceDiff(
            key=desired.key,
            status=DiffStatus.OUT_OF_SYNC,
            desired=desired,
            live=live,
            changes=tuple(changes),
            patch=patch,
            requires_replace=requires_replace,
        )

    def _compare_removed(
        self,
        kind: str,
        applied: dict[str, Any],
        desired: dict[str, Any],
        live: dict[str, Any],
        path: str,
        segments: tuple[str, ...],
        changes: list[FieldChange],
        removed: list[tuple[str, ...]],
    ) -> None:
        """Record fields that were applied before but are no longer desired.

        Only maps are walked: lists are replaced as a whole by _compare.
        Keys of a dropped map are removed one by one, so keys another writer
        added to the same map survive.
        """
        for name in sorted(applied):
            if name not in live:
                continue
            child = f"{path}.{name}" if path else name
            if self._normalizer.is_ignored(kind, child):
                continue
            applied_value, live_value = applied[name], live[name]
            walkable = isinstance(applied_value, dict) and isinstance(live_value, dict)

            if name in desired:
                if walkable and isinstance(desired[name], dict):
                    self._compare_removed(
                        kind,
                        applied_value,
                        desired[name],
                        live_value,
                        child,
                        segments + (name,),
                        changes,
                        removed,
                    )
                continue

            if walkable and applied_value:
                self._compare_removed(
                    kind, applied_value, {}, live_value, child, segments + (name,), changes, removed
                )
                continue
            if _is_empty(
                self._normalizer.normalize_value(live_value, kind, child)
            ) or self._normalizer.are_equivalent(None, live_value, kind, child):
                continue
            changes.append(FieldChange(child, None, live_value))
            removed.append(segments + (name,))

    def _compare(
        self,
        kind: str,
        desired: Any,
        live: Any,
        path: str,
        segments: tuple[str, ...],
        changes: list[FieldChange],
        patch_paths: list[tuple[str, ...]],
        in_list: bool = False,
    ) -> None:
        """Walk `desired`, recording differences against `live`.

        `segments` is the merge patch target for `path`. Merge patches
        cannot address list elements, so below a list it stays the path of
        the outermost list and a change there replaces the whole list.
        """
        if path and self._normalizer.is_ignored(kind, path):
            return

        def record(value_desired: Any, value_live: Any) -> None:
            changes.append(FieldChange(path, value_desired, value_live))
            if segments not in patch_paths:
                patch_paths.append(segments)

        if isinstance(desired, dict) and isinstance(live, dict):
            for name in sorted(desired):
                child = f"{path}.{name}" if path else name
                child_segments = segments if in_list else segments + (name,)
                if name not in live:
                    if self._normalizer.is_ignored(kind, child):
                        continue
                    if _is_empty(
                        self._normalizer.normalize_value(desired[name], kind, child)
                    ) or self._normalizer.are_equivalent(desired[name], None, kind, child):
                        continue
                    changes.append(FieldChange(child, desired[name], None))
                    if child_segments not in patch_paths:
                        patch_paths.append(child_segments)
                    continue
                self._compare(
                    kind,
                    desired[name],
                    live[name],
                    child,
                    child_segments,
                    changes,
                    patch_paths,
                    in_list,
                )
            return

        if isinstance(desired, list) and isinstance(live, list):
            if self._normalizer.is_unordered(kind, path):
                if not self._normalizer.are_equivalent(desired, live, kind, path):
                    record(desired, live)
                return
            if len(desired) != len(live):
                record(desired, live)
                return
            for index, (item_desired, item_live) in enumerate(zip(desired, live, strict=True)):
                self._compare(
                    kind,
                    item_desired,
                    item_live,
                    f"{path}[{index}]",
                    segments,
                    changes,
                    patch_paths,
                    True,
                )
            return

        if not self._normalizer.are_equivalent(desired, live, kind, path):
            record(desired, live)
        elif self._log_normalizations and desired != live:
            logger.info(
                "Difference normalized away",
                extra={
                    "kind": kind,
                    "path": path,
                    "desired": desired,
                    "live": live,
                    "reason": self._normalizer.get_equivalence_reason(kind, path),
                },
            )
