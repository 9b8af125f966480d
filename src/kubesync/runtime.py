"""Target runtime contract and live-state fetching.

Live state is scoped by the tracking label: only objects stamped with
`app.kubernetes.io/instance=<application>` belong to an application, so
pruning can never touch resources the controller did not create.
"""

from __future__ import annotations

import asyncio
import copy
import json
from typing import Any, Protocol

from .errors import RuntimeUnreachable
from .models import Application
from .operation import Action
from .resources import (
    LAST_APPLIED_ANNOTATION,
    TRACKING_LABEL,
    LiveResource,
    ResourceKey,
    field_set,
)


class TargetRuntime(Protocol):
    """Typed get/create/update/delete against a cluster."""

    async def list_resources(self, application: Application) -> list[LiveResource]:
        """List every live resource tracked for `application`.

        Raises:
            RuntimeUnreachable: If the runtime cannot be queried.
        """
        ...

    async def apply(self, action: Action, manifest: dict[str, Any] | None) -> LiveResource | None:
        """Apply one Create, Update or Delete action.

        `manifest` is the full desired object for Create and a JSON merge
        patch for Update, both stamped with the ownership metadata, and None
        for Delete. Replace is never passed here: the executor splits it
        into Delete and Create.

        Raises:
            ActionError: Classified as transient or permanent.
        """
        ...

    async def get_resource(self, key: ResourceKey, api_version: str) -> LiveResource | None:
        """Read one resource, or None when it does not exist.

        Raises:
            RuntimeUnreachable: If the runtime cannot be queried.
        """
        ...


def stamp_ownership(manifest: dict[str, Any], application: str) -> dict[str, Any]:
    """Return a copy of `manifest` labelled as owned by `application`.

    The copy also records the field set of `manifest` in the last-applied
    annotation, so a field later dropped from the desired state can be
    told apart from one the runtime or another writer added.
    """
    stamped = copy.deepcopy(manifest)
    metadata = stamped.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    metadata["labels"] = {**labels, TRACKING_LABEL: application}
    annotations = metadata.get("annotations") or {}
    metadata["annotations"] = {
        **annotations,
        LAST_APPLIED_ANNOTATION: json.dumps(
            field_set(manifest), sort_keys=True, separators=(",", ":")
        ),
    }
    return stamped


def _merge(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(target)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def update_patch(action: Action, application: str) -> dict[str, Any]:
    """Merge patch body for an Update action.

    Carries the identity of the object, the changed fields from the diff
    (null for fields dropped from the desired state) and the ownership
    metadata. Falls back to the full desired manifest when the action has
    no patch.
    """
    manifest = action.desired.manifest
    stamped = stamp_ownership(manifest, application)
    if action.patch is None:
        return stamped

    ownership = {
        "labels": {TRACKING_LABEL: application},
        "annotations": {
            LAST_APPLIED_ANNOTATION: stamped["metadata"]["annotations"][LAST_APPLIED_ANNOTATION]
        },
    }
    identity = {k: v for k, v in stamped["metadata"].items() if k in ("name", "namespace")}
    body: dict[str, Any] = {
        "apiVersion": manifest["apiVersion"],
        "kind": manifest["kind"],
        "metadata": identity,
    }
    body = _merge(body, copy.deepcopy(action.patch))
    return _merge(body, {"metadata": ownership})


async def fetch_live(
    runtime: TargetRuntime,
    application: Application,
    timeout_seconds: float,
) -> list[LiveResource]:
    """List live resources for an application with a timeout.

    Raises:
        RuntimeUnreachable: If the runtime fails or does not answer in time.
    """
    try:
        resources = await asyncio.wait_for(
            runtime.list_resources(application), timeout=timeout_seconds
        )
    except TimeoutError as e:
        raise RuntimeUnreachable(f"Live state fetch timed out after {timeout_seconds}s") from e

    return sorted(
        (r for r in resources if r.labels.get(TRACKING_LABEL) == application.name),
        key=lambda r: r.key,
    )
