"""Desired and live resource records.

Resources are kept as plain manifest dictionaries keyed by
(kind, namespace, name). The records are frozen; callers must treat the
payload dictionaries as read-only and copy before mutating.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

# Label stamped on every applied resource; live state is scoped by it
TRACKING_LABEL = "app.kubernetes.io/instance"

# Annotation declaring explicit ordering references, e.g. "ConfigMap/cfg, Secret/ns/creds"
DEPENDS_ON_ANNOTATION = "kubesync.io/depends-on"

# Annotation carrying per-resource sync options, e.g. "Prune=false,Replace=true"
SYNC_OPTIONS_ANNOTATION = "kubesync.io/sync-options"

# Annotation recording the field set of the last applied manifest, e.g. {"data":{"a":{}}}
LAST_APPLIED_ANNOTATION = "kubesync.io/last-applied"

CLUSTER_SCOPED_KINDS: frozenset[str] = frozenset(
    {
        "APIService",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "IngressClass",
        "MutatingWebhookConfiguration",
        "Namespace",
        "PersistentVolume",
        "PriorityClass",
        "StorageClass",
        "ValidatingWebhookConfiguration",
    }
)


def is_cluster_scoped(kind: str) -> bool:
    """Check whether a kind lives outside any namespace."""
    return kind in CLUSTER_SCOPED_KINDS


def content_hash(manifest: dict[str, Any]) -> str:
    """SHA256 of the canonical JSON encoding of a manifest."""
    encoded = json.dumps(manifest, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a resource. Ordering is kind, then namespace, then name."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, ref: str, default_namespace: str = "") -> ResourceKey:
        """Parse "Kind/name" or "Kind/namespace/name".

        Raises:
            ValueError: If the reference is malformed.
        """
        parts = [p.strip() for p in ref.strip().split("/")]
        if len(parts) == 2 and all(parts):
            kind, name = parts
            namespace = "" if is_cluster_scoped(kind) else default_namespace
            return cls(kind=kind, namespace=namespace, name=name)
        if len(parts) == 3 and parts[0] and parts[2]:
            return cls(kind=parts[0], namespace=parts[1], name=parts[2])
        raise ValueError(f"Invalid resource reference '{ref}', expected Kind/[namespace/]name")


def _metadata(manifest: dict[str, Any]) -> dict[str, Any]:
    metadata = manifest.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def field_set(manifest: dict[str, Any]) -> dict[str, Any]:
    """Key tree of the content a manifest declares.

    Maps become nested trees and every other value (lists included) becomes
    an empty leaf. Identity, status and runtime metadata are left out; of
    the metadata only labels and annotations are kept.
    """

    def tree(value: Any) -> dict[str, Any]:
        return {k: tree(v) for k, v in value.items()} if isinstance(value, dict) else {}

    content = {
        k: v for k, v in manifest.items() if k not in ("apiVersion", "kind", "status", "metadata")
    }
    metadata = _metadata(manifest)
    annotations = {
        k: v
        for k, v in (metadata.get("annotations") or {}).items()
        if k != LAST_APPLIED_ANNOTATION
    }
    kept = {
        k: v for k, v in (("labels", metadata.get("labels")), ("annotations", annotations)) if v
    }
    if kept:
        content["metadata"] = kept
    return tree(content)


def parse_sync_options(manifest: dict[str, Any]) -> dict[str, str]:
    """Parse the sync-options annotation into a {Option: value} mapping."""
    annotations = _metadata(manifest).get("annotations") or {}
    raw = annotations.get(SYNC_OPTIONS_ANNOTATION, "")
    options: dict[str, str] = {}
    for item in str(raw).split(","):
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        options[key.strip()] = value.strip().lower()
    return options


@dataclass(frozen=True)
class DesiredResource:
    """A resource definition read from the desired-state source."""

    key: ResourceKey
    api_version: str
    manifest: dict[str, Any]
    content_hash: str
    source_path: str = ""

    @classmethod
    def from_manifest(
        cls,
        manifest: dict[str, Any],
        default_namespace: str,
        source_path: str = "",
    ) -> DesiredResource:
        """Build a desired resource, defaulting the namespace when omitted.

        Raises:
            ValueError: If apiVersion, kind or metadata.name is missing.
        """
        api_version = manifest.get("apiVersion")
        kind = manifest.get("kind")
        name = _metadata(manifest).get("name")
        if not api_version or not isinstance(api_version, str):
            raise ValueError("missing apiVersion")
        if not kind or not isinstance(kind, str):
            raise ValueError("missing kind")
        if not name or not isinstance(name, str):
            raise ValueError("missing metadata.name")

        normalized = copy.deepcopy(manifest)
        metadata = normalized.setdefault("metadata", {})
        if is_cluster_scoped(kind):
            metadata.pop("namespace", None)
            namespace = ""
        else:
            namespace = metadata.get("namespace") or default_namespace
            metadata["namespace"] = namespace

        return cls(
            key=ResourceKey(kind=kind, namespace=namespace, name=name),
            api_version=api_version,
            manifest=normalized,
            content_hash=content_hash(normalized),
            source_path=source_path,
        )

    @property
    def depends_on(self) -> list[ResourceKey]:
        """Explicit ordering references declared on this resource.

        Raises:
            ValueError: If a declared reference is malformed.
        """
        annotations = _metadata(self.manifest).get("annotations") or {}
        raw = annotations.get(DEPENDS_ON_ANNOTATION, "")
        return [
            ResourceKey.parse(ref, default_namespace=self.key.namespace)
            for ref in str(raw).split(",")
            if ref.strip()
        ]

    @property
    def sync_options(self) -> dict[str, str]:
        return parse_sync_options(self.manifest)


@dataclass(frozen=True)
class LiveResource:
    """A resource as last observed on the target runtime."""

    key: ResourceKey
    api_version: str
    manifest: dict[str, Any]
    status: dict[str, Any] = field(default_factory=dict)
    generation: int | None = None
    observed_generation: int | None = None

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> LiveResource:
        """Build a live record from a full object as returned by the runtime."""
        metadata = _metadata(obj)
        kind = obj.get("kind", "")
        status = obj.get("status") if isinstance(obj.get("status"), dict) else {}
        manifest = {k: copy.deepcopy(v) for k, v in obj.items() if k != "status"}
        return cls(
            key=ResourceKey(
                kind=kind,
                namespace="" if is_cluster_scoped(kind) else metadata.get("namespace", ""),
                name=metadata.get("name", ""),
            ),
            api_version=obj.get("apiVersion", ""),
            manifest=manifest,
            status=copy.deepcopy(status),
            generation=metadata.get("generation"),
            observed_generation=status.get("observedGeneration"),
        )

    @property
    def labels(self) -> dict[str, str]:
        return _metadata(self.manifest).get("labels") or {}

    @property
    def sync_options(self) -> dict[str, str]:
        return parse_sync_options(self.manifest)

    @property
    def last_applied(self) -> dict[str, Any] | None:
        """Field set recorded on the last apply, or None when absent or unreadable."""
        annotations = _metadata(self.manifest).get("annotations") or {}
        raw = annotations.get(LAST_APPLIED_ANNOTATION)
        if not raw:
            return None
        try:
            applied = json.loads(raw)
        except ValueError:
            return None
        return applied if isinstance(applied, dict) else None
