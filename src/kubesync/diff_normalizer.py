"""Diff normalization rules for Kubernetes resources.

The target runtime rewrites what it stores: it injects identifiers and
bookkeeping metadata, fills in defaults, adds a status subtree and turns
Secret stringData into base64 data. Comparing whole payloads would report
drift on every pass, so each kind is compared through a normalized
projection and a set of value normalization rules.

COMMON FALSE POSITIVES HANDLED:
1. Runtime metadata (uid, resourceVersion, managedFields, ...)
2. Defaulted fields (Service clusterIP, Deployment revisionHistoryLimit, ...)
3. Empty map/list vs missing
4. Numeric strings ("8080" vs 8080) on ports and replica counts
5. Secret stringData vs base64 data
6. Order of unordered collections (RBAC verbs, finalizers)
7. Resource quantities in different notations (1 vs "1", "0.5" vs "500m")
"""

from __future__ import annotations

import base64
import copy
import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from kubernetes.utils import parse_quantity

from .resources import LAST_APPLIED_ANNOTATION

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null and missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"

    # Resource quantities: "500m" == "0.5", "1Gi" == "1073741824"
    QUANTITY = "quantity"


def glob_match(value: str, pattern: str) -> bool:
    """Glob matching where * stays within a path segment and ** spans segments."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i:i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        elif pattern[i] in r"\.[]{}()+^$|?":
            regex_pattern += "\\" + pattern[i]
            i += 1
        else:
            regex_pattern += pattern[i]
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match (supports wildcards)
        path_pattern: Field path pattern, e.g. "spec.template.**.containerPort"
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        """Check if this rule applies to a kind and field path."""
        if self.kind != "*" and not glob_match(kind.lower(), self.kind.lower()):
            return False
        return self.path_pattern == "*" or glob_match(path, self.path_pattern)


# Default normalization rules for common Kubernetes patterns
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="metadata.labels",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty labels equal missing labels",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="metadata.annotations",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty annotations equal missing annotations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.replicas",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Replica counts may be quoted in templates",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.*Port",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Port numbers may be quoted in templates",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.port",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Port numbers may be quoted in templates",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.protocol",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "TCP"},
        reason="Port protocol defaults to TCP",
    ),
    NormalizationRule(
        kind="Deployment",
        path_pattern="spec.replicas",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": 1},
        reason="Deployment replicas default to 1",
    ),
    NormalizationRule(
        kind="StatefulSet",
        path_pattern="spec.replicas",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": 1},
        reason="StatefulSet replicas default to 1",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.readOnly",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may be quoted in templates",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.imagePullPolicy",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Enum values are case-insensitive on input",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="metadata.finalizers",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Finalizer order doesn't matter",
    ),
    NormalizationRule(
        kind="*Role",
        path_pattern="rules[*].verbs",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="RBAC verb order doesn't matter",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.resources.limits.**",
        normalization_type=NormalizationType.QUANTITY,
        reason="Resource quantities compare by value, not notation",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.resources.requests.**",
        normalization_type=NormalizationType.QUANTITY,
        reason="Resource quantities compare by value, not notation",
    ),
]

# Paths never compared: runtime-owned metadata and runtime-populated fields
IGNORED_PATHS: dict[str, tuple[str, ...]] = {
    "*": (
        "metadata.uid",
        "metadata.resourceVersion",
        "metadata.generation",
        "metadata.creationTimestamp",
        "metadata.deletionTimestamp",
        "metadata.managedFields",
        "metadata.selfLink",
        "metadata.ownerReferences",
        "status",
    ),
    "Service": (
        "spec.clusterIP",
        "spec.clusterIPs",
        "spec.ipFamilies",
        "spec.ipFamilyPolicy",
        "spec.healthCheckNodePort",
        "spec.ports[*].nodePort",
    ),
    "Deployment": (
        "spec.template.metadata.creationTimestamp",
        "spec.revisionHistoryLimit",
        "spec.progressDeadlineSeconds",
    ),
    "StatefulSet": (
        "spec.template.metadata.creationTimestamp",
        "spec.revisionHistoryLimit",
    ),
    "DaemonSet": ("spec.template.metadata.creationTimestamp",),
    "ServiceAccount": ("secrets",),
    "PersistentVolumeClaim": ("spec.volumeName",),
}

# Annotations written by the runtime or by client tooling
IGNORED_ANNOTATIONS: frozenset[str] = frozenset(
    {
        "kubectl.kubernetes.io/last-applied-configuration",
        LAST_APPLIED_ANNOTATION,
        "deployment.kubernetes.io/revision",
        "pv.kubernetes.io/bind-completed",
        "pv.kubernetes.io/bound-by-controller",
    }
)

# Paths the runtime refuses to change in place; a change forces Replace
IMMUTABLE_PATHS: dict[str, tuple[str, ...]] = {
    "Deployment": ("spec.selector",),
    "ReplicaSet": ("spec.selector",),
    "DaemonSet": ("spec.selector",),
    "StatefulSet": (
        "spec.selector",
        "spec.serviceName",
        "spec.volumeClaimTemplates",
        "spec.podManagementPolicy",
    ),
    "Job": ("spec.selector", "spec.template", "spec.completions"),
    "Service": ("spec.clusterIP",),
    "PersistentVolumeClaim": ("spec.storageClassName", "spec.accessModes", "spec.selector"),
    "RoleBinding": ("roleRef",),
    "ClusterRoleBinding": ("roleRef",),
    "Secret": ("type",),
}


def _path_under(path: str, prefix: str) -> bool:
    """True when `path` equals `prefix` or lies below it (glob-aware)."""
    return glob_match(path, prefix) or glob_match(path, prefix + ".**") or glob_match(
        path, prefix + "[**"
    )


class DiffNormalizer:
    """Normalizes resource payloads for semantic comparison."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        """Initialize normalizer.

        Args:
            rules: Custom normalization rules.
            enable_default_rules: Whether to include default rules.
        """
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    # -------------------------------------------------------------------------
    # Per-kind projection
    # -------------------------------------------------------------------------

    def project(self, kind: str, manifest: dict[str, Any]) -> dict[str, Any]:
        """Return the comparable projection of a manifest.

        apiVersion and kind are identity, not content; status and runtime
        metadata are dropped; kind-specific encodings are unified.
        """
        projected = {
            k: copy.deepcopy(v)
            for k, v in manifest.items()
            if k not in ("apiVersion", "kind", "status", "metadata")
        }

        metadata = manifest.get("metadata") or {}
        projected_metadata: dict[str, Any] = {}
        if metadata.get("labels"):
            projected_metadata["labels"] = dict(metadata["labels"])
        annotations = {
            k: v for k, v in (metadata.get("annotations") or {}).items()
            if k not in IGNORED_ANNOTATIONS
        }
        if annotations:
            projected_metadata["annotations"] = annotations
        if metadata.get("finalizers"):
            projected_metadata["finalizers"] = list(metadata["finalizers"])
        if projected_metadata:
            projected["metadata"] = projected_metadata

        if kind == "Secret":
            projected = self._project_secret(projected)

        return projected

    def _project_secret(self, projected: dict[str, Any]) -> dict[str, Any]:
        """Fold stringData into base64 data, as the API server stores it."""
        string_data = projected.pop("stringData", None) or {}
        if string_data:
            data = dict(projected.get("data") or {})
            for key, value in string_data.items():
                data[key] = base64.b64encode(str(value).encode("utf-8")).decode("ascii")
            projected["data"] = data
        return projected

    def is_ignored(self, kind: str, path: str) -> bool:
        """Check whether a field path is never compared for this kind."""
        for rule_kind in ("*", kind):
            for prefix in IGNORED_PATHS.get(rule_kind, ()):
                if _path_under(path, prefix):
                    return True
        return False

    def is_immutable(self, kind: str, path: str, manifest: dict[str, Any] | None = None) -> bool:
        """Check whether a change at `path` cannot be applied in place."""
        if manifest is not None and manifest.get("immutable") is True and kind in (
            "ConfigMap",
            "Secret",
        ):
            return path.split(".")[0].split("[")[0] in ("data", "binaryData", "stringData")
        return any(_path_under(path, prefix) for prefix in IMMUTABLE_PATHS.get(kind, ()))

    def is_unordered(self, kind: str, path: str) -> bool:
        return any(
            rule.normalization_type == NormalizationType.ARRAY_UNORDERED
            and rule.matches(kind, path)
            for rule in self._rules
        )

    # -------------------------------------------------------------------------
    # Value normalization
    # -------------------------------------------------------------------------

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = value

        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)

        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return self._normalize_case(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return self._normalize_default(value, rule.params.get("default"))
            case NormalizationType.QUANTITY:
                return self._normalize_quantity(value)
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "" and null all become None for comparison."""
        if isinstance(value, str | list | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "on"):
                return True
            if value.lower() in ("false", "no", "off"):
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        """Normalize numeric strings to numbers. "8080" -> 8080."""
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return value
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_quantity(self, value: Any) -> Decimal | Any:
        """Parse a resource quantity to its value. "500m" -> Decimal("0.5")."""
        if isinstance(value, bool) or not isinstance(value, int | float | str):
            return value
        try:
            # str() keeps 0.1 from turning into a binary fraction
            return parse_quantity(str(value)).normalize()
        except ValueError:
            return value

    def _normalize_case(self, value: Any) -> str | Any:
        if isinstance(value, str):
            return value.lower()
        return value

    def _normalize_array_order(self, value: Any) -> tuple | Any:
        """Sort arrays so order is irrelevant; tuples keep the result hashable."""
        if isinstance(value, list):
            return tuple(sorted(value, key=lambda x: str(x)))
        return value

    def _normalize_default(self, value: Any, default: Any) -> Any:
        if value is None:
            return default
        return value

    def are_equivalent(self, desired: Any, live: Any, kind: str, path: str) -> bool:
        """Check if two leaf values are semantically equivalent."""
        return self.normalize_value(desired, kind, path) == self.normalize_value(
            live, kind, path
        )

    def get_equivalence_reason(self, kind: str, path: str) -> str:
        for rule in self._rules:
            if rule.matches(kind, path):
                return rule.reason or f"Normalized via {rule.normalization_type.value}"
        return "Values are semantically equivalent after normalization"


@dataclass
class NormalizationConfig:
    """Configuration for diff normalization.

    Attributes:
        rules: Custom normalization rules.
        enable_default_rules: Whether to include default rules.
        log_normalizations: Whether to log when normalizations are applied.
    """

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_normalizations: bool = False

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            ENABLE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults
            LOG_NORMALIZATIONS: If "true", log every normalized-away difference
        """
        return cls(
            enable_default_rules=os.environ.get(
                "ENABLE_DEFAULT_NORMALIZATION_RULES", "true"
            ).lower() in ("true", "1", "yes"),
            log_normalizations=os.environ.get(
                "LOG_NORMALIZATIONS", "false"
            ).lower() in ("true", "1", "yes"),
        )


def create_normalizer_from_env() -> tuple[DiffNormalizer, NormalizationConfig]:
    """Create a DiffNormalizer from environment configuration."""
    config = NormalizationConfig.from_env()
    return (
        DiffNormalizer(rules=config.rules, enable_default_rules=config.enable_default_rules),
        config,
    )
