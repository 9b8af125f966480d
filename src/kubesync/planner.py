"""Reconciliation planner: turn diffs into ordered, tiered actions.

Ordering is a fixed kind precedence, refined by declared references:

    tier 0  Namespace, CustomResourceDefinition
    tier 1  configuration, secrets, RBAC, storage
    tier 2  workloads (and any kind not listed)
    tier 3  network-exposing kinds (Service, Ingress, ...)

Within a precedence tier, `kubesync.io/depends-on` references split the
tier into sub-tiers. Apply tiers run first in ascending precedence; delete
tiers follow in descending precedence so that dependents go away before
what they depend on. Every tier gets a consecutive index on its actions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .dependency import DependencyGraph
from .diff import DiffStatus, ResourceDiff
from .errors import PlanGuardrailError, UnresolvableDependencyError
from .operation import Action, ActionType
from .resources import DEPENDS_ON_ANNOTATION, ResourceKey, parse_sync_options

logger = logging.getLogger(__name__)

NAMESPACE_TIER = 0
CONFIG_TIER = 1
WORKLOAD_TIER = 2
NETWORK_TIER = 3

KIND_PRECEDENCE: dict[str, int] = {
    "Namespace": NAMESPACE_TIER,
    "CustomResourceDefinition": NAMESPACE_TIER,
    "ConfigMap": CONFIG_TIER,
    "Secret": CONFIG_TIER,
    "ServiceAccount": CONFIG_TIER,
    "Role": CONFIG_TIER,
    "ClusterRole": CONFIG_TIER,
    "RoleBinding": CONFIG_TIER,
    "ClusterRoleBinding": CONFIG_TIER,
    "StorageClass": CONFIG_TIER,
    "PersistentVolume": CONFIG_TIER,
    "PersistentVolumeClaim": CONFIG_TIER,
    "PriorityClass": CONFIG_TIER,
    "LimitRange": CONFIG_TIER,
    "ResourceQuota": CONFIG_TIER,
    "NetworkPolicy": CONFIG_TIER,
    "Deployment": WORKLOAD_TIER,
    "StatefulSet": WORKLOAD_TIER,
    "DaemonSet": WORKLOAD_TIER,
    "ReplicaSet": WORKLOAD_TIER,
    "Pod": WORKLOAD_TIER,
    "Job": WORKLOAD_TIER,
    "CronJob": WORKLOAD_TIER,
    "HorizontalPodAutoscaler": WORKLOAD_TIER,
    "PodDisruptionBudget": WORKLOAD_TIER,
    "Service": NETWORK_TIER,
    "Ingress": NETWORK_TIER,
    "IngressClass": NETWORK_TIER,
    "Gateway": NETWORK_TIER,
    "HTTPRoute": NETWORK_TIER,
    "GRPCRoute": NETWORK_TIER,
    "TCPRoute": NETWORK_TIER,
}


def kind_tier(kind: str) -> int:
    """Precedence tier of a kind; unknown kinds are treated as workloads."""
    return KIND_PRECEDENCE.get(kind, WORKLOAD_TIER)


def _live_depends_on(diff: ResourceDiff) -> list[ResourceKey]:
    """Declared references on a live object, ignoring malformed ones."""
    annotations = (diff.live.manifest.get("metadata") or {}).get("annotations") or {}
    refs: list[ResourceKey] = []
    for ref in str(annotations.get(DEPENDS_ON_ANNOTATION, "")).split(","):
        if not ref.strip():
            continue
        try:
            refs.append(ResourceKey.parse(ref, default_namespace=diff.key.namespace))
        except ValueError:
            logger.warning(
                "Ignoring malformed reference on live resource",
                extra={"resource": str(diff.key), "reference": ref},
            )
    return refs


def _layers(
    diffs: Iterable[ResourceDiff],
    refs: dict[ResourceKey, list[ResourceKey]],
) -> list[list[ResourceKey]]:
    """Dependency layers, each ordered by (namespace, name)."""
    graph = DependencyGraph()
    for diff in diffs:
        graph.add_node(diff.key, refs.get(diff.key))
    return [
        sorted(layer, key=lambda k: (k.namespace, k.name, k.kind)) for layer in graph.layers()
    ]


def plan(
    diffs: Iterable[ResourceDiff],
    allow_destructive: bool = True,
    allow_empty: bool = True,
    max_actions: int | None = None,
) -> list[Action]:
    """Plan actions for a set of diffs.

    Args:
        diffs: Output of the diff engine, including in-sync entries.
        allow_destructive: Emit Delete actions for Orphaned resources.
        allow_empty: Allow pruning every tracked resource when nothing is desired.
        max_actions: Refuse plans with more actions than this.

    Returns:
        Actions in execution order, each carrying its tier index.

    Raises:
        CyclicDependencyError: If declared references form a cycle.
        UnresolvableDependencyError: If a reference cannot be satisfied by ordering.
        PlanGuardrailError: If a guardrail refuses the plan.
    """
    diffs = list(diffs)
    desired_keys = {d.key for d in diffs if d.desired is not None}
    apply_diffs = [
        d for d in diffs if d.status in (DiffStatus.MISSING, DiffStatus.OUT_OF_SYNC)
    ]
    orphaned = [d for d in diffs if d.status is DiffStatus.ORPHANED]

    if orphaned and not desired_keys and not allow_empty:
        raise PlanGuardrailError(
            f"Refusing to prune all {len(orphaned)} tracked resources: desired state is empty"
        )

    # Validate declared references of everything being applied
    apply_refs: dict[ResourceKey, list[ResourceKey]] = {}
    for diff in apply_diffs:
        try:
            refs = diff.desired.depends_on
        except ValueError as e:
            raise UnresolvableDependencyError(f"{diff.key}: {e}") from e
        own_tier = kind_tier(diff.key.kind)
        for ref in refs:
            if ref not in desired_keys:
                raise UnresolvableDependencyError(
                    f"{diff.key} depends on {ref}, which is not part of the desired state"
                )
            if kind_tier(ref.kind) > own_tier:
                raise UnresolvableDependencyError(
                    f"{diff.key} depends on {ref}, which is applied in a later tier"
                )
        apply_refs[diff.key] = refs

    actions: list[Action] = []
    tier_index = 0

    for precedence in sorted({kind_tier(d.key.kind) for d in apply_diffs}):
        members = {d.key: d for d in apply_diffs if kind_tier(d.key.kind) == precedence}
        for layer in _layers(members.values(), apply_refs):
            for key in layer:
                diff = members[key]
                if diff.status is DiffStatus.MISSING:
                    action_type = ActionType.CREATE
                elif diff.requires_replace:
                    action_type = ActionType.REPLACE
                else:
                    action_type = ActionType.UPDATE
                actions.append(
                    Action(
                        type=action_type,
                        key=key,
                        tier=tier_index,
                        api_version=diff.desired.api_version,
                        desired=diff.desired,
                        patch=diff.patch,
                        depends_on=tuple(apply_refs[key]),
                    )
                )
            tier_index += 1

    if orphaned and not allow_destructive:
        logger.info(
            "Destructive actions disabled, leaving orphaned resources in place",
            extra={"resources": [str(d.key) for d in orphaned]},
        )
        orphaned = []

    deletable = [d for d in orphaned if parse_sync_options(d.live.manifest).get("Prune") != "false"]
    for precedence in sorted({kind_tier(d.key.kind) for d in deletable}, reverse=True):
        members = {d.key: d for d in deletable if kind_tier(d.key.kind) == precedence}
        live_refs = {key: _live_depends_on(diff) for key, diff in members.items()}
        # Dependents are deleted before what they reference
        for layer in reversed(_layers(members.values(), live_refs)):
            for key in layer:
                actions.append(
                    Action(
                        type=ActionType.DELETE,
                        key=key,
                        tier=tier_index,
                        api_version=members[key].live.api_version,
                    )
                )
            tier_index += 1

    if max_actions is not None and len(actions) > max_actions:
        raise PlanGuardrailError(
            f"Plan has {len(actions)} actions, exceeding the limit of {max_actions}"
        )

    logger.debug(
        "Planned actions",
        extra={"actions": len(actions), "tiers": tier_index},
    )
    return actions


def group_by_tier(actions: Iterable[Action]) -> list[list[Action]]:
    """Split an ordered action list into its tiers."""
    tiers: dict[int, list[Action]] = {}
    for action in actions:
        tiers.setdefault(action.tier, []).append(action)
    return [tiers[index] for index in sorted(tiers)]
