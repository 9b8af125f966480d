"""Per-kind health assessment of live resources.

Default predicate: the controller of the resource has observed its latest
generation, and the kind-specific readiness signal is true. Kinds without a
readiness signal (ConfigMap, Secret, RBAC, ...) are healthy once they exist.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import OperationAborted, TargetRuntimeError
from .resources import LiveResource, ResourceKey
from .runtime import TargetRuntime

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health of one resource."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"  # Will not become healthy without a change
    MISSING = "Missing"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class HealthAssessment:
    status: HealthStatus
    message: str = ""

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @property
    def settled(self) -> bool:
        """True when polling again cannot change the outcome."""
        return self.status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)


HEALTHY = HealthAssessment(HealthStatus.HEALTHY)


def _conditions(status: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return {
        c.get("type", ""): c for c in status.get("conditions") or [] if isinstance(c, dict)
    }


def _desired_replicas(live: LiveResource) -> int:
    replicas = (live.manifest.get("spec") or {}).get("replicas")
    return 1 if replicas is None else int(replicas)


def _deployment_health(live: LiveResource) -> HealthAssessment:
    status = live.status
    progressing = _conditions(status).get("Progressing", {})
    if progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthAssessment(
            HealthStatus.DEGRADED, progressing.get("message", "progress deadline exceeded")
        )

    replicas = _desired_replicas(live)
    updated = status.get("updatedReplicas") or 0
    available = status.get("availableReplicas") or 0
    if updated < replicas:
        return HealthAssessment(
            HealthStatus.PROGRESSING, f"{updated} of {replicas} replicas updated"
        )
    if available < replicas:
        return HealthAssessment(
            HealthStatus.PROGRESSING, f"{available} of {replicas} replicas available"
        )
    return HEALTHY


def _statefulset_health(live: LiveResource) -> HealthAssessment:
    replicas = _desired_replicas(live)
    ready = live.status.get("readyReplicas") or 0
    if ready < replicas:
        return HealthAssessment(HealthStatus.PROGRESSING, f"{ready} of {replicas} replicas ready")
    return HEALTHY


def _daemonset_health(live: LiveResource) -> HealthAssessment:
    desired = live.status.get("desiredNumberScheduled") or 0
    ready = live.status.get("numberReady") or 0
    updated = live.status.get("updatedNumberScheduled", desired) or 0
    if ready < desired or updated < desired:
        return HealthAssessment(HealthStatus.PROGRESSING, f"{ready} of {desired} pods ready")
    return HEALTHY


def _pod_health(live: LiveResource) -> HealthAssessment:
    phase = live.status.get("phase")
    if phase == "Succeeded":
        return HEALTHY
    if phase == "Failed":
        return HealthAssessment(HealthStatus.DEGRADED, live.status.get("message", "pod failed"))
    if _conditions(live.status).get("Ready", {}).get("status") == "True":
        return HEALTHY
    return HealthAssessment(HealthStatus.PROGRESSING, f"pod phase {phase or 'Pending'}")


def _job_health(live: LiveResource) -> HealthAssessment:
    conditions = _conditions(live.status)
    if conditions.get("Failed", {}).get("status") == "True":
        return HealthAssessment(
            HealthStatus.DEGRADED, conditions["Failed"].get("message", "job failed")
        )
    if conditions.get("Complete", {}).get("status") == "True":
        return HEALTHY
    return HealthAssessment(HealthStatus.PROGRESSING, "job running")


def _pvc_health(live: LiveResource) -> HealthAssessment:
    phase = live.status.get("phase")
    if phase == "Bound":
        return HEALTHY
    if phase == "Lost":
        return HealthAssessment(HealthStatus.DEGRADED, "claim lost its volume")
    return HealthAssessment(HealthStatus.PROGRESSING, f"claim phase {phase or 'Pending'}")


def _namespace_health(live: LiveResource) -> HealthAssessment:
    phase = live.status.get("phase")
    if phase in (None, "Active"):
        return HEALTHY
    return HealthAssessment(HealthStatus.PROGRESSING, f"namespace phase {phase}")


def _service_health(live: LiveResource) -> HealthAssessment:
    if (live.manifest.get("spec") or {}).get("type") != "LoadBalancer":
        return HEALTHY
    if (live.status.get("loadBalancer") or {}).get("ingress"):
        return HEALTHY
    return HealthAssessment(HealthStatus.PROGRESSING, "waiting for load balancer ingress")


HEALTH_PREDICATES: dict[str, Callable[[LiveResource], HealthAssessment]] = {
    "Deployment": _deployment_health,
    "StatefulSet": _statefulset_health,
    "DaemonSet": _daemonset_health,
    "Pod": _pod_health,
    "Job": _job_health,
    "PersistentVolumeClaim": _pvc_health,
    "Namespace": _namespace_health,
    "Service": _service_health,
}


def assess_health(live: LiveResource | None) -> HealthAssessment:
    """Assess the health of one live resource."""
    if live is None:
        return HealthAssessment(HealthStatus.MISSING, "resource not found")

    if (
        live.generation is not None
        and live.observed_generation is not None
        and live.observed_generation < live.generation
    ):
        return HealthAssessment(
            HealthStatus.PROGRESSING,
            f"observed generation {live.observed_generation} behind {live.generation}",
        )

    predicate = HEALTH_PREDICATES.get(live.key.kind)
    if predicate is None:
        return HEALTHY
    try:
        return predicate(live)
    except (TypeError, ValueError) as e:
        return HealthAssessment(HealthStatus.UNKNOWN, f"unreadable status: {e}")


async def query_health(
    runtime: TargetRuntime, key: ResourceKey, api_version: str
) -> HealthAssessment:
    """Read one resource from the runtime and assess it."""
    return assess_health(await runtime.get_resource(key, api_version))


async def wait_healthy(
    runtime: TargetRuntime,
    resources: Iterable[tuple[ResourceKey, str]],
    timeout_seconds: float,
    poll_interval_seconds: float,
    cancel_event: asyncio.Event | None = None,
) -> dict[ResourceKey, HealthAssessment]:
    """Poll resources until each is settled or the timeout expires.

    Args:
        runtime: Target runtime to query.
        resources: (key, apiVersion) pairs to watch.
        timeout_seconds: Overall bound on polling.
        poll_interval_seconds: Delay between polling rounds.
        cancel_event: Set to stop waiting.

    Returns:
        Last assessment per key. Unsettled entries mean the timeout expired.

    Raises:
        OperationAborted: If `cancel_event` is set before every resource settled.
    """
    cancel_event = cancel_event or asyncio.Event()
    pending = dict(resources)
    results: dict[ResourceKey, HealthAssessment] = {}
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds

    while pending:
        for key, api_version in list(pending.items()):
            try:
                assessment = await asyncio.wait_for(
                    query_health(runtime, key, api_version),
                    timeout=max(deadline - loop.time(), 0.01),
                )
            except (TargetRuntimeError, TimeoutError) as e:
                # Unreadable now does not mean unhealthy; poll again
                assessment = HealthAssessment(
                    HealthStatus.UNKNOWN, str(e) or "health query timed out"
                )
            results[key] = assessment
            if assessment.settled:
                del pending[key]

        remaining = deadline - loop.time()
        if not pending or remaining <= 0:
            break
        try:
            await asyncio.wait_for(
                cancel_event.wait(), timeout=min(poll_interval_seconds, remaining)
            )
        except TimeoutError:
            continue
        logger.info(
            "Health check aborted",
            extra={"unsettled": sorted(str(k) for k in pending)},
        )
        raise OperationAborted(
            f"Operation aborted while waiting for {len(pending)} resources to become healthy"
        )

    if pending:
        logger.info(
            "Health check timed out",
            extra={
                "timeout_seconds": timeout_seconds,
                "unhealthy": {str(k): results[k].message for k in sorted(pending)},
            },
        )
    return results
