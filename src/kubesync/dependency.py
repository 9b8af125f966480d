"""Resource dependency ordering.

Resources declare explicit ordering references via the
`kubesync.io/depends-on` annotation. Payloads are never inspected for
implicit references.

EXAMPLE MANIFEST:
```yaml
apiVersion: apps/v1
kind: Deployment
metadata:
  name: app
  annotations:
    kubesync.io/depends-on: "ConfigMap/cfg, Secret/creds"
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import CyclicDependencyError
from .resources import ResourceKey

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    key: ResourceKey
    depends_on: list[ResourceKey] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource ordering references.

    References to keys outside the graph are kept on the node but do not
    constrain ordering; the planner decides whether they are satisfied.
    """

    nodes: dict[ResourceKey, DependencyNode] = field(default_factory=dict)

    def add_node(self, key: ResourceKey, depends_on: Iterable[ResourceKey] | None = None) -> None:
        """Add a resource, or extend the references of an existing one.

        Args:
            key: Resource identity.
            depends_on: Keys this resource must be applied after.
        """
        node = self.nodes.setdefault(key, DependencyNode(key=key))
        for dep in depends_on or ():
            if dep != key and dep not in node.depends_on:
                node.depends_on.append(dep)

    def _in_graph_deps(self, key: ResourceKey) -> list[ResourceKey]:
        return [dep for dep in self.nodes[key].depends_on if dep in self.nodes]

    def layers(self) -> list[list[ResourceKey]]:
        """Group keys into layers; each layer depends only on earlier ones.

        Keys within a layer are sorted, so the result is deterministic.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Kahn's algorithm, processed one layer at a time
        dependents: dict[ResourceKey, list[ResourceKey]] = {key: [] for key in self.nodes}
        in_degree: dict[ResourceKey, int] = {key: 0 for key in self.nodes}
        for key in self.nodes:
            for dep in self._in_graph_deps(key):
                dependents[dep].append(key)
                in_degree[key] += 1

        result: list[list[ResourceKey]] = []
        current = sorted(key for key, degree in in_degree.items() if degree == 0)
        processed = 0

        while current:
            result.append(current)
            processed += len(current)
            following: list[ResourceKey] = []
            for key in current:
                for dependent in dependents[key]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            current = sorted(following)

        if processed != len(self.nodes):
            cycle_nodes = sorted(key for key, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(
                f"Circular dependency detected involving: {[str(k) for k in cycle_nodes]}"
            )

        return result
