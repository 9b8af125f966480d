"""In-memory target runtime and manifest source for testing.

This package provides stand-ins for a Kubernetes API server and a git
checkout so that the whole reconciliation pipeline can be tested without a
cluster.

Key Features:
- In-memory object store with server-populated metadata and merge-patch updates
- Simulated workload controllers (generation tracking, readiness)
- Error injection per resource, with a retry budget
- Apply call recording for ordering and concurrency assertions
- Versioned desired state per repository, parsed by the real manifest loader

Usage:
    from runtime_mock import InMemoryRuntime, InMemorySource, manifests

    runtime = InMemoryRuntime()
    source = InMemorySource()
    source.commit(manifests.REPO_URL, [manifests.configmap(), manifests.deployment()])

    controller = Controller(config, source, runtime)
    controller.register(manifests.application(automated=True))
    await controller.reconcile_now("shop")
"""

from . import manifests
from .cluster import ApplyCall, InMemoryRuntime, merge_patch
from .source import InMemorySource

__all__ = [
    "ApplyCall",
    "InMemoryRuntime",
    "InMemorySource",
    "manifests",
    "merge_patch",
]
