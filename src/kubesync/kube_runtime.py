"""Kubernetes target runtime using the dynamic client.

The kubernetes client is synchronous; every call runs in the default
executor so the event loop stays responsive. Timeouts are enforced by the
callers (fetch_live, the sync executor, health polling).
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Iterable
from typing import Any

from kubernetes import config as kube_config
from kubernetes import dynamic
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.config import ConfigException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from kubernetes.dynamic.resource import ResourceList
from urllib3.exceptions import HTTPError

from .errors import (
    ActionError,
    PermissionDeniedError,
    RateLimitedError,
    RejectedPayloadError,
    RuntimeUnreachable,
    TemporarilyUnreachableError,
)
from .models import Application
from .operation import Action, ActionType
from .resources import TRACKING_LABEL, LiveResource, ResourceKey

logger = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

# Kinds never listed: runtime bookkeeping, partly labelled like their owners
UNLISTED_KINDS: frozenset[str] = frozenset(
    {"Endpoints", "EndpointSlice", "Event", "Lease"}
)

# Listing errors that mean "this kind is not available to us", not an outage
SKIPPED_LIST_STATUS_CODES = frozenset({403, 404, 405})

TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})


def classify_api_error(e: ApiException, context: str) -> ActionError:
    """Map an API status code onto the action error taxonomy."""
    message = f"{context}: HTTP {e.status} {e.reason}"
    if e.status == 429:
        return RateLimitedError(message)
    if e.status in TRANSIENT_STATUS_CODES:
        return TemporarilyUnreachableError(message)
    if e.status in (401, 403):
        return PermissionDeniedError(message)
    return RejectedPayloadError(message)


class KubernetesRuntime:
    """TargetRuntime backed by a Kubernetes API server."""

    def __init__(
        self,
        context: str | None = None,
        managed_kinds: Iterable[tuple[str, str]] | None = None,
        client: Any | None = None,
    ) -> None:
        """Initialize the runtime.

        Args:
            context: kubeconfig context; in-cluster config is tried first.
            managed_kinds: (apiVersion, kind) pairs listed for live state.
                Defaults to every listable kind found through API discovery.
            client: Pre-built DynamicClient (tests inject a fake).
        """
        self._context = context
        self._managed_kinds: set[tuple[str, str]] | None = (
            set(managed_kinds) if managed_kinds is not None else None
        )
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            kube_config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
        except ConfigException:
            kube_config.load_kube_config(context=self._context)
            logger.info(
                "Using kubeconfig", extra={"context": self._context or "current-context"}
            )
        self._client = dynamic.DynamicClient(ApiClient())
        return self._client

    async def _run(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def _api(self, api_version: str, kind: str) -> Any:
        return self._get_client().resources.get(api_version=api_version, kind=kind)

    # -------------------------------------------------------------------------
    # Live state
    # -------------------------------------------------------------------------

    def _listed_kinds(self) -> list[tuple[str, str]]:
        """(apiVersion, kind) pairs to list, one version per API group and kind.

        Discovery covers cluster-scoped and custom kinds as soon as the
        cluster serves them. The preferred version of a group wins.
        """
        if self._managed_kinds is not None:
            return sorted(self._managed_kinds)

        versions: dict[tuple[str, str], str] = {}
        for resource in self._get_client().resources.search():
            if isinstance(resource, ResourceList):
                continue
            if "list" not in (resource.verbs or []) or resource.kind in UNLISTED_KINDS:
                continue
            group_kind = (resource.group or "", resource.kind)
            if group_kind not in versions or getattr(resource, "preferred", False):
                versions[group_kind] = resource.group_version
        return sorted((api_version, kind) for (_, kind), api_version in versions.items())

    def _list_sync(self, application: Application) -> list[LiveResource]:
        selector = f"{TRACKING_LABEL}={application.name}"
        resources: list[LiveResource] = []
        for api_version, kind in self._listed_kinds():
            try:
                api = self._api(api_version, kind)
                listing = api.get(label_selector=selector).to_dict()
            except ResourceNotFoundError:
                logger.debug("Kind not served by cluster", extra={"kind": kind})
                continue
            except ApiException as e:
                if e.status not in SKIPPED_LIST_STATUS_CODES:
                    raise
                logger.debug(
                    "Kind not listable",
                    extra={"api_version": api_version, "kind": kind, "status": e.status},
                )
                continue
            for item in listing.get("items") or []:
                # Owned objects (ReplicaSets, Pods) are created by their owner, not applied
                if (item.get("metadata") or {}).get("ownerReferences"):
                    continue
                # List responses omit the per-item type information
                item.setdefault("apiVersion", api_version)
                item.setdefault("kind", kind)
                resources.append(LiveResource.from_object(item))
        return resources

    async def list_resources(self, application: Application) -> list[LiveResource]:
        try:
            return await self._run(self._list_sync, application)
        except ApiException as e:
            raise RuntimeUnreachable(
                f"Listing live state failed: HTTP {e.status} {e.reason}"
            ) from e
        except (HTTPError, ConfigException, OSError) as e:
            raise RuntimeUnreachable(f"Kubernetes API unreachable: {e}") from e

    def _get_sync(self, key: ResourceKey, api_version: str) -> LiveResource | None:
        api = self._api(api_version, key.kind)
        try:
            obj = api.get(name=key.name, namespace=key.namespace or None).to_dict()
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return LiveResource.from_object(obj)

    async def get_resource(self, key: ResourceKey, api_version: str) -> LiveResource | None:
        try:
            return await self._run(self._get_sync, key, api_version)
        except ApiException as e:
            raise RuntimeUnreachable(f"Reading {key} failed: HTTP {e.status} {e.reason}") from e
        except (HTTPError, ResourceNotFoundError, OSError) as e:
            raise RuntimeUnreachable(f"Reading {key} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _apply_sync(self, action: Action, manifest: dict[str, Any] | None) -> LiveResource | None:
        key = action.key
        namespace = key.namespace or None

        if action.type is ActionType.DELETE:
            api_version = action.api_version or self._api_version_for(key.kind)
            api = self._api(api_version, key.kind)
            try:
                api.delete(name=key.name, namespace=namespace)
            except ApiException as e:
                if e.status != 404:
                    raise
            return None

        if manifest is None:
            raise RejectedPayloadError(f"{action}: no manifest to apply")

        api_version = manifest["apiVersion"]
        api = self._api(api_version, key.kind)
        if self._managed_kinds is not None:
            self._managed_kinds.add((api_version, key.kind))

        if action.type is ActionType.CREATE:
            try:
                obj = api.create(body=manifest, namespace=namespace)
            except ApiException as e:
                if e.status != 409:
                    raise
                # Exists but untracked: adopt it by patching in the desired state
                logger.info("Adopting existing resource", extra={"resource": str(key)})
                obj = api.patch(
                    body=manifest,
                    name=key.name,
                    namespace=namespace,
                    content_type=MERGE_PATCH_CONTENT_TYPE,
                )
        else:
            obj = api.patch(
                body=manifest,
                name=key.name,
                namespace=namespace,
                content_type=MERGE_PATCH_CONTENT_TYPE,
            )
        return LiveResource.from_object(obj.to_dict())

    def _api_version_for(self, kind: str) -> str:
        for api_version, listed_kind in self._listed_kinds():
            if listed_kind == kind:
                return api_version
        raise RejectedPayloadError(f"Unknown apiVersion for kind {kind}")

    async def apply(self, action: Action, manifest: dict[str, Any] | None) -> LiveResource | None:
        try:
            return await self._run(self._apply_sync, action, manifest)
        except ApiException as e:
            raise classify_api_error(e, str(action)) from e
        except ResourceNotFoundError as e:
            raise RejectedPayloadError(f"{action}: kind not served by cluster: {e}") from e
        except (HTTPError, OSError) as e:
            raise TemporarilyUnreachableError(f"{action}: {e}") from e
