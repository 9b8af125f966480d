"""Pydantic models for Application registrations.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Immutable values that can be shared between the controller and observers
"""

from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

# DNS-1123 label, as used for Kubernetes object names
VALID_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
MAX_NAME_LENGTH = 63

DEFAULT_CLUSTER = "in-cluster"
DEFAULT_REVISION = "HEAD"


class SourceRef(BaseModel):
    """Location of the desired state: repository, revision and path."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    repo_url: Annotated[str, Field(min_length=1, alias="repoURL")]
    revision: str = Field(DEFAULT_REVISION, alias="targetRevision")
    path: str = "."

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        # Manifests must stay inside the checkout
        parts = [p for p in v.replace("\\", "/").split("/") if p not in ("", ".")]
        if v.startswith("/") or ".." in parts:
            raise ValueError("path must be relative to the repository root")
        return "/".join(parts) or "."


class Destination(BaseModel):
    """Target runtime cluster and default namespace."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    cluster: str = DEFAULT_CLUSTER
    namespace: Annotated[str, Field(min_length=1, max_length=MAX_NAME_LENGTH)]

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        if not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"namespace must be a DNS-1123 label: {v}")
        return v


class SyncPolicy(BaseModel):
    """Declared sync behaviour of an Application."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    automated: bool = False
    prune: bool = False
    self_heal: bool = Field(False, alias="selfHeal")

    # Allow a sync whose desired state is empty to prune everything
    allow_empty: bool = Field(False, alias="allowEmpty")

    # Permit Delete actions at all (prune still requires `prune`)
    allow_destructive: bool = Field(True, alias="allowDestructive")


class Application(BaseModel):
    """A deployable unit: one source path synced into one destination."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_NAME_LENGTH)]
    source: SourceRef
    destination: Destination
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy, alias="syncPolicy")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"name must be a DNS-1123 label: {v}")
        return v

    def with_policy(self, policy: SyncPolicy) -> Application:
        """Return a copy of this application with a new sync policy."""
        return self.model_copy(update={"sync_policy": policy})
