"""Sync operation records.

A SyncOperation is published as a sequence of immutable snapshots: the
owning worker builds a new snapshot with dataclasses.replace() on every
change, so an observer holding a reference never sees a partial update.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .resources import DesiredResource, ResourceKey


class ActionType(str, Enum):
    """Mutation applied to a single resource."""

    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"  # Delete-then-create of one resource
    DELETE = "Delete"


class ActionStatus(str, Enum):
    """Outcome of a planned action."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionStatus.SUCCEEDED, ActionStatus.FAILED, ActionStatus.SKIPPED)


class OperationPhase(str, Enum):
    """Lifecycle of one reconciliation attempt."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DEGRADED = "Degraded"  # Applied but not healthy within the health timeout

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationPhase.SUCCEEDED,
            OperationPhase.FAILED,
            OperationPhase.DEGRADED,
        )


class TriggerKind(str, Enum):
    """What started a reconciliation pass."""

    PERIODIC = "periodic"
    WEBHOOK = "webhook"
    MANUAL = "manual"
    ROLLBACK = "rollback"
    TEARDOWN = "teardown"

    @property
    def forces_sync(self) -> bool:
        """Forced triggers always sync; others refresh and sync per policy."""
        return self in (TriggerKind.MANUAL, TriggerKind.ROLLBACK, TriggerKind.TEARDOWN)


# Coalescing keeps the strongest trigger
TRIGGER_PRIORITY: dict[TriggerKind, int] = {
    TriggerKind.PERIODIC: 0,
    TriggerKind.WEBHOOK: 1,
    TriggerKind.MANUAL: 2,
    TriggerKind.ROLLBACK: 3,
    TriggerKind.TEARDOWN: 4,
}


@dataclass(frozen=True)
class SyncRequest:
    """A coalescable request to reconcile an application."""

    trigger: TriggerKind = TriggerKind.MANUAL
    prune: bool = False
    dry_run: bool = False
    revision: str | None = None  # Explicit revision override (rollback)

    def merge(self, newer: SyncRequest) -> SyncRequest:
        """Coalesce a newer request into this pending one.

        The stronger trigger wins and prune is sticky. dry_run survives
        only when every request that forces a sync asked for it, so a real
        sync is never downgraded and a periodic pass never upgrades a dry
        run. The newest explicit revision wins.
        """
        trigger = max(self.trigger, newer.trigger, key=TRIGGER_PRIORITY.__getitem__)
        forcing = [r for r in (self, newer) if r.trigger.forces_sync] or [self, newer]
        return SyncRequest(
            trigger=trigger,
            prune=self.prune or newer.prune,
            dry_run=all(r.dry_run for r in forcing),
            revision=newer.revision if newer.revision is not None else self.revision,
        )


@dataclass(frozen=True)
class Action:
    """One planned mutation on a single resource."""

    type: ActionType
    key: ResourceKey
    tier: int
    api_version: str = ""
    desired: DesiredResource | None = None
    patch: dict[str, Any] | None = None
    depends_on: tuple[ResourceKey, ...] = ()

    def __str__(self) -> str:
        return f"{self.type.value} {self.key}"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one action within an operation."""

    action: Action
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    message: str = ""
    error_type: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.type.value,
            "resource": str(self.action.key),
            "tier": self.action.tier,
            "status": self.status.value,
            "attempts": self.attempts,
            "message": self.message,
            "error_type": self.error_type,
        }


def new_operation_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class SyncOperation:
    """Immutable snapshot of one reconciliation attempt."""

    application: str
    trigger: TriggerKind
    id: str = field(default_factory=new_operation_id)
    revision: str = ""
    phase: OperationPhase = OperationPhase.PENDING
    results: tuple[ActionResult, ...] = ()
    prune: bool = False
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    message: str = ""
    error: str | None = None
    error_type: str | None = None

    @property
    def actions(self) -> tuple[Action, ...]:
        return tuple(r.action for r in self.results)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def result_for(self, key: ResourceKey) -> ActionResult | None:
        """Most recent result recorded for a resource."""
        for result in reversed(self.results):
            if result.action.key == key:
                return result
        return None

    def with_result(self, index: int, result: ActionResult) -> SyncOperation:
        """Return a snapshot with the result at `index` replaced."""
        results = list(self.results)
        results[index] = result
        return replace(self, results=tuple(results))

    def finish(
        self,
        phase: OperationPhase,
        message: str = "",
        error: BaseException | None = None,
    ) -> SyncOperation:
        """Return the terminal snapshot of this operation."""
        return replace(
            self,
            phase=phase,
            finished_at=datetime.now(UTC),
            message=message or self.message,
            error=str(error) if error is not None else self.error,
            error_type=type(error).__name__ if error is not None else self.error_type,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "application": self.application,
            "trigger": self.trigger.value,
            "revision": self.revision,
            "phase": self.phase.value,
            "prune": self.prune,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "message": self.message,
            "error": self.error,
            "error_type": self.error_type,
            "results": [r.to_dict() for r in self.results],
        }
