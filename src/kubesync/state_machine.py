"""Per-application sync state machine.

    Unknown -> Syncing -> {Synced, OutOfSyncDetected, Failed, Degraded}

From any observed state, a new diff or an explicit trigger moves back to
Syncing; a refresh that finds drift without syncing moves to
OutOfSyncDetected. An impossible transition is a programming error and is
never recovered from.
"""

from __future__ import annotations

from enum import Enum

from .errors import InvalidStateTransition
from .operation import OperationPhase


class AppPhase(str, Enum):
    UNKNOWN = "Unknown"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    OUT_OF_SYNC_DETECTED = "OutOfSyncDetected"
    FAILED = "Failed"
    DEGRADED = "Degraded"


OBSERVED_PHASES = frozenset(
    {
        AppPhase.SYNCED,
        AppPhase.OUT_OF_SYNC_DETECTED,
        AppPhase.FAILED,
        AppPhase.DEGRADED,
    }
)

ALLOWED_TRANSITIONS: dict[AppPhase, set[AppPhase]] = {
    AppPhase.UNKNOWN: {
        AppPhase.SYNCING,
        AppPhase.OUT_OF_SYNC_DETECTED,
    },
    AppPhase.SYNCING: set(OBSERVED_PHASES),
    **{
        phase: {AppPhase.SYNCING, AppPhase.OUT_OF_SYNC_DETECTED}
        for phase in OBSERVED_PHASES
    },
}


def transition(current: AppPhase, new: AppPhase) -> AppPhase:
    """Validate a phase change and return the new phase.

    Staying in the same phase is always allowed.

    Raises:
        InvalidStateTransition: If the change is not allowed.
    """
    if current == new:
        return new

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition(f"Cannot transition from {current.value} to {new.value}")
    return new


def phase_after_operation(operation_phase: OperationPhase, converged: bool) -> AppPhase:
    """Application phase once an operation is terminal.

    Args:
        operation_phase: Terminal phase of the operation.
        converged: Whether the verification diff had no actionable entries.
    """
    if operation_phase is OperationPhase.FAILED:
        return AppPhase.FAILED
    if operation_phase is OperationPhase.DEGRADED:
        return AppPhase.DEGRADED
    if not converged:
        return AppPhase.OUT_OF_SYNC_DETECTED
    return AppPhase.SYNCED
