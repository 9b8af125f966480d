"""Error taxonomy for the sync pipeline.

Component errors are attached to the SyncOperation or action record by the
controller worker; they are never raised past the controller loop. The one
exception is InvalidStateTransition, which signals a programming error.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all reconciliation errors."""

    pass


# =============================================================================
# Source errors
# =============================================================================


class SourceError(SyncError):
    """Desired state could not be read."""

    pass


class SourceUnavailable(SourceError):
    """Raised when the manifest source or revision cannot be reached."""

    pass


class InvalidManifest(SourceError):
    """A single manifest failed to parse or validate.

    Reported per resource so that one broken file does not hide the others.
    """

    def __init__(self, path: str, message: str, index: int | None = None) -> None:
        self.path = path
        self.index = index
        self.message = message
        location = path if index is None else f"{path}[{index}]"
        super().__init__(f"{location}: {message}")


# =============================================================================
# Target runtime errors
# =============================================================================


class TargetRuntimeError(SyncError):
    """The target runtime could not be queried."""

    pass


class RuntimeUnreachable(TargetRuntimeError):
    """Raised when live state cannot be listed from the target runtime."""

    pass


# =============================================================================
# Plan errors
# =============================================================================


class PlanError(SyncError):
    """The diff could not be turned into an ordered plan."""

    pass


class CyclicDependencyError(PlanError):
    """Raised when declared resource references form a cycle."""

    pass


class UnresolvableDependencyError(PlanError):
    """Raised when a declared reference contradicts the kind precedence."""

    pass


class PlanGuardrailError(PlanError):
    """Raised when a plan exceeds configured safety limits."""

    pass


# =============================================================================
# Action errors
# =============================================================================


class ActionError(SyncError):
    """A single action failed against the target runtime."""

    transient: bool = False


class TransientActionError(ActionError):
    """Failure that is retried with backoff."""

    transient = True


class RateLimitedError(TransientActionError):
    """The target runtime throttled the request."""

    pass


class TemporarilyUnreachableError(TransientActionError):
    """The target runtime was briefly unavailable."""

    pass


class PermanentActionError(ActionError):
    """Failure that is never retried."""

    pass


class RejectedPayloadError(PermanentActionError):
    """The target runtime rejected the resource definition."""

    pass


class PermissionDeniedError(PermanentActionError):
    """The controller identity is not allowed to perform the action."""

    pass


class ActionTimeoutError(PermanentActionError):
    """An apply call did not complete within the apply timeout."""

    pass


# =============================================================================
# Operation / controller errors
# =============================================================================


class OperationAborted(SyncError):
    """An operation was stopped by an explicit abort request."""

    pass


class ApplicationNotFound(SyncError):
    """Raised when an operation names an unregistered application."""

    pass


class RollbackRefused(SyncError):
    """Raised when a rollback request cannot be honoured."""

    pass


class InvalidStateTransition(Exception):
    """Raised on an impossible application phase transition.

    Not a SyncError: it escapes the worker and stops the process.
    """

    pass
