"""Sync executor: run planned actions tier by tier.

SAFETY:
- Tiers run strictly in sequence; a tier starts only after every action of
  the previous tier is terminal
- Actions within a tier run concurrently, bounded by a semaphore
- Every apply is bounded by APPLY_TIMEOUT; a timeout fails the action
- A failed tier lets its dispatched siblings finish, then every later tier
  is skipped. Applied actions are never rolled back
- An abort stops dispatch; undispatched actions are marked Skipped. An
  abort during the health wait ends the operation Failed at once
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime

from .config import Config
from .errors import (
    ActionError,
    ActionTimeoutError,
    OperationAborted,
    SyncError,
    TargetRuntimeError,
    TransientActionError,
)
from .events import EventBus, EventType, SyncEvent
from .health import wait_healthy
from .models import Application
from .operation import (
    Action,
    ActionResult,
    ActionStatus,
    ActionType,
    OperationPhase,
    SyncOperation,
)
from .planner import group_by_tier
from .resources import ResourceKey
from .runtime import TargetRuntime, stamp_ownership, update_patch

logger = logging.getLogger(__name__)

DRY_RUN_MESSAGE = "dry run"

# Actions whose result should converge to a healthy resource
HEALTH_CHECKED_ACTIONS = (ActionType.CREATE, ActionType.UPDATE, ActionType.REPLACE)


class _OperationTracker:
    """Holds the current operation snapshot and publishes every change."""

    def __init__(
        self,
        operation: SyncOperation,
        on_update: Callable[[SyncOperation], None] | None,
        events: EventBus | None,
    ) -> None:
        self.operation = operation
        self._on_update = on_update
        self._events = events

    def publish(self, operation: SyncOperation) -> None:
        self.operation = operation
        if self._on_update is not None:
            self._on_update(operation)

    def set_result(self, index: int, result: ActionResult) -> None:
        self.publish(self.operation.with_result(index, result))
        if result.status.is_terminal and self._events is not None:
            self._events.publish(
                SyncEvent(
                    type=EventType.ACTION_COMPLETED,
                    application=self.operation.application,
                    operation_id=self.operation.id,
                    revision=self.operation.revision,
                    resource=str(result.action.key),
                    action=result.action.type.value,
                    status=result.status.value,
                    attempts=result.attempts,
                    message=result.message,
                    error_type=result.error_type,
                )
            )

    def skip_pending(self, message: str) -> None:
        for index, result in enumerate(self.operation.results):
            if result.status is ActionStatus.PENDING:
                self.set_result(
                    index,
                    replace(
                        result,
                        status=ActionStatus.SKIPPED,
                        message=message,
                        finished_at=datetime.now(UTC),
                    ),
                )


class SyncExecutor:
    """Executes planned actions against a target runtime."""

    def __init__(
        self,
        runtime: TargetRuntime,
        config: Config,
        events: EventBus | None = None,
    ) -> None:
        self._runtime = runtime
        self._config = config
        self._events = events

    async def execute(
        self,
        operation: SyncOperation,
        actions: list[Action],
        application: Application,
        cancel_event: asyncio.Event | None = None,
        on_update: Callable[[SyncOperation], None] | None = None,
        watch: Iterable[tuple[ResourceKey, str]] = (),
    ) -> SyncOperation:
        """Execute `actions` and return the terminal operation snapshot.

        Args:
            operation: Pending operation snapshot to run.
            actions: Planned actions, in plan order.
            application: Owning application (for the tracking label).
            cancel_event: Set to abort the operation.
            on_update: Receives every intermediate snapshot.
            watch: Extra (key, apiVersion) pairs whose health decides the outcome.

        Returns:
            Terminal snapshot: Succeeded, Failed or Degraded.
        """
        cancel_event = cancel_event or asyncio.Event()
        tracker = _OperationTracker(
            replace(
                operation,
                phase=OperationPhase.RUNNING,
                results=tuple(ActionResult(action=a) for a in actions),
            ),
            on_update,
            self._events,
        )
        tracker.publish(tracker.operation)

        if operation.dry_run:
            tracker.skip_pending(DRY_RUN_MESSAGE)
            return self._finish(
                tracker,
                OperationPhase.SUCCEEDED,
                f"Dry run: {len(actions)} actions planned",
            )

        index_of = {id(result.action): i for i, result in enumerate(tracker.operation.results)}
        semaphore = asyncio.Semaphore(self._config.max_concurrent_actions)
        first_error: SyncError | None = None

        for tier in group_by_tier(actions):
            if cancel_event.is_set():
                break

            tier_results = await asyncio.gather(
                *(
                    self._run_action(
                        tracker, index_of[id(action)], action, application, semaphore, cancel_event
                    )
                    for action in tier
                )
            )
            failures = [error for error in tier_results if error is not None]
            if failures:
                first_error = failures[0]
                logger.warning(
                    "Tier failed, skipping remaining tiers",
                    extra={
                        "application": application.name,
                        "operation_id": operation.id,
                        "tier": tier[0].tier,
                        "failed": len(failures),
                    },
                )
                break

        undispatched = any(r.status is ActionStatus.PENDING for r in tracker.operation.results)
        if cancel_event.is_set() and undispatched:
            tracker.skip_pending("operation aborted")
            return self._finish(
                tracker,
                OperationPhase.FAILED,
                "Operation aborted",
                OperationAborted("Operation aborted before all actions were dispatched"),
            )

        if first_error is not None:
            tracker.skip_pending("skipped: an earlier tier failed")
            return self._finish(tracker, OperationPhase.FAILED, "Sync failed", first_error)

        return await self._check_health(tracker, watch, cancel_event)

    async def _run_action(
        self,
        tracker: _OperationTracker,
        index: int,
        action: Action,
        application: Application,
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event,
    ) -> SyncError | None:
        """Run one action with retry; return its error when it failed."""
        async with semaphore:
            if cancel_event.is_set():
                return None

            result = replace(
                tracker.operation.results[index],
                status=ActionStatus.RUNNING,
                started_at=datetime.now(UTC),
            )
            tracker.set_result(index, result)

            error: SyncError | None = None
            attempts = 0
            max_attempts = self._config.max_action_attempts
            while attempts < max_attempts:
                attempts += 1
                try:
                    await self._apply_with_timeout(action, application)
                    error = None
                    break
                except TransientActionError as e:
                    error = e
                except TargetRuntimeError as e:
                    # Runtime unreachable mid-action is retryable
                    error = TransientActionError(f"{action}: {e}")
                except ActionError as e:
                    error = e
                    break

                if attempts < max_attempts:
                    wait_time = self._backoff(attempts)
                    logger.warning(
                        "Action failed, retrying",
                        extra={
                            "application": application.name,
                            "resource": str(action.key),
                            "attempt": attempts,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(error),
                        },
                    )
                    if await self._wait_or_cancel(cancel_event, wait_time):
                        error = OperationAborted(f"{action}: aborted while retrying")
                        break

            if error is None:
                tracker.set_result(
                    index,
                    replace(
                        result,
                        status=ActionStatus.SUCCEEDED,
                        attempts=attempts,
                        message=f"{action.type.value.lower()}d",
                        finished_at=datetime.now(UTC),
                    ),
                )
                return None

            logger.error(
                "Action failed",
                extra={
                    "application": application.name,
                    "resource": str(action.key),
                    "action": action.type.value,
                    "attempts": attempts,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )
            tracker.set_result(
                index,
                replace(
                    result,
                    status=ActionStatus.FAILED,
                    attempts=attempts,
                    message=str(error),
                    error_type=type(error).__name__,
                    finished_at=datetime.now(UTC),
                ),
            )
            return error

    def _backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter, capped at RETRY_BACKOFF_MAX."""
        backoff = min(
            self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
            self._config.retry_backoff_max_seconds,
        )
        return backoff + random.uniform(0, backoff * 0.2)

    async def _wait_or_cancel(self, cancel_event: asyncio.Event, seconds: float) -> bool:
        """Sleep for `seconds`; return True if the operation was aborted meanwhile."""
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

    async def _apply_with_timeout(self, action: Action, application: Application) -> None:
        """Apply one action within APPLY_TIMEOUT.

        Raises:
            ActionTimeoutError: If the runtime does not answer in time.
            ActionError: As raised by the runtime.
        """
        timeout = self._config.apply_timeout_seconds
        try:
            await asyncio.wait_for(self._apply(action, application), timeout=timeout)
        except TimeoutError as e:
            raise ActionTimeoutError(f"{action} timed out after {timeout}s") from e

    async def _apply(self, action: Action, application: Application) -> None:
        if action.type is ActionType.DELETE:
            await self._runtime.apply(action, None)
            return

        if action.type is ActionType.UPDATE:
            await self._runtime.apply(action, update_patch(action, application.name))
            return

        manifest = stamp_ownership(action.desired.manifest, application.name)

        if action.type is ActionType.REPLACE:
            await self._runtime.apply(replace(action, type=ActionType.DELETE), None)
            # Deletion completes asynchronously (finalizers); wait until it is gone
            while await self._runtime.get_resource(action.key, action.api_version) is not None:
                await asyncio.sleep(self._config.health_poll_interval_seconds)
            await self._runtime.apply(replace(action, type=ActionType.CREATE), manifest)
            return

        await self._runtime.apply(action, manifest)

    async def _check_health(
        self,
        tracker: _OperationTracker,
        watch: Iterable[tuple[ResourceKey, str]],
        cancel_event: asyncio.Event,
    ) -> SyncOperation:
        watched = dict(watch)
        for r in tracker.operation.results:
            if r.status is ActionStatus.SUCCEEDED and r.action.type in HEALTH_CHECKED_ACTIONS:
                watched[r.action.key] = r.action.api_version
        if not watched:
            return self._finish(tracker, OperationPhase.SUCCEEDED, "Sync succeeded")

        try:
            assessments = await wait_healthy(
                self._runtime,
                watched.items(),
                timeout_seconds=self._config.health_timeout_seconds,
                poll_interval_seconds=self._config.health_poll_interval_seconds,
                cancel_event=cancel_event,
            )
        except OperationAborted as e:
            # Applied actions stay applied
            return self._finish(tracker, OperationPhase.FAILED, "Operation aborted", e)
        unhealthy = {key: a for key, a in sorted(assessments.items()) if not a.healthy}
        if unhealthy:
            detail = "; ".join(
                f"{key}: {a.status.value} {a.message}".strip() for key, a in unhealthy.items()
            )
            return self._finish(
                tracker,
                OperationPhase.DEGRADED,
                f"Applied but not healthy: {detail}",
            )
        return self._finish(tracker, OperationPhase.SUCCEEDED, "Sync succeeded")

    def _finish(
        self,
        tracker: _OperationTracker,
        phase: OperationPhase,
        message: str,
        error: BaseException | None = None,
    ) -> SyncOperation:
        tracker.publish(tracker.operation.finish(phase, message, error))
        logger.info(
            "Operation finished",
            extra={
                "application": tracker.operation.application,
                "operation_id": tracker.operation.id,
                "phase": phase.value,
                "actions": len(tracker.operation.results),
                "duration_seconds": tracker.operation.duration_seconds,
            },
        )
        return tracker.operation
