"""Controller loop: per-application workers, trigger coalescing and status.

ARCHITECTURE:
- One AppWorker task per Application serializes its reconciliation passes,
  so an application never has more than one non-terminal SyncOperation
- Triggers (manual, webhook, rollback) enter one bounded queue; the
  dispatcher folds them into a single pending request per application, so
  triggers arriving during a sync become exactly one follow-up pass
- Status and history are immutable snapshots, replaced as a whole by the
  owning worker; readers never see a partial update

Each pass refreshes (fetch desired and live, diff), decides whether to sync
from the trigger and the sync policy, then plans, executes and verifies.

Circuit breaker: after MAX_CONSECUTIVE_FAILURES failed automatic syncs,
automatic syncing of that application pauses for
CIRCUIT_BREAKER_RESET_SECONDS. Forced triggers are never blocked.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import CIRCUIT_BREAKER_RESET_SECONDS, MAX_CONSECUTIVE_FAILURES, Config
from .diff import DiffEngine, DiffStatus, ResourceDiff
from .diff_normalizer import DiffNormalizer
from .errors import (
    ApplicationNotFound,
    InvalidStateTransition,
    PlanError,
    RollbackRefused,
    SyncError,
)
from .events import (
    DEFAULT_SUBSCRIBER_QUEUE_SIZE,
    EventBus,
    EventRecorder,
    EventSubscription,
    EventType,
    SyncEvent,
)
from .executor import SyncExecutor
from .health import HealthAssessment, HealthStatus, assess_health
from .models import Application, SyncPolicy
from .operation import (
    Action,
    OperationPhase,
    SyncOperation,
    SyncRequest,
    TriggerKind,
)
from .planner import plan
from .resources import DesiredResource, LiveResource, ResourceKey
from .runtime import TargetRuntime, fetch_live
from .source import ManifestSource, fetch_desired
from .state_machine import AppPhase, phase_after_operation, transition

logger = logging.getLogger(__name__)

# Worst first wins when summarizing
HEALTH_SEVERITY: list[HealthStatus] = [
    HealthStatus.HEALTHY,
    HealthStatus.UNKNOWN,
    HealthStatus.PROGRESSING,
    HealthStatus.MISSING,
    HealthStatus.DEGRADED,
]


@dataclass(frozen=True)
class HealthSummary:
    """Aggregated health of an application's desired resources."""

    status: HealthStatus = HealthStatus.UNKNOWN
    resources: tuple[tuple[str, str, str], ...] = ()  # (resource, status, message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "resources": [
                {"resource": r, "status": s, "message": m} for r, s, m in self.resources
            ],
        }


def summarize_health(assessments: Mapping[ResourceKey, HealthAssessment]) -> HealthSummary:
    if not assessments:
        return HealthSummary(status=HealthStatus.HEALTHY)
    worst = max((a.status for a in assessments.values()), key=HEALTH_SEVERITY.index)
    return HealthSummary(
        status=worst,
        resources=tuple(
            (str(key), a.status.value, a.message) for key, a in sorted(assessments.items())
        ),
    )


@dataclass(frozen=True)
class ApplicationStatus:
    """Snapshot of one application's reconciliation state."""

    name: str
    phase: AppPhase = AppPhase.UNKNOWN
    revision: str | None = None  # Desired revision seen by the last refresh
    synced_revision: str | None = None  # Revision of the last applied sync
    current_operation: SyncOperation | None = None
    last_operation: SyncOperation | None = None
    health_summary: HealthSummary = field(default_factory=HealthSummary)
    out_of_sync: tuple[str, ...] = ()
    error: str | None = None
    error_type: str | None = None
    refreshed_at: datetime | None = None
    consecutive_failures: int = 0
    circuit_open_until: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "phase": self.phase.value,
            "revision": self.revision,
            "synced_revision": self.synced_revision,
            "current_operation": (
                self.current_operation.to_dict() if self.current_operation else None
            ),
            "last_operation": self.last_operation.to_dict() if self.last_operation else None,
            "health": self.health_summary.to_dict(),
            "out_of_sync": list(self.out_of_sync),
            "error": self.error,
            "error_type": self.error_type,
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at else None,
            "consecutive_failures": self.consecutive_failures,
            "circuit_open_until": (
                self.circuit_open_until.isoformat() if self.circuit_open_until else None
            ),
        }


@dataclass
class SyncContext:
    """State of one reconciliation pass, threaded through every stage."""

    application: Application
    request: SyncRequest
    revision: str = ""
    desired: tuple[DesiredResource, ...] = ()
    live: list[LiveResource] = field(default_factory=list)
    diffs: list[ResourceDiff] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)

    @property
    def teardown(self) -> bool:
        return self.request.trigger is TriggerKind.TEARDOWN

    @property
    def prune_enabled(self) -> bool:
        return self.teardown or self.request.prune or self.application.sync_policy.prune

    @property
    def destructive(self) -> bool:
        return self.teardown or self.application.sync_policy.allow_destructive

    def outstanding(self, diffs: list[ResourceDiff] | None = None) -> list[ResourceDiff]:
        """Actionable diffs that a sync under this policy would resolve."""
        return [
            d
            for d in (self.diffs if diffs is None else diffs)
            if d.actionable and (self.destructive or d.status is not DiffStatus.ORPHANED)
        ]


class AppWorker:
    """Owns one application: its passes, status snapshot and history."""

    def __init__(
        self,
        application: Application,
        source: ManifestSource,
        runtime: TargetRuntime,
        config: Config,
        events: EventBus,
        diff_engine: DiffEngine,
        executor: SyncExecutor,
    ) -> None:
        self.application = application
        self._source = source
        self._runtime = runtime
        self._config = config
        self._events = events
        self._diff_engine = diff_engine
        self._executor = executor

        self._status = ApplicationStatus(name=application.name)
        self._history: deque[SyncOperation] = deque(maxlen=config.history_limit)

        self._pending: SyncRequest | None = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._stopping = False
        self._cancel_event: asyncio.Event | None = None
        self.task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self.application.name

    @property
    def status(self) -> ApplicationStatus:
        return self._status

    @property
    def pending(self) -> SyncRequest | None:
        return self._pending

    def history(self, limit: int | None = None) -> list[SyncOperation]:
        """Terminal operations, most recent first."""
        operations = list(self._history)
        return operations if limit is None else operations[:limit]

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def expect_work(self) -> None:
        """Mark the worker busy until a queued trigger has been handled."""
        self._idle.clear()

    def submit(self, request: SyncRequest) -> None:
        """Fold a request into the single pending slot."""
        self._pending = request if self._pending is None else self._pending.merge(request)
        self._idle.clear()
        self._wakeup.set()

    def abort(self) -> bool:
        """Abort the in-flight operation, if any."""
        if self._cancel_event is None or self._cancel_event.is_set():
            return False
        logger.warning("Abort requested", extra={"application": self.name})
        self._cancel_event.set()
        return True

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def start(self) -> asyncio.Task[None]:
        self._stopping = False
        self.task = asyncio.create_task(self.run(), name=f"kubesync-worker-{self.name}")
        return self.task

    async def stop(self) -> None:
        """Stop after the current pass and wait for the task to end."""
        self._stopping = True
        self._wakeup.set()
        if self.task is not None:
            await asyncio.wait([self.task])
            self.task = None

    async def run(self) -> None:
        logger.info(
            "Starting application worker",
            extra={
                "application": self.name,
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )
        request: SyncRequest | None = SyncRequest(trigger=TriggerKind.PERIODIC)
        if self._pending is not None:
            request, self._pending = request.merge(self._pending), None

        while request is not None:
            self._idle.clear()
            await self.reconcile(request)
            request = await self._next_request()

        self._idle.set()
        logger.info("Application worker stopped", extra={"application": self.name})

    async def _next_request(self) -> SyncRequest | None:
        while True:
            if self._stopping:
                return None
            if self._pending is not None:
                request, self._pending = self._pending, None
                return request

            self._idle.set()
            self._wakeup.clear()
            try:
                await asyncio.wait_for(
                    self._wakeup.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                if self._pending is None and not self._stopping:
                    return SyncRequest(trigger=TriggerKind.PERIODIC)

    # -------------------------------------------------------------------------
    # Reconciliation pass
    # -------------------------------------------------------------------------

    async def reconcile(self, request: SyncRequest) -> SyncOperation | None:
        """Run one pass: refresh, decide, and sync when needed.

        Returns:
            The terminal operation, or None when the pass only refreshed.

        Raises:
            InvalidStateTransition: On a phase bug; never recovered from.
        """
        context = SyncContext(application=self.application, request=request)
        try:
            await self._refresh(context)
        except SyncError as e:
            return self._refresh_failed(context, e)

        reason = self._sync_reason(context)
        if reason is None:
            self._observe(context)
            return None
        return await self._sync(context, reason)

    async def _refresh(self, context: SyncContext) -> None:
        """Fetch desired and live state and diff them.

        Raises:
            SourceError: If desired state cannot be read or is malformed.
            TargetRuntimeError: If live state cannot be read.
        """
        application = context.application
        timeout = self._config.fetch_timeout_seconds

        if context.teardown:
            context.revision = self._status.revision or ""
        else:
            result = await fetch_desired(
                self._source, application, timeout, revision=context.request.revision
            )
            if result.errors:
                # A partial desired set would prune whatever failed to parse
                raise result.errors[0]
            context.revision = result.revision
            context.desired = result.resources

        context.live = await fetch_live(self._runtime, application, timeout)
        context.diffs = self._diff_engine.diff(
            context.desired, context.live, context.prune_enabled
        )
        self._record_observation(context, context.live, context.diffs)

        logger.debug(
            "Refreshed application",
            extra={
                "application": application.name,
                "revision": context.revision,
                "desired": len(context.desired),
                "live": len(context.live),
                "outstanding": len(context.outstanding()),
            },
        )

    def _record_observation(
        self,
        context: SyncContext,
        live: list[LiveResource],
        diffs: list[ResourceDiff],
    ) -> None:
        live_by_key = {r.key: r for r in live}
        health = summarize_health(
            {r.key: assess_health(live_by_key.get(r.key)) for r in context.desired}
        )
        self._update_status(
            revision=context.revision or self._status.revision,
            health_summary=health,
            out_of_sync=tuple(str(d.key) for d in context.outstanding(diffs)),
            refreshed_at=datetime.now(UTC),
        )

    def _refresh_failed(self, context: SyncContext, error: SyncError) -> SyncOperation | None:
        logger.warning(
            "Refresh failed",
            extra={
                "application": self.name,
                "trigger": context.request.trigger.value,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        if not context.request.trigger.forces_sync:
            self._update_status(error=str(error), error_type=type(error).__name__)
            return None

        operation = self._new_operation(context)
        self._begin(operation)
        operation = operation.finish(OperationPhase.FAILED, "Refresh failed", error)
        self._publish_operation(operation)
        self._complete(context, operation, converged=False)
        return operation

    def _sync_reason(self, context: SyncContext) -> str | None:
        """Why this pass should sync, or None to only report."""
        trigger = context.request.trigger
        if trigger.forces_sync:
            return trigger.value

        if not context.outstanding():
            # Synced is only entered through a completed operation
            if self._status.phase is not AppPhase.SYNCED:
                return "converge"
            return None

        policy = context.application.sync_policy
        if not policy.automated or self._circuit_open():
            return None
        if context.revision != self._status.synced_revision:
            return "new revision"
        if policy.self_heal:
            return "self-heal"
        return None

    def _circuit_open(self) -> bool:
        until = self._status.circuit_open_until
        if until is None:
            return False

        now = datetime.now(UTC)
        if now < until:
            logger.warning(
                "Circuit breaker open, skipping automatic sync",
                extra={
                    "application": self.name,
                    "remaining_seconds": (until - now).total_seconds(),
                    "consecutive_failures": self._status.consecutive_failures,
                },
            )
            return True

        logger.info(
            "Circuit breaker reset, resuming automatic sync",
            extra={"application": self.name},
        )
        self._update_status(circuit_open_until=None, consecutive_failures=0)
        return False

    def _observe(self, context: SyncContext) -> None:
        outstanding = context.outstanding()
        if outstanding:
            policy = context.application.sync_policy
            logger.info(
                "Drift detected, not syncing",
                extra={
                    "application": self.name,
                    "resources": [str(d.key) for d in outstanding],
                    "automated": policy.automated,
                    "self_heal": policy.self_heal,
                },
            )
            self._set_phase(AppPhase.OUT_OF_SYNC_DETECTED)
        elif self._status.phase is not AppPhase.FAILED:
            self._update_status(error=None, error_type=None)

    def _new_operation(self, context: SyncContext) -> SyncOperation:
        return SyncOperation(
            application=self.name,
            trigger=context.request.trigger,
            revision=context.revision or context.request.revision or "",
            prune=context.prune_enabled,
            dry_run=context.request.dry_run or self._config.dry_run,
        )

    async def _sync(self, context: SyncContext, reason: str) -> SyncOperation:
        operation = self._new_operation(context)
        logger.info(
            "Starting sync",
            extra={
                "application": self.name,
                "operation_id": operation.id,
                "reason": reason,
                "revision": operation.revision,
                "outstanding": len(context.outstanding()),
                "dry_run": operation.dry_run,
            },
        )
        self._begin(operation)

        policy = context.application.sync_policy
        try:
            context.actions = plan(
                context.diffs,
                allow_destructive=context.destructive,
                allow_empty=context.teardown or policy.allow_empty,
                max_actions=self._config.max_resources_per_operation,
            )
        except PlanError as e:
            logger.error(
                "Planning failed",
                extra={"application": self.name, "error": str(e), "error_type": type(e).__name__},
            )
            operation = operation.finish(OperationPhase.FAILED, "Planning failed", e)
            self._publish_operation(operation)
            self._complete(context, operation, converged=False)
            return operation

        # An operation without actions verifies the health of everything desired
        watch = () if context.actions else [(r.key, r.api_version) for r in context.desired]

        self._cancel_event = asyncio.Event()
        try:
            operation = await self._executor.execute(
                operation,
                context.actions,
                context.application,
                cancel_event=self._cancel_event,
                on_update=self._publish_operation,
                watch=watch,
            )
        except InvalidStateTransition:
            raise
        except Exception as e:
            logger.exception(
                "Unexpected error during sync",
                extra={"application": self.name, "operation_id": operation.id},
            )
            current = self._status.current_operation or operation
            operation = current.finish(OperationPhase.FAILED, "Unexpected error", e)
            self._publish_operation(operation)
        finally:
            self._cancel_event = None

        converged = await self._verify(context, operation)
        self._complete(context, operation, converged)
        return operation

    async def _verify(self, context: SyncContext, operation: SyncOperation) -> bool:
        """Re-diff against fresh live state; True when nothing is outstanding."""
        if operation.phase is OperationPhase.FAILED:
            return False
        if operation.dry_run or not context.actions:
            return not context.outstanding()

        try:
            live = await fetch_live(
                self._runtime, context.application, self._config.fetch_timeout_seconds
            )
        except SyncError as e:
            logger.warning(
                "Verification refresh failed",
                extra={"application": self.name, "error": str(e)},
            )
            return False

        diffs = self._diff_engine.diff(context.desired, live, context.prune_enabled)
        self._record_observation(context, live, diffs)
        remaining = context.outstanding(diffs)
        if remaining:
            logger.warning(
                "Resources still out of sync after sync",
                extra={
                    "application": self.name,
                    "operation_id": operation.id,
                    "resources": [str(d.key) for d in remaining],
                },
            )
        return not remaining

    # -------------------------------------------------------------------------
    # Status updates (only ever called from this worker)
    # -------------------------------------------------------------------------

    def _update_status(self, **changes: Any) -> None:
        self._status = replace(self._status, **changes)

    def _set_phase(self, phase: AppPhase) -> None:
        current = self._status.phase
        transition(current, phase)
        if current is phase:
            return
        self._update_status(phase=phase)
        logger.info(
            "Application phase changed",
            extra={"application": self.name, "from": current.value, "to": phase.value},
        )
        self._events.publish(
            SyncEvent(
                type=EventType.APPLICATION_PHASE,
                application=self.name,
                revision=self._status.revision,
                previous_phase=current.value,
                phase=phase.value,
                message=self._status.error or "",
            )
        )

    def _begin(self, operation: SyncOperation) -> None:
        self._set_phase(AppPhase.SYNCING)
        self._publish_operation(operation)

    def _publish_operation(self, operation: SyncOperation) -> None:
        """Replace the operation snapshot; emit an event on phase changes."""
        previous = self._status.current_operation
        if previous is not None and previous.id != operation.id:
            previous = None
        if previous is None or previous.phase is not operation.phase:
            self._events.publish(
                SyncEvent(
                    type=EventType.OPERATION_PHASE,
                    application=self.name,
                    operation_id=operation.id,
                    revision=operation.revision,
                    previous_phase=previous.phase.value if previous else None,
                    phase=operation.phase.value,
                    message=operation.message,
                    error_type=operation.error_type,
                )
            )

        if operation.is_terminal:
            self._history.appendleft(operation)
            self._update_status(current_operation=None, last_operation=operation)
        else:
            self._update_status(current_operation=operation)

    def _complete(self, context: SyncContext, operation: SyncOperation, converged: bool) -> None:
        failed = operation.phase is OperationPhase.FAILED
        changes: dict[str, Any] = {
            "error": operation.error if failed else None,
            "error_type": operation.error_type if failed else None,
        }
        if operation.phase in (OperationPhase.SUCCEEDED, OperationPhase.DEGRADED) and (
            not operation.dry_run
        ):
            changes["synced_revision"] = operation.revision
        self._update_status(**changes)

        self._record_outcome(failed, automatic=not context.request.trigger.forces_sync)
        self._set_phase(phase_after_operation(operation.phase, converged))

    def _record_outcome(self, failed: bool, automatic: bool) -> None:
        """Update circuit breaker state."""
        if not failed:
            if self._status.consecutive_failures or self._status.circuit_open_until:
                self._update_status(consecutive_failures=0, circuit_open_until=None)
            return
        if not automatic:
            return

        failures = self._status.consecutive_failures + 1
        open_until = self._status.circuit_open_until
        if failures >= MAX_CONSECUTIVE_FAILURES:
            open_until = datetime.now(UTC) + timedelta(seconds=CIRCUIT_BREAKER_RESET_SECONDS)
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "application": self.name,
                    "consecutive_failures": failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )
        self._update_status(consecutive_failures=failures, circuit_open_until=open_until)


def _normalize_repo_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url.lower()


class Controller:
    """Manages many applications, each reconciled by its own worker."""

    def __init__(
        self,
        config: Config,
        source: ManifestSource,
        runtime: TargetRuntime,
        events: EventBus | None = None,
        normalizer: DiffNormalizer | None = None,
        log_normalizations: bool = False,
    ) -> None:
        """Initialize the controller.

        Args:
            config: Validated controller configuration.
            source: Desired-state source.
            runtime: Target runtime.
            events: Event bus; by default one that writes the audit log.
            normalizer: Diff normalizer; defaults to the built-in rules.
            log_normalizations: Log differences the normalizer hides.
        """
        self._config = config
        self._source = source
        self._runtime = runtime
        self._events = events or EventBus(EventRecorder(enabled=config.enable_audit_logging))
        self._diff_engine = DiffEngine(normalizer, log_normalizations)
        self._executor = SyncExecutor(runtime, config, self._events)

        self._workers: dict[str, AppWorker] = {}
        self._queue: asyncio.Queue[tuple[str, SyncRequest]] = asyncio.Queue(
            maxsize=config.trigger_queue_size
        )
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._fatal: BaseException | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def events(self) -> EventBus:
        return self._events

    def subscribe(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> EventSubscription:
        return self._events.subscribe(maxsize)

    def _worker(self, name: str) -> AppWorker:
        worker = self._workers.get(name)
        if worker is None:
            raise ApplicationNotFound(f"Application '{name}' is not registered")
        return worker

    def applications(self) -> list[Application]:
        return [self._workers[name].application for name in sorted(self._workers)]

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, application: Application) -> None:
        """Start managing an application.

        Raises:
            ValueError: If an application with the same name is registered.
        """
        if application.name in self._workers:
            raise ValueError(f"Application '{application.name}' is already registered")

        worker = AppWorker(
            application,
            self._source,
            self._runtime,
            self._config,
            self._events,
            self._diff_engine,
            self._executor,
        )
        self._workers[application.name] = worker
        logger.info(
            "Registered application",
            extra={
                "application": application.name,
                "repo_url": application.source.repo_url,
                "revision": application.source.revision,
                "path": application.source.path,
                "namespace": application.destination.namespace,
                "automated": application.sync_policy.automated,
            },
        )
        self._events.publish(
            SyncEvent(type=EventType.APPLICATION_REGISTERED, application=application.name)
        )
        if self._running:
            self._start_worker(worker)

    def update_policy(self, name: str, policy: SyncPolicy) -> Application:
        """Replace an application's sync policy; takes effect on the next pass."""
        worker = self._worker(name)
        worker.application = worker.application.with_policy(policy)
        logger.info(
            "Sync policy updated",
            extra={"application": name, "policy": policy.model_dump()},
        )
        worker.submit(SyncRequest(trigger=TriggerKind.PERIODIC))
        return worker.application

    async def deregister(self, name: str, cascade: bool = False) -> SyncOperation | None:
        """Stop managing an application.

        With `cascade`, every tracked resource is pruned by a teardown
        operation first; if that operation does not succeed the application
        stays registered. Without it, the tracked resources are left in
        place and the orphaning is recorded.

        Returns:
            The teardown operation, or None without cascade.
        """
        worker = self._worker(name)
        await worker.stop()

        if cascade:
            operation = await worker.reconcile(
                SyncRequest(trigger=TriggerKind.TEARDOWN, prune=True)
            )
            if operation is None or operation.phase is not OperationPhase.SUCCEEDED:
                logger.error(
                    "Teardown did not succeed, application stays registered",
                    extra={"application": name},
                )
                if self._running:
                    self._start_worker(worker)
                return operation
            message = f"Teardown pruned {len(operation.results)} resources"
        else:
            operation = None
            try:
                live = await fetch_live(
                    self._runtime, worker.application, self._config.fetch_timeout_seconds
                )
                message = f"Orphaned {len(live)} tracked resources"
            except SyncError as e:
                message = f"Orphaned tracked resources (count unavailable: {e})"
            logger.warning(
                "Deregistered without cascade, resources left in place",
                extra={"application": name, "detail": message},
            )

        del self._workers[name]
        self._events.publish(
            SyncEvent(
                type=EventType.APPLICATION_DEREGISTERED,
                application=name,
                operation_id=operation.id if operation else None,
                message=message,
            )
        )
        return operation

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def _enqueue(self, name: str, request: SyncRequest) -> bool:
        try:
            self._queue.put_nowait((name, request))
        except asyncio.QueueFull:
            logger.warning(
                "Trigger queue full, dropping trigger",
                extra={"application": name, "trigger": request.trigger.value},
            )
            return False
        self._workers[name].expect_work()
        return True

    def trigger_sync(
        self,
        name: str,
        prune: bool = False,
        dry_run: bool = False,
        revision: str | None = None,
    ) -> bool:
        """Request a sync. Coalesces with a pending request.

        Returns:
            False if the trigger queue is full and the request was dropped.

        Raises:
            ApplicationNotFound: If the application is not registered.
        """
        self._worker(name)
        return self._enqueue(
            name,
            SyncRequest(
                trigger=TriggerKind.MANUAL, prune=prune, dry_run=dry_run, revision=revision
            ),
        )

    def notify_webhook(self, repo_url: str) -> list[str]:
        """Refresh every application sourced from `repo_url`.

        The refresh resolves each application's own target revision; a push
        to a branch the application does not track changes nothing.

        Returns:
            Names of the applications triggered.
        """
        target = _normalize_repo_url(repo_url)
        names = [
            name
            for name in sorted(self._workers)
            if _normalize_repo_url(self._workers[name].application.source.repo_url) == target
        ]
        triggered = [
            name for name in names if self._enqueue(name, SyncRequest(trigger=TriggerKind.WEBHOOK))
        ]
        logger.info(
            "Webhook received",
            extra={"repo_url": repo_url, "applications": triggered},
        )
        return triggered

    def rollback(self, name: str, operation_id: str) -> bool:
        """Re-sync the revision of a prior successful operation.

        Raises:
            ApplicationNotFound: If the application is not registered.
            RollbackRefused: While automated sync is enabled, or if the
                operation is unknown or did not succeed.
        """
        worker = self._worker(name)
        if worker.application.sync_policy.automated:
            raise RollbackRefused(
                f"Rollback of '{name}' refused while automated sync is enabled"
            )

        target = next((op for op in worker.history() if op.id == operation_id), None)
        if target is None:
            raise RollbackRefused(f"Operation '{operation_id}' not found in history of '{name}'")
        if target.phase is not OperationPhase.SUCCEEDED or target.dry_run or not target.revision:
            raise RollbackRefused(
                f"Operation '{operation_id}' is not a successful sync and cannot be rolled back to"
            )

        logger.info(
            "Rollback requested",
            extra={"application": name, "operation_id": operation_id, "revision": target.revision},
        )
        return self._enqueue(
            name, SyncRequest(trigger=TriggerKind.ROLLBACK, revision=target.revision)
        )

    def abort(self, name: str) -> bool:
        """Abort the application's in-flight operation.

        Returns:
            True if an operation was running and has been told to stop.
        """
        return self._worker(name).abort()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self, name: str) -> ApplicationStatus:
        return self._worker(name).status

    def list_history(self, name: str, limit: int | None = None) -> list[SyncOperation]:
        """Terminal operations of an application, most recent first."""
        return self._worker(name).history(limit)

    async def wait_idle(self, name: str, timeout: float | None = None) -> None:
        """Wait until the application has no pending or running work."""
        await asyncio.wait_for(self._worker(name).wait_idle(), timeout=timeout)

    async def reconcile_now(
        self, name: str, request: SyncRequest | None = None
    ) -> SyncOperation | None:
        """Run one pass inline, outside the controller loop.

        Raises:
            RuntimeError: If the controller loop is running.
        """
        if self._running:
            raise RuntimeError("reconcile_now cannot be used while the controller is running")
        return await self._worker(name).reconcile(
            request or SyncRequest(trigger=TriggerKind.PERIODIC)
        )

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def _start_worker(self, worker: AppWorker) -> None:
        task = worker.start()
        task.add_done_callback(self._on_worker_done)

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical("Application worker crashed", exc_info=exc)
            self._fatal = exc
            self._shutdown_event.set()

    async def _dispatch(self) -> None:
        """Move triggers from the queue into the workers' pending slots."""
        while True:
            name, request = await self._queue.get()
            worker = self._workers.get(name)
            if worker is None:
                logger.debug(
                    "Dropping trigger for unknown application", extra={"application": name}
                )
                continue
            worker.submit(request)

    async def run(self) -> None:
        """Run all workers until shutdown.

        Raises:
            InvalidStateTransition: If a worker hit an impossible phase change.
        """
        logger.info(
            "Starting controller",
            extra={
                "applications": len(self._workers),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )
        self._running = True
        dispatcher = asyncio.create_task(self._dispatch(), name="kubesync-dispatcher")
        for worker in self._workers.values():
            self._start_worker(worker)

        try:
            await self._shutdown_event.wait()
        finally:
            self._running = False
            dispatcher.cancel()
            await asyncio.wait([dispatcher])
            workers = list(self._workers.values())
            for worker in workers:
                worker.abort()
            await asyncio.gather(*(worker.stop() for worker in workers))
            logger.info("Controller shutdown complete")

        if self._fatal is not None:
            raise self._fatal

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
