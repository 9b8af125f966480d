"""Tests for the controller loop and per-application workers."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from conftest import make_config
from kubesync.config import MAX_CONSECUTIVE_FAILURES, Config
from kubesync.controller import Controller
from kubesync.errors import (
    ApplicationNotFound,
    PermissionDeniedError,
    RollbackRefused,
    SourceUnavailable,
)
from kubesync.events import EventType
from kubesync.health import HealthStatus
from kubesync.models import SyncPolicy
from kubesync.operation import (
    ActionStatus,
    ActionType,
    OperationPhase,
    SyncRequest,
    TriggerKind,
)
from kubesync.resources import ResourceKey
from kubesync.state_machine import AppPhase
from runtime_mock import InMemoryRuntime, InMemorySource, manifests

CFG = ResourceKey("ConfigMap", "shop", "cfg")
APP = ResourceKey("Deployment", "shop", "app")
SVC = ResourceKey("Service", "shop", "app")

MANUAL = SyncRequest(trigger=TriggerKind.MANUAL)


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@contextlib.asynccontextmanager
async def running(controller: Controller) -> AsyncIterator[asyncio.Task[None]]:
    """Run the controller loop for the duration of the block."""
    task = asyncio.create_task(controller.run())
    try:
        yield task
    finally:
        controller.shutdown()
        await asyncio.wait_for(task, 5.0)


def _controller(
    config: Config,
    source: InMemorySource,
    runtime: InMemoryRuntime,
    desired: list[dict] | None = None,
    **policy,
) -> tuple[Controller, str]:
    """Controller managing the shop application, with one commit made."""
    revision = source.commit(
        manifests.REPO_URL,
        desired if desired is not None else [manifests.configmap(), manifests.deployment()],
    )
    controller = Controller(config, source, runtime)
    controller.register(manifests.application(**policy))
    return controller, revision


class TestFirstSync:
    """Tests for syncing an application whose resources do not exist yet."""

    @pytest.mark.asyncio
    async def test_creates_then_converges(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that missing resources are created in order and the diff empties."""
        controller, revision = _controller(config, source, runtime, automated=True)

        operation = await controller.reconcile_now("shop")

        assert operation.phase == OperationPhase.SUCCEEDED
        assert [c.key for c in runtime.calls] == [CFG, APP]
        assert runtime.calls_of(ActionType.CREATE) == [CFG, APP]
        status = controller.get_status("shop")
        assert status.phase == AppPhase.SYNCED
        assert status.synced_revision == revision
        assert status.out_of_sync == ()
        assert status.health_summary.status == HealthStatus.HEALTHY
        assert status.last_operation is operation
        assert status.current_operation is None

    @pytest.mark.asyncio
    async def test_second_pass_is_a_no_op(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that refreshing a converged application applies nothing."""
        controller, _ = _controller(config, source, runtime, automated=True)
        await controller.reconcile_now("shop")
        calls = len(runtime.calls)

        operation = await controller.reconcile_now("shop")

        assert operation is None
        assert len(runtime.calls) == calls
        assert controller.get_status("shop").phase == AppPhase.SYNCED
        assert len(controller.list_history("shop")) == 1

    @pytest.mark.asyncio
    async def test_not_automated_only_reports(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that drift without automated sync is reported, not applied."""
        controller, _ = _controller(config, source, runtime)

        operation = await controller.reconcile_now("shop")

        assert operation is None
        assert runtime.calls == []
        status = controller.get_status("shop")
        assert status.phase == AppPhase.OUT_OF_SYNC_DETECTED
        assert status.out_of_sync == (str(CFG), str(APP))

    @pytest.mark.asyncio
    async def test_status_serializes(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that the status snapshot is JSON serializable."""
        controller, revision = _controller(config, source, runtime, automated=True)
        await controller.reconcile_now("shop")

        data = json.loads(json.dumps(controller.get_status("shop").to_dict()))

        assert data["phase"] == "Synced"
        assert data["synced_revision"] == revision
        assert data["last_operation"]["results"][0]["status"] == "Succeeded"
        assert data["health"]["status"] == "Healthy"


class TestDrift:
    """Tests for live state that drifts from desired state."""

    @pytest.mark.asyncio
    async def test_self_heal(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a manual replica change is reverted with one Update."""
        controller, _ = _controller(config, source, runtime, automated=True, selfHeal=True)
        await controller.reconcile_now("shop")
        runtime.drift(APP, "spec.replicas", 5)

        operation = await controller.reconcile_now("shop")

        assert operation.phase == OperationPhase.SUCCEEDED
        assert [r.action.type for r in operation.results] == [ActionType.UPDATE]
        assert runtime.get(APP)["spec"]["replicas"] == 2
        assert controller.get_status("shop").phase == AppPhase.SYNCED

    @pytest.mark.asyncio
    async def test_drift_without_self_heal(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that drift at an already synced revision waits for a trigger."""
        controller, _ = _controller(config, source, runtime, automated=True)
        await controller.reconcile_now("shop")
        runtime.drift(APP, "spec.replicas", 5)

        assert await controller.reconcile_now("shop") is None
        status = controller.get_status("shop")
        assert status.phase == AppPhase.OUT_OF_SYNC_DETECTED
        assert status.out_of_sync == (str(APP),)

        operation = await controller.reconcile_now("shop", MANUAL)

        assert operation.phase == OperationPhase.SUCCEEDED
        assert runtime.get(APP)["spec"]["replicas"] == 2
        assert controller.get_status("shop").phase == AppPhase.SYNCED

    @pytest.mark.asyncio
    async def test_label_dropped_from_git_removed(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a label removed in a new commit is removed from the cluster."""
        first = [manifests.configmap(labels={"tier": "web", "debug": "true"})]
        controller, _ = _controller(config, source, runtime, desired=first, automated=True)
        await controller.reconcile_now("shop")
        assert runtime.get(CFG)["metadata"]["labels"]["debug"] == "true"
        source.commit(manifests.REPO_URL, [manifests.configmap(labels={"tier": "web"})])

        operation = await controller.reconcile_now("shop")

        assert operation.phase == OperationPhase.SUCCEEDED
        assert [r.action.type for r in operation.results] == [ActionType.UPDATE]
        assert "debug" not in runtime.get(CFG)["metadata"]["labels"]
        assert controller.get_status("shop").phase == AppPhase.SYNCED

    @pytest.mark.asyncio
    async def test_untracked_extra_left_alone_without_prune(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that an extra tracked resource is never touched without prune."""
        legacy = runtime.seed(manifests.service(name="legacy"), application="shop")
        controller, _ = _controller(config, source, runtime, automated=True, selfHeal=True)

        await controller.reconcile_now("shop")
        await controller.reconcile_now("shop")
        await controller.reconcile_now("shop", MANUAL)

        assert runtime.calls_of(ActionType.DELETE) == []
        assert legacy in runtime.objects
        status = controller.get_status("shop")
        assert str(legacy) not in status.out_of_sync
        assert status.phase == AppPhase.SYNCED


class TestPrune:
    """Tests for pruning resources removed from desired state."""

    @pytest.mark.asyncio
    async def test_deletes_in_reverse_order(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that removed resources are deleted dependents first."""
        desired = [manifests.configmap(), manifests.deployment(), manifests.service()]
        controller, _ = _controller(
            config, source, runtime, desired, automated=True, prune=True
        )
        await controller.reconcile_now("shop")
        assert runtime.calls_of(ActionType.CREATE) == [CFG, APP, SVC]
        keep = ResourceKey("ConfigMap", "shop", "keep")
        revision = source.commit(manifests.REPO_URL, [manifests.configmap(name="keep")])

        operation = await controller.reconcile_now("shop")

        assert operation.phase == OperationPhase.SUCCEEDED
        assert operation.revision == revision
        assert runtime.calls_of(ActionType.DELETE) == [SVC, APP, CFG]
        assert set(runtime.objects) == {keep}

    @pytest.mark.asyncio
    async def test_destructive_changes_need_permission(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that orphans stay while destructive changes are disallowed."""
        old = runtime.seed(manifests.configmap(name="old"), application="shop")
        controller, _ = _controller(
            config,
            source,
            runtime,
            automated=True,
            prune=True,
            allowDestructive=False,
        )

        await controller.reconcile_now("shop")

        assert old in runtime.objects
        assert runtime.calls_of(ActionType.DELETE) == []
        assert controller.get_status("shop").phase == AppPhase.SYNCED


class TestFailures:
    """Tests for failed operations."""

    @pytest.mark.asyncio
    async def test_permission_denied_skips_dependents(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a rejected Deployment fails the operation and skips its Service."""
        runtime.fail_action(APP, PermissionDeniedError("deployments.apps is forbidden"))
        desired = [
            manifests.configmap(),
            manifests.deployment(),
            manifests.service(depends_on=["Deployment/app"]),
        ]
        controller, _ = _controller(config, source, runtime, desired)

        operation = await controller.reconcile_now("shop", MANUAL)

        assert operation.phase == OperationPhase.FAILED
        assert operation.result_for(CFG).status == ActionStatus.SUCCEEDED
        assert operation.result_for(APP).status == ActionStatus.FAILED
        assert operation.result_for(SVC).status == ActionStatus.SKIPPED
        status = controller.get_status("shop")
        assert status.phase == AppPhase.FAILED
        assert status.error_type == "PermissionDeniedError"
        assert status.synced_revision is None

    @pytest.mark.asyncio
    async def test_invalid_manifest_applies_nothing(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a malformed desired set is never partially applied."""
        runtime.seed(manifests.configmap(), application="shop")
        source.commit(manifests.REPO_URL, "kind: ConfigMap\nmetadata:\n  name: broken\n")
        controller = Controller(config, source, runtime)
        controller.register(manifests.application(automated=True, prune=True))

        assert await controller.reconcile_now("shop") is None

        assert runtime.calls == []
        status = controller.get_status("shop")
        assert "missing apiVersion" in status.error
        assert status.error_type == "InvalidManifest"

    @pytest.mark.asyncio
    async def test_refresh_failure_periodic(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a periodic pass records an unreadable source without an operation."""
        controller, _ = _controller(config, source, runtime, automated=True)
        source.failure = SourceUnavailable("git server offline")

        assert await controller.reconcile_now("shop") is None

        status = controller.get_status("shop")
        assert status.error == "git server offline"
        assert status.phase == AppPhase.UNKNOWN
        assert controller.list_history("shop") == []

    @pytest.mark.asyncio
    async def test_refresh_failure_manual(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a forced pass turns an unreadable source into a failed operation."""
        controller, _ = _controller(config, source, runtime, automated=True)
        runtime.unreachable = True

        operation = await controller.reconcile_now("shop", MANUAL)

        assert operation.phase == OperationPhase.FAILED
        assert operation.message == "Refresh failed"
        assert operation.error_type == "RuntimeUnreachable"
        status = controller.get_status("shop")
        assert status.phase == AppPhase.FAILED
        assert status.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_unhealthy_is_degraded(
        self, tmp_path: Path, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that applied but never-ready resources degrade the application."""
        config = make_config(tmp_path, health_timeout_seconds=0.1)
        runtime.set_ready(APP, False)
        controller, revision = _controller(config, source, runtime, automated=True)

        operation = await controller.reconcile_now("shop")

        assert operation.phase == OperationPhase.DEGRADED
        assert operation.message.startswith("Applied but not healthy")
        status = controller.get_status("shop")
        assert status.phase == AppPhase.DEGRADED
        assert status.synced_revision == revision
        assert status.health_summary.status == HealthStatus.PROGRESSING


class TestCircuitBreaker:
    """Tests for pausing automatic sync after repeated failures."""

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that automatic syncs stop while manual syncs still run."""
        runtime.fail_action(CFG, PermissionDeniedError("configmaps is forbidden"))
        controller, _ = _controller(
            config, source, runtime, [manifests.configmap()], automated=True
        )

        for _ in range(MAX_CONSECUTIVE_FAILURES):
            operation = await controller.reconcile_now("shop")
            assert operation.phase == OperationPhase.FAILED

        status = controller.get_status("shop")
        assert status.consecutive_failures == MAX_CONSECUTIVE_FAILURES
        assert status.circuit_open_until is not None

        calls = len(runtime.calls)
        assert await controller.reconcile_now("shop") is None
        assert len(runtime.calls) == calls
        assert controller.get_status("shop").phase == AppPhase.OUT_OF_SYNC_DETECTED

        operation = await controller.reconcile_now("shop", MANUAL)
        assert operation.phase == OperationPhase.FAILED
        assert controller.get_status("shop").consecutive_failures == MAX_CONSECUTIVE_FAILURES

    @pytest.mark.asyncio
    async def test_success_resets(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a successful sync closes the circuit."""
        runtime.fail_action(CFG, PermissionDeniedError("configmaps is forbidden"))
        controller, _ = _controller(
            config, source, runtime, [manifests.configmap()], automated=True
        )
        for _ in range(MAX_CONSECUTIVE_FAILURES):
            await controller.reconcile_now("shop")
        runtime.clear_failures()

        operation = await controller.reconcile_now("shop", MANUAL)

        assert operation.phase == OperationPhase.SUCCEEDED
        status = controller.get_status("shop")
        assert status.consecutive_failures == 0
        assert status.circuit_open_until is None
        assert status.phase == AppPhase.SYNCED


class TestDryRun:
    """Tests for dry-run syncs."""

    @pytest.mark.asyncio
    async def test_manual_dry_run(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a dry run plans without applying or marking the revision synced."""
        controller, _ = _controller(config, source, runtime)

        operation = await controller.reconcile_now(
            "shop", SyncRequest(trigger=TriggerKind.MANUAL, dry_run=True)
        )

        assert operation.dry_run is True
        assert operation.phase == OperationPhase.SUCCEEDED
        assert operation.message == "Dry run: 2 actions planned"
        assert runtime.calls == []
        status = controller.get_status("shop")
        assert status.synced_revision is None
        assert status.phase == AppPhase.OUT_OF_SYNC_DETECTED

    @pytest.mark.asyncio
    async def test_global_dry_run(
        self, tmp_path: Path, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that the controller-wide dry run applies to automatic syncs."""
        config = make_config(tmp_path, dry_run=True)
        controller, _ = _controller(config, source, runtime, automated=True)

        operation = await controller.reconcile_now("shop")

        assert operation.dry_run is True
        assert runtime.calls == []


class TestRollback:
    """Tests for rolling back to an earlier operation."""

    @pytest.mark.asyncio
    async def test_rollback_restores_revision(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that rollback re-syncs the revision of an earlier operation."""
        controller, first = _controller(config, source, runtime, [manifests.configmap()])
        async with running(controller):
            await controller.wait_idle("shop", timeout=5.0)
            controller.trigger_sync("shop")
            await controller.wait_idle("shop", timeout=5.0)
            target = controller.list_history("shop")[0]

            source.commit(manifests.REPO_URL, [manifests.configmap(data={"version": "v2"})])
            controller.trigger_sync("shop")
            await controller.wait_idle("shop", timeout=5.0)
            assert runtime.get(CFG)["data"] == {"version": "v2"}

            assert controller.rollback("shop", target.id) is True
            await controller.wait_idle("shop", timeout=5.0)

        latest = controller.list_history("shop")[0]
        assert latest.trigger == TriggerKind.ROLLBACK
        assert latest.revision == first
        assert latest.phase == OperationPhase.SUCCEEDED
        assert runtime.get(CFG)["data"] == {"version": "v1"}
        assert controller.get_status("shop").synced_revision == first

    @pytest.mark.asyncio
    async def test_refused_while_automated(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that automated sync would immediately undo a rollback."""
        controller, _ = _controller(config, source, runtime, automated=True)
        operation = await controller.reconcile_now("shop")

        with pytest.raises(RollbackRefused, match="automated sync is enabled"):
            controller.rollback("shop", operation.id)

    @pytest.mark.asyncio
    async def test_refused_for_unknown_or_failed(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that only successful operations in history are rollback targets."""
        runtime.fail_action(CFG, PermissionDeniedError("configmaps is forbidden"))
        controller, _ = _controller(config, source, runtime)
        failed = await controller.reconcile_now("shop", MANUAL)

        with pytest.raises(RollbackRefused, match="not found"):
            controller.rollback("shop", "nope")
        with pytest.raises(RollbackRefused, match="not a successful sync"):
            controller.rollback("shop", failed.id)

    def test_unknown_application(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that triggers for unregistered applications raise."""
        controller = Controller(config, source, runtime)

        with pytest.raises(ApplicationNotFound):
            controller.rollback("shop", "abc")
        with pytest.raises(ApplicationNotFound):
            controller.trigger_sync("shop")


class TestTriggers:
    """Tests for triggers handled by the running controller."""

    @pytest.mark.asyncio
    async def test_triggers_during_sync_coalesce(
        self, config: Config, source: InMemorySource
    ) -> None:
        """Test that triggers arriving mid-sync become exactly one follow-up pass."""
        runtime = InMemoryRuntime(apply_delay=0.05)
        controller, _ = _controller(config, source, runtime)

        async with running(controller):
            await controller.wait_idle("shop", timeout=5.0)
            controller.trigger_sync("shop")
            await _until(lambda: controller.get_status("shop").current_operation is not None)
            controller.trigger_sync("shop")
            controller.trigger_sync("shop", prune=True)
            await controller.wait_idle("shop", timeout=5.0)

        history = controller.list_history("shop")
        assert len(history) == 2
        assert history[0].prune is True
        assert runtime.calls_of(ActionType.CREATE) == [CFG, APP]

    @pytest.mark.asyncio
    async def test_new_revision_mid_sync(self, config: Config, source: InMemorySource) -> None:
        """Test that a revision arriving mid-sync is applied by the next pass."""
        runtime = InMemoryRuntime(apply_delay=0.05)
        controller, first = _controller(config, source, runtime, automated=True)

        async with running(controller):
            await _until(lambda: controller.get_status("shop").current_operation is not None)
            second = source.commit(
                manifests.REPO_URL,
                [manifests.configmap(data={"version": "v2"}), manifests.deployment()],
            )
            assert controller.notify_webhook(manifests.REPO_URL) == ["shop"]
            await controller.wait_idle("shop", timeout=5.0)

        history = controller.list_history("shop")
        assert [op.revision for op in history] == [second, first]
        assert controller.get_status("shop").synced_revision == second
        assert runtime.get(CFG)["data"] == {"version": "v2"}

    def test_webhook_matches_repository(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a webhook triggers only applications of that repository."""
        controller = Controller(config, source, runtime)
        controller.register(manifests.application())
        controller.register(
            manifests.application(
                name="billing",
                repo_url="https://git.example.com/team/billing.git",
                namespace="billing",
            )
        )

        assert controller.notify_webhook("HTTPS://git.example.com/team/shop/") == ["shop"]
        assert controller.notify_webhook("https://git.example.com/team/other.git") == []

    @pytest.mark.asyncio
    async def test_full_queue_drops_trigger(
        self, tmp_path: Path, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that triggers are dropped once the queue is full."""
        config = make_config(tmp_path, trigger_queue_size=1)
        controller, _ = _controller(config, source, runtime)

        assert controller.trigger_sync("shop") is True
        assert controller.trigger_sync("shop") is False

    @pytest.mark.asyncio
    async def test_abort(self, config: Config, source: InMemorySource) -> None:
        """Test that abort stops an in-flight operation after running actions finish."""
        runtime = InMemoryRuntime(apply_delay=0.2)
        controller, _ = _controller(config, source, runtime)
        assert controller.abort("shop") is False

        task = asyncio.create_task(controller.reconcile_now("shop", MANUAL))
        await _until(lambda: bool(runtime.calls))
        assert controller.abort("shop") is True
        operation = await task

        assert operation.phase == OperationPhase.FAILED
        assert operation.error_type == "OperationAborted"
        assert operation.result_for(APP).status == ActionStatus.SKIPPED
        assert controller.get_status("shop").phase == AppPhase.FAILED

    @pytest.mark.asyncio
    async def test_reconcile_now_refused_while_running(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that inline passes cannot race the controller loop."""
        controller, _ = _controller(config, source, runtime)

        async with running(controller):
            await controller.wait_idle("shop", timeout=5.0)
            with pytest.raises(RuntimeError, match="controller is running"):
                await controller.reconcile_now("shop")


class TestRegistration:
    """Tests for registering and deregistering applications."""

    def test_duplicate_name(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that application names are unique."""
        controller = Controller(config, source, runtime)
        controller.register(manifests.application())

        with pytest.raises(ValueError, match="already registered"):
            controller.register(manifests.application())

    @pytest.mark.asyncio
    async def test_register_while_running(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that an application registered at runtime gets its own worker."""
        source.commit(manifests.REPO_URL, [manifests.configmap()])
        controller = Controller(config, source, runtime)

        async with running(controller):
            await asyncio.sleep(0)
            controller.register(manifests.application(automated=True))
            await controller.wait_idle("shop", timeout=5.0)

        assert controller.get_status("shop").phase == AppPhase.SYNCED
        assert [a.name for a in controller.applications()] == ["shop"]

    @pytest.mark.asyncio
    async def test_update_policy(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a changed sync policy applies to the next pass."""
        controller, _ = _controller(config, source, runtime)
        assert await controller.reconcile_now("shop") is None

        application = controller.update_policy("shop", SyncPolicy(automated=True))
        operation = await controller.reconcile_now("shop")

        assert application.sync_policy.automated is True
        assert operation.phase == OperationPhase.SUCCEEDED

    @pytest.mark.asyncio
    async def test_deregister_without_cascade(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that deregistering leaves resources in place and records the orphaning."""
        controller, _ = _controller(config, source, runtime, automated=True)
        await controller.reconcile_now("shop")
        subscription = controller.subscribe()

        assert await controller.deregister("shop") is None

        assert set(runtime.objects) == {CFG, APP}
        assert controller.applications() == []
        with pytest.raises(ApplicationNotFound):
            controller.get_status("shop")
        events = [e for e in subscription.drain() if e.type == EventType.APPLICATION_DEREGISTERED]
        assert [e.message for e in events] == ["Orphaned 2 tracked resources"]

    @pytest.mark.asyncio
    async def test_deregister_with_cascade(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that a cascading deregistration prunes every tracked resource."""
        controller, _ = _controller(config, source, runtime, automated=True)
        await controller.reconcile_now("shop")
        subscription = controller.subscribe()

        operation = await controller.deregister("shop", cascade=True)

        assert operation.trigger == TriggerKind.TEARDOWN
        assert operation.phase == OperationPhase.SUCCEEDED
        assert runtime.calls_of(ActionType.DELETE) == [APP, CFG]
        assert runtime.objects == {}
        assert controller.applications() == []
        events = [e for e in subscription.drain() if e.type == EventType.APPLICATION_DEREGISTERED]
        assert [e.message for e in events] == ["Teardown pruned 2 resources"]

    @pytest.mark.asyncio
    async def test_failed_teardown_keeps_application(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that an application stays registered when its teardown fails."""
        controller, _ = _controller(config, source, runtime, automated=True)
        await controller.reconcile_now("shop")
        runtime.fail_action(
            CFG, PermissionDeniedError("configmaps is forbidden"), action_type=ActionType.DELETE
        )

        operation = await controller.deregister("shop", cascade=True)

        assert operation.phase == OperationPhase.FAILED
        assert [a.name for a in controller.applications()] == ["shop"]
        assert controller.get_status("shop").phase == AppPhase.FAILED


class TestHistoryAndEvents:
    """Tests for operation history and published events."""

    @pytest.mark.asyncio
    async def test_history_most_recent_first(
        self, tmp_path: Path, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test that history is bounded and newest first."""
        config = make_config(tmp_path, history_limit=2)
        controller, _ = _controller(config, source, runtime)

        operations = [await controller.reconcile_now("shop", MANUAL) for _ in range(3)]

        history = controller.list_history("shop")
        assert [op.id for op in history] == [operations[2].id, operations[1].id]
        assert controller.list_history("shop", limit=1) == [operations[2]]

    @pytest.mark.asyncio
    async def test_phase_events(
        self, config: Config, source: InMemorySource, runtime: InMemoryRuntime
    ) -> None:
        """Test the events published for one successful sync."""
        controller = Controller(config, source, runtime)
        subscription = controller.subscribe()
        source.commit(manifests.REPO_URL, [manifests.configmap()])
        controller.register(manifests.application(automated=True))

        await controller.reconcile_now("shop")

        events = subscription.drain()
        assert events[0].type == EventType.APPLICATION_REGISTERED
        assert [e.phase for e in events if e.type == EventType.OPERATION_PHASE] == [
            "Pending",
            "Running",
            "Succeeded",
        ]
        assert [e.phase for e in events if e.type == EventType.APPLICATION_PHASE] == [
            "Syncing",
            "Synced",
        ]
        assert [e.resource for e in events if e.type == EventType.ACTION_COMPLETED] == [str(CFG)]
