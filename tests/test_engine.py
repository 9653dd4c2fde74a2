"""Tests for the reconcile() contract."""

import threading

from sync_kernel.errors import ApplyRejectedError
from sync_kernel.models.policy import SyncPolicy
from sync_kernel.models.reconciler import ReconcilerConfig
from sync_kernel.models.resource import ResourceDefinition
from sync_kernel.models.source import DesiredStateSource
from sync_kernel.models.sync import Classification, OperationStatus, SyncState, SyncTrigger
from sync_kernel.reconciler.engine import Reconciler

from helpers import FAST_RETRY, ScriptedEnvironment, config_map, deployment, key, service


def _source(*resources, revision="r1") -> DesiredStateSource:
    return DesiredStateSource(name="demo", revision=revision, resources=tuple(resources))


def _policy(**kwargs) -> SyncPolicy:
    return SyncPolicy(retry=FAST_RETRY, **kwargs)


class TestReconcile:
    def setup_method(self):
        self.env = ScriptedEnvironment()
        self.reconciler = Reconciler(ReconcilerConfig(max_parallel_operations=4))

    def test_creates_missing_resources_under_any_policy(self):
        for policy in (_policy(), _policy(prune=True), _policy(self_heal=True)):
            env = ScriptedEnvironment()
            source = _source(deployment("api"), service("api"))

            result = self.reconciler.reconcile(source, env, policy)

            assert result.sync_state == SyncState.IN_SYNC
            assert result.applied["create"] == 2
            for desired in source.resources:
                assert env.get(desired.key).spec == desired.spec

    def test_idempotent(self):
        source = _source(deployment("api", replicas=2), config_map("settings"))
        policy = _policy(prune=True, self_heal=True)

        first = self.reconciler.reconcile(source, self.env, policy)
        calls_after_first = len(self.env.calls)
        second = self.reconciler.reconcile(source, self.env, policy)

        assert first.sync_state == SyncState.IN_SYNC
        assert second.sync_state == SyncState.IN_SYNC
        assert second.applied_total == 0
        assert len(self.env.calls) == calls_after_first
        assert all(r.status == OperationStatus.UNCHANGED for r in second.resources)

    def test_self_heal_restores_replicas(self):
        """Deployment/api replicas 1 -> 2 with selfHeal."""
        self.env.seed(deployment("api", replicas=1, namespace="default"))

        result = self.reconciler.reconcile(
            _source(deployment("api", replicas=2)), self.env, _policy(self_heal=True)
        )

        assert self.env.get(key("Deployment", "api")).spec["spec"]["replicas"] == 2
        assert result.sync_state == SyncState.IN_SYNC
        assert result.counts["ToUpdate"] == 1
        assert result.applied["update"] == 1

    def test_without_self_heal_drift_is_reported_only(self):
        self.env.seed(deployment("api", replicas=1, namespace="default"))

        result = self.reconciler.reconcile(
            _source(deployment("api", replicas=2)), self.env, _policy(self_heal=False)
        )

        assert self.env.get(key("Deployment", "api")).spec["spec"]["replicas"] == 1
        assert result.sync_state == SyncState.OUT_OF_SYNC
        assert result.result_for(key("Deployment", "api")).status == OperationStatus.SKIPPED
        assert self.env.actions("apply") == []

    def test_manual_sync_applies_updates_without_self_heal(self):
        self.env.seed(deployment("api", replicas=1, namespace="default"))

        result = self.reconciler.reconcile(
            _source(deployment("api", replicas=2)),
            self.env,
            _policy(self_heal=False),
            trigger=SyncTrigger.MANUAL,
        )

        assert self.env.get(key("Deployment", "api")).spec["spec"]["replicas"] == 2
        assert result.sync_state == SyncState.IN_SYNC

    def test_prune_deletes_extra_resources(self):
        """ConfigMap/old-config removed with prune."""
        self.env.seed(config_map("old-config", namespace="default"), config_map("kept", namespace="default"))

        result = self.reconciler.reconcile(_source(config_map("kept")), self.env, _policy(prune=True))

        assert self.env.get(key("ConfigMap", "old-config")) is None
        assert result.applied["delete"] == 1
        assert result.sync_state == SyncState.IN_SYNC

    def test_without_prune_extras_remain(self):
        self.env.seed(config_map("old-config", namespace="default"))

        result = self.reconciler.reconcile(_source(config_map("kept")), self.env, _policy(prune=False))

        assert self.env.get(key("ConfigMap", "old-config")) is not None
        assert result.counts["ToDelete"] == 1
        assert result.sync_state == SyncState.OUT_OF_SYNC

    def test_manual_sync_never_prunes_without_policy(self):
        self.env.seed(config_map("old-config", namespace="default"))
        self.reconciler.reconcile(
            _source(), self.env, _policy(prune=False), trigger=SyncTrigger.MANUAL
        )
        assert self.env.get(key("ConfigMap", "old-config")) is not None

    def test_rejected_resource_does_not_block_others(self):
        self.env.seed(
            deployment("api", replicas=1, namespace="default"),
            config_map("old-config", namespace="default"),
        )
        self.env.fail(key("Service", "broken"), ApplyRejectedError("spec.ports: required"))
        source = _source(
            deployment("api", replicas=2),
            service("web"),
            service("broken"),
        )

        result = self.reconciler.reconcile(source, self.env, _policy(prune=True, self_heal=True))

        assert result.sync_state == SyncState.ERROR
        assert [e.key for e in result.errors] == [key("Service", "broken")]
        assert result.errors[0].kind == "ApplyRejected"
        assert result.errors[0].attempts == 1
        assert self.env.get(key("Service", "web")) is not None
        assert self.env.get(key("Deployment", "api")).spec["spec"]["replicas"] == 2
        assert self.env.get(key("ConfigMap", "old-config")) is None

    def test_phases_run_creates_then_updates_then_deletes(self):
        self.env.seed(
            deployment("api", replicas=1, namespace="default"),
            config_map("old-config", namespace="default"),
        )
        self.env.calls.clear()

        self.reconciler.reconcile(
            _source(deployment("api", replicas=2), service("api")),
            self.env,
            _policy(prune=True, self_heal=True),
        )

        assert self.env.calls == [
            ("apply", key("Service", "api")),
            ("apply", key("Deployment", "api")),
            ("delete", key("ConfigMap", "old-config")),
        ]

    def test_cluster_scoped_resources(self):
        namespace = ResourceDefinition(kind="Namespace", name="demo")
        result = self.reconciler.reconcile(_source(namespace), self.env, _policy())
        assert result.sync_state == SyncState.IN_SYNC
        assert self.env.get(namespace.key) is not None

    def test_cancelled_pass_starts_nothing(self):
        cancel = threading.Event()
        cancel.set()

        result = self.reconciler.reconcile(_source(config_map("a")), self.env, _policy(), cancel=cancel)

        assert result.cancelled
        assert result.sync_state == SyncState.OUT_OF_SYNC
        assert self.env.calls == []

    def test_cancel_mid_pass_skips_later_phases(self):
        self.env.seed(config_map("old-config", namespace="default"))
        cancel = threading.Event()
        # Cancel while the create phase is in flight
        self.env.block(key("ConfigMap", "new"))
        threading.Thread(
            target=lambda: self.env.entered[key("ConfigMap", "new")].wait(5)
            and (cancel.set() or self.env.release(key("ConfigMap", "new")))
        ).start()

        result = self.reconciler.reconcile(
            _source(config_map("new")), self.env, _policy(prune=True), cancel=cancel
        )

        assert result.result_for(key("ConfigMap", "new")).status == OperationStatus.SUCCEEDED
        assert result.result_for(key("ConfigMap", "old-config")).status == OperationStatus.CANCELLED
        assert self.env.get(key("ConfigMap", "old-config")) is not None
        assert result.cancelled

    def test_applied_resources_carry_the_tracking_label(self):
        self.reconciler.reconcile(_source(config_map("ours")), self.env, _policy())
        assert self.env.get(key("ConfigMap", "ours")).labels == {"app.kubernetes.io/instance": "demo"}

    def test_prune_leaves_resources_of_other_sources(self):
        owned_elsewhere = config_map("theirs", namespace="default").model_copy(
            update={"labels": {"app.kubernetes.io/instance": "other-app"}}
        )
        self.env.seed(owned_elsewhere, config_map("old-config", namespace="default"))

        result = self.reconciler.reconcile(_source(config_map("ours")), self.env, _policy(prune=True))

        assert self.env.get(owned_elsewhere.key) is not None
        assert self.env.get(key("ConfigMap", "old-config")) is None
        assert result.result_for(owned_elsewhere.key) is None
        assert result.sync_state == SyncState.IN_SYNC

    def test_prune_outside_destination_needs_ownership(self):
        foreign_ns = ResourceDefinition(kind="Namespace", name="kube-system")
        stale_ns = ResourceDefinition(
            kind="Namespace", name="retired", labels={"app.kubernetes.io/instance": "demo"}
        )
        self.env.seed(foreign_ns, stale_ns)

        self.reconciler.reconcile(
            _source(ResourceDefinition(kind="Namespace", name="demo")), self.env, _policy(prune=True)
        )

        assert self.env.get(foreign_ns.key) is not None
        assert self.env.get(stale_ns.key) is None

    def test_without_tracking_label_everything_in_scope_is_pruned(self):
        reconciler = Reconciler(ReconcilerConfig(tracking_label=None))
        self.env.seed(ResourceDefinition(kind="Namespace", name="kube-system"))

        reconciler.reconcile(
            _source(ResourceDefinition(kind="Namespace", name="demo")), self.env, _policy(prune=True)
        )

        assert [r.name for r in self.env.list("")] == ["demo"]

    def test_compare_does_not_mutate(self):
        self.env.seed(config_map("old-config", namespace="default"))

        comparison = self.reconciler.compare(_source(config_map("new")), self.env, _policy(prune=True))

        assert comparison.sync_state == SyncState.OUT_OF_SYNC
        assert comparison.counts["ToCreate"] == 1
        assert comparison.counts["ToDelete"] == 1
        assert [d.classification for d in comparison.drifted()] == [
            Classification.TO_CREATE, Classification.TO_DELETE,
        ]
        assert self.env.calls == []
