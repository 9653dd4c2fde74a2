"""Tests for core data models."""

import pytest
from pydantic import ValidationError

from sync_kernel.models import (
    ApplicationSpec,
    Classification,
    DesiredStateSource,
    IgnoreDifference,
    ReconcilerConfig,
    ResourceDefinition,
    ResourceKey,
    RetryStrategy,
    SourceStatus,
    SyncPolicy,
    SyncState,
    SyncWindow,
    SyncWindowKind,
)
from sync_kernel.models.sync import classification_counts

from helpers import config_map, deployment


class TestResourceKey:
    def test_string_form_namespaced(self):
        assert str(ResourceKey(kind="Deployment", namespace="demo", name="api")) == "Deployment/demo/api"

    def test_string_form_cluster_scoped(self):
        assert str(ResourceKey(kind="Namespace", name="demo")) == "Namespace/demo"

    def test_hashable_and_equal_by_value(self):
        a = ResourceKey(kind="Service", namespace="demo", name="api")
        b = ResourceKey(kind="Service", namespace="demo", name="api")
        assert a == b
        assert len({a, b}) == 1

    def test_parse(self):
        assert ResourceKey.parse("ConfigMap/demo/old-config") == ResourceKey(
            kind="ConfigMap", namespace="demo", name="old-config"
        )
        assert ResourceKey.parse("ClusterIssuer/letsencrypt").namespace == ""

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            ResourceKey.parse("just-a-name")


class TestResourceDefinition:
    def test_key(self):
        resource = deployment("api", namespace="demo")
        assert resource.key == ResourceKey(kind="Deployment", namespace="demo", name="api")

    def test_cluster_scoped(self):
        assert ResourceDefinition(kind="Namespace", name="demo").cluster_scoped
        assert not config_map("settings").cluster_scoped

    def test_desired_copy_strips_server_fields(self):
        resource = deployment("api", namespace="demo").model_copy(update={"resource_version": 7})
        copy = resource.desired_copy()
        assert copy.resource_version is None
        assert copy.spec == resource.spec
        copy.spec["spec"]["replicas"] = 5
        assert resource.spec["spec"]["replicas"] == 1


class TestDesiredStateSource:
    def test_namespaced_resources_inherit_source_namespace(self):
        source = DesiredStateSource(
            name="demo",
            revision="r1",
            namespace="demo",
            resources=(deployment("api"), ResourceDefinition(kind="Namespace", name="demo")),
        )
        keys = [r.key for r in source.resources]
        assert keys[0].namespace == "demo"
        assert keys[1].namespace == ""

    def test_duplicate_keys_rejected(self):
        with pytest.raises(ValidationError):
            DesiredStateSource(
                name="demo",
                revision="r1",
                resources=(config_map("a"), config_map("a", {"x": "y"})),
            )

    def test_immutable(self):
        source = DesiredStateSource(name="demo", revision="r1")
        with pytest.raises(ValidationError):
            source.revision = "r2"

    def test_namespaces_include_cluster_scope(self):
        source = DesiredStateSource(
            name="demo",
            revision="r1",
            namespace="demo",
            resources=(
                config_map("a"),
                config_map("b", namespace="monitoring"),
                ResourceDefinition(kind="ClusterIssuer", name="letsencrypt"),
            ),
        )
        assert source.namespaces() == ["", "demo", "monitoring"]


class TestPolicy:
    def test_defaults_are_conservative(self):
        policy = SyncPolicy()
        assert not policy.prune
        assert not policy.self_heal
        assert not policy.automated

    def test_retry_delay_is_exponential_and_capped(self):
        retry = RetryStrategy(backoff_seconds=5, factor=2, max_backoff_seconds=12)
        assert retry.delay_for(1) == 5
        assert retry.delay_for(2) == 10
        assert retry.delay_for(3) == 12

    def test_sync_window_requires_valid_cron(self):
        with pytest.raises(ValidationError):
            SyncWindow(kind=SyncWindowKind.DENY, schedule="not a cron", duration_seconds=60)

    def test_ignored_pointers_match_kind_and_name(self):
        policy = SyncPolicy(ignore_differences=[
            IgnoreDifference(kind="Deployment", json_pointers=["/spec/replicas"]),
            IgnoreDifference(kind="ConfigMap", name="generated", json_pointers=["/data"]),
        ])
        assert policy.ignored_pointers(ResourceKey(kind="Deployment", namespace="d", name="api")) == ["/spec/replicas"]
        assert policy.ignored_pointers(ResourceKey(kind="ConfigMap", namespace="d", name="other")) == []

    def test_application_spec_defaults(self):
        app = ApplicationSpec(name="demo", repo_url="https://example.com/repo.git")
        assert app.target_revision == "HEAD"
        assert app.policy == SyncPolicy()


class TestReconcilerModels:
    def test_config_defaults(self):
        config = ReconcilerConfig()
        assert config.max_parallel_operations >= 1
        assert config.tracking_label == "app.kubernetes.io/instance"

    def test_config_rejects_zero_workers(self):
        with pytest.raises(ValidationError):
            ReconcilerConfig(max_parallel_operations=0)

    def test_status_starts_unknown(self):
        status = SourceStatus(name="demo")
        assert status.sync_state is None
        assert status.consecutive_failures == 0

    def test_classification_counts_cover_every_class(self):
        counts = classification_counts([Classification.TO_CREATE, Classification.TO_CREATE])
        assert counts == {"ToCreate": 2, "ToUpdate": 0, "ToDelete": 0, "InSync": 0}

    def test_sync_state_values(self):
        assert {s.value for s in SyncState} == {"InSync", "OutOfSync", "Syncing", "Error"}
