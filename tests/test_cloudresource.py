"""Tests for the cloud resource controller."""

from datetime import UTC, datetime

import pytest

from convergence.cloudresource import (
    CONTROLLER_NAME,
    DELETION_POLL_INTERVAL,
    MISSING_REFERENCE_RETRY,
    NO_UPDATE_AVAILABLE,
    CloudResourceController,
    build_configuration_spec,
)
from convergence.metrics import Metrics
from convergence.models import (
    CLOUD_RESOURCE_NAME_LABEL,
    CONDITION_CONFIGURATION_READY,
    CONDITION_CONFIGURATION_STATUS,
    CONDITION_TERRAFORM_PLAN,
    REVISION_LABEL,
    REVISION_NAME_LABEL,
    CloudResource,
    Configuration,
    InputDefault,
    ObjectKey,
    ObjectMeta,
    ProviderReference,
    ResourceStatus,
    RevisionInput,
    ValueFromSource,
)
from convergence.runner import Result
from convergence.status import CONDITION_READY, ConditionStatus, Reason
from convergence.store import EventType, WatchEvent
from store_mock import (
    InMemoryStore,
    RecordingEventRecorder,
    make_cloudresource,
    make_condition,
    make_plan,
    make_revision,
    settle,
)


@pytest.fixture
def controller(
    store: InMemoryStore, recorder: RecordingEventRecorder, metrics: Metrics
) -> CloudResourceController:
    return CloudResourceController(store, recorder, metrics)


def seed_catalog(store: InMemoryStore, versions: dict[str, str] | None = None) -> None:
    """A database plan with one Revision object per listed version."""
    versions = versions or {"database-v1": "0.0.1"}
    store.seed(make_plan(revisions=versions))
    for name, version in versions.items():
        store.seed(make_revision(name=name, version=version, variables={"size": "small", "engine": "postgres"}))


def configurations(store: InMemoryStore) -> list[Configuration]:
    return store.objects(Configuration)


def seed_configuration(store: InMemoryStore, owner: str = "db", name: str = "db-abcde") -> Configuration:
    configuration = Configuration(
        metadata=ObjectMeta(name=name, namespace="apps", labels={CLOUD_RESOURCE_NAME_LABEL: owner}),
    )
    return store.seed(configuration)


def deleting_cloudresource(configuration_name: str | None = "db-abcde") -> CloudResource:
    cloudresource = make_cloudresource()
    cloudresource.metadata.finalizers = [CONTROLLER_NAME]
    cloudresource.metadata.deletion_timestamp = datetime.now(UTC)
    cloudresource.status.configuration_name = configuration_name
    return cloudresource


class TestBuildConfigurationSpec:
    """Tests for merging a revision template with overrides."""

    def test_variable_layering(self) -> None:
        """Revision variables, then input defaults, then overrides."""
        revision = make_revision(variables={"size": "small", "engine": "postgres", "replicas": 1})
        revision.spec.inputs = [
            RevisionInput(key="replicas", default=InputDefault(value=3)),
            RevisionInput(key="tier", default=InputDefault(value="standard")),
            RevisionInput(key="required_input", required=True),
        ]
        cloudresource = make_cloudresource(variables={"size": "large"})

        spec = build_configuration_spec(cloudresource, revision)

        assert spec.variables == {"size": "large", "engine": "postgres", "replicas": 3, "tier": "standard"}
        assert spec.module == revision.spec.configuration.module
        assert spec.plan.name == "database"
        assert spec.plan.revision == "0.0.1"

    def test_references_fall_back_to_template(self) -> None:
        """Provider and valueFrom come from both sides, the override winning."""
        revision = make_revision()
        revision.spec.configuration.provider_ref = ProviderReference(name="aws-default")
        revision.spec.configuration.value_from = [ValueFromSource(key="password", secret="db-admin")]
        cloudresource = make_cloudresource()
        cloudresource.spec.value_from = [ValueFromSource(key="token", secret="api")]

        spec = build_configuration_spec(cloudresource, revision)

        assert spec.provider_ref.name == "aws-default"
        assert [v.key for v in spec.value_from] == ["password", "token"]

        cloudresource.spec.provider_ref = ProviderReference(name="aws-team")
        assert build_configuration_spec(cloudresource, revision).provider_ref.name == "aws-team"

    def test_no_variables(self) -> None:
        """Nothing to set leaves variables unset."""
        spec = build_configuration_spec(make_cloudresource(), make_revision())

        assert spec.variables is None


class TestProvisioning:
    """Tests for creating and updating the configuration."""

    @pytest.mark.asyncio
    async def test_creates_configuration(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """A new cloud resource gets a labelled, owned configuration."""
        seed_catalog(store)
        cloudresource = store.seed(make_cloudresource(variables={"size": "large"}))

        result = await settle(controller, cloudresource.key)

        assert result == Result()
        [configuration] = configurations(store)
        assert configuration.name.startswith("db-")
        assert configuration.namespace == "apps"
        assert configuration.metadata.labels[CLOUD_RESOURCE_NAME_LABEL] == "db"
        assert configuration.metadata.labels[REVISION_LABEL] == "0.0.1"
        assert configuration.metadata.labels[REVISION_NAME_LABEL] == "database-v1"
        assert configuration.metadata.owner_references[0].name == "db"
        assert configuration.spec.variables == {"size": "large", "engine": "postgres"}

        stored = store.peek(CloudResource, "db", "apps")
        assert stored.metadata.finalizers == [CONTROLLER_NAME]
        assert stored.status.configuration_name == configuration.name
        assert stored.status.update_available == NO_UPDATE_AVAILABLE
        assert stored.status.get_condition(CONDITION_CONFIGURATION_READY).status == ConditionStatus.TRUE
        assert stored.status.get_condition(CONDITION_READY).status == ConditionStatus.TRUE

    @pytest.mark.asyncio
    async def test_second_pass_creates_nothing(
        self, store: InMemoryStore, controller: CloudResourceController, recorder: RecordingEventRecorder
    ) -> None:
        """Reconciling again finds the configuration and changes nothing."""
        seed_catalog(store)
        cloudresource = store.seed(make_cloudresource())
        await settle(controller, cloudresource.key)

        await settle(controller, cloudresource.key)

        assert len(configurations(store)) == 1
        assert store.count("create") == 1
        assert not recorder.with_reason("ConfigurationUpdated")

    @pytest.mark.asyncio
    async def test_updates_existing_configuration(
        self, store: InMemoryStore, controller: CloudResourceController, recorder: RecordingEventRecorder
    ) -> None:
        """Changed overrides are patched onto the configuration."""
        seed_catalog(store)
        seed_configuration(store)
        cloudresource = store.seed(make_cloudresource(variables={"size": "xlarge"}))

        await settle(controller, cloudresource.key)

        [configuration] = configurations(store)
        assert configuration.name == "db-abcde"
        assert configuration.spec.variables["size"] == "xlarge"
        assert len(recorder.with_reason("ConfigurationUpdated")) == 1

    @pytest.mark.asyncio
    async def test_multiple_configurations(
        self, store: InMemoryStore, controller: CloudResourceController
    ) -> None:
        """Two configurations for one cloud resource need a human."""
        seed_catalog(store)
        seed_configuration(store, name="db-one")
        seed_configuration(store, name="db-two")
        cloudresource = store.seed(make_cloudresource())

        result = await settle(controller, cloudresource.key)

        assert result.requeue_after == MISSING_REFERENCE_RETRY
        ready = store.peek(CloudResource, "db", "apps").status.get_condition(CONDITION_READY)
        assert ready.reason == Reason.ACTION_REQUIRED


class TestMissingReferences:
    """Tests for plans and revisions that do not exist."""

    @pytest.mark.asyncio
    async def test_missing_plan(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """Without the plan the resource waits and asks for action."""
        cloudresource = store.seed(make_cloudresource())

        result = await settle(controller, cloudresource.key)

        assert result.requeue_after == MISSING_REFERENCE_RETRY
        ready = store.peek(CloudResource, "db", "apps").status.get_condition(CONDITION_READY)
        assert ready.reason == Reason.ACTION_REQUIRED
        assert "database" in ready.message
        assert configurations(store) == []

    @pytest.mark.asyncio
    async def test_revision_not_in_plan(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """A version the plan does not list is reported."""
        seed_catalog(store)
        cloudresource = store.seed(make_cloudresource(revision="9.9.9"))

        result = await settle(controller, cloudresource.key)

        assert result.requeue_after == MISSING_REFERENCE_RETRY
        ready = store.peek(CloudResource, "db", "apps").status.get_condition(CONDITION_READY)
        assert "9.9.9" in ready.message

    @pytest.mark.asyncio
    async def test_revision_object_missing(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """A plan entry whose Revision was removed is reported."""
        store.seed(make_plan(revisions={"database-v1": "0.0.1"}))
        cloudresource = store.seed(make_cloudresource())

        result = await settle(controller, cloudresource.key)

        assert result.requeue_after == MISSING_REFERENCE_RETRY
        ready = store.peek(CloudResource, "db", "apps").status.get_condition(CONDITION_READY)
        assert "removed" in ready.message


class TestStatus:
    """Tests for update advertising and status mirroring."""

    @pytest.mark.asyncio
    async def test_update_available(
        self, store: InMemoryStore, controller: CloudResourceController, metrics: Metrics
    ) -> None:
        """A newer revision in the plan is advertised."""
        seed_catalog(store, {"database-v1": "0.0.1", "database-v2": "0.0.2"})
        cloudresource = store.seed(make_cloudresource(revision="0.0.1"))

        await settle(controller, cloudresource.key)

        assert store.peek(CloudResource, "db", "apps").status.update_available == "Update 0.0.2 available"
        sample = metrics.registry.get_sample_value("cloudresource_update_available", {"namespace": "apps", "name": "db"})
        assert sample == 1

    @pytest.mark.asyncio
    async def test_invalid_plan_version(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """An unparseable version in the plan stops the chain without a retry."""
        seed_catalog(store, {"database-v1": "0.0.1", "database-bad": "BAD"})
        cloudresource = store.seed(make_cloudresource())

        result = await settle(controller, cloudresource.key)

        assert result == Result()
        ready = store.peek(CloudResource, "db", "apps").status.get_condition(CONDITION_READY)
        assert ready.reason == Reason.ACTION_REQUIRED

    @pytest.mark.asyncio
    async def test_mirrors_configuration_status(
        self, store: InMemoryStore, controller: CloudResourceController
    ) -> None:
        """Configuration conditions are copied; its Ready becomes ConfigurationStatus."""
        seed_catalog(store)
        configuration = Configuration(
            metadata=ObjectMeta(name="db-abcde", namespace="apps", labels={CLOUD_RESOURCE_NAME_LABEL: "db"}),
        )
        configuration.status.conditions = [
            make_condition(CONDITION_READY, ConditionStatus.FALSE, Reason.IN_PROGRESS),
            make_condition(CONDITION_TERRAFORM_PLAN, ConditionStatus.TRUE, Reason.COMPLETE),
            make_condition("Unreported"),
        ]
        configuration.status.resource_status = ResourceStatus.RESOURCES_READY
        configuration.status.resources = 7
        store.seed(configuration)
        cloudresource = store.seed(make_cloudresource())

        await settle(controller, cloudresource.key)

        status = store.peek(CloudResource, "db", "apps").status
        assert status.get_condition(CONDITION_CONFIGURATION_STATUS).reason == Reason.IN_PROGRESS
        assert status.get_condition(CONDITION_TERRAFORM_PLAN).reason == Reason.COMPLETE
        assert status.get_condition("Unreported") is None
        assert status.resource_status == ResourceStatus.RESOURCES_READY
        assert status.resources == 7
        assert status.configuration_name == "db-abcde"


class TestDeletion:
    """Tests for tearing down the configuration."""

    @pytest.mark.asyncio
    async def test_deletes_configuration_then_releases(
        self, store: InMemoryStore, controller: CloudResourceController, recorder: RecordingEventRecorder
    ) -> None:
        """The configuration is deleted first; the finalizer goes once it is gone."""
        seed_configuration(store)
        cloudresource = store.seed(deleting_cloudresource())

        result = await controller.reconcile(cloudresource.key)

        assert result.requeue_after == DELETION_POLL_INTERVAL
        assert configurations(store) == []
        stored = store.peek(CloudResource, "db", "apps")
        assert stored.status.resource_status == ResourceStatus.DESTROYING
        assert stored.status.get_condition(CONDITION_READY).reason == Reason.DELETING

        await controller.reconcile(cloudresource.key)

        assert store.peek(CloudResource, "db", "apps") is None
        assert recorder.with_reason("Deleted")

    @pytest.mark.asyncio
    async def test_waits_for_configuration(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """A configuration still being destroyed keeps the resource waiting."""
        configuration = Configuration(
            metadata=ObjectMeta(
                name="db-abcde",
                namespace="apps",
                finalizers=["configuration.terraform.convergence.dev"],
                deletion_timestamp=datetime.now(UTC),
            ),
        )
        configuration.status.conditions = [make_condition(CONDITION_READY, ConditionStatus.FALSE, Reason.DELETING)]
        store.seed(configuration)
        cloudresource = store.seed(deleting_cloudresource())

        result = await controller.reconcile(cloudresource.key)

        assert result.requeue_after == DELETION_POLL_INTERVAL
        stored = store.peek(CloudResource, "db", "apps")
        assert stored.metadata.finalizers == [CONTROLLER_NAME]
        assert stored.status.get_condition(CONDITION_READY).reason == Reason.DELETING

    @pytest.mark.asyncio
    async def test_destroy_failed(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """A failed destroy needs a human and keeps the finalizer."""
        configuration = Configuration(
            metadata=ObjectMeta(
                name="db-abcde",
                namespace="apps",
                finalizers=["configuration.terraform.convergence.dev"],
                deletion_timestamp=datetime.now(UTC),
            ),
        )
        configuration.status.resource_status = ResourceStatus.DESTROYING_FAILED
        store.seed(configuration)
        cloudresource = store.seed(deleting_cloudresource())

        result = await controller.reconcile(cloudresource.key)

        assert result == Result()
        stored = store.peek(CloudResource, "db", "apps")
        assert stored.metadata.finalizers == [CONTROLLER_NAME]
        assert stored.status.get_condition(CONDITION_READY).reason == Reason.ACTION_REQUIRED

    @pytest.mark.asyncio
    async def test_never_provisioned(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """Without a configuration the finalizer is released at once."""
        cloudresource = store.seed(deleting_cloudresource(configuration_name=None))

        await controller.reconcile(cloudresource.key)

        assert store.peek(CloudResource, "db", "apps") is None


class TestWatchMapping:
    """Tests for mapping related objects to cloud resources."""

    @pytest.mark.asyncio
    async def test_plan_maps_to_users(self, store: InMemoryStore, controller: CloudResourceController) -> None:
        """A plan change queues every cloud resource built from it."""
        store.seed(make_cloudresource("a"))
        store.seed(make_cloudresource("b", namespace="team"))
        store.seed(make_cloudresource("c", plan="cache"))
        plan = make_plan()

        keys = await controller.cloudresources_for_plan(WatchEvent(EventType.MODIFIED, plan, plan))

        assert sorted(keys) == [ObjectKey("a", "apps"), ObjectKey("b", "team")]

    @pytest.mark.asyncio
    async def test_configuration_maps_to_owner(self, controller: CloudResourceController) -> None:
        """A configuration maps to the cloud resource named in its label."""
        labelled = Configuration(
            metadata=ObjectMeta(name="db-x", namespace="apps", labels={CLOUD_RESOURCE_NAME_LABEL: "db"})
        )
        unlabelled = Configuration(metadata=ObjectMeta(name="manual", namespace="apps"))

        assert await controller.cloudresource_for_configuration(WatchEvent(EventType.ADDED, labelled)) == [
            ObjectKey("db", "apps")
        ]
        assert await controller.cloudresource_for_configuration(WatchEvent(EventType.ADDED, unlabelled)) == []

    def test_watches(self, controller: CloudResourceController) -> None:
        """Cloud resources, plans and configurations are watched."""
        assert [w.kind.kind for w in controller.watches()] == ["CloudResource", "Plan", "Configuration"]
