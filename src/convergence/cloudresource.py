"""CloudResource controller.

A cloud resource selects a plan revision and supplies overrides; this
controller stamps out the Configuration implementing it, keeps that
configuration in step with the revision and the overrides, mirrors its
status back, and advertises when the plan offers a newer revision.

Deletion removes the configuration first and waits for it to disappear
before the finalizer is released.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from .conditions import ConditionManager
from .events import Severity
from .finalizers import Finalizer
from .manager import Controller, Watch, annotations_changed, any_of, generation_changed, resource_version_changed
from .models import (
    API_VERSION,
    CLOUD_RESOURCE_NAME_LABEL,
    CONDITION_CONFIGURATION_READY,
    CONDITION_CONFIGURATION_STATUS,
    DEFAULT_CLOUD_RESOURCE_CONDITIONS,
    REVISION_LABEL,
    REVISION_NAME_LABEL,
    REVISION_PLAN_NAME_LABEL,
    CloudResource,
    Configuration,
    ConfigurationSpec,
    ObjectKey,
    ObjectMeta,
    OwnerReference,
    Plan,
    PlanReference,
    ResourceStatus,
    Revision,
)
from .revisions import VersionParseError, latest_version, version_less_than
from .runner import IgnoreError, Result, RunContext, Step
from .status import CONDITION_READY
from .store import WatchEvent, get_if_exists

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "cloudresource.terraform.convergence.dev"

# Wait applied while a plan or revision the resource refers to is missing
MISSING_REFERENCE_RETRY = timedelta(minutes=5)
# Poll interval while the configuration is being deleted
DELETION_POLL_INTERVAL = timedelta(seconds=5)

NO_UPDATE_AVAILABLE = "None"


@dataclass
class _State:
    """What earlier steps of a run found, for the later ones."""

    plan: Plan | None = None
    revision: Revision | None = None
    configuration: Configuration | None = None


def build_configuration_spec(cloudresource: CloudResource, revision: Revision) -> ConfigurationSpec:
    """Merge a revision's configuration template with a cloud resource's overrides.

    Variables are layered: the revision's variables, then the default of every
    revision input that declares one, then the cloud resource's variables.
    """
    template = revision.spec.configuration
    overrides = cloudresource.spec

    variables: dict[str, Any] = copy.deepcopy(template.variables) if template.variables else {}
    for item in revision.spec.inputs:
        if item.default is not None and item.default.value is not None:
            variables[item.key] = copy.deepcopy(item.default.value)
    if overrides.variables:
        variables.update(copy.deepcopy(overrides.variables))

    return ConfigurationSpec(
        module=template.module,
        enable_auto_approval=overrides.enable_auto_approval,
        enable_drift_detection=overrides.enable_drift_detection,
        plan=PlanReference(name=overrides.plan.name, revision=overrides.plan.revision),
        provider_ref=overrides.provider_ref or template.provider_ref,
        terraform_version=overrides.terraform_version,
        value_from=[*template.value_from, *overrides.value_from],
        variables=variables or None,
        write_connection_secret_to_ref=(
            overrides.write_connection_secret_to_ref or template.write_connection_secret_to_ref
        ),
    )


class CloudResourceController(Controller):
    """Reconciles CloudResource resources."""

    name = CONTROLLER_NAME
    kind = CloudResource

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.finalizer = Finalizer(self.store, CONTROLLER_NAME)

    def watches(self) -> list[Watch]:
        return [
            Watch(CloudResource, self.accepts),
            Watch(Plan, generation_changed, self.cloudresources_for_plan),
            Watch(Configuration, resource_version_changed, self.cloudresource_for_configuration),
        ]

    def accepts(self, event: WatchEvent) -> bool:
        return any_of(annotations_changed, generation_changed)(event)

    async def cloudresources_for_plan(self, event: WatchEvent) -> list[ObjectKey]:
        """Every cloud resource built from the changed plan."""
        items = await self.store.list(CloudResource)
        return [item.key for item in items if item.spec.plan.name == event.obj.name]

    async def cloudresource_for_configuration(self, event: WatchEvent) -> list[ObjectKey]:
        """The cloud resource owning the changed configuration, if any."""
        name = event.obj.metadata.labels.get(CLOUD_RESOURCE_NAME_LABEL)
        if not name:
            return []
        logger.debug(
            "configuration change will trigger cloudresource reconcile",
            extra={"configuration": event.obj.name, "cloudresource": name, "namespace": event.obj.namespace},
        )
        return [ObjectKey(name, event.obj.namespace)]

    async def converge(self, cloudresource: CloudResource) -> Result:
        if self.finalizer.is_deletion_candidate(cloudresource):
            return await self.run(
                cloudresource,
                [
                    self.ensure_configuration_removed(cloudresource),
                    self.finalizer.ensure_removed,
                ],
            )

        state = _State()
        return await self.run(
            cloudresource,
            [
                self.finalizer.ensure_present,
                self.ensure_plan_exists(cloudresource, state),
                self.ensure_revision_exists(cloudresource, state),
                self.ensure_configuration_exists(cloudresource, state),
                self.ensure_update_status(cloudresource, state),
                self.ensure_configuration_status(cloudresource, state),
            ],
            DEFAULT_CLOUD_RESOURCE_CONDITIONS,
        )

    def ensure_plan_exists(self, cloudresource: CloudResource, state: _State) -> Step:
        cond = ConditionManager(cloudresource, CONDITION_READY, self.recorder)

        async def step(ctx: RunContext) -> Result | None:
            try:
                plan = await get_if_exists(ctx.store, Plan, cloudresource.spec.plan.name)
            except Exception as e:
                cond.failed(e, "Failed to retrieve the cloud resource plan")
                raise

            if plan is None:
                cond.action_required(f"Cloud resource plan {cloudresource.spec.plan.name!r} does not exist")
                return Result(requeue_after=MISSING_REFERENCE_RETRY)

            state.plan = plan
            return None

        return step

    def ensure_revision_exists(self, cloudresource: CloudResource, state: _State) -> Step:
        cond = ConditionManager(cloudresource, CONDITION_READY, self.recorder)
        version = cloudresource.spec.plan.revision

        async def step(ctx: RunContext) -> Result | None:
            reference = state.plan.get_revision(version)
            if reference is None:
                cond.action_required(f"Revision: {version!r} does not exist in plan (spec.plan.revision)")
                return Result(requeue_after=MISSING_REFERENCE_RETRY)

            try:
                revision = await get_if_exists(ctx.store, Revision, reference.name)
            except Exception as e:
                cond.failed(e, "Failed to retrieve the cloud resource revision")
                raise

            if revision is None:
                cond.action_required(f"Revision: {version!r} does not exist or has been removed")
                return Result(requeue_after=MISSING_REFERENCE_RETRY)

            state.revision = revision
            return None

        return step

    def ensure_configuration_exists(self, cloudresource: CloudResource, state: _State) -> Step:
        """Create the configuration, or bring the existing one up to date."""
        cond = ConditionManager(cloudresource, CONDITION_READY, self.recorder)
        ready = ConditionManager(cloudresource, CONDITION_CONFIGURATION_READY, self.recorder)

        async def step(ctx: RunContext) -> Result | None:
            revision = state.revision

            try:
                existing = await ctx.store.list(
                    Configuration,
                    namespace=cloudresource.namespace,
                    labels={CLOUD_RESOURCE_NAME_LABEL: cloudresource.name},
                )
            except Exception as e:
                cond.failed(e, "Failed to retrieve the cloud resource configuration")
                raise

            if len(existing) > 1:
                cond.action_required("Multiple configurations found for cloud resource")
                return Result(requeue_after=MISSING_REFERENCE_RETRY)

            labels = {
                CLOUD_RESOURCE_NAME_LABEL: cloudresource.name,
                REVISION_PLAN_NAME_LABEL: revision.spec.plan.name,
                REVISION_LABEL: revision.spec.plan.revision,
                REVISION_NAME_LABEL: revision.name,
            }
            owner = OwnerReference(
                api_version=API_VERSION,
                kind=CloudResource.kind,
                name=cloudresource.name,
                uid=cloudresource.metadata.uid,
            )
            spec = build_configuration_spec(cloudresource, revision)

            if existing:
                current = existing[0]
                original = current.model_copy(deep=True)

                current.spec = spec
                current.metadata.labels = {**current.metadata.labels, **labels}
                current.metadata.annotations = {**current.metadata.annotations, **cloudresource.metadata.annotations}
                current.metadata.owner_references = [owner]

                try:
                    updated = await ctx.store.patch(current, original)
                except Exception as e:
                    cond.failed(e, "Failed to patch the cloud resource configuration")
                    raise

                if updated.metadata.resource_version != original.metadata.resource_version:
                    logger.debug(
                        "cloud resource configuration has been patched",
                        extra={"configuration": current.name, "resource_version": updated.metadata.resource_version},
                    )
                    self.recorder.record(
                        cloudresource,
                        Severity.NORMAL,
                        "ConfigurationUpdated",
                        "Updated the cloud resource configuration",
                    )

                state.configuration = updated
                ready.success("Configuration has been updated")
                return None

            configuration = Configuration(
                metadata=ObjectMeta(
                    namespace=cloudresource.namespace,
                    generate_name=f"{cloudresource.name}-",
                    labels=labels,
                    annotations=dict(cloudresource.metadata.annotations),
                    owner_references=[owner],
                ),
                spec=spec,
            )
            try:
                created = await ctx.store.create(configuration)
            except Exception as e:
                cond.failed(e, "Failed to create the cloud resource configuration")
                raise

            logger.info(
                "cloud resource configuration has been created",
                extra={"configuration": created.name, "cloudresource": cloudresource.name},
            )
            state.configuration = created
            ready.success("Provisioned the Configuration")
            cloudresource.status.configuration_name = created.name
            return None

        return step

    def ensure_update_status(self, cloudresource: CloudResource, state: _State) -> Step:
        """Advertise a newer revision of the plan, if there is one."""
        cond = ConditionManager(cloudresource, CONDITION_READY, self.recorder)
        current = cloudresource.spec.plan.revision

        async def step(ctx: RunContext) -> Result | None:
            try:
                latest = latest_version(state.plan.list_versions())
                outdated = version_less_than(current, latest)
            except VersionParseError as e:
                cond.action_required(f"Failed to sort the revisions in plan: {state.plan.name}, error: {e}")
                raise IgnoreError(str(e)) from e

            gauge = self.metrics.cloudresource_update_available.labels(
                namespace=cloudresource.namespace or "", name=cloudresource.name
            )
            if outdated:
                cloudresource.status.update_available = f"Update {latest} available"
                gauge.set(1)
            else:
                cloudresource.status.update_available = NO_UPDATE_AVAILABLE
                gauge.set(0)
            return None

        return step

    def ensure_configuration_status(self, cloudresource: CloudResource, state: _State) -> Step:
        """Mirror the configuration's conditions and resource status."""

        async def step(ctx: RunContext) -> Result | None:
            configuration = state.configuration
            status = cloudresource.status

            for source in configuration.status.conditions:
                target_type = CONDITION_CONFIGURATION_STATUS if source.type == CONDITION_READY else source.type
                target = status.get_condition(target_type)
                if target is None:
                    logger.warning(
                        "condition is missing from the cloud resource status",
                        extra={"cloudresource": cloudresource.name, "condition": source.type},
                    )
                    continue

                target.status = source.status
                target.reason = source.reason
                target.message = source.message
                target.detail = source.detail
                target.observed_generation = source.observed_generation
                target.last_transition_time = source.last_transition_time

            status.configuration_name = configuration.name
            status.resource_status = configuration.status.resource_status
            status.resources = configuration.status.resources
            return None

        return step

    def ensure_configuration_removed(self, cloudresource: CloudResource) -> Step:
        """Delete the configuration and wait until it is gone."""
        cond = ConditionManager(cloudresource, CONDITION_READY, self.recorder)

        async def step(ctx: RunContext) -> Result | None:
            cloudresource.status.resource_status = ResourceStatus.DESTROYING

            name = cloudresource.status.configuration_name
            try:
                configuration = (
                    await get_if_exists(ctx.store, Configuration, name, cloudresource.namespace) if name else None
                )
            except Exception as e:
                cond.failed(e, "Failed to retrieve the configuration")
                raise

            if configuration is None:
                self.recorder.record(cloudresource, Severity.NORMAL, "Deleted", "The configuration has been deleted")
                return None

            if not configuration.is_deleting():
                try:
                    await ctx.store.delete(configuration)
                except Exception as e:
                    cond.failed(e, "Failed to delete the configuration")
                    raise
                cond.deleting("Waiting for the configuration to be deleted")
                return Result(requeue_after=DELETION_POLL_INTERVAL)

            source = configuration.status.get_condition(CONDITION_READY)
            if source is not None:
                cond.transition(source.status, source.reason, source.message)

            if configuration.status.resource_status == ResourceStatus.DESTROYING_FAILED:
                message = "Failed to delete CloudResource, please check Configuration status"
                cond.action_required(message)
                raise IgnoreError(message)

            return Result(requeue_after=DELETION_POLL_INTERVAL)

        return step
