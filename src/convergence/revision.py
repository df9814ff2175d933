"""Revision controller.

Publishes every revision into its plan (creating the plan on first use),
keeps count of the cloud resources using it, and withdraws it from the plan
when the revision is deleted.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from .conditions import ConditionManager
from .events import Severity
from .finalizers import Finalizer
from .manager import Controller
from .models import DEFAULT_REVISION_CONDITIONS, CloudResource, ObjectMeta, Plan, PlanRevision, Revision
from .runner import REQUEUE_IMMEDIATE, Result, RunContext, Step, requeue_unless
from .status import CONDITION_READY
from .store import get_if_exists

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "revision.terraform.convergence.dev"

# Revisions are re-checked periodically to refresh the in-use count
RESYNC_INTERVAL = timedelta(minutes=10)


class RevisionController(Controller):
    """Reconciles Revision resources."""

    name = CONTROLLER_NAME
    kind = Revision

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.finalizer = Finalizer(self.store, CONTROLLER_NAME)

    async def converge(self, revision: Revision) -> Result:
        if self.finalizer.is_deletion_candidate(revision):
            return await self.run(
                revision,
                [
                    self.ensure_revision_removed_from_plan(revision),
                    self.finalizer.ensure_removed,
                ],
            )

        result = await self.run(
            revision,
            [
                self.finalizer.ensure_present,
                self.ensure_plan_exists(revision),
                self.ensure_in_use_count(revision),
            ],
            DEFAULT_REVISION_CONDITIONS,
        )
        return requeue_unless(result, RESYNC_INTERVAL)

    def ensure_plan_exists(self, revision: Revision) -> Step:
        """Create the plan for the revision, or add the revision to it."""
        cond = ConditionManager(revision, CONDITION_READY, self.recorder)
        reference = revision.spec.plan

        async def step(ctx: RunContext) -> Result | None:
            try:
                plan = await get_if_exists(ctx.store, Plan, reference.name)
            except Exception as e:
                cond.failed(e, f"Failed to check if a configuration plan exists: {e}")
                raise

            entry = PlanRevision(name=revision.name, version=reference.revision)

            if plan is None:
                plan = Plan(metadata=ObjectMeta(name=reference.name))
                plan.spec.revisions = [entry]
                try:
                    await ctx.store.create(plan)
                except Exception as e:
                    cond.failed(e, f"Failed to create a configuration plan: {e}")
                    raise
                logger.info("created plan for revision", extra={"plan": reference.name, "revision": revision.name})
                return REQUEUE_IMMEDIATE

            if plan.has_revision(reference.revision):
                return None

            original = plan.model_copy(deep=True)
            plan.spec.revisions.append(entry)
            try:
                await ctx.store.patch(plan, original)
            except Exception as e:
                cond.failed(e, f"Failed to patch the configuration plan: {e}")
                raise
            return None

        return step

    def ensure_in_use_count(self, revision: Revision) -> Step:
        """Count the cloud resources referencing this plan revision."""
        cond = ConditionManager(revision, CONDITION_READY, self.recorder)
        reference = revision.spec.plan

        async def step(ctx: RunContext) -> Result | None:
            try:
                items = await ctx.store.list(CloudResource)
            except Exception as e:
                cond.failed(e, f"Failed to list cloud resources: {e}")
                raise

            revision.status.in_use = sum(
                1
                for item in items
                if item.spec.plan.name == reference.name and item.spec.plan.revision == reference.revision
            )
            self.metrics.revision_in_use.labels(plan=reference.name, revision=reference.revision).set(
                revision.status.in_use
            )
            return None

        return step

    def ensure_revision_removed_from_plan(self, revision: Revision) -> Step:
        """Withdraw the revision from its plan before the revision goes away."""
        cond = ConditionManager(revision, CONDITION_READY, self.recorder)
        reference = revision.spec.plan

        async def step(ctx: RunContext) -> Result | None:
            try:
                plan = await get_if_exists(ctx.store, Plan, reference.name)
            except Exception as e:
                cond.failed(e, f"Failed to check for the plan ({reference.name}) existence")
                raise

            if plan is None:
                self.recorder.record(
                    revision,
                    Severity.NORMAL,
                    "PlanNotFound",
                    f"Plan associated to revision: {reference.name} not found",
                )
                return None

            if plan.has_revision(reference.revision):
                original = plan.model_copy(deep=True)
                plan.remove_revision(reference.revision)
                try:
                    await ctx.store.patch(plan, original)
                except Exception as e:
                    cond.failed(
                        e, f"Failed to remove the revision ({reference.revision}) from the plan ({plan.name})"
                    )
                    raise

            self.recorder.record(
                revision,
                Severity.NORMAL,
                "RevisionRemoved",
                f"Revision: {reference.revision} removed from plan: {plan.name}",
            )
            return None

        return step
