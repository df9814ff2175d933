"""Plan controller.

Keeps status.latest pointing at the highest revision of a plan and removes
plans once their last revision is gone.
"""

from __future__ import annotations

import logging

from .conditions import ConditionManager
from .events import Severity
from .finalizers import Finalizer
from .manager import Controller
from .models import DEFAULT_PLAN_CONDITIONS, Plan
from .revisions import VersionParseError, latest_revision
from .runner import IgnoreError, Result, RunContext, Step
from .status import CONDITION_READY

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "plan.terraform.convergence.dev"


class PlanController(Controller):
    """Reconciles Plan resources."""

    name = CONTROLLER_NAME
    kind = Plan

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.finalizer = Finalizer(self.store, CONTROLLER_NAME)

    async def converge(self, plan: Plan) -> Result:
        if self.finalizer.is_deletion_candidate(plan):
            return await self.run(plan, [self.finalizer.ensure_removed])

        return await self.run(
            plan,
            [
                self.finalizer.ensure_present,
                self.ensure_latest_on_plan(plan),
                self.ensure_plan_deleted(plan),
            ],
            DEFAULT_PLAN_CONDITIONS,
        )

    def ensure_latest_on_plan(self, plan: Plan) -> Step:
        """Record the highest revision on status.latest."""
        cond = ConditionManager(plan, CONDITION_READY, self.recorder)

        async def step(ctx: RunContext) -> Result | None:
            if not plan.spec.revisions:
                return None

            try:
                latest = latest_revision(plan.spec.revisions)
            except VersionParseError as e:
                cond.action_required(f"Failed to sort the revisions in plan: {plan.name}, error: {e}")
                raise IgnoreError(str(e)) from e

            plan.status.latest = latest.model_copy()
            return None

        return step

    def ensure_plan_deleted(self, plan: Plan) -> Step:
        """Delete a plan that no longer lists any revision."""
        cond = ConditionManager(plan, CONDITION_READY, self.recorder)

        async def step(ctx: RunContext) -> Result | None:
            if plan.spec.revisions:
                return None

            try:
                await ctx.store.delete(plan)
            except Exception as e:
                cond.failed(e, "Failed to delete plan, as it no longer has any revisions")
                raise

            logger.info("deleted plan without revisions", extra={"plan": plan.name})
            self.recorder.record(plan, Severity.NORMAL, "DeletedPlan", "Plan has been deleted")
            return None

        return step
