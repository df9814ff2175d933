"""Fleet-wide drift admission.

Decides whether a configuration may be put through a drift check right now.
The decision is an ordered list of named gates evaluated first-match-wins;
any gate that fires defers the configuration until the next check interval.
Only a configuration that passes every gate is admitted.

Gates, in order:
    disabled-or-deleting  drift detection off, or deletion requested
    no-conditions         nothing reported yet
    missing-plan/apply    plan or apply condition absent
    plan/apply-failed     failed for the current generation
    plan/apply-in-progress
    plan/apply-incomplete not completed for the current generation
    plan/apply-recent     transitioned less than the drift interval ago
    fleet-threshold       too large a share of the fleet already drifting

Evaluation is pure: the caller supplies the fleet snapshot and the clock.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from .models import (
    CONDITION_TERRAFORM_APPLY,
    CONDITION_TERRAFORM_PLAN,
    DRIFT_ANNOTATION,
    ApiObject,
    Configuration,
)
from .status import Condition, utcnow

DEFAULT_CHECK_INTERVAL = timedelta(minutes=5)
DEFAULT_DRIFT_INTERVAL = timedelta(hours=3)
DEFAULT_DRIFT_THRESHOLD = 0.10


@dataclass(frozen=True)
class DriftSettings:
    """Tunables of the drift admission.

    Attributes:
        check_interval: How often a deferred configuration is re-evaluated.
        drift_interval: Minimum quiet time since the last plan or apply.
        threshold: Largest share of the fleet allowed to drift at once.
    """

    check_interval: timedelta = DEFAULT_CHECK_INTERVAL
    drift_interval: timedelta = DEFAULT_DRIFT_INTERVAL
    threshold: float = DEFAULT_DRIFT_THRESHOLD


@dataclass(frozen=True)
class FleetSnapshot:
    """How many configurations exist and how many are drifting."""

    total: int
    running: int

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 0.0
        return self.running / self.total

    @classmethod
    def from_resources(cls, items: Iterable[ApiObject]) -> FleetSnapshot:
        """Count every resource, and those carrying a drift annotation."""
        total = 0
        running = 0
        for item in items:
            total += 1
            if item.metadata.annotations.get(DRIFT_ANNOTATION):
                running += 1
        return cls(total=total, running=running)


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of evaluating the gates.

    Attributes:
        admitted: True when no gate fired.
        gate: Name of the gate that fired, if any.
        requeue_after: When to evaluate again; zero when admitted.
    """

    admitted: bool
    gate: str | None = None
    requeue_after: timedelta = timedelta(0)


@dataclass(frozen=True)
class GateContext:
    """Everything a gate predicate may look at."""

    configuration: Configuration
    fleet: FleetSnapshot
    settings: DriftSettings
    now: datetime

    @property
    def generation(self) -> int:
        return self.configuration.generation

    @property
    def plan(self) -> Condition | None:
        return self.configuration.status.get_condition(CONDITION_TERRAFORM_PLAN)

    @property
    def apply(self) -> Condition | None:
        return self.configuration.status.get_condition(CONDITION_TERRAFORM_APPLY)

    def is_recent(self, condition: Condition | None) -> bool:
        """True if the condition transitioned within the drift interval."""
        if condition is None or condition.last_transition_time is None:
            return False
        return condition.last_transition_time + self.settings.drift_interval > self.now


class Gate(NamedTuple):
    """A named predicate; firing defers the configuration."""

    name: str
    fires: Callable[[GateContext], bool]


def _fleet_saturated(ctx: GateContext) -> bool:
    return ctx.fleet.total > 1 and ctx.fleet.fraction >= ctx.settings.threshold


DRIFT_GATES: tuple[Gate, ...] = (
    Gate(
        "disabled-or-deleting",
        lambda c: not c.configuration.spec.enable_drift_detection or c.configuration.is_deleting(),
    ),
    Gate("no-conditions", lambda c: not c.configuration.status.conditions),
    Gate("missing-plan", lambda c: c.plan is None),
    Gate("missing-apply", lambda c: c.apply is None),
    Gate("plan-failed", lambda c: c.plan.is_failed(c.generation)),
    Gate("apply-failed", lambda c: c.apply.is_failed(c.generation)),
    Gate("plan-in-progress", lambda c: c.plan.in_progress()),
    Gate("apply-in-progress", lambda c: c.apply.in_progress()),
    Gate("plan-incomplete", lambda c: not c.plan.is_complete(c.generation)),
    Gate("apply-incomplete", lambda c: not c.apply.is_complete(c.generation)),
    Gate("plan-recent", lambda c: c.is_recent(c.plan)),
    Gate("apply-recent", lambda c: c.is_recent(c.apply)),
    Gate("fleet-threshold", _fleet_saturated),
)


def evaluate(
    configuration: Configuration,
    fleet: FleetSnapshot,
    *,
    settings: DriftSettings | None = None,
    now: datetime | None = None,
    gates: Sequence[Gate] = DRIFT_GATES,
) -> AdmissionDecision:
    """Run the gates against a configuration.

    Args:
        configuration: Candidate for a drift check.
        fleet: Snapshot of every configuration of the kind.
        settings: Intervals and threshold; defaults apply when omitted.
        now: Evaluation time; the current UTC time when omitted.
        gates: Gate list, evaluated in order.

    Returns:
        The decision; not admitted as soon as one gate fires.
    """
    settings = settings or DriftSettings()
    ctx = GateContext(
        configuration=configuration,
        fleet=fleet,
        settings=settings,
        now=now or utcnow(),
    )

    for gate in gates:
        if gate.fires(ctx):
            return AdmissionDecision(admitted=False, gate=gate.name, requeue_after=settings.check_interval)

    return AdmissionDecision(admitted=True)
