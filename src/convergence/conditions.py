"""Condition registration and transition bookkeeping.

A ConditionManager wraps one condition of one resource. Every helper takes a
snapshot of the condition, applies the mutation, and stamps
lastTransitionTime only when any field actually changed, so repeating the
same transition is a no-op.

Mutations are in-memory only; the convergence runner persists the status
once per run.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .events import EventRecorder, Severity
from .models import StatusAware
from .status import (
    CONDITION_READY,
    Condition,
    ConditionSpec,
    ConditionStatus,
    LastReconcileStatus,
    Reason,
    utcnow,
)

logger = logging.getLogger(__name__)


def ensure_conditions_registered(conditions: Iterable[ConditionSpec], resource: StatusAware) -> None:
    """Register the conditions a kind reports, once.

    Conditions already present are left untouched, so calling this on every
    reconciliation is safe.

    Args:
        conditions: Condition specs of the resource kind.
        resource: Resource to register them on.
    """
    status = resource.get_common_status()

    if status.last_reconcile is None:
        status.last_reconcile = LastReconcileStatus()
    if status.last_success is None:
        status.last_success = LastReconcileStatus()

    for spec in conditions:
        if status.has_condition(spec.type):
            continue
        status.conditions.append(
            Condition(
                type=spec.type,
                name=spec.name or spec.type,
                status=spec.default_status,
                reason=Reason.NOT_DETERMINED,
                last_transition_time=utcnow(),
            )
        )


def get_condition(resource: StatusAware, condition_type: str) -> Condition | None:
    """Return the condition of the given type on the resource, or None."""
    return resource.get_common_status().get_condition(condition_type)


class ConditionManager:
    """Mutates a single condition on a resource.

    Usage:
        cond = ConditionManager(plan, CONDITION_READY, recorder)
        cond.action_required(f"Revision {version!r} is not valid semver")
    """

    def __init__(
        self,
        resource: StatusAware,
        condition_type: str = CONDITION_READY,
        recorder: EventRecorder | None = None,
    ) -> None:
        self._resource = resource
        self._type = condition_type
        self._recorder = recorder

    @property
    def condition(self) -> Condition:
        """The managed condition, appended to the status if never registered."""
        status = self._resource.get_common_status()
        condition = status.get_condition(self._type)
        if condition is None:
            condition = Condition(type=self._type, name=self._type)
            status.conditions.append(condition)
        return condition

    def transition(
        self,
        status: ConditionStatus,
        reason: Reason,
        message: str,
        detail: str = "",
    ) -> Condition:
        """Set the condition and stamp the transition time if anything changed.

        Args:
            status: New status.
            reason: New reason.
            message: Human readable message.
            detail: Underlying error text, if any.

        Returns:
            The mutated condition.
        """
        condition = self.condition
        original = condition.model_copy()

        condition.observed_generation = self._resource.generation
        condition.status = status
        condition.reason = reason
        condition.message = message
        condition.detail = detail

        if condition != original:
            condition.last_transition_time = utcnow()

        self._log(condition)

        if self._recorder is not None and condition.reason == Reason.ACTION_REQUIRED:
            self._recorder.record(self._resource, Severity.WARNING, "Action Required", condition.message)

        return condition

    def _log(self, condition: Condition) -> None:
        extra = {
            "kind": self._resource.kind.lower(),
            "resource_name": self._resource.key.name,
            "namespace": self._resource.key.namespace,
            "condition": condition.type,
            "reason": condition.reason.value,
        }

        match condition.reason:
            case Reason.DELETING:
                logger.info("resource is deleting", extra=extra)
            case Reason.READY:
                if condition.type == CONDITION_READY:
                    logger.info("resource is ready", extra=extra)
            case Reason.WARNING | Reason.ACTION_REQUIRED:
                logger.warning(condition.message, extra=extra)
            case Reason.ERROR:
                logger.error(condition.message, extra={**extra, "error": condition.detail})

    def success(self, message: str) -> Condition:
        return self.transition(ConditionStatus.TRUE, Reason.READY, message)

    def failed(self, err: BaseException | None, message: str) -> Condition:
        """Mark the condition errored, keeping the error text as detail."""
        detail = str(err) if err is not None else self.condition.detail
        return self.transition(ConditionStatus.FALSE, Reason.ERROR, message, detail)

    def action_required(self, message: str) -> Condition:
        """Mark the condition as needing a human to intervene.

        Callers pair this with IGNORE or a slow requeue, never a tight retry.
        """
        return self.transition(ConditionStatus.FALSE, Reason.ACTION_REQUIRED, message)

    def warning(self, message: str) -> Condition:
        return self.transition(ConditionStatus.FALSE, Reason.WARNING, message)

    def in_progress(self, message: str) -> Condition:
        return self.transition(ConditionStatus.FALSE, Reason.IN_PROGRESS, message)

    def deleting(self, message: str) -> Condition:
        return self.transition(ConditionStatus.FALSE, Reason.DELETING, message)

    def disabled(self, message: str) -> Condition:
        return self.transition(ConditionStatus.FALSE, Reason.DISABLED, message)
