"""Status and condition shapes shared by every reconciled resource.

Every resource kind embeds a CommonStatus. Conditions are unique by type,
order-preserving but order-insignificant. No behaviour beyond queries lives
here; mutation goes through conditions.ConditionManager.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ConditionStatus(str, Enum):
    """Tri-state status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Reason(str, Enum):
    """Closed set of reasons a condition can carry."""

    NOT_DETERMINED = "NotDetermined"
    WARNING = "Warning"
    ERROR = "Error"
    IN_PROGRESS = "InProgress"
    READY = "Ready"
    DISABLED = "Disabled"
    COMPLETE = "Complete"
    ACTION_REQUIRED = "ActionRequired"
    DELETING = "Deleting"
    ERROR_DELETING = "ErrorDeleting"
    DELETED = "Deleted"


# Ready describes the overall status of the resource; every kind registers it
CONDITION_READY = "Ready"

DELETING_REASONS = frozenset({Reason.DELETING, Reason.DELETED, Reason.ERROR_DELETING})


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Read a timestamp without an offset as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ConditionSpec(BaseModel):
    """Shape of a condition registered onto a resource status.

    Attributes:
        type: Stable condition identifier, e.g. "TerraformPlan".
        name: Display label; the type is used when empty.
        default_status: Status the condition starts with.
    """

    model_config = {"extra": "ignore", "frozen": True}

    type: str
    name: str = ""
    default_status: ConditionStatus = ConditionStatus.FALSE


class Condition(BaseModel):
    """Current observed state of one aspect of a resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: ConditionStatus = ConditionStatus.FALSE
    observed_generation: int = Field(0, alias="observedGeneration")
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")
    reason: Reason = Reason.NOT_DETERMINED
    message: str = ""
    name: str = ""
    detail: str = ""

    @field_validator("last_transition_time")
    @classmethod
    def validate_last_transition_time(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    def is_complete(self, generation: int) -> bool:
        """True when the condition succeeded for the given generation."""
        return self.status == ConditionStatus.TRUE and self.observed_generation == generation

    def is_failed(self, generation: int) -> bool:
        """True when the condition errored for the given generation."""
        return (
            self.status == ConditionStatus.FALSE
            and self.reason == Reason.ERROR
            and self.observed_generation == generation
        )

    def in_progress(self) -> bool:
        return self.reason == Reason.IN_PROGRESS

    def is_deleting(self) -> bool:
        """True for a False condition carrying one of the deleting reasons.

        Deletion is a negative-polarity condition: the thing being deleted is
        not available, hence status False.
        """
        return self.status == ConditionStatus.FALSE and self.reason in DELETING_REASONS


class LastReconcileStatus(BaseModel):
    """Generation and time of a reconciliation."""

    model_config = {"extra": "ignore"}

    generation: int = 0
    time: datetime | None = None

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class CommonStatus(BaseModel):
    """Status fields common to every resource kind."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    conditions: list[Condition] = Field(default_factory=list)
    last_reconcile: LastReconcileStatus | None = Field(None, alias="lastReconcile")
    last_success: LastReconcileStatus | None = Field(None, alias="lastSuccess")

    def get_condition(self, condition_type: str) -> Condition | None:
        """Return the condition of the given type, or None."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def has_condition(self, condition_type: str) -> bool:
        return self.get_condition(condition_type) is not None

    def is_complete(self, condition_type: str, generation: int) -> bool:
        condition = self.get_condition(condition_type)
        if condition is None:
            return False
        return condition.is_complete(generation)

    def in_condition(self, condition_type: str) -> bool:
        """True if the condition is present and True."""
        condition = self.get_condition(condition_type)
        if condition is None:
            return False
        return condition.status == ConditionStatus.TRUE
