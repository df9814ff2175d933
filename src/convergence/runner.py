"""Ordered-step convergence runner.

A reconciliation is a chain of idempotent steps executed in order against an
in-memory working copy of a resource. The runner classifies what each step
returns or raises, and persists the status delta exactly once, whatever the
exit path:

- a step returning a Result with requeue_after set pauses the chain
- ConflictError is transient: the chain stops and is retried almost at once
- IgnoreError stops the chain quietly, with no retry
- any other exception stops the chain and reaches the caller
- when every step passes, Ready is set to success and lastSuccess stamped

Steps are not resumable; an interrupted chain restarts from the top on the
next run, so every step must be safe to repeat.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from .conditions import ConditionManager, ensure_conditions_registered
from .events import EventRecorder
from .models import StatusAware
from .status import CONDITION_READY, ConditionSpec, LastReconcileStatus, utcnow
from .store import ConflictError, NotFoundError, ResourceStore, StoreError

logger = logging.getLogger(__name__)

# Message set on the Ready condition when a chain completes
RESOURCE_READY = "Resource ready"


@dataclass(frozen=True)
class Result:
    """Outcome of a step or of a whole run.

    Attributes:
        requeue_after: Delay before the resource is reconciled again;
            zero means no requeue is requested.
    """

    requeue_after: timedelta = timedelta(0)

    @property
    def requeue(self) -> bool:
        return self.requeue_after > timedelta(0)


# Used wherever a retry should happen as soon as possible
REQUEUE_IMMEDIATE = Result(requeue_after=timedelta(milliseconds=5))


class IgnoreError(Exception):
    """Raised by a step to stop the chain without an error or a retry.

    Steps raise it after recording the reason in a condition, typically
    ActionRequired, so a human can fix the input.
    """

    pass


IGNORE = IgnoreError("resource is being ignored")


class RunTimeoutError(Exception):
    """Raised when a run did not finish before its deadline."""

    pass


class StatusPatchError(Exception):
    """Raised when the status delta could not be persisted."""

    pass


@dataclass
class RunContext:
    """What a step receives: the working copy and its collaborators."""

    resource: Any
    store: ResourceStore
    recorder: EventRecorder | None = None


Step = Callable[[RunContext], Awaitable[Result | None]]


def requeue_after(delay: timedelta) -> Step:
    """Step that always pauses the chain for the given delay."""

    async def step(ctx: RunContext) -> Result:
        return Result(requeue_after=delay)

    return step


def requeue_unless(result: Result, delay: timedelta) -> Result:
    """Return result if it already requeues, otherwise requeue after delay."""
    if result.requeue:
        return result
    return Result(requeue_after=delay)


@asynccontextmanager
async def status_guard(store: ResourceStore, resource: StatusAware) -> AsyncIterator[Any]:
    """Snapshot a resource and patch its status delta on exit.

    The patch runs on normal exit and when the body raises; a cancelled body
    is not patched. A resource that disappeared meanwhile is not an error.

    Yields:
        The snapshot the patch is computed against.

    Raises:
        StatusPatchError: If the store rejects the patch, chained from the
            body's exception when there was one.
    """
    original = resource.model_copy(deep=True)  # type: ignore[attr-defined]
    try:
        yield original
    except asyncio.CancelledError:
        raise
    except Exception as err:
        _drop_idle_stamps(resource, original)
        await _persist_status(store, resource, original, cause=err)
        raise
    _drop_idle_stamps(resource, original)
    await _persist_status(store, resource, original)


def _drop_idle_stamps(resource: StatusAware, original: Any) -> None:
    """Keep the previous lastReconcile and lastSuccess when a run changed nothing else.

    A timestamp-only status change would wake every watcher of the kind,
    including the controller itself. Stamps for a new generation are kept.
    """
    status = resource.get_common_status()
    before = original.get_common_status()

    restored = {}
    for field_name in ("last_reconcile", "last_success"):
        previous = getattr(before, field_name)
        if previous is not None and previous.generation == resource.generation:
            restored[field_name] = getattr(status, field_name)
            setattr(status, field_name, previous)

    if resource != original:
        for field_name, stamped in restored.items():
            setattr(status, field_name, stamped)


async def _persist_status(
    store: ResourceStore,
    resource: StatusAware,
    original: Any,
    cause: BaseException | None = None,
) -> None:
    try:
        await store.patch_status(resource, original)
    except NotFoundError:
        logger.debug("resource gone before status patch", extra={"kind": resource.kind, "key": str(resource.key)})
    except StoreError as err:
        logger.error(
            "failed to update the status of resource",
            extra={"kind": resource.kind, "key": str(resource.key), "error": str(err)},
        )
        raise StatusPatchError(f"failed to patch status of {resource.kind} {resource.key}: {err}") from (
            cause or err
        )


class EnsureRunner:
    """Runs a step chain against a resource and persists its status.

    Usage:
        runner = EnsureRunner(store, recorder)
        result = await runner.run(plan, [finalizer.ensure_present, ensure_latest], timeout=300)
    """

    def __init__(self, store: ResourceStore, recorder: EventRecorder | None = None) -> None:
        self._store = store
        self._recorder = recorder

    async def run(
        self,
        resource: StatusAware,
        steps: Sequence[Step],
        *,
        conditions: Iterable[ConditionSpec] = (),
        timeout: float | None = None,
    ) -> Result:
        """Execute the steps in order.

        Args:
            resource: Working copy to converge; mutated in place.
            steps: Chain to execute.
            conditions: Condition specs registered on the resource before the
                first step; part of the persisted status delta.
            timeout: Deadline for the whole chain, in seconds.

        Returns:
            Result() when the chain completed or was ignored, otherwise the
            requeue requested by the step that paused it.

        Raises:
            RunTimeoutError: If the deadline expired; status is not patched.
            StatusPatchError: If the status delta could not be persisted.
            Exception: Whatever a step raised, other than conflict or ignore.
        """
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                return await self._run(resource, steps, conditions)
        except TimeoutError as err:
            if not deadline.expired():
                raise
            raise RunTimeoutError(f"{resource.kind} {resource.key} did not converge within {timeout}s") from err

    async def _run(self, resource: StatusAware, steps: Sequence[Step], conditions: Iterable[ConditionSpec]) -> Result:
        ctx = RunContext(resource=resource, store=self._store, recorder=self._recorder)
        status = resource.get_common_status()

        async with status_guard(self._store, resource):
            ensure_conditions_registered(conditions, resource)
            status.last_reconcile = LastReconcileStatus(generation=resource.generation, time=utcnow())

            for step in steps:
                try:
                    result = await step(ctx)
                except ConflictError:
                    logger.debug(
                        "conflict while converging, requeueing",
                        extra={"kind": resource.kind, "key": str(resource.key)},
                    )
                    return REQUEUE_IMMEDIATE
                except IgnoreError:
                    return Result()

                if result is not None and result.requeue:
                    return result

            ConditionManager(resource, CONDITION_READY).success(RESOURCE_READY)
            status.last_success = LastReconcileStatus(generation=resource.generation, time=utcnow())

        return Result()
