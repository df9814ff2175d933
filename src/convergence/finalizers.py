"""Finalizer bookkeeping for deletion gating.

A finalizer is an opaque marker that blocks the store from physically
removing an object. Controllers add theirs before doing any external work and
strip it once cleanup has finished; the store deletes the object when the
finalizer list becomes empty.

State machine:
    Active --(deletion requested)--> Deleting --(cleanup ok, marker stripped)--> removed
    Active --(marker absent)--> Active (marker added, requeued)
"""

from __future__ import annotations

import logging
from datetime import timedelta

from .models import FINALIZER_DELETE_DEPENDENTS, ApiObject
from .runner import REQUEUE_IMMEDIATE, Result, RunContext
from .store import ResourceStore

logger = logging.getLogger(__name__)

# Requeue interval while foreign finalizers are still attached
EMPTY_RETRY_INTERVAL = timedelta(seconds=30)


class Finalizer:
    """Manages one finalizer value on behalf of a controller."""

    def __init__(self, store: ResourceStore, value: str) -> None:
        self._store = store
        self.value = value

    def add(self, resource: ApiObject) -> None:
        """Add the marker in memory; no-op if present."""
        if self.value not in resource.metadata.finalizers:
            resource.metadata.finalizers.append(self.value)

    def remove(self, resource: ApiObject) -> None:
        """Strip the marker in memory; no-op if absent."""
        resource.metadata.finalizers = [f for f in resource.metadata.finalizers if f != self.value]

    def is_present(self, resource: ApiObject) -> bool:
        return self.value in resource.metadata.finalizers

    def need_to_add(self, resource: ApiObject) -> bool:
        """True for a live object that does not carry the marker yet."""
        return not resource.is_deleting() and not self.is_present(resource)

    def is_deletion_candidate(self, resource: ApiObject) -> bool:
        """True when the object is being deleted and only we are blocking it.

        Accepted finalizer sets are: none, ours alone, or ours together with
        the store's own foreground-deletion marker.
        """
        if not resource.is_deleting():
            return False

        finalizers = set(resource.metadata.finalizers)
        return finalizers in (
            set(),
            {self.value},
            {self.value, FINALIZER_DELETE_DEPENDENTS},
        )

    async def ensure_present(self, ctx: RunContext) -> Result | None:
        """Add the marker and persist it, then requeue to continue on a fresh copy."""
        resource = ctx.resource
        if not self.need_to_add(resource):
            return None

        self.add(resource)
        await self._update(resource)
        logger.debug(
            "added finalizer",
            extra={"kind": resource.kind, "resource_name": resource.name, "finalizer": self.value},
        )
        return REQUEUE_IMMEDIATE

    async def ensure_removed(self, ctx: RunContext) -> Result | None:
        """Strip the marker and persist it so the store may remove the object."""
        resource = ctx.resource
        if not self.is_present(resource):
            return None

        self.remove(resource)
        await self._update(resource)
        logger.debug(
            "removed finalizer",
            extra={"kind": resource.kind, "resource_name": resource.name, "finalizer": self.value},
        )
        return None

    async def ensure_empty(self, ctx: RunContext) -> Result | None:
        """Wait until every other finalizer has been removed."""
        others = [f for f in ctx.resource.metadata.finalizers if f != self.value]
        if others:
            return Result(requeue_after=EMPTY_RETRY_INTERVAL)
        return None

    async def _update(self, resource: ApiObject) -> None:
        updated = await self._store.update(resource)
        # Carry the new resource version so the status patch at the end of the
        # run is computed against what is stored
        resource.metadata.resource_version = updated.metadata.resource_version
