"""Resource store interface consumed by the convergence core.

The store itself (persistence, watches, optimistic concurrency) is an external
collaborator. This module defines the contract the engine depends on, the
errors a store raises, and the JSON merge patch helpers (RFC 7386) used to
express status and metadata deltas.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar

from .models import ApiObject, ObjectKey

T = TypeVar("T", bound=ApiObject)


class StoreError(Exception):
    """Base class for errors raised by a resource store."""

    pass


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""

    pass


class ConflictError(StoreError):
    """Raised when a write lost an optimistic-concurrency race."""

    pass


class AlreadyExistsError(StoreError):
    """Raised when creating an object whose name is taken."""

    pass


class EventType(str, Enum):
    """Kind of change delivered by a watch."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A change notification for a single object.

    Attributes:
        type: What happened to the object.
        obj: The object after the change (before it, for DELETED).
        old: The object before the change, for MODIFIED events.
    """

    type: EventType
    obj: ApiObject
    old: ApiObject | None = None

    @property
    def key(self) -> ObjectKey:
        return self.obj.key


class ResourceStore(Protocol):
    """Contract of the cluster resource store.

    All writes return the stored object with its new resource version.
    """

    async def get(self, kind: type[T], name: str, namespace: str | None = None) -> T:
        """Raises NotFoundError when absent."""
        ...

    async def list(
        self,
        kind: type[T],
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[T]: ...

    async def create(self, obj: T) -> T:
        """Assigns a name from metadata.generateName when the name is empty."""
        ...

    async def update(self, obj: T) -> T:
        """Full replace; raises ConflictError on a stale resource version."""
        ...

    async def patch(self, obj: T, merge_from: T, *, optimistic_lock: bool = False) -> T:
        """Merge patch of everything but status, computed against merge_from."""
        ...

    async def patch_status(self, obj: T, merge_from: T) -> T:
        """Merge patch of the status subresource, computed against merge_from."""
        ...

    async def delete(self, obj: ApiObject) -> None: ...

    def watch(self, kind: type[ApiObject]) -> AsyncIterator[WatchEvent]: ...


async def get_if_exists(store: ResourceStore, kind: type[T], name: str, namespace: str | None = None) -> T | None:
    """Fetch an object, returning None instead of raising NotFoundError."""
    try:
        return await store.get(kind, name, namespace)
    except NotFoundError:
        return None


# =============================================================================
# JSON Merge Patch (RFC 7386)
# =============================================================================


def create_merge_patch(original: dict[str, Any], modified: dict[str, Any]) -> dict[str, Any]:
    """Compute the merge patch turning original into modified.

    Keys removed in modified are emitted as None. Lists are replaced whole.

    Args:
        original: Document before the change.
        modified: Document after the change.

    Returns:
        The patch; empty when the documents are equal.
    """
    patch: dict[str, Any] = {}

    for key in original:
        if key not in modified:
            patch[key] = None

    for key, value in modified.items():
        if key not in original:
            patch[key] = copy.deepcopy(value)
            continue

        before = original[key]
        if isinstance(before, dict) and isinstance(value, dict):
            nested = create_merge_patch(before, value)
            if nested:
                patch[key] = nested
        elif before != value:
            patch[key] = copy.deepcopy(value)

    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply a merge patch to a document and return the result."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result
