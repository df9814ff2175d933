"""In-memory resource store for controller testing.

This module provides a mock implementation of the cluster resource store so
the controllers, the runner and the manager can be exercised without a
cluster.

Key Features:
- Deep-copied object state keyed by kind, namespace and name
- Resource versions, generations and optimistic concurrency
- Finalizer-gated deletion
- Watch streams for the manager
- Error injection for testing failure paths
- Event capture through RecordingEventRecorder

Usage:
    from store_mock import InMemoryStore, RecordingEventRecorder

    store = InMemoryStore()
    store.seed(plan)
    controller = PlanController(store, RecordingEventRecorder())
    await controller.reconcile(plan.key)

    assert store.peek(Plan, "plan").status.latest.version == "0.0.2"
"""

from .driver import settle
from .factories import (
    make_cloudresource,
    make_condition,
    make_configuration,
    make_plan,
    make_provider,
    make_revision,
    make_secret,
)
from .recorder import RecordedEvent, RecordingEventRecorder
from .store import InMemoryStore

__all__ = [
    "InMemoryStore",
    "RecordedEvent",
    "RecordingEventRecorder",
    "make_cloudresource",
    "make_condition",
    "make_configuration",
    "make_plan",
    "make_provider",
    "make_revision",
    "make_secret",
    "settle",
]
