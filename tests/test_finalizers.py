"""Tests for finalizer bookkeeping."""

from datetime import UTC, datetime

import pytest

from convergence.finalizers import EMPTY_RETRY_INTERVAL, Finalizer
from convergence.models import FINALIZER_DELETE_DEPENDENTS, Plan
from convergence.runner import REQUEUE_IMMEDIATE, RunContext
from store_mock import InMemoryStore, make_plan

FINALIZER = "plan.terraform.convergence.dev"


def deleting_plan(*finalizers: str) -> Plan:
    plan = make_plan()
    plan.metadata.finalizers = list(finalizers)
    plan.metadata.deletion_timestamp = datetime.now(UTC)
    return plan


class TestDeletionCandidate:
    """Tests for Finalizer.is_deletion_candidate."""

    @pytest.mark.parametrize(
        "finalizers",
        [(), (FINALIZER,), (FINALIZER, FINALIZER_DELETE_DEPENDENTS)],
    )
    def test_accepted_sets(self, finalizers: tuple[str, ...]) -> None:
        """Only ours, optionally with foreground deletion, qualifies."""
        finalizer = Finalizer(InMemoryStore(), FINALIZER)

        assert finalizer.is_deletion_candidate(deleting_plan(*finalizers))

    def test_foreign_finalizer_blocks(self) -> None:
        """Another controller's finalizer means it is not our turn."""
        finalizer = Finalizer(InMemoryStore(), FINALIZER)

        assert not finalizer.is_deletion_candidate(deleting_plan(FINALIZER, "other.example.com"))

    def test_live_object_is_not_candidate(self) -> None:
        """An object without a deletion timestamp is never a candidate."""
        finalizer = Finalizer(InMemoryStore(), FINALIZER)

        assert not finalizer.is_deletion_candidate(make_plan())


class TestFinalizerSteps:
    """Tests for the finalizer steps against the store."""

    @pytest.mark.asyncio
    async def test_ensure_present_adds_and_requeues(self, store: InMemoryStore) -> None:
        """The marker is persisted and the chain requeued."""
        plan = store.seed(make_plan())
        finalizer = Finalizer(store, FINALIZER)

        result = await finalizer.ensure_present(RunContext(resource=plan, store=store))

        assert result == REQUEUE_IMMEDIATE
        stored = store.peek(Plan, plan.name)
        assert stored.metadata.finalizers == [FINALIZER]
        assert plan.metadata.resource_version == stored.metadata.resource_version

    @pytest.mark.asyncio
    async def test_ensure_present_is_idempotent(self, store: InMemoryStore) -> None:
        """A marker already present leads to no write."""
        plan = make_plan()
        plan.metadata.finalizers = [FINALIZER]
        plan = store.seed(plan)
        finalizer = Finalizer(store, FINALIZER)

        result = await finalizer.ensure_present(RunContext(resource=plan, store=store))

        assert result is None
        assert store.count("update") == 0

    @pytest.mark.asyncio
    async def test_ensure_removed_releases_object(self, store: InMemoryStore) -> None:
        """Stripping the last finalizer of a deleting object removes it."""
        plan = store.seed(deleting_plan(FINALIZER))
        finalizer = Finalizer(store, FINALIZER)

        result = await finalizer.ensure_removed(RunContext(resource=plan, store=store))

        assert result is None
        assert store.peek(Plan, plan.name) is None

    @pytest.mark.asyncio
    async def test_ensure_empty_waits_for_others(self, store: InMemoryStore) -> None:
        """Foreign finalizers keep the chain waiting."""
        finalizer = Finalizer(store, FINALIZER)

        waiting = await finalizer.ensure_empty(RunContext(resource=deleting_plan(FINALIZER, "other"), store=store))
        clear = await finalizer.ensure_empty(RunContext(resource=deleting_plan(FINALIZER), store=store))

        assert waiting.requeue_after == EMPTY_RETRY_INTERVAL
        assert clear is None
