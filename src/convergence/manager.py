"""Controller manager: watches, work queues and workers.

For every registered controller the manager:
1. Lists the existing objects of its kind and queues those its watch
   predicate accepts as creations
2. Runs one task per watch, filtering events and mapping them to keys
3. Runs max_concurrent_reconciles workers draining the controller's queue

Worker outcome handling:
- reconcile raised       -> add_rate_limited (exponential backoff per key)
- result asks to requeue -> add_after(result.requeue_after)
- otherwise              -> forget (reset the backoff)

The manager runs until shutdown() is called; in-flight reconciliations are
allowed to finish, queued keys are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .events import EventRecorder, LoggingEventRecorder
from .metrics import Metrics
from .models import ApiObject, ObjectKey, Resource
from .queue import ShutDownError, WorkQueue
from .runner import EnsureRunner, Result, Step
from .status import ConditionSpec
from .store import EventType, ResourceStore, StoreError, WatchEvent, get_if_exists

logger = logging.getLogger(__name__)

# Pause before re-opening a watch that failed
WATCH_RETRY_SECONDS = 1.0


# =============================================================================
# Event predicates
# =============================================================================

Predicate = Callable[[WatchEvent], bool]


def generation_changed(event: WatchEvent) -> bool:
    """Pass creates and deletes, and updates that bumped the generation."""
    if event.type != EventType.MODIFIED or event.old is None:
        return True
    return event.old.generation != event.obj.generation


def annotations_changed(event: WatchEvent) -> bool:
    if event.type != EventType.MODIFIED or event.old is None:
        return True
    return event.old.metadata.annotations != event.obj.metadata.annotations


def resource_version_changed(event: WatchEvent) -> bool:
    if event.type != EventType.MODIFIED or event.old is None:
        return True
    return event.old.metadata.resource_version != event.obj.metadata.resource_version


def any_of(*predicates: Predicate) -> Predicate:
    """Combine predicates; the event passes if any of them passes."""

    def predicate(event: WatchEvent) -> bool:
        return any(p(event) for p in predicates)

    return predicate


# =============================================================================
# Controllers
# =============================================================================

Mapper = Callable[[WatchEvent], Awaitable[list[ObjectKey]]]


async def own_key(event: WatchEvent) -> list[ObjectKey]:
    return [event.key]


@dataclass(frozen=True)
class Watch:
    """A watched kind, the events to keep and how they map to queue keys."""

    kind: type[ApiObject]
    predicate: Predicate = generation_changed
    mapper: Mapper = field(default=own_key)


class Controller:
    """Base class of the per-kind controllers.

    Subclasses set name and kind and implement converge(), which builds the
    step chain for a loaded resource and hands it to run().
    """

    name: ClassVar[str] = ""
    kind: ClassVar[type[Resource]]

    def __init__(
        self,
        store: ResourceStore,
        recorder: EventRecorder | None = None,
        metrics: Metrics | None = None,
        *,
        timeout: float | None = None,
        max_concurrent_reconciles: int = 10,
    ) -> None:
        self.store = store
        self.recorder = recorder if recorder is not None else LoggingEventRecorder(self.name)
        self.metrics = metrics if metrics is not None else Metrics()
        self.runner = EnsureRunner(store, self.recorder)
        self.timeout = timeout
        self.max_concurrent_reconciles = max_concurrent_reconciles

    def watches(self) -> list[Watch]:
        """Watches feeding this controller's queue."""
        return [Watch(self.kind, self.accepts)]

    def accepts(self, event: WatchEvent) -> bool:
        return generation_changed(event)

    async def reconcile(self, key: ObjectKey) -> Result:
        """Load the resource behind key and converge it.

        A resource that no longer exists needs no work.
        """
        resource = await get_if_exists(self.store, self.kind, key.name, key.namespace)
        if resource is None:
            return Result()
        return await self.converge(resource)

    async def converge(self, resource: Any) -> Result:
        raise NotImplementedError

    async def run(
        self,
        resource: Resource,
        steps: Sequence[Step],
        conditions: Iterable[ConditionSpec] = (),
    ) -> Result:
        return await self.runner.run(resource, steps, conditions=conditions, timeout=self.timeout)


# =============================================================================
# Manager
# =============================================================================


class Manager:
    """Runs a set of controllers against a resource store.

    Usage:
        manager = Manager(store, [PlanController(store, recorder, metrics)], metrics=metrics)
        await manager.run()  # until manager.shutdown()
    """

    def __init__(
        self,
        store: ResourceStore,
        controllers: Sequence[Controller],
        *,
        metrics: Metrics | None = None,
        namespaces: Sequence[str] = (),
    ) -> None:
        self._store = store
        self._controllers = list(controllers)
        self._metrics = metrics if metrics is not None else Metrics()
        self._namespaces = frozenset(namespaces)
        self._queues = {c.name: WorkQueue(c.name) for c in self._controllers}
        self._shutdown_event = asyncio.Event()

    @property
    def queues(self) -> dict[str, WorkQueue]:
        return self._queues

    async def run(self) -> None:
        """Run every controller until shutdown."""
        logger.info(
            "Starting controller manager",
            extra={
                "controllers": [c.name for c in self._controllers],
                "namespaces": sorted(self._namespaces),
            },
        )

        watch_tasks: list[asyncio.Task[None]] = []
        worker_tasks: list[asyncio.Task[None]] = []

        for controller in self._controllers:
            queue = self._queues[controller.name]
            await self._enqueue_existing(controller, queue)

            for watch in controller.watches():
                watch_tasks.append(
                    asyncio.create_task(
                        self._watch(controller, queue, watch),
                        name=f"{controller.name}-watch-{watch.kind.kind}",
                    )
                )
            for index in range(controller.max_concurrent_reconciles):
                worker_tasks.append(
                    asyncio.create_task(
                        self._worker(controller, queue),
                        name=f"{controller.name}-worker-{index}",
                    )
                )

        await self._shutdown_event.wait()

        for queue in self._queues.values():
            queue.shutdown()
        for task in watch_tasks:
            task.cancel()

        await asyncio.gather(*watch_tasks, return_exceptions=True)
        await asyncio.gather(*worker_tasks)

        logger.info("Controller manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _in_scope(self, obj: ApiObject) -> bool:
        if not self._namespaces or obj.namespace is None:
            return True
        return obj.namespace in self._namespaces

    async def _enqueue_existing(self, controller: Controller, queue: WorkQueue) -> None:
        """Replay the existing objects of the controller's kind as ADDED events."""
        for watch in controller.watches():
            if watch.kind is not controller.kind:
                continue
            for obj in await self._store.list(watch.kind):
                await self._dispatch(queue, watch, WatchEvent(EventType.ADDED, obj))

    async def _dispatch(self, queue: WorkQueue, watch: Watch, event: WatchEvent) -> None:
        if not self._in_scope(event.obj) or not watch.predicate(event):
            return
        for key in await watch.mapper(event):
            queue.add(key)

    async def _watch(self, controller: Controller, queue: WorkQueue, watch: Watch) -> None:
        while not self._shutdown_event.is_set():
            try:
                async for event in self._store.watch(watch.kind):
                    await self._dispatch(queue, watch, event)
            except StoreError as e:
                logger.warning(
                    "Watch failed, reopening",
                    extra={"controller": controller.name, "watched": watch.kind.kind, "error": str(e)},
                )

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=WATCH_RETRY_SECONDS)
            except TimeoutError:
                pass

    async def _worker(self, controller: Controller, queue: WorkQueue) -> None:
        while True:
            try:
                key = await queue.get()
            except ShutDownError:
                return

            try:
                await self.process(controller, queue, key)
            finally:
                queue.done(key)

    async def process(self, controller: Controller, queue: WorkQueue, key: Any) -> None:
        """Reconcile one key and schedule its follow-up."""
        extra: dict[str, Any] = {"controller": controller.name, "key": str(key)}
        start = time.monotonic()

        try:
            result = await controller.reconcile(key)
        except Exception as e:
            self._metrics.reconcile_errors.labels(controller=controller.name).inc()
            self._metrics.reconcile_total.labels(controller=controller.name, result="error").inc()
            logger.error(
                "Reconciliation failed",
                extra={**extra, "error": str(e), "error_type": type(e).__name__, "retries": queue.num_requeues(key)},
            )
            queue.add_rate_limited(key)
            return
        finally:
            self._metrics.reconcile_duration.labels(controller=controller.name).observe(time.monotonic() - start)
            self._metrics.queue_depth.labels(controller=controller.name).set(len(queue))

        queue.forget(key)
        if result.requeue:
            self._metrics.reconcile_total.labels(controller=controller.name, result="requeue").inc()
            queue.add_after(key, result.requeue_after.total_seconds())
            logger.debug(
                "Reconciliation requeued",
                extra={**extra, "requeue_after_seconds": result.requeue_after.total_seconds()},
            )
        else:
            self._metrics.reconcile_total.labels(controller=controller.name, result="success").inc()
            logger.debug("Reconciliation complete", extra=extra)
