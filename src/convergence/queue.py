"""Per-controller work queue of resource keys.

Semantics follow the classic controller work queue:

- a key is handed to at most one worker at a time
- adding a key that is already queued is a no-op
- adding a key while it is being processed marks it dirty; it is queued
  again when the worker calls done()
- add_rate_limited() backs off per key, exponentially, until forget()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Hashable

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0


class ShutDownError(Exception):
    """Raised by get() once the queue has been shut down."""

    pass


class WorkQueue:
    """Deduplicating asyncio work queue with delayed and rate-limited adds."""

    def __init__(
        self,
        name: str,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        self.name = name
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._has_items = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue a key for processing."""
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            return

        self._queue.append(key)
        self._has_items.set()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue a key once delay seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def add_rate_limited(self, key: Hashable) -> None:
        """Queue a key after its current backoff, then double the backoff."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        self.add_after(key, delay)

    def forget(self, key: Hashable) -> None:
        """Reset the backoff of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Hashable:
        """Wait for the next key and mark it as processing.

        Raises:
            ShutDownError: If the queue is shut down.
        """
        while not self._queue:
            if self._shutting_down:
                raise ShutDownError(self.name)
            self._has_items.clear()
            await self._has_items.wait()

        if self._shutting_down:
            raise ShutDownError(self.name)

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark a key as processed; requeue it if it was re-added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._has_items.set()

    def shutdown(self) -> None:
        """Stop handing out keys and cancel pending delayed adds."""
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._has_items.set()
        logger.debug("work queue shut down", extra={"queue": self.name, "pending": len(self._queue)})
