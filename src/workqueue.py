"""
Work queue - Deduplicating, rate-limited queue of reconcile requests.

A key is held at most once in the queue and is never handed to two workers
at the same time: a key added while it is being processed is parked and
re-queued when the worker calls done().
"""

import asyncio
import logging
import random
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """
    Per-key exponential backoff with jitter.

    The delay for a key is base_delay * 2**failures, capped at max_delay and
    spread by ±jitter_factor.
    """

    # Cap on the exponent applied to base_delay.
    MAX_EXPONENT = 10

    def __init__(
        self,
        base_delay: float = 60.0,
        max_delay: float = 3600.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._failures: Dict[Hashable, int] = {}

    def when(self, key: Hashable) -> float:
        """Return the delay for the next retry of key and record the failure."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1

        delay = min(
            self.base_delay * (2 ** min(failures, self.MAX_EXPONENT)), self.max_delay
        )
        return delay * (1 + random.uniform(-self.jitter_factor, self.jitter_factor))

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)


class WorkQueue:
    """
    asyncio work queue keyed by object identity.

    Usage from a worker:

        key = await queue.get()
        if key is None:
            return  # shut down
        try:
            ...
        finally:
            queue.done(key)
    """

    def __init__(self, rate_limiter: Optional[ExponentialBackoff] = None):
        self.rate_limiter = rate_limiter or ExponentialBackoff()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._waiting: Dict[Hashable, Tuple[float, asyncio.TimerHandle]] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        """Queue key unless it is already queued."""
        if self._shutting_down:
            return
        if key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            # Re-queued by done() once the current worker finishes.
            return

        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: Hashable, delay: float) -> None:
        """
        Queue key once delay seconds have elapsed.

        If key is already waiting, the earlier of the two deadlines wins.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay

        existing = self._waiting.get(key)
        if existing is not None:
            existing_ready_at, handle = existing
            if existing_ready_at <= ready_at:
                return
            handle.cancel()

        handle = loop.call_later(delay, self._fire, key)
        self._waiting[key] = (ready_at, handle)

    def add_rate_limited(self, key: Hashable) -> None:
        """Queue key after its backoff delay."""
        delay = self.rate_limiter.when(key)
        logger.debug(f"Requeueing {key} in {delay:.1f}s")
        self.add_after(key, delay)

    def forget(self, key: Hashable) -> None:
        """Reset the backoff for key after a successful reconcile."""
        self.rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.rate_limiter.num_requeues(key)

    def _fire(self, key: Hashable) -> None:
        self._waiting.pop(key, None)
        self.add(key)

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next key and mark it as being processed.

        Returns:
            The next key, or None once the queue has been shut down
        """
        while not self._queue:
            if self._shutting_down:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()

        key = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark key as no longer being processed."""
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._wakeup.set()

    def shutdown(self) -> None:
        """Stop accepting keys and release every waiting worker."""
        self._shutting_down = True
        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._queue.clear()
        self._dirty.clear()
        self._wakeup.set()
