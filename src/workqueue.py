"""
Work Queue - coalescing queue of reconcile requests.

An item is queued at most once no matter how often it is added, and is
never handed to two workers at the same time: adding an item while it is
being processed marks it dirty, and it is queued again when the worker
calls ``done``. Delayed adds keep only the earliest deadline per item.
"""

import asyncio
import logging
from typing import Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class WorkQueue:
    """Async work queue with per-item coalescing and delayed adds."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        # items waiting to be handed out (queued or deferred while processing)
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._timers: Dict[Hashable, Tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        """Queue an item unless it is already waiting."""
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.put_nowait(item)

    def add_after(self, item: Hashable, delay: float) -> None:
        """Queue an item after ``delay`` seconds."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timers.get(item)
        if existing is not None:
            if existing[0] <= deadline:
                return
            existing[1].cancel()
        handle = loop.call_at(deadline, self._fire, item)
        self._timers[item] = (deadline, handle)

    def _fire(self, item: Hashable) -> None:
        self._timers.pop(item, None)
        self.add(item)

    async def get(self) -> Hashable:
        """Wait for the next item and mark it as processing."""
        item = await self._queue.get()
        self._dirty.discard(item)
        self._processing.add(item)
        return item

    def done(self, item: Hashable) -> None:
        """Mark an item as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(item)
        if item in self._dirty and not self._shutting_down:
            self._queue.put_nowait(item)

    def shutdown(self) -> None:
        """Stop accepting items and drop pending delayed adds."""
        self._shutting_down = True
        logger.debug(f"Work queue shutting down, dropping {len(self._timers)} timers")
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def is_processing(self, item: Hashable) -> bool:
        return item in self._processing

    def deadline(self, item: Hashable) -> Optional[float]:
        """Loop time at which a delayed add fires, if one is pending."""
        entry = self._timers.get(item)
        return entry[0] if entry is not None else None

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down
