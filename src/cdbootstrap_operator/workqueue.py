"""De-duplicating work queue of resource keys.

Semantics follow the client-go workqueue:

* a key is queued at most once, however many times it is added;
* a key handed out by ``get`` is *processing* until ``done`` is called and
  is never handed to a second worker meanwhile;
* an add for a processing key is dropped when it carries no newer
  generation than the pass in flight, otherwise the key is marked
  superseded and re-queued by ``done``;
* a dropped add leaves a pending ``add_after`` retry of the key in place;
* ``add_after`` parks a key until its delay elapses on the queue's clock.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

Item = Tuple[str, Optional[int]]


def _newer(generation: Optional[int], than: Optional[int]) -> bool:
    if generation is None:
        return False
    return than is None or generation > than


class WorkQueue:
    """Thread-safe queue of resource keys."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Dict[str, Optional[int]] = {}
        self._processing: Dict[str, Optional[int]] = {}
        self._scheduled: Dict[str, float] = {}
        self._waiting: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # -------------------------------------------------------------------------
    # Producers
    # -------------------------------------------------------------------------

    def add(self, key: str, generation: Optional[int] = None) -> bool:
        """Queue ``key``. Returns False when the add was absorbed as a duplicate."""
        with self._cond:
            return self._add(key, generation)

    def _add(self, key: str, generation: Optional[int]) -> bool:
        if self._shutdown:
            return False

        if key in self._processing:
            if key not in self._dirty and not _newer(generation, self._processing[key]):
                # Dropped, so a pending retry of this key must survive
                logger.debug(f"Ignoring duplicate event for in-flight key {key}")
                return False
            # From here on the key runs again once done() is called
            self._scheduled.pop(key, None)
            if key in self._dirty:
                if _newer(generation, self._dirty[key]):
                    self._dirty[key] = generation
                return False
            self._dirty[key] = generation
            return True

        self._scheduled.pop(key, None)
        if key in self._dirty:
            if _newer(generation, self._dirty[key]):
                self._dirty[key] = generation
            return False

        self._dirty[key] = generation
        self._queue.append(key)
        self._cond.notify()
        return True

    def add_after(self, key: str, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            ready_at = self._clock() + delay
            current = self._scheduled.get(key)
            if current is not None and current <= ready_at:
                return
            self._scheduled[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify()

    def forget(self, key: str) -> None:
        """Drop every queued or scheduled occurrence of ``key``."""
        with self._cond:
            self._scheduled.pop(key, None)
            self._dirty.pop(key, None)
            if key in self._queue:
                self._queue.remove(key)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    # -------------------------------------------------------------------------
    # Consumers
    # -------------------------------------------------------------------------

    def _promote_ready(self) -> Optional[float]:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            ready_at, _, key = self._waiting[0]
            if self._scheduled.get(key) != ready_at:
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            del self._scheduled[key]
            self._add(key, None)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Item]:
        """Next ``(key, generation)`` to process, or None on shutdown/timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                next_ready = self._promote_ready()
                if self._queue:
                    key = self._queue.popleft()
                    generation = self._dirty.pop(key)
                    self._processing[key] = generation
                    return key, generation

                wait = next_ready
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Mark ``key`` finished; re-queue it if it was superseded meanwhile."""
        with self._cond:
            self._processing.pop(key, None)
            if key in self._dirty and key not in self._queue:
                self._queue.append(key)
                self._cond.notify()

    def superseded(self, key: str) -> bool:
        """True when a newer event for the in-flight ``key`` is waiting."""
        with self._cond:
            return key in self._processing and key in self._dirty

    def processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def scheduled_at(self, key: str) -> Optional[float]:
        with self._cond:
            return self._scheduled.get(key)
