from __future__ import annotations

import heapq
import time
from collections import deque
from threading import Condition
from typing import Callable

from .models import UnitKey


class WorkQueue:
    """FIFO of unit keys feeding a single consumer.

    A key that is already waiting is not queued twice, so a burst of
    notifications for one replica collapses into one reconcile. A key that
    is currently being processed can be queued again and will run after.

    Each key has at most one pending delayed add; a new delay keeps the
    earlier of the two due times, and handing the key out cancels it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = Condition()
        self._queue: deque[UnitKey] = deque()
        self._queued: set[UnitKey] = set()
        self._delayed: list[tuple[float, int, UnitKey]] = []
        # key -> due time of its one live entry in _delayed
        self._waiting: dict[UnitKey, float] = {}
        self._seq = 0
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._waiting)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutdown

    def add(self, key: UnitKey) -> bool:
        with self._cond:
            if self._shutdown or key in self._queued:
                return False
            self._queue.append(key)
            self._queued.add(key)
            self._cond.notify()
            return True

    def add_after(self, key: UnitKey, delay_s: float) -> bool:
        if delay_s <= 0:
            return self.add(key)
        with self._cond:
            if self._shutdown:
                return False
            due = self._clock() + delay_s
            current = self._waiting.get(key)
            if current is not None and current <= due:
                return True
            self._waiting[key] = due
            self._seq += 1
            heapq.heappush(self._delayed, (due, self._seq, key))
            self._cond.notify()
            return True

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            due, _, key = heapq.heappop(self._delayed)
            if self._waiting.get(key) != due:
                continue  # superseded or cancelled
            del self._waiting[key]
            if key not in self._queued:
                self._queue.append(key)
                self._queued.add(key)

    def get(self, timeout_s: float | None = None) -> UnitKey | None:
        """Next key, or None on timeout or shutdown."""
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._waiting.pop(key, None)
                    return key

                wait: float | None = None
                if self._delayed:
                    wait = max(0.0, self._delayed[0][0] - self._clock())
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def shutdown(self) -> None:
        """Stop accepting keys and wake any waiting consumer. Pending keys are dropped."""
        with self._cond:
            self._shutdown = True
            self._queue.clear()
            self._queued.clear()
            self._delayed.clear()
            self._waiting.clear()
            self._cond.notify_all()
