"""Keyed work queue with coalescing, delays and per-key exclusivity.

A key is either idle, pending (waiting to become due), in flight (handed to a
worker), or in flight and dirty (re-added while being processed). Adding a key
that is already pending or dirty never creates a second entry, so a burst of
events for one zone collapses into a single pass. A key in flight is never
handed to a second worker; if it was re-added meanwhile it becomes pending
again when the worker calls `done`.

`defer(key, until)` sets a not-before instant (used for backoff): no pass for
that key starts earlier, whatever triggered it.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple


class WorkQueue:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: List[Tuple[float, int, Hashable]] = []
        self._counter = itertools.count()
        self._due: Dict[Hashable, float] = {}
        self._processing: Set[Hashable] = set()
        self._dirty: Dict[Hashable, float] = {}
        self._not_before: Dict[Hashable, float] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)

    def _schedule(self, key: Hashable, due: float) -> None:
        due = max(due, self._not_before.get(key, 0.0))
        current = self._due.get(key)
        if current is not None and current <= due:
            return
        self._due[key] = due
        heapq.heappush(self._heap, (due, next(self._counter), key))
        self._cond.notify()

    def add(self, key: Hashable, delay: float = 0.0) -> None:
        """Enqueue `key` to become due after `delay` seconds (coalescing)."""
        with self._cond:
            if self._shutting_down:
                return
            due = self._clock() + max(0.0, delay)
            if key in self._processing:
                self._dirty[key] = min(due, self._dirty.get(key, due))
                return
            self._schedule(key, due)

    def defer(self, key: Hashable, until: float) -> None:
        """Do not start `key` before the clock reaches `until`, and run it then."""
        with self._cond:
            if self._shutting_down:
                return
            self._not_before[key] = until
            if key in self._processing:
                self._dirty[key] = until
                return
            pending = self._due.pop(key, None)
            due = until if pending is None else max(pending, until)
            self._schedule(key, due)

    def clear_deferral(self, key: Hashable) -> None:
        with self._cond:
            self._not_before.pop(key, None)

    def not_before(self, key: Hashable) -> float:
        with self._cond:
            return self._not_before.get(key, 0.0)

    def is_pending(self, key: Hashable) -> bool:
        with self._cond:
            return key in self._due or key in self._dirty

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Block until a key is due, mark it in flight and return it.

        Returns None on shutdown or when `timeout` expires.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._shutting_down:
                while self._heap:
                    due, _, key = self._heap[0]
                    if self._due.get(key) != due:
                        heapq.heappop(self._heap)
                        continue
                    break
                now = self._clock()
                wait: Optional[float] = None
                if self._heap:
                    due, _, key = self._heap[0]
                    if due <= now:
                        heapq.heappop(self._heap)
                        del self._due[key]
                        self._processing.add(key)
                        return key
                    wait = due - now
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
            return None

    def done(self, key: Hashable) -> None:
        """Release an in-flight key, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            due = self._dirty.pop(key, None)
            if due is not None and not self._shutting_down:
                self._schedule(key, due)

    def forget(self, key: Hashable) -> None:
        """Drop all scheduling state for a key that no longer exists."""
        with self._cond:
            self._due.pop(key, None)
            self._dirty.pop(key, None)
            self._not_before.pop(key, None)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
