from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Hashable

from gateway_operator.src.metrics import METRICS


class WorkQueue:
    """Deduplicating work queue with per-key serialization and backoff.

    A key is handed to at most one worker at a time: adding a key that is
    being processed parks it until :meth:`done`, at which point it is queued
    again. Keys already waiting are not queued twice.

    Key internal state:
        ``_queue`` / ``_queued``
            Keys ready to be handed out, in arrival order.
        ``_processing``
            Keys currently held by a worker.
        ``_dirty``
            Keys re-added while being processed.
        ``_delayed``
            Heap of ``(due_at, seq, key)`` for :meth:`add_after`.
        ``_failures``
            Consecutive rate-limited requeues per key, reset by :meth:`forget`.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._queued: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._dirty: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._seq = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.workqueue_depth.set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._update_depth()
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Add *key* once *delay* seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._seq), key))
            self._cond.notify_all()

    def backoff_delay(self, key: Hashable) -> float:
        """Delay the next rate-limited add of *key* would use."""
        with self._cond:
            failures = self._failures.get(key, 0)
        return min(self.max_delay, self.base_delay * float(2**failures))

    def add_rate_limited(self, key: Hashable) -> None:
        """Add *key* after a per-key exponential backoff (base delay doubling, capped)."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        self.add_after(key, min(self.max_delay, self.base_delay * float(2**failures)))

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def _promote_due_locked(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready and hand it out.

        Returns ``None`` on shutdown or when *timeout* elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.monotonic()
                self._promote_due_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key
                if self._shutting_down:
                    return None

                wait: float | None = None
                if self._delayed:
                    wait = max(0.0, self._delayed[0][0] - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, key: Hashable) -> None:
        """Release *key*; a re-add parked while it was processed is queued now."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._add_locked(key)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._delayed.clear()
            self._cond.notify_all()
