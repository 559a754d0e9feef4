from __future__ import annotations

import heapq
import itertools
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Any

from metacollector.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class WorkQueue:
    """De-duplicating work queue that hands each key to at most one worker at a time.

    Semantics follow the controller work-queue pattern:

    * a key added while already queued is not queued twice;
    * a key added while a worker processes it is marked dirty and re-queued
      when that worker calls :meth:`done`, never handed to a second worker;
    * :meth:`retry` re-adds a key after a bounded exponential backoff
      (1 s doubling to ``max_backoff_seconds``) with jitter, and
      :meth:`forget` resets the backoff after a success.
    """

    def __init__(
        self,
        name: str,
        max_backoff_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._delayed: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._failures: dict[Hashable, int] = {}
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _publish_depth(self) -> None:
        METRICS.queue_depth.labels(collector=self.name).set(len(self._queue))

    def _add_locked(self, key: Hashable) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._publish_depth()
        self._cond.notify()

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            due_at = self._clock() + delay_seconds
            heapq.heappush(self._delayed, (due_at, next(self._sequence), key))
            self._cond.notify()

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - now)

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Return the next key to process, or ``None`` on timeout or shutdown."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    self._publish_depth()
                    return key
                if self._shutdown:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._publish_depth()
                self._cond.notify()

    def retry(self, key: Hashable) -> float:
        """Schedule *key* again after its next backoff delay; return the delay used."""
        with self._cond:
            attempt = self._failures.get(key, 0) + 1
            self._failures[key] = attempt
        backoff = min(self.max_backoff_seconds, float(2 ** (attempt - 1)))
        jittered = backoff * (0.5 + random.random())  # noqa: S311
        self.add_after(key, jittered)
        return jittered

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def failures(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


def run_worker(
    work_queue: WorkQueue,
    reconcile: Callable[[Any], Any],
    stop_event: threading.Event,
    poll_seconds: float = 1.0,
) -> None:
    """Drain *work_queue* through *reconcile* until *stop_event* is set.

    Failed keys are logged and re-queued with backoff; the error never
    leaves the worker.
    """
    while not stop_event.is_set():
        key = work_queue.get(timeout=poll_seconds)
        if key is None:
            continue
        try:
            reconcile(key)
        except Exception:
            delay = work_queue.retry(key)
            METRICS.reconcile_errors_total.labels(collector=work_queue.name).inc()
            LOGGER.exception(
                "Reconcile of %s %s failed; retrying in %.1fs (attempt %d)",
                work_queue.name,
                key,
                delay,
                work_queue.failures(key),
            )
        else:
            work_queue.forget(key)
        finally:
            work_queue.done(key)
