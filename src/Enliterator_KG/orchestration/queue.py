"""In-process delayed task queue used to schedule pipeline work.

Tasks become available at ``available_at`` and are consumed in that order.
The embedding monitor uses delayed tasks to recheck provider jobs without
holding a worker thread across the wait.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]

ADVANCE_TASK = "advance"
RUN_TASK = "run"
MONITOR_TASK = "monitor"
FALLBACK_TASK = "fallback"


@dataclass(order=True)
class QueuedTask:
    """One scheduled unit of work."""

    sort_key: tuple[float, int] = field(init=False, repr=False)
    task: str = field(compare=False)
    payload: dict[str, Any] = field(compare=False)
    available_at: float = field(compare=False)
    key: str | None = field(default=None, compare=False)
    attempts: int = field(default=0, compare=False)
    sequence: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        self.sort_key = (self.available_at, self.sequence)


class DelayedTaskQueue:
    """Heap of tasks ordered by availability time.

    Example:
        >>> queue = DelayedTaskQueue(clock=lambda: 100.0)
        >>> _ = queue.publish("monitor", {"job_ref_id": "ejob-000001"}, delay=60)
        >>> list(queue.due())
        []
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or time.time
        self._heap: list[QueuedTask] = []
        self._lock = threading.Lock()
        self._sequence = itertools.count()

    def now(self) -> float:
        return self._clock()

    def publish(
        self,
        task: str,
        payload: dict[str, Any],
        *,
        delay: float = 0.0,
        available_at: float | None = None,
        key: str | None = None,
        attempts: int = 0,
    ) -> QueuedTask:
        with self._lock:
            queued = QueuedTask(
                task=task,
                payload=dict(payload),
                available_at=available_at if available_at is not None else self.now() + max(delay, 0.0),
                key=key,
                attempts=attempts,
                sequence=next(self._sequence),
            )
            heapq.heappush(self._heap, queued)
        logger.debug(
            "orchestration.queue.published",
            task=task,
            key=key,
            delay=round(queued.available_at - self.now(), 3),
        )
        return queued

    def due(self, *, max_tasks: int | None = None) -> Iterator[QueuedTask]:
        """Pop tasks whose availability time has passed."""
        consumed = 0
        while max_tasks is None or consumed < max_tasks:
            with self._lock:
                if not self._heap or self._heap[0].available_at > self.now():
                    return
                queued = heapq.heappop(self._heap)
            consumed += 1
            yield queued

    def pending(self) -> int:
        with self._lock:
            return len(self._heap)

    def peek(self) -> QueuedTask | None:
        with self._lock:
            return self._heap[0] if self._heap else None

    def scheduled(self, task: str | None = None) -> list[QueuedTask]:
        with self._lock:
            return sorted(queued for queued in self._heap if task is None or queued.task == task)

    def discard(self, *, key: str) -> int:
        with self._lock:
            kept = [queued for queued in self._heap if queued.key != key]
            removed = len(self._heap) - len(kept)
            heapq.heapify(kept)
            self._heap = kept
        return removed


__all__ = [
    "ADVANCE_TASK",
    "Clock",
    "DelayedTaskQueue",
    "FALLBACK_TASK",
    "MONITOR_TASK",
    "QueuedTask",
    "RUN_TASK",
]
