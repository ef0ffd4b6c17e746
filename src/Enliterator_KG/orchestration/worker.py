"""Background worker consuming the delayed task queue."""

from __future__ import annotations

import math
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from random import random
from typing import Any

import structlog

from Enliterator_KG.config.settings import WorkerSettings
from Enliterator_KG.pipeline.errors import BatchBusyError
from Enliterator_KG.utils.logging import bind_pipeline_context

from .queue import DelayedTaskQueue, QueuedTask

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[Mapping[str, Any]], Any]


@dataclass(slots=True)
class RetryPolicy:
    """Retry policy with exponential backoff and jitter."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.1

    def delay(self, attempt: int) -> float:
        attempt = max(attempt, 1)
        delay = self.base_delay_seconds * math.pow(self.multiplier, attempt - 1)
        jitter = delay * self.jitter_ratio * (random() - 0.5) * 2
        return max(delay + jitter, self.base_delay_seconds * 0.5)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


@dataclass
class WorkerMetrics:
    processed: int = 0
    failed: int = 0
    requeued: int = 0


@dataclass
class PipelineWorker:
    """Runs due tasks on a thread pool.

    Tasks of different batches run concurrently. A task that finds its batch
    held by another unit of work is published again after
    ``busy_retry_seconds``.
    """

    queue: DelayedTaskQueue
    handlers: Mapping[str, TaskHandler]
    settings: WorkerSettings = field(default_factory=WorkerSettings)
    metrics: WorkerMetrics = field(default_factory=WorkerMetrics)
    _stopped: threading.Event = field(default_factory=threading.Event, init=False)

    def shutdown(self) -> None:
        self._stopped.set()

    def health(self) -> dict[str, object]:
        return {
            "stopped": self._stopped.is_set(),
            "pending": self.queue.pending(),
            "metrics": self.metrics.__dict__.copy(),
        }

    def run_once(self) -> int:
        """Run every task that is due now; returns how many were run."""
        if self._stopped.is_set():
            return 0
        tasks = list(self.queue.due())
        if not tasks:
            return 0
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
            list(pool.map(self._execute, tasks))
        return len(tasks)

    def drain(self, *, max_rounds: int = 100) -> int:
        """Run due tasks until none are left due, for the CLI and tests."""
        total = 0
        for _ in range(max_rounds):
            ran = self.run_once()
            if not ran:
                break
            total += ran
        return total

    def serve(self) -> None:
        logger.info("orchestration.worker.started", max_workers=self.settings.max_workers)
        while not self._stopped.is_set():
            if not self.run_once():
                self._stopped.wait(self.settings.poll_interval_seconds)
        logger.info("orchestration.worker.stopped", **self.metrics.__dict__)

    def _execute(self, queued: QueuedTask) -> None:
        handler = self.handlers.get(queued.task)
        if handler is None:
            logger.error("orchestration.worker.unknown_task", task=queued.task)
            self.metrics.failed += 1
            return
        batch_id = queued.payload.get("batch_id") or queued.key
        with bind_pipeline_context(
            batch_id=batch_id,
            correlation_id=queued.payload.get("correlation_id"),
            stage=queued.payload.get("stage"),
        ):
            try:
                handler(queued.payload)
            except BatchBusyError:
                self.queue.publish(
                    queued.task,
                    queued.payload,
                    delay=self.settings.busy_retry_seconds,
                    key=queued.key,
                    attempts=queued.attempts + 1,
                )
                self.metrics.requeued += 1
                logger.info("orchestration.worker.batch_busy", task=queued.task, attempts=queued.attempts + 1)
                return
            except Exception as exc:
                # Batch state and operator logs were written by the handler.
                self.metrics.failed += 1
                logger.error(
                    "orchestration.worker.task_failed",
                    task=queued.task,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return
        self.metrics.processed += 1


__all__ = ["PipelineWorker", "RetryPolicy", "TaskHandler", "WorkerMetrics"]
