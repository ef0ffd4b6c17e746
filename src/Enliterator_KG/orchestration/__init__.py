"""Task scheduling for pipeline work and embedding job monitoring."""

from .queue import (
    ADVANCE_TASK,
    FALLBACK_TASK,
    MONITOR_TASK,
    RUN_TASK,
    DelayedTaskQueue,
    QueuedTask,
)
from .worker import PipelineWorker, RetryPolicy, WorkerMetrics

__all__ = [
    "ADVANCE_TASK",
    "DelayedTaskQueue",
    "FALLBACK_TASK",
    "MONITOR_TASK",
    "PipelineWorker",
    "QueuedTask",
    "RUN_TASK",
    "RetryPolicy",
    "WorkerMetrics",
]
