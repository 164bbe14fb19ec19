"""In-process task queue with retries, timeouts and crash-safe persistence.

Single process only: state lives in memory and is snapshotted to one JSON
file. Work is dispatched FIFO with at most ``concurrency`` handlers running.
"""

from content_tasks.taskqueue.models import (
    HandlerMeta,
    TaskQueueError,
    TaskQueueStats,
    TaskStatus,
    TaskView,
)
from content_tasks.taskqueue.queue import TaskQueue

__all__ = [
    "HandlerMeta",
    "TaskQueue",
    "TaskQueueError",
    "TaskQueueStats",
    "TaskStatus",
    "TaskView",
]
