"""Domain models for the in-process task queue."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED})

INVALID_TASK_TYPE = "invalid_task_type"
TASK_QUEUE_FULL = "task_queue_full"
TASK_QUEUE_CLOSED = "task_queue_closed"
TASK_NOT_RETRYABLE = "task_not_retryable"
TASK_HANDLER_MISSING = "task_handler_missing"
TASK_TIMEOUT = "task_timeout"
TASK_FAILED = "task_failed"
TASK_RECOVERED_AFTER_RESTART = "task_recovered_after_restart"
TASK_PERSISTENCE_FAILED = "task_persistence_failed"

_HTTP_STATUS_BY_CODE = {
    INVALID_TASK_TYPE: 400,
    TASK_NOT_RETRYABLE: 400,
    TASK_QUEUE_FULL: 429,
    TASK_QUEUE_CLOSED: 503,
}


class TaskQueueError(RuntimeError):
    """Structural queue error raised synchronously to the caller."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code
        self.http_status = _HTTP_STATUS_BY_CODE.get(code, 400)


@dataclass(slots=True, frozen=True)
class HandlerMeta:
    """Execution context passed to a handler next to the payload."""

    task_id: str
    attempt: int


@dataclass(slots=True, frozen=True)
class TaskView:
    """Read-only snapshot of a task record.

    ``payload`` and ``result`` are the record's own objects, not copies, so
    callers must not mutate them. Use ``to_dict()`` output the same way.
    """

    task_id: str
    task_type: str
    status: TaskStatus
    attempts: int
    max_attempts: int
    payload: Any
    result: Any
    last_error: str
    created_at: str
    updated_at: str
    started_at: str
    finished_at: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the persisted file's field names."""

        return {
            "id": self.task_id,
            "type": self.task_type,
            "status": self.status.value,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "payload": self.payload,
            "result": self.result,
            "lastError": self.last_error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }


@dataclass(slots=True)
class TaskRecord:
    """Durable unit of work. Mutated only by the queue under its state lock."""

    task_id: str
    task_type: str
    status: TaskStatus
    attempts: int
    max_attempts: int
    payload: Any
    created_at: str
    updated_at: str
    result: Any = None
    last_error: str = ""
    started_at: str = ""
    finished_at: str = ""

    def view(self) -> TaskView:
        return TaskView(
            task_id=self.task_id,
            task_type=self.task_type,
            status=self.status,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            payload=self.payload,
            result=self.result,
            last_error=self.last_error,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


@dataclass(slots=True)
class PersistenceStats:
    """Persistence health exposed through queue stats."""

    enabled: bool = False
    file_path: str = ""
    available: bool = True
    last_loaded_at: str = ""
    last_saved_at: str = ""
    last_error: str = ""
    last_error_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "filePath": self.file_path,
            "available": self.available,
            "lastLoadedAt": self.last_loaded_at,
            "lastSavedAt": self.last_saved_at,
            "lastError": self.last_error,
            "lastErrorAt": self.last_error_at,
        }


@dataclass(slots=True)
class TaskQueueStats:
    """Aggregate queue counters."""

    concurrency: int
    max_queue: int
    max_tasks: int
    timeout_ms: int
    total: int
    queued: int
    running: int
    succeeded: int
    failed: int
    active: int
    persistence: PersistenceStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "maxQueue": self.max_queue,
            "maxTasks": self.max_tasks,
            "timeoutMs": self.timeout_ms,
            "total": self.total,
            "queued": self.queued,
            "running": self.running,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "active": self.active,
            "persistence": self.persistence.to_dict(),
        }


@dataclass(slots=True)
class QueueState:
    """Task table, pending FIFO and finished order shared by the queue components.

    ``lock`` serializes every read and mutation of the other fields.
    """

    max_tasks: int = 2000
    tasks: dict[str, TaskRecord] = field(default_factory=dict)
    pending_ids: deque[str] = field(default_factory=deque)
    finished_order: list[str] = field(default_factory=list)
    active: int = 0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def record_finished(self, task: TaskRecord) -> None:
        self.finished_order.append(task.task_id)
        self.trim_finished()

    def trim_finished(self) -> int:
        """Evict the oldest terminal records while above ``max_tasks``."""

        evicted = 0
        while len(self.tasks) > self.max_tasks and self.finished_order:
            oldest_id = self.finished_order.pop(0)
            candidate = self.tasks.get(oldest_id)
            if candidate is None or candidate.status not in TERMINAL_STATUSES:
                continue
            del self.tasks[oldest_id]
            evicted += 1
        return evicted

    def forget_finished(self, task_id: str) -> None:
        self.finished_order = [item for item in self.finished_order if item != task_id]
