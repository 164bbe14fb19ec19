"""Public task queue facade: enqueue, inspect, retry, stats."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from types import TracebackType
from typing import Any

from content_tasks.config import Settings, TaskQueueSettings
from content_tasks.taskqueue.common import new_task_id, to_positive_int, utc_now_iso
from content_tasks.taskqueue.dispatcher import Dispatcher
from content_tasks.taskqueue.models import (
    INVALID_TASK_TYPE,
    TASK_NOT_RETRYABLE,
    TASK_QUEUE_CLOSED,
    TASK_QUEUE_FULL,
    QueueState,
    TaskQueueError,
    TaskQueueStats,
    TaskRecord,
    TaskStatus,
    TaskView,
)
from content_tasks.taskqueue.persistence import TaskQueuePersistence
from content_tasks.taskqueue.registry import HandlerRegistry, TaskHandler

logger = logging.getLogger(__name__)


class TaskQueue:
    """Bounded-concurrency background queue with retries and crash-safe state.

    ``enqueue_task`` and ``retry_task`` only do bookkeeping and return at once;
    handler failures never reach their caller and are observed by polling
    ``get_task``. When a state file is configured the queue is hydrated from it
    on construction, and tasks interrupted by the previous shutdown come back
    as ``failed``.
    """

    def __init__(
        self,
        settings: TaskQueueSettings | None = None,
        *,
        handlers: Mapping[str, TaskHandler] | None = None,
        autostart: bool = True,
        clock: Callable[[], str] = utc_now_iso,
        id_factory: Callable[[], str] = new_task_id,
    ) -> None:
        self.settings = settings or TaskQueueSettings()
        Settings(queue=self.settings).validate()
        self._clock = clock
        self._id_factory = id_factory
        self._closed = False

        self._state = QueueState(max_tasks=self.settings.max_tasks)
        self._registry = HandlerRegistry()
        self._persistence = TaskQueuePersistence(
            state=self._state,
            state_file=self.settings.state_file,
            clock=clock,
            debounce_ms=self.settings.persist_debounce_ms,
        )
        self._dispatcher = Dispatcher(
            state=self._state,
            registry=self._registry,
            persistence=self._persistence,
            concurrency=self.settings.concurrency,
            timeout_ms=self.settings.timeout_ms,
            clock=clock,
        )

        self._persistence.load()
        for task_type, handler in (handlers or {}).items():
            self._registry.register(task_type, handler)
        if autostart:
            self.start()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> TaskQueue:
        return cls(settings.queue, **kwargs)

    def __enter__(self) -> TaskQueue:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Dispatch pending work, including tasks restored from disk."""

        self._dispatcher.pump()

    def close(self) -> None:
        """Stop dispatching and write a final snapshot.

        Handlers already running are not waited for.
        """

        with self._state.lock:
            if self._closed:
                return
            self._closed = True
        self._dispatcher.stop()
        self._persistence.close()
        self._persistence.persist_now()
        logger.info("Task queue closed")

    def persist_now(self) -> bool:
        return self._persistence.persist_now()

    # -- handlers -------------------------------------------------------------

    def register_handler(self, task_type: str, handler: TaskHandler, *, force: bool = True) -> bool:
        return self._registry.register(task_type, handler, force=force)

    def has_handler(self, task_type: str) -> bool:
        return self._registry.has_handler(task_type)

    # -- tasks ----------------------------------------------------------------

    def enqueue_task(
        self,
        task_type: str,
        payload: Any = None,
        *,
        max_attempts: int = 1,
    ) -> TaskView:
        """Add a task to the back of the pending list.

        Raises ``TaskQueueError`` with ``invalid_task_type`` for an empty type
        and ``task_queue_full`` once ``max_queue`` tasks are pending.
        """

        normalized_type = str(task_type or "").strip()
        if not normalized_type:
            raise TaskQueueError(INVALID_TASK_TYPE)

        with self._state.lock:
            self._ensure_accepting()
            created_at = self._clock()
            task = TaskRecord(
                task_id=self._id_factory(),
                task_type=normalized_type,
                status=TaskStatus.QUEUED,
                attempts=0,
                max_attempts=to_positive_int(max_attempts, 1),
                payload=payload if payload is not None else {},
                created_at=created_at,
                updated_at=created_at,
            )
            self._state.tasks[task.task_id] = task
            self._state.pending_ids.append(task.task_id)
            self._state.trim_finished()
            view = task.view()

        logger.debug("Enqueued task %s type=%s", view.task_id, view.task_type)
        self._persistence.schedule_persist()
        self._dispatcher.pump()
        return view

    def get_task(self, task_id: str) -> TaskView | None:
        with self._state.lock:
            task = self._state.tasks.get(str(task_id or ""))
            return task.view() if task is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """Task snapshots, newest first."""

        with self._state.lock:
            views = [
                task.view()
                for task in self._state.tasks.values()
                if status is None or task.status == status
            ]
        views.sort(key=lambda view: view.created_at, reverse=True)
        return views[:limit] if limit is not None else views

    def retry_task(self, task_id: str) -> TaskView | None:
        """Requeue a failed task at the back of the pending list.

        Returns ``None`` for an unknown id and raises ``TaskQueueError`` with
        ``task_not_retryable`` unless the task is ``failed``.
        """

        with self._state.lock:
            task = self._state.tasks.get(str(task_id or ""))
            if task is None:
                return None
            if task.status != TaskStatus.FAILED:
                raise TaskQueueError(TASK_NOT_RETRYABLE)
            self._ensure_accepting()

            task.status = TaskStatus.QUEUED
            task.result = None
            task.last_error = ""
            task.started_at = ""
            task.finished_at = ""
            task.updated_at = self._clock()
            self._state.forget_finished(task.task_id)
            self._state.pending_ids.append(task.task_id)
            view = task.view()

        logger.info("Task %s requeued by retry request", view.task_id)
        self._persistence.schedule_persist()
        self._dispatcher.pump()
        return view

    def get_stats(self) -> TaskQueueStats:
        counts = dict.fromkeys(TaskStatus, 0)
        with self._state.lock:
            for task in self._state.tasks.values():
                counts[task.status] += 1
            total = len(self._state.tasks)
            active = self._state.active
        return TaskQueueStats(
            concurrency=self.settings.concurrency,
            max_queue=self.settings.max_queue,
            max_tasks=self.settings.max_tasks,
            timeout_ms=self.settings.timeout_ms,
            total=total,
            queued=counts[TaskStatus.QUEUED],
            running=counts[TaskStatus.RUNNING],
            succeeded=counts[TaskStatus.SUCCEEDED],
            failed=counts[TaskStatus.FAILED],
            active=active,
            persistence=self._persistence.stats(),
        )

    def _ensure_accepting(self) -> None:
        if self._closed:
            raise TaskQueueError(TASK_QUEUE_CLOSED)
        if len(self._state.pending_ids) >= self.settings.max_queue:
            raise TaskQueueError(TASK_QUEUE_FULL)
