"""Dispatcher that keeps up to ``concurrency`` handlers running."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from content_tasks.taskqueue.common import task_error_message
from content_tasks.taskqueue.models import (
    TASK_FAILED,
    TASK_HANDLER_MISSING,
    TASK_TIMEOUT,
    HandlerMeta,
    QueueState,
    TaskRecord,
    TaskStatus,
)
from content_tasks.taskqueue.persistence import TaskQueuePersistence
from content_tasks.taskqueue.registry import HandlerRegistry, TaskHandler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Attempt:
    """One handler invocation racing its timeout timer."""

    task_id: str
    attempt_no: int
    timer: threading.Timer | None = None
    settled: bool = False


class Dispatcher:
    """Pulls pending task ids FIFO and runs their handlers.

    Bookkeeping happens under ``state.lock``; handler bodies run in daemon
    threads and only hand a result or an exception back. A handler that
    outlives ``timeout_ms`` is abandoned, not stopped: its thread keeps
    running, the task is recorded as ``task_timeout`` and whatever the
    handler returns later is discarded. Handlers with external side effects
    must tolerate being orphaned this way.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        state: QueueState,
        registry: HandlerRegistry,
        persistence: TaskQueuePersistence,
        concurrency: int,
        timeout_ms: int,
        clock: Callable[[], str],
    ) -> None:
        self._state = state
        self._registry = registry
        self._persistence = persistence
        self.concurrency = concurrency
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._stopped = False

    def stop(self) -> None:
        """Stop starting new attempts. Attempts already running still settle."""

        with self._state.lock:
            self._stopped = True

    def pump(self) -> None:
        """Fill free concurrency slots from the pending list."""

        state = self._state
        with state.lock:
            while not self._stopped and state.active < self.concurrency and state.pending_ids:
                task_id = state.pending_ids.popleft()
                task = state.tasks.get(task_id)
                if task is None or task.status != TaskStatus.QUEUED:
                    continue
                handler = self._registry.get(task.task_type)
                if handler is None:
                    self._fail_without_handler(task)
                    continue
                self._start_attempt(task, handler)

    def _fail_without_handler(self, task: TaskRecord) -> None:
        now = self._clock()
        task.status = TaskStatus.FAILED
        task.finished_at = now
        task.updated_at = now
        task.last_error = TASK_HANDLER_MISSING
        task.attempts += 1
        self._state.record_finished(task)
        self._persistence.schedule_persist()
        logger.warning("No handler registered for task %s type=%s", task.task_id, task.task_type)

    def _start_attempt(self, task: TaskRecord, handler: TaskHandler) -> None:
        self._state.active += 1
        task.status = TaskStatus.RUNNING
        task.started_at = self._clock()
        task.updated_at = task.started_at
        self._persistence.schedule_persist()

        attempt = _Attempt(task_id=task.task_id, attempt_no=task.attempts + 1)
        attempt.timer = threading.Timer(
            self.timeout_ms / 1000.0,
            self._settle,
            kwargs={"attempt": attempt, "timed_out": True},
        )
        attempt.timer.daemon = True
        worker = threading.Thread(
            target=self._run_handler,
            args=(attempt, handler, task.payload),
            daemon=True,
            name=f"task-{task.task_id}-{attempt.attempt_no}",
        )
        logger.debug(
            "Starting task %s type=%s attempt=%d/%d",
            task.task_id,
            task.task_type,
            attempt.attempt_no,
            task.max_attempts,
        )
        attempt.timer.start()
        worker.start()

    def _run_handler(self, attempt: _Attempt, handler: TaskHandler, payload: Any) -> None:
        meta = HandlerMeta(task_id=attempt.task_id, attempt=attempt.attempt_no)
        try:
            result = handler(payload, meta)
            if inspect.iscoroutine(result):
                result = asyncio.run(result)
        except BaseException as error:  # noqa: BLE001
            self._settle(attempt=attempt, error=error)
            return
        self._settle(attempt=attempt, result=result)

    def _settle(
        self,
        *,
        attempt: _Attempt,
        result: Any = None,
        error: BaseException | None = None,
        timed_out: bool = False,
    ) -> None:
        """Commit whichever of handler or timer finishes first; ignore the other."""

        state = self._state
        with state.lock:
            if attempt.settled:
                if not timed_out:
                    logger.warning(
                        "Discarding late outcome of abandoned task %s attempt %d",
                        attempt.task_id,
                        attempt.attempt_no,
                    )
                return
            attempt.settled = True
            if attempt.timer is not None and not timed_out:
                attempt.timer.cancel()

            task = state.tasks.get(attempt.task_id)
            if task is not None:
                if timed_out:
                    self._commit_failure(task, TASK_TIMEOUT)
                elif error is not None:
                    self._commit_failure(task, task_error_message(error, TASK_FAILED))
                else:
                    self._commit_success(task, result)
            state.active -= 1
        self.pump()

    def _commit_success(self, task: TaskRecord, result: Any) -> None:
        now = self._clock()
        task.status = TaskStatus.SUCCEEDED
        task.result = result
        task.last_error = ""
        task.attempts += 1
        task.finished_at = now
        task.updated_at = now
        self._state.record_finished(task)
        self._persistence.schedule_persist()
        logger.debug("Task %s succeeded after %d attempt(s)", task.task_id, task.attempts)

    def _commit_failure(self, task: TaskRecord, reason: str) -> None:
        task.attempts += 1
        task.last_error = reason
        task.updated_at = self._clock()

        if task.attempts < task.max_attempts:
            task.status = TaskStatus.QUEUED
            task.started_at = ""
            task.finished_at = ""
            self._state.pending_ids.append(task.task_id)
            self._persistence.schedule_persist()
            logger.warning(
                "Task %s attempt %d/%d failed (%s); requeued",
                task.task_id,
                task.attempts,
                task.max_attempts,
                reason,
            )
            return

        task.status = TaskStatus.FAILED
        task.finished_at = task.updated_at
        self._state.record_finished(task)
        self._persistence.schedule_persist()
        logger.warning(
            "Task %s failed after %d attempt(s): %s",
            task.task_id,
            task.attempts,
            reason,
        )
