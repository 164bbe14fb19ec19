"""Single-file JSON persistence for queue state."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

from content_tasks.taskqueue.common import (
    is_terminal_status,
    task_error_message,
    to_positive_int,
    to_task_status,
)
from content_tasks.taskqueue.models import (
    TASK_PERSISTENCE_FAILED,
    TASK_RECOVERED_AFTER_RESTART,
    PersistenceStats,
    QueueState,
    TaskRecord,
    TaskStatus,
)

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1


class TaskQueuePersistence:
    """Snapshots :class:`QueueState` to a JSON file and hydrates it at startup.

    Writes go to ``<file>.tmp`` first and are renamed over the target, so a
    crash mid-write leaves the previous snapshot intact. No method raises on
    I/O, encoding or parse problems: failures flip ``available`` off and the queue keeps
    running in memory.
    """

    def __init__(
        self,
        *,
        state: QueueState,
        state_file: Path | None,
        clock: Callable[[], str],
        debounce_ms: int = 50,
    ) -> None:
        self._state = state
        self._path = state_file
        self._clock = clock
        self._debounce_seconds = max(0, debounce_ms) / 1000.0
        self._health = PersistenceStats(
            enabled=state_file is not None,
            file_path=str(state_file) if state_file is not None else "",
        )
        self._health_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._closed = False

    @property
    def enabled(self) -> bool:
        return self._path is not None

    def stats(self) -> PersistenceStats:
        with self._health_lock:
            return replace(self._health)

    # -- writing --------------------------------------------------------------

    def schedule_persist(self) -> None:
        """Request a debounced flush; requests made before it fires coalesce."""

        if self._path is None:
            return
        with self._timer_lock:
            if self._closed or self._timer is not None:
                return
            timer = threading.Timer(self._debounce_seconds, self._flush_scheduled)
            timer.daemon = True
            timer.name = "task-queue-persist"
            self._timer = timer
            timer.start()

    def _flush_scheduled(self) -> None:
        with self._timer_lock:
            self._timer = None
        self.persist_now()

    def persist_now(self) -> bool:
        """Write the full state synchronously. Returns ``True`` on success."""

        if self._path is None:
            return False
        with self._write_lock:
            with self._state.lock:
                payload = self._make_payload()
            try:
                text = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self._path.with_name(f"{self._path.name}.tmp")
                tmp_path.write_text(text, encoding="utf-8")
                os.replace(tmp_path, self._path)
            except Exception as error:  # noqa: BLE001
                self._mark_error(error)
                logger.warning("Task state write to %s failed: %s", self._path, error)
                return False
            with self._health_lock:
                self._clear_error()
                self._health.last_saved_at = self._clock()
        return True

    def close(self) -> None:
        """Cancel a pending debounced flush and refuse new ones."""

        with self._timer_lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _make_payload(self) -> dict[str, Any]:
        return {
            "version": STATE_FILE_VERSION,
            "tasks": [task.view().to_dict() for task in self._state.tasks.values()],
            "pendingIds": list(self._state.pending_ids),
            "finishedOrder": list(self._state.finished_order),
        }

    # -- loading --------------------------------------------------------------

    def load(self, *, recover_running: bool = True) -> int:
        """Hydrate the state from disk and return the number of recovered tasks.

        With ``recover_running`` every task still marked ``running`` is failed
        with ``task_recovered_after_restart``: its handler invocation died with
        the previous process and cannot be replayed.
        """

        if self._path is None or not self._path.exists():
            return 0
        try:
            parsed = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(parsed, dict):
                raise ValueError(f"Task state file {self._path} does not hold a JSON object")
        except Exception as error:  # noqa: BLE001
            self._mark_error(error)
            logger.error("Task state load from %s failed: %s", self._path, error)
            return 0

        with self._state.lock:
            recovered = self._apply_loaded(parsed, recover_running=recover_running)
            evicted = self._state.trim_finished()
            loaded_count = len(self._state.tasks)
            pending_count = len(self._state.pending_ids)

        with self._health_lock:
            self._clear_error()
            self._health.last_loaded_at = self._clock()
        logger.info(
            "Loaded task state from %s: tasks=%d pending=%d recovered=%d evicted=%d",
            self._path,
            loaded_count,
            pending_count,
            recovered,
            evicted,
        )
        if recovered:
            logger.warning("Marked %d interrupted task(s) as failed after restart", recovered)
            self.schedule_persist()
        return recovered

    def _apply_loaded(self, parsed: dict[str, Any], *, recover_running: bool) -> int:
        state = self._state
        for raw_task in _as_list(parsed.get("tasks")):
            task = self._normalize_loaded_task(raw_task)
            if task is not None:
                state.tasks[task.task_id] = task

        pending_seen: set[str] = set()
        for raw_id in _as_list(parsed.get("pendingIds")):
            task_id = str(raw_id or "").strip()
            task = state.tasks.get(task_id)
            if task is None or task_id in pending_seen or task.status != TaskStatus.QUEUED:
                continue
            state.pending_ids.append(task_id)
            pending_seen.add(task_id)
        for task in state.tasks.values():
            if task.status == TaskStatus.QUEUED and task.task_id not in pending_seen:
                state.pending_ids.append(task.task_id)
                pending_seen.add(task.task_id)

        finished_seen: set[str] = set()
        for raw_id in _as_list(parsed.get("finishedOrder")):
            task_id = str(raw_id or "").strip()
            task = state.tasks.get(task_id)
            if task is None or task_id in finished_seen or not is_terminal_status(task.status):
                continue
            state.finished_order.append(task_id)
            finished_seen.add(task_id)

        recovered = 0
        recovered_at = self._clock()
        for task in state.tasks.values():
            if task.status == TaskStatus.RUNNING and recover_running:
                task.status = TaskStatus.FAILED
                task.started_at = ""
                task.finished_at = recovered_at
                task.updated_at = recovered_at
                task.last_error = TASK_RECOVERED_AFTER_RESTART
                recovered += 1
            if is_terminal_status(task.status) and task.task_id not in finished_seen:
                state.finished_order.append(task.task_id)
                finished_seen.add(task.task_id)
        return recovered

    def _normalize_loaded_task(self, raw_task: object) -> TaskRecord | None:
        if not isinstance(raw_task, dict):
            return None
        task_id = str(raw_task.get("id") or "").strip()
        task_type = str(raw_task.get("type") or "").strip()
        if not task_id or not task_type:
            return None

        payload = raw_task.get("payload")
        return TaskRecord(
            task_id=task_id,
            task_type=task_type,
            status=to_task_status(raw_task.get("status")),
            attempts=to_positive_int(raw_task.get("attempts"), 0),
            max_attempts=to_positive_int(raw_task.get("maxAttempts"), 1),
            payload=payload if payload is not None else {},
            result=raw_task.get("result"),
            last_error=_str_field(raw_task, "lastError"),
            created_at=_str_field(raw_task, "createdAt") or self._clock(),
            updated_at=_str_field(raw_task, "updatedAt") or self._clock(),
            started_at=_str_field(raw_task, "startedAt"),
            finished_at=_str_field(raw_task, "finishedAt"),
        )

    # -- health ---------------------------------------------------------------

    def _mark_error(self, error: BaseException) -> None:
        with self._health_lock:
            self._health.available = False
            self._health.last_error = task_error_message(error, TASK_PERSISTENCE_FAILED)
            self._health.last_error_at = self._clock()

    def _clear_error(self) -> None:
        self._health.available = True
        self._health.last_error = ""
        self._health.last_error_at = ""


def _as_list(value: object) -> list[Any]:
    return value if isinstance(value, list) else []


def _str_field(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    return value if isinstance(value, str) else ""
