"""Controllers for task queue CLI commands.

All commands read the state file without dispatching anything, so they are
safe to run next to a live process that owns the queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from content_tasks.config import Settings
from content_tasks.taskqueue.common import utc_now_iso
from content_tasks.taskqueue.models import PersistenceStats, QueueState, TaskStatus, TaskView
from content_tasks.taskqueue.persistence import TaskQueuePersistence


@dataclass(slots=True)
class TasksStatsCommand:
    """CLI input for queue stats."""

    state_file: Path | None


@dataclass(slots=True)
class TasksListCommand:
    """CLI input for task listing."""

    state_file: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TasksInspectCommand:
    """CLI input for task inspection."""

    state_file: Path | None
    task_id: str


@dataclass(slots=True)
class TasksInspectResult:
    found: bool
    lines: list[str]


@dataclass(slots=True)
class _Snapshot:
    state: QueueState
    persistence: PersistenceStats


class TaskQueueCliController:
    """Renders persisted queue state as text lines."""

    def stats(self, command: TasksStatsCommand) -> list[str]:
        snapshot = _load_snapshot(command.state_file)
        if snapshot is None:
            return ["No state file configured. Set CONTENT_TASKS_STATE_FILE or pass --state-file."]

        counts = dict.fromkeys(TaskStatus, 0)
        for task in snapshot.state.tasks.values():
            counts[task.status] += 1
        health = snapshot.persistence
        return [
            f"State file: {health.file_path}",
            f"Available: {'yes' if health.available else 'no'}",
            f"Last error: {health.last_error or '-'}",
            f"Tasks: {len(snapshot.state.tasks)}",
            *(f"  {status.value}: {counts[status]}" for status in TaskStatus),
            f"Pending: {len(snapshot.state.pending_ids)}",
            f"Finished order: {len(snapshot.state.finished_order)}",
        ]

    def list_tasks(self, command: TasksListCommand) -> list[str]:
        snapshot = _load_snapshot(command.state_file)
        if snapshot is None:
            return ["No state file configured. Set CONTENT_TASKS_STATE_FILE or pass --state-file."]

        status_filter = _parse_status(command.status)
        views = [
            task.view()
            for task in snapshot.state.tasks.values()
            if status_filter is None or task.status == status_filter
        ]
        views.sort(key=lambda view: view.created_at, reverse=True)
        views = views[: command.limit]

        lines = [f"Tasks: {len(views)}"]
        for view in views:
            lines.append(
                f"  {view.task_id} type={view.task_type} status={view.status.value} "
                f"attempts={view.attempts}/{view.max_attempts} "
                f"error={view.last_error or '-'} created_at={view.created_at}",
            )
        return lines

    def inspect_task(self, command: TasksInspectCommand) -> TasksInspectResult:
        snapshot = _load_snapshot(command.state_file)
        task = snapshot.state.tasks.get(command.task_id) if snapshot is not None else None
        if task is None:
            return TasksInspectResult(found=False, lines=[f"Task not found: {command.task_id}"])
        return TasksInspectResult(found=True, lines=_render_task(task.view()))


def _render_task(view: TaskView) -> list[str]:
    return [
        f"Task: {view.task_id}",
        f"Type: {view.task_type}",
        f"Status: {view.status.value}",
        f"Attempts: {view.attempts}/{view.max_attempts}",
        f"Error: {view.last_error or '-'}",
        f"Payload: {view.payload!r}",
        f"Result: {view.result!r}",
        f"Created: {view.created_at}",
        f"Updated: {view.updated_at}",
        f"Started: {view.started_at or '-'}",
        f"Finished: {view.finished_at or '-'}",
    ]


def _load_snapshot(state_file: Path | None) -> _Snapshot | None:
    settings = Settings.from_env(state_file=state_file)
    if settings.queue.state_file is None:
        return None
    state = QueueState(max_tasks=settings.queue.max_tasks)
    persistence = TaskQueuePersistence(
        state=state,
        state_file=settings.queue.state_file,
        clock=utc_now_iso,
    )
    persistence.load(recover_running=False)
    return _Snapshot(state=state, persistence=persistence.stats())


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())
