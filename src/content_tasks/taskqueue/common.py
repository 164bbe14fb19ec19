"""Shared helpers for the task queue."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from content_tasks.taskqueue.models import TERMINAL_STATUSES, TaskStatus

MAX_ERROR_CHARS = 500


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601 form."""

    return datetime.now(tz=UTC).isoformat()


def new_task_id() -> str:
    return f"t_{uuid4()}"


def to_positive_int(value: object, fallback: int) -> int:
    """Parse a positive integer, returning ``fallback`` for anything else."""

    if isinstance(value, bool):
        return fallback
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def to_task_status(value: object, fallback: TaskStatus = TaskStatus.QUEUED) -> TaskStatus:
    try:
        return TaskStatus(str(value or "").strip())
    except ValueError:
        return fallback


def is_terminal_status(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def task_error_message(error: BaseException | None, fallback: str) -> str:
    """Short, non-empty failure reason for an exception."""

    message = str(error) if error is not None else ""
    message = message.strip()
    if not message:
        return fallback
    return message[:MAX_ERROR_CHARS]
