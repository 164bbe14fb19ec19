"""Runtime configuration for the task queue."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class TaskQueueSettings:
    """Capacity, timeout and persistence settings for one queue."""

    concurrency: int = 1
    max_queue: int = 200
    max_tasks: int = 2_000
    timeout_ms: int = 90_000
    persist_debounce_ms: int = 50
    state_file: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    queue: TaskQueueSettings = field(default_factory=TaskQueueSettings)

    @classmethod
    def from_env(cls, state_file: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        state_file_raw = os.getenv("CONTENT_TASKS_STATE_FILE", "").strip()
        return cls(
            queue=TaskQueueSettings(
                concurrency=int(os.getenv("CONTENT_TASKS_CONCURRENCY", "1")),
                max_queue=int(os.getenv("CONTENT_TASKS_MAX_QUEUE", "200")),
                max_tasks=int(os.getenv("CONTENT_TASKS_MAX_TASKS", "2000")),
                timeout_ms=int(os.getenv("CONTENT_TASKS_TIMEOUT_MS", "90000")),
                persist_debounce_ms=int(os.getenv("CONTENT_TASKS_PERSIST_DEBOUNCE_MS", "50")),
                state_file=state_file or (Path(state_file_raw) if state_file_raw else None),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if queue limits are not usable."""

        queue = self.queue
        if queue.concurrency <= 0:
            raise ValueError("CONTENT_TASKS_CONCURRENCY must be a positive integer.")
        if queue.max_queue <= 0:
            raise ValueError("CONTENT_TASKS_MAX_QUEUE must be a positive integer.")
        if queue.max_tasks <= 0:
            raise ValueError("CONTENT_TASKS_MAX_TASKS must be a positive integer.")
        if queue.timeout_ms <= 0:
            raise ValueError("CONTENT_TASKS_TIMEOUT_MS must be a positive integer.")
        if queue.persist_debounce_ms < 0:
            raise ValueError("CONTENT_TASKS_PERSIST_DEBOUNCE_MS must be >= 0.")
