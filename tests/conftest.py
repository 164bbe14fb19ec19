"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest
from queue_helpers import queue_settings

from content_tasks.config import TaskQueueSettings
from content_tasks.taskqueue import TaskQueue


@pytest.fixture()
def make_queue() -> Iterator[Callable[..., TaskQueue]]:
    """Build queues that are closed when the test ends."""
    created: list[TaskQueue] = []

    def _make(settings: TaskQueueSettings | None = None, **kwargs: object) -> TaskQueue:
        queue = TaskQueue(settings or queue_settings(), **kwargs)  # type: ignore[arg-type]
        created.append(queue)
        return queue

    yield _make
    for queue in created:
        queue.close()
