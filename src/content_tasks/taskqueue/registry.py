"""Task type to handler mapping."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from content_tasks.taskqueue.models import HandlerMeta

TaskHandler = Callable[[Any, HandlerMeta], Any]


class HandlerRegistry:
    """Handlers looked up by task type at dispatch time."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._lock = threading.Lock()

    def register(self, task_type: str, handler: TaskHandler, *, force: bool = True) -> bool:
        """Install ``handler`` under ``task_type``.

        Returns ``False`` without changing anything when ``force`` is off and
        the type already has a handler.
        """

        if not callable(handler):
            raise TypeError(f"Handler for {task_type!r} must be callable")
        normalized = str(task_type or "")
        with self._lock:
            if not force and normalized in self._handlers:
                return False
            self._handlers[normalized] = handler
        return True

    def has_handler(self, task_type: str) -> bool:
        with self._lock:
            return str(task_type or "") in self._handlers

    def get(self, task_type: str) -> TaskHandler | None:
        with self._lock:
            return self._handlers.get(str(task_type or ""))
